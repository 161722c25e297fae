"""Wall clock + sleep, swappable in tests."""

from __future__ import annotations

import asyncio
import time


class Clock:
    """Real time source used by the runner and scheduler."""

    def now_ms(self) -> int:
        return int(time.time() * 1000)

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


SYSTEM_CLOCK = Clock()
