"""TaskScheduler — APScheduler bridge for one-shot dispatch + sweep backstop."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from schedbot.core.clock import SYSTEM_CLOCK, Clock

if TYPE_CHECKING:
    from schedbot.core.config.schema import Config
    from schedbot.core.cron.runner import ExecutionRunner
    from schedbot.memory.store import TaskStore

SWEEP_JOB_ID = "sweep:due-tasks"
FIRE_TOLERANCE_MS = 1000  # one-shot may fire slightly before next_run_at


def _run_job_id(task_id: str) -> str:
    return f"run:{task_id}"


def _to_datetime(at_ms: int) -> datetime:
    return datetime.fromtimestamp(at_ms / 1000, tz=timezone.utc)


class TaskScheduler:
    """Bridge between SQLite tasks and APScheduler.

    Two trigger paths feed the ExecutionRunner:

    - one-shot ``DateTrigger`` jobs armed for each task's ``next_run_at``
      (one pending job per task, re-armed by the runner after every run);
    - a periodic sweep that recovers due tasks whose one-shot job was lost,
      e.g. across a restart.

    Both paths claim a task by pushing ``next_run_at`` far into the future
    before starting the run, so neither can double-trigger the other.
    """

    def __init__(
        self,
        store: TaskStore,
        config: Config | None = None,
        clock: Clock = SYSTEM_CLOCK,
    ):
        self.store = store
        self.clock = clock
        self.runner: ExecutionRunner | None = None
        self.sweep_interval_s = config.sweep_interval_s if config else 30 * 60
        self.guard_ms = config.guard_ms if config else 365 * 24 * 60 * 60 * 1000
        self._scheduler = AsyncIOScheduler(
            timezone=timezone.utc,
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
        )

    def attach(self, runner: ExecutionRunner) -> None:
        self.runner = runner

    async def start(self) -> None:
        """Register the sweep, re-arm pending tasks and start APScheduler."""
        self._scheduler.add_job(
            self.check_due_tasks,
            trigger=IntervalTrigger(seconds=self.sweep_interval_s, timezone=timezone.utc),
            id=SWEEP_JOB_ID,
            replace_existing=True,
            next_run_time=datetime.now(timezone.utc),
        )

        now = self.clock.now_ms()
        armed = 0
        for task in self.store.get_schedulable_tasks():
            if task.next_run_at is not None and task.next_run_at > now:
                self.schedule_run(task.id, task.next_run_at)
                armed += 1

        self._scheduler.start()
        logger.info(
            f"TaskScheduler started: {armed} runs armed, sweep every {self.sweep_interval_s}s"
        )

    async def stop(self) -> None:
        """Shutdown the scheduler gracefully."""
        self._scheduler.shutdown(wait=False)
        logger.info("TaskScheduler stopped")

    # ── One-shot dispatch ─────────────────────────────────────

    def schedule_run(self, task_id: str, at_ms: int) -> None:
        """Arm (or re-arm) the single pending run for ``task_id``."""
        try:
            self._scheduler.add_job(
                self._fire,
                trigger=DateTrigger(run_date=_to_datetime(at_ms), timezone=timezone.utc),
                id=_run_job_id(task_id),
                args=[task_id],
                replace_existing=True,
            )
            logger.debug(f"Run armed: {task_id} at {_to_datetime(at_ms).isoformat()}")
        except Exception as e:
            logger.error(f"Failed to arm run for task {task_id}: {e}")

    def cancel_run(self, task_id: str) -> None:
        try:
            self._scheduler.remove_job(_run_job_id(task_id))
        except JobLookupError:
            pass  # nothing armed

    def _can_run(self) -> bool:
        """Scheduled runs need an attached runner with a configured API client."""
        if self.runner is None:
            logger.error("No runner attached, scheduled runs skipped")
            return False
        if not self.runner.client.configured:
            logger.warning("Agent API key not configured, scheduled runs skipped")
            return False
        return True

    async def _fire(self, task_id: str) -> None:
        """One-shot job body: claim the task if it is still due, then run it."""
        if not self._can_run():
            return
        task = self.store.get_task(task_id)
        if task is None:
            return
        now = self.clock.now_ms()
        guard_until = now + self.guard_ms
        if not self.store.claim_due(task_id, now + FIRE_TOLERANCE_MS, guard_until):
            logger.debug(f"One-shot run for {task_id} skipped (not due, paused or running)")
            return
        await self._run(task_id, task.next_run_at, guard_until)

    # ── Sweep ────────────────────────────────────────────────

    async def check_due_tasks(self) -> int:
        """Run every active, idle task whose ``next_run_at`` has passed.

        Returns the number of tasks dispatched.
        """
        if not self._can_run():
            return 0
        now = self.clock.now_ms()
        guard_until = now + self.guard_ms
        due = [
            t for t in self.store.get_schedulable_tasks()
            if t.next_run_at is not None and t.next_run_at <= now
        ]
        claimed = [t for t in due if self.store.claim_due(t.id, now, guard_until)]
        if not claimed:
            logger.debug("Sweep: no due tasks")
            return 0

        logger.info(f"Sweep: dispatching {len(claimed)} due task(s)")
        await asyncio.gather(*(self._run(t.id, t.next_run_at, guard_until) for t in claimed))
        return len(claimed)

    async def _run(self, task_id: str, previous: int | None, guard_until: int) -> None:
        """Invoke the runner; a skipped run gives the claim back."""
        outcome = None
        try:
            outcome = await self.runner.run(task_id)
        except Exception as e:
            logger.exception(f"Scheduled run of task {task_id} failed: {e}")
        if outcome is None and self.store.unclaim_due(task_id, guard_until, previous):
            logger.debug(f"Run of {task_id} did not start, next_run_at restored")
