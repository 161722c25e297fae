"""Async client for the external agent run API."""

from __future__ import annotations

from typing import Any

import httpx
from loguru import logger


class AgentAPIError(Exception):
    """Raised when the agent API returns a non-2xx response."""

    def __init__(self, status_code: int, detail: str):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"HTTP {status_code}: {detail}")


class AgentAPIClient:
    """Start and poll agent runs.

    Parameters
    ----------
    base_url : str
        API root, e.g. "https://api.subconscious.dev/v1".
    api_key : str
        Bearer credential. An empty key means the client is not configured.
    transport : httpx.AsyncBaseTransport, optional
        Custom transport (tests use ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def start_run(self, engine: str, instructions: str, tools: list[Any]) -> str:
        """POST /runs. Returns the external run id."""
        payload = {
            "engine": engine,
            "input": {"instructions": instructions, "tools": tools},
        }
        async with self._client() as client:
            resp = await client.post("/runs", json=payload)
        if not resp.is_success:
            logger.warning(f"Agent run start failed ({resp.status_code}): {resp.text[:200]}")
            raise AgentAPIError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError:
            raise AgentAPIError(resp.status_code, f"Invalid JSON response: {resp.text[:200]}")
        run_id = data.get("runId") if isinstance(data, dict) else None
        if not run_id:
            raise AgentAPIError(resp.status_code, f"Response has no runId: {resp.text[:200]}")
        return str(run_id)

    async def get_run(self, run_id: str) -> dict[str, Any]:
        """GET /runs/{run_id}. Returns the raw run document."""
        async with self._client() as client:
            resp = await client.get(f"/runs/{run_id}")
        if not resp.is_success:
            raise AgentAPIError(resp.status_code, resp.text)
        data = resp.json()
        if not isinstance(data, dict):
            raise AgentAPIError(resp.status_code, f"Unexpected run payload: {resp.text[:200]}")
        return data

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.timeout),
            headers=self._headers(),
            transport=self._transport,
        )

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers
