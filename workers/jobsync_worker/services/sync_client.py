from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from jobsync_worker.jobs.retry import call_with_retry


class SyncClient:
    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        attempts: int = 3,
        base_delay_seconds: float = 2.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.attempts = attempts
        self.base_delay_seconds = base_delay_seconds
        self._client = client
        self._sleep = sleep

    async def trigger_sync(self, sync_type: str, source: str | None = None) -> dict[str, Any]:
        payload: dict[str, Any] = {"sync_type": sync_type, "wait": False}
        if source is not None:
            payload["source"] = source
        return await call_with_retry(
            lambda: self._post("/sync", payload),
            label=f"{sync_type}:{source or 'all'}",
            attempts=self.attempts,
            base_delay_seconds=self.base_delay_seconds,
            sleep=self._sleep,
        )

    async def sweep_stuck_runs(self) -> dict[str, Any]:
        return await call_with_retry(
            lambda: self._post("/sync/runs/sweep", None),
            label="sweep:stuck-runs",
            attempts=self.attempts,
            base_delay_seconds=self.base_delay_seconds,
            sleep=self._sleep,
        )

    async def _post(self, path: str, payload: dict[str, Any] | None) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(f"{self.base_url}{path}", json=payload)
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            return await client.post(f"{self.base_url}{path}", json=payload)
