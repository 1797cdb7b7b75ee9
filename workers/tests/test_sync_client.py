from __future__ import annotations

import asyncio
import json
from typing import Any

import httpx
import pytest

from jobsync_worker.jobs.retry import RetryExhaustedError
from jobsync_worker.jobs.schedule import Trigger
from jobsync_worker.main import fire_trigger
from jobsync_worker.services.sync_client import SyncClient


async def _no_sleep(_: float) -> None:
    return None


def test_trigger_sync_posts_background_request() -> None:
    captured: list[dict[str, Any]] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        captured.append({"path": request.url.path, "body": json.loads(request.content)})
        return httpx.Response(200, json={"run_id": "abc", "status": "running", "stats": {}})

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sync_client = SyncClient("http://api.test/", client=client, sleep=_no_sleep)
            return await sync_client.trigger_sync("job_sync", "lever")

    result = asyncio.run(run())

    assert result["run_id"] == "abc"
    assert captured == [{"path": "/sync", "body": {"sync_type": "job_sync", "wait": False, "source": "lever"}}]


def test_sweep_retries_server_errors() -> None:
    calls = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        assert request.url.path == "/sync/runs/sweep"
        if calls == 1:
            return httpx.Response(503, json={"detail": "database unavailable"})
        return httpx.Response(200, json={"failed": 1, "run_ids": ["old"]})

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await SyncClient("http://api.test", client=client, sleep=_no_sleep).sweep_stuck_runs()

    assert asyncio.run(run()) == {"failed": 1, "run_ids": ["old"]}
    assert calls == 2


def test_client_raises_after_attempts_exhausted() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def run() -> None:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            await SyncClient("http://api.test", client=client, attempts=2, sleep=_no_sleep).trigger_sync("discovery")

    with pytest.raises(RetryExhaustedError) as excinfo:
        asyncio.run(run())
    assert excinfo.value.attempts == 2


def test_fire_trigger_swallows_exhausted_retries() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sync_client = SyncClient("http://api.test", client=client, attempts=2, sleep=_no_sleep)
            trigger = Trigger(name="job_sync:lever", kind="sync", interval_seconds=60, sync_type="job_sync", source="lever")
            return await fire_trigger(sync_client, trigger)

    assert asyncio.run(run()) is None


def test_fire_trigger_reports_skipped_runs() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={"run_id": "abc", "status": "skipped", "reason": "sync_already_running", "stats": {}},
        )

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            trigger = Trigger(name="discovery", kind="sync", interval_seconds=60, sync_type="discovery")
            return await fire_trigger(SyncClient("http://api.test", client=client, sleep=_no_sleep), trigger)

    result = asyncio.run(run())
    assert result["status"] == "skipped"
