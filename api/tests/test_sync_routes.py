from __future__ import annotations

import json
from collections.abc import AsyncIterator, Iterator
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from fastapi.testclient import TestClient

from jobsync.core.config import Settings, get_settings
from jobsync.main import app
from jobsync.services.orchestrator import SyncOrchestrator, get_orchestrator
from jobsync.services.progress import ProgressBroker, get_broker
from jobsync.services.repository import ListingUpsert, LogEntry, SyncStats, get_repository
from jobsync.services.store import InMemoryRepository
from jobsync.sources.base import FetchFilter, ListingBatch, RawListing


class StaticSource:
    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        yield ListingBatch(
            unit="jobicy",
            listings=[
                RawListing(
                    external_id="jobicy-1",
                    title="Customer Success Manager",
                    company="Umbrella",
                    description_html="<p>Help customers</p>",
                    source_url="https://jobicy.com/jobs/1",
                    source_name="jobicy",
                )
            ],
        )


class SyncHarness:
    def __init__(self, client: TestClient, repository: InMemoryRepository, broker: ProgressBroker) -> None:
        self.client = client
        self.repository = repository
        self.broker = broker


@pytest.fixture
def harness() -> Iterator[SyncHarness]:
    settings = Settings(otel_enabled=False)
    repository = InMemoryRepository()
    broker = ProgressBroker()
    orchestrator = SyncOrchestrator(
        repository,
        broker,
        settings,
        source_factory=lambda name, settings, **_: StaticSource(),
    )
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_broker] = lambda: broker
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_settings] = lambda: settings

    with TestClient(app) as client:
        yield SyncHarness(client, repository, broker)

    app.dependency_overrides.clear()


def _events(body: str) -> list[dict[str, Any]]:
    return [json.loads(line) for line in body.splitlines() if line.strip()]


def test_trigger_and_wait_returns_final_stats(harness: SyncHarness) -> None:
    response = harness.client.post("/sync", json={"sync_type": "job_sync", "source": "jobicy", "wait": True})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert body["stats"]["jobs_added"] == 1

    run = harness.client.get(f"/sync/runs/{body['run_id']}").json()
    assert run["status"] == "completed"
    assert run["stale"] is False
    assert run["processed_units"] == run["total_units"] == 1
    assert run["logs"][-1]["level"] == "success"


def test_trigger_validation_errors(harness: SyncHarness) -> None:
    assert harness.client.post("/sync", json={"sync_type": "reindex"}).status_code == 422
    assert harness.client.post("/sync", json={"sync_type": "job_sync", "source": "monster"}).status_code == 422
    assert harness.client.post("/sync", json={"sync_type": "discovery", "source": "jobicy"}).status_code == 422
    assert harness.repository.sync_runs == {}


def test_trigger_with_prune_reports_deleted_listings(harness: SyncHarness) -> None:
    stale = ListingUpsert(
        title="Old Posting",
        company="Umbrella",
        description_raw="",
        description_summary="",
        pay_range=None,
        posted_at=None,
        source_url="https://jobicy.com/jobs/0",
        source_name="jobicy",
        category_id=1,
    )
    harness.client.portal.call(harness.repository.insert_listing, stale)

    response = harness.client.post(
        "/sync",
        json={"sync_type": "job_sync", "source": "jobicy", "wait": True, "prune": True},
    )

    assert response.json()["stats"]["jobs_deleted"] == 1
    assert [listing.source_url for listing in harness.repository.listings.values()] == ["https://jobicy.com/jobs/1"]
    assert harness.client.post("/sync", json={"sync_type": "discovery", "prune": True}).status_code == 422


def test_skipped_trigger_reports_active_run(harness: SyncHarness) -> None:
    run, _ = harness.client.portal.call(
        lambda: harness.repository.acquire_sync_run(sync_type="job_sync", source="jobicy", lock_window_seconds=120)
    )

    response = harness.client.post("/sync", json={"source": "jobicy"})

    assert response.status_code == 200
    assert response.json()["status"] == "skipped"
    assert response.json()["reason"] == "sync_already_running"
    assert response.json()["run_id"] == run.id


def test_stream_start_emits_ndjson_until_complete(harness: SyncHarness) -> None:
    response = harness.client.post("/sync/stream", json={"source": "jobicy"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    run_id = response.headers["x-sync-run-id"]
    events = _events(response.text)
    assert events[0]["type"] == "log"
    assert events[-1]["type"] == "complete"
    assert events[-1]["report"]["run_id"] == run_id
    assert sum(1 for event in events if event["type"] in {"complete", "error"}) == 1


def test_reconnect_replays_buffered_events(harness: SyncHarness) -> None:
    run_id = harness.client.post("/sync", json={"source": "jobicy", "wait": True}).json()["run_id"]

    first = _events(harness.client.get(f"/sync/stream/{run_id}").text)
    second = _events(harness.client.get(f"/sync/stream/{run_id}").text)

    assert first == second
    assert first[-1]["type"] == "complete"


def test_reconnect_falls_back_to_persisted_logs(harness: SyncHarness) -> None:
    repository = harness.repository

    async def seed() -> str:
        run, _ = await repository.acquire_sync_run(sync_type="discovery", source=None, lock_window_seconds=120)
        await repository.finish_sync_run(
            run.id,
            status="failed",
            stats=SyncStats(),
            logs=[LogEntry(datetime.now(timezone.utc), "error", "Sync failed: boom")],
            processed_units=0,
            total_units=0,
            error="boom",
        )
        return run.id

    run_id = harness.client.portal.call(seed)
    events = _events(harness.client.get(f"/sync/stream/{run_id}").text)

    assert events == [
        {"type": "log", "message": "Sync failed: boom", "level": "error", "timestamp": events[0]["timestamp"]},
        {"type": "error", "message": "boom"},
    ]


def test_unknown_run_is_404(harness: SyncHarness) -> None:
    assert harness.client.get("/sync/runs/does-not-exist").status_code == 404
    assert harness.client.get("/sync/stream/does-not-exist").status_code == 404


def test_list_runs_newest_first_with_filters(harness: SyncHarness) -> None:
    first = harness.client.post("/sync", json={"source": "jobicy", "wait": True}).json()["run_id"]
    second = harness.client.post("/sync", json={"source": "remoteok", "wait": True}).json()["run_id"]

    runs = harness.client.get("/sync/runs", params={"limit": 10}).json()
    assert [run["id"] for run in runs] == [second, first]

    filtered = harness.client.get("/sync/runs", params={"source": "jobicy"}).json()
    assert [run["id"] for run in filtered] == [first]
    assert harness.client.get("/sync/runs", params={"status": "bogus"}).status_code == 422
    assert harness.client.get("/sync/runs", params={"limit": 0}).status_code == 422


def test_sweep_marks_stuck_runs_failed(harness: SyncHarness) -> None:
    repository = harness.repository
    run, _ = harness.client.portal.call(
        lambda: repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
    )
    repository.sync_runs[run.id].started_at = datetime.now(timezone.utc) - timedelta(hours=2)

    listed = harness.client.get(f"/sync/runs/{run.id}").json()
    assert listed["stale"] is True

    response = harness.client.post("/sync/runs/sweep")

    assert response.status_code == 200
    assert response.json() == {"failed": 1, "run_ids": [run.id]}
    assert repository.sync_runs[run.id].status == "failed"
