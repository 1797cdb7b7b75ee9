from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from jobsync.services.repository import RepositoryConflictError, SyncStats
from jobsync.services.store import InMemoryRepository
from jobsync.services.sweeper import STUCK_RUN_MESSAGE, run_is_stale, sweep_stuck_runs

START = datetime(2024, 6, 1, 8, 0, tzinfo=timezone.utc)


class SteppingClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_sweep_fails_only_runs_past_threshold() -> None:
    clock = SteppingClock(START)
    repository = InMemoryRepository(clock=clock)

    async def run() -> tuple[str, str, list[str]]:
        old, _ = await repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
        clock.now = START + timedelta(minutes=50)
        recent, _ = await repository.acquire_sync_run(sync_type="job_sync", source="jobicy", lock_window_seconds=120)
        clock.now = START + timedelta(minutes=61)
        failed = await sweep_stuck_runs(repository, threshold_seconds=3600, now=clock.now)
        return old.id, recent.id, failed

    old_id, recent_id, failed = asyncio.run(run())

    assert failed == [old_id]
    old = repository.sync_runs[old_id]
    assert old.status == "failed"
    assert old.error == STUCK_RUN_MESSAGE
    assert old.logs[-1].level == "error"
    assert repository.sync_runs[recent_id].status == "running"


def test_swept_run_rejects_late_progress() -> None:
    clock = SteppingClock(START)
    repository = InMemoryRepository(clock=clock)

    async def run() -> None:
        stuck, _ = await repository.acquire_sync_run(sync_type="discovery", source=None, lock_window_seconds=120)
        clock.now = START + timedelta(hours=2)
        await sweep_stuck_runs(repository, threshold_seconds=3600, now=clock.now)
        await repository.record_sync_progress(
            stuck.id, logs=[], processed_units=1, total_units=1, stats=SyncStats()
        )

    with pytest.raises(RepositoryConflictError):
        asyncio.run(run())


def test_expired_lock_window_allows_a_new_run() -> None:
    clock = SteppingClock(START)
    repository = InMemoryRepository(clock=clock)

    async def run() -> tuple[bool, bool]:
        await repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
        clock.now = START + timedelta(seconds=60)
        _, inside = await repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
        clock.now = START + timedelta(seconds=121)
        _, outside = await repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
        return inside, outside

    assert asyncio.run(run()) == (False, True)


def test_run_is_stale_predicate() -> None:
    clock = SteppingClock(START)
    repository = InMemoryRepository(clock=clock)
    run_record, _ = asyncio.run(
        repository.acquire_sync_run(sync_type="job_sync", source=None, lock_window_seconds=120)
    )

    assert not run_is_stale(run_record, threshold_seconds=3600, now=START + timedelta(minutes=30))
    assert run_is_stale(run_record, threshold_seconds=3600, now=START + timedelta(minutes=61))
    run_record.status = "completed"
    assert not run_is_stale(run_record, threshold_seconds=3600, now=START + timedelta(hours=5))
