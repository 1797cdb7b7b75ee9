from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Protocol

from jobsync.services.repository import SyncRunRecord, stale_cutoff

logger = logging.getLogger(__name__)

STUCK_RUN_MESSAGE = "Timed out: stuck in running state past the staleness threshold"


class SweepRepository(Protocol):
    async def fail_stale_sync_runs(self, *, older_than: datetime, message: str) -> list[str]: ...


def run_is_stale(run: SyncRunRecord, *, threshold_seconds: int, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if run.status != "running":
        return False
    return run.started_at < stale_cutoff(now, threshold_seconds)


async def sweep_stuck_runs(
    repository: SweepRepository,
    *,
    threshold_seconds: int,
    now: datetime | None = None,
) -> list[str]:
    now = now or datetime.now(timezone.utc)
    failed = await repository.fail_stale_sync_runs(
        older_than=stale_cutoff(now, threshold_seconds),
        message=STUCK_RUN_MESSAGE,
    )
    if failed:
        logger.warning("failed stuck sync runs count=%s ids=%s", len(failed), ",".join(failed))
    return failed
