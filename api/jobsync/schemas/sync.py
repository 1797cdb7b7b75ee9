from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class SyncRequest(BaseModel):
    sync_type: Literal["job_sync", "discovery"] = "job_sync"
    source: str | None = None
    wait: bool = False
    # Remove stored listings a complete, error-free fetch no longer returns.
    prune: bool = False


class SyncStatsOut(BaseModel):
    jobs_added: int = 0
    jobs_updated: int = 0
    jobs_deleted: int = 0
    jobs_skipped: int = 0
    companies_added: int = 0
    companies_deleted: int = 0


class SyncTriggerOut(BaseModel):
    run_id: str
    status: Literal["running", "completed", "failed", "skipped"]
    stats: SyncStatsOut
    reason: str | None = None


class LogEntryOut(BaseModel):
    timestamp: datetime
    level: str
    message: str


class SyncRunOut(BaseModel):
    id: str
    sync_type: str
    source: str | None = None
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    stats: SyncStatsOut
    logs: list[LogEntryOut] = Field(default_factory=list)
    total_units: int = 0
    processed_units: int = 0
    error: str | None = None
    stale: bool = False


class SweepOut(BaseModel):
    failed: int
    run_ids: list[str]
