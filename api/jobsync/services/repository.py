from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import TYPE_CHECKING, Any
from uuid import uuid4

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from jobsync.core.config import get_settings

if TYPE_CHECKING:
    from jobsync.services.store import InMemoryRepository

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when a write violates a unique key or a state transition rule."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


SYNC_TYPES = {"job_sync", "discovery"}
SYNC_RUN_STATUSES = {"running", "completed", "failed"}
TERMINAL_SYNC_RUN_STATUSES = {"completed", "failed"}
COMPANY_STATUSES = {"pending", "added", "not_found"}
LOG_LEVELS = {"info", "success", "warning", "error"}


@dataclass(slots=True)
class SyncStats:
    jobs_added: int = 0
    jobs_updated: int = 0
    jobs_deleted: int = 0
    jobs_skipped: int = 0
    companies_added: int = 0
    companies_deleted: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)

    def copy(self) -> SyncStats:
        return SyncStats(**self.as_dict())

    @classmethod
    def from_dict(cls, raw: Any) -> SyncStats:
        if not isinstance(raw, dict):
            return cls()
        values: dict[str, int] = {}
        for key in cls.__dataclass_fields__:
            try:
                values[key] = max(0, int(raw.get(key) or 0))
            except (TypeError, ValueError):
                values[key] = 0
        return cls(**values)


@dataclass(slots=True)
class LogEntry:
    timestamp: datetime
    level: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"timestamp": self.timestamp.isoformat(), "level": self.level, "message": self.message}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LogEntry:
        timestamp = _coerce_datetime(raw.get("timestamp")) or datetime.now(timezone.utc)
        level = raw.get("level") if raw.get("level") in LOG_LEVELS else "info"
        return cls(timestamp=timestamp, level=level, message=str(raw.get("message") or ""))


@dataclass(slots=True)
class SyncRunRecord:
    id: str
    sync_type: str
    source: str | None
    status: str
    started_at: datetime
    completed_at: datetime | None = None
    stats: SyncStats = field(default_factory=SyncStats)
    logs: list[LogEntry] = field(default_factory=list)
    total_units: int = 0
    processed_units: int = 0
    error: str | None = None

    @property
    def lock_key(self) -> str:
        return sync_lock_key(self.sync_type, self.source)


@dataclass(slots=True)
class ListingUpsert:
    title: str
    company: str
    description_raw: str
    description_summary: str
    pay_range: str | None
    posted_at: datetime | None
    source_url: str
    source_name: str
    category_id: int
    remote_type: str = "fully_remote"


@dataclass(slots=True)
class ListingRecord:
    id: int
    title: str
    company: str
    description_raw: str
    description_summary: str
    description_full: str | None
    is_cleansed: bool
    pay_range: str | None
    posted_at: datetime | None
    source_url: str
    source_name: str
    category_id: int
    remote_type: str
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class CandidateCompanyRecord:
    source: str
    slug: str
    status: str = "pending"
    name: str | None = None
    job_count: int = 0
    remote_job_count: int = 0
    departments: list[str] = field(default_factory=list)
    suggested_category: str | None = None
    sample_jobs: list[str] = field(default_factory=list)
    check_count: int = 0
    last_checked_at: datetime | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(slots=True)
class CompanyProbeUpdate:
    status: str
    checked_at: datetime
    job_count: int = 0
    remote_job_count: int = 0
    departments: list[str] = field(default_factory=list)
    suggested_category: str | None = None
    sample_jobs: list[str] = field(default_factory=list)


def sync_lock_key(sync_type: str, source: str | None) -> str:
    """Runs sharing a lock key are mutually exclusive while running."""
    return source or sync_type


def new_sync_run_id() -> str:
    return uuid4().hex


def validate_sync_request(sync_type: str, source: str | None) -> None:
    if sync_type not in SYNC_TYPES:
        raise RepositoryValidationError("sync_type must be one of: job_sync, discovery")
    if source is not None and not source.strip():
        raise RepositoryValidationError("source must be a non-empty string when provided")


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None
        self._pool_lock = asyncio.Lock()

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def acquire_sync_run(
        self,
        *,
        sync_type: str,
        source: str | None,
        lock_window_seconds: int,
        total_units: int = 0,
    ) -> tuple[SyncRunRecord, bool]:
        validate_sync_request(sync_type, source)
        lock_key = sync_lock_key(sync_type, source)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute("select pg_advisory_xact_lock(hashtext($1))", lock_key)
                active = await conn.fetchrow(
                    f"""
                    select {_SYNC_RUN_COLUMNS}
                    from sync_runs
                    where lock_key = $1
                      and status = 'running'
                      and started_at > now() - ($2::int * interval '1 second')
                    order by started_at desc
                    limit 1
                    """,
                    lock_key,
                    lock_window_seconds,
                )
                if active:
                    return self._sync_run_row_to_record(active), False

                row = await conn.fetchrow(
                    f"""
                    insert into sync_runs (id, sync_type, source, lock_key, status, stats, logs, total_units)
                    values ($1, $2, $3, $4, 'running', $5::jsonb, '[]'::jsonb, $6)
                    returning {_SYNC_RUN_COLUMNS}
                    """,
                    new_sync_run_id(),
                    sync_type,
                    source,
                    lock_key,
                    json.dumps(SyncStats().as_dict()),
                    max(0, total_units),
                )
                return self._sync_run_row_to_record(row), True

    async def record_sync_progress(
        self,
        run_id: str,
        *,
        logs: list[LogEntry],
        processed_units: int,
        total_units: int,
        stats: SyncStats,
    ) -> None:
        pool = await self._get_pool()
        status = await pool.fetchval(
            """
            update sync_runs
            set
              logs = logs || $2::jsonb,
              processed_units = $3,
              total_units = $4,
              stats = $5::jsonb
            where id = $1 and status = 'running'
            returning status
            """,
            run_id,
            json.dumps([entry.as_dict() for entry in logs]),
            processed_units,
            total_units,
            json.dumps(stats.as_dict()),
        )
        if status is None:
            await self._raise_for_missing_or_terminal(pool, run_id)

    async def finish_sync_run(
        self,
        run_id: str,
        *,
        status: str,
        stats: SyncStats,
        logs: list[LogEntry],
        processed_units: int,
        total_units: int,
        error: str | None = None,
    ) -> SyncRunRecord:
        if status not in TERMINAL_SYNC_RUN_STATUSES:
            raise RepositoryValidationError("terminal status must be completed or failed")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update sync_runs
            set
              status = $2,
              completed_at = now(),
              stats = $3::jsonb,
              logs = logs || $4::jsonb,
              processed_units = $5,
              total_units = $6,
              error = $7
            where id = $1 and status = 'running'
            returning {_SYNC_RUN_COLUMNS}
            """,
            run_id,
            status,
            json.dumps(stats.as_dict()),
            json.dumps([entry.as_dict() for entry in logs]),
            processed_units,
            total_units,
            error,
        )
        if row is None:
            await self._raise_for_missing_or_terminal(pool, run_id)
        return self._sync_run_row_to_record(row)

    async def get_sync_run(self, run_id: str) -> SyncRunRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_SYNC_RUN_COLUMNS} from sync_runs where id = $1", run_id)
        if row is None:
            raise RepositoryNotFoundError("sync run not found")
        return self._sync_run_row_to_record(row)

    async def list_sync_runs(
        self,
        *,
        limit: int,
        source: str | None = None,
        status: str | None = None,
    ) -> list[SyncRunRecord]:
        if status is not None and status not in SYNC_RUN_STATUSES:
            raise RepositoryValidationError("status must be one of: running, completed, failed")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SYNC_RUN_COLUMNS}
            from sync_runs
            where ($2::text is null or source = $2)
              and ($3::text is null or status = $3)
            order by started_at desc, id desc
            limit $1
            """,
            max(1, min(limit, 200)),
            source,
            status,
        )
        return [self._sync_run_row_to_record(row) for row in rows]

    async def fail_stale_sync_runs(self, *, older_than: datetime, message: str) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from sync_runs
                      where status = 'running' and started_at < $1
                      order by started_at asc
                      for update skip locked
                    )
                    update sync_runs s
                    set
                      status = 'failed',
                      completed_at = now(),
                      error = $2,
                      logs = s.logs || jsonb_build_array(
                        jsonb_build_object('timestamp', to_jsonb(now()), 'level', 'error', 'message', $2::text)
                      )
                    from stale
                    where s.id = stale.id
                    returning s.id
                    """,
                    older_than,
                    message,
                )
                return [row["id"] for row in rows]

    async def find_listing_by_source_url(self, source_url: str) -> ListingRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(f"select {_LISTING_COLUMNS} from listings where source_url = $1", source_url)
        return self._listing_row_to_record(row) if row else None

    async def insert_listing(self, values: ListingUpsert) -> ListingRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into listings (
                  title,
                  company,
                  description_raw,
                  description_summary,
                  is_cleansed,
                  pay_range,
                  posted_at,
                  source_url,
                  source_name,
                  category_id,
                  remote_type
                )
                values ($1, $2, $3, $4, false, $5, $6, $7, $8, $9, $10)
                returning {_LISTING_COLUMNS}
                """,
                values.title,
                values.company,
                values.description_raw,
                values.description_summary,
                values.pay_range,
                values.posted_at,
                values.source_url,
                values.source_name,
                values.category_id,
                values.remote_type,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"listing already exists for {values.source_url}") from exc
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryValidationError(f"unknown category_id {values.category_id}") from exc
        return self._listing_row_to_record(row)

    async def update_listing(self, listing_id: int, values: ListingUpsert) -> ListingRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update listings
            set
              title = $2,
              company = $3,
              description_raw = $4,
              description_summary = $5,
              is_cleansed = false,
              pay_range = $6,
              posted_at = coalesce($7, posted_at),
              category_id = $8,
              remote_type = $9,
              updated_at = now()
            where id = $1
            returning {_LISTING_COLUMNS}
            """,
            listing_id,
            values.title,
            values.company,
            values.description_raw,
            values.description_summary,
            values.pay_range,
            values.posted_at,
            values.category_id,
            values.remote_type,
        )
        if row is None:
            raise RepositoryNotFoundError("listing not found")
        return self._listing_row_to_record(row)

    async def list_listings(self, *, source_name: str | None = None) -> list[ListingRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_LISTING_COLUMNS}
            from listings
            where ($1::text is null or source_name = $1)
            order by created_at asc, id asc
            """,
            source_name,
        )
        return [self._listing_row_to_record(row) for row in rows]

    async def delete_listings(self, listing_ids: list[int]) -> int:
        if not listing_ids:
            return 0
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                deleted = await conn.fetch(
                    "delete from listings where id = any($1::bigint[]) returning id",
                    listing_ids,
                )
                if len(deleted) != len(set(listing_ids)):
                    # Raising inside the transaction block rolls back the partial delete.
                    raise RepositoryConflictError("listing group changed concurrently; nothing removed")
                return len(deleted)

    async def list_candidate_companies(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
    ) -> list[CandidateCompanyRecord]:
        if status is not None and status not in COMPANY_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, added, not_found")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_COMPANY_COLUMNS}
            from candidate_companies
            where ($1::text is null or source = $1)
              and ($2::text is null or status = $2)
            order by source asc, slug asc
            """,
            source,
            status,
        )
        return [self._company_row_to_record(row) for row in rows]

    async def list_candidate_companies_due(
        self,
        *,
        source: str,
        status: str,
        checked_before: datetime | None,
        limit: int,
    ) -> list[CandidateCompanyRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_COMPANY_COLUMNS}
            from candidate_companies
            where source = $1
              and status = $2
              and ($3::timestamptz is null or last_checked_at is null or last_checked_at < $3)
            order by last_checked_at asc nulls first, slug asc
            limit $4
            """,
            source,
            status,
            checked_before,
            max(1, limit),
        )
        return [self._company_row_to_record(row) for row in rows]

    async def add_candidate_companies(self, *, source: str, slugs: list[str]) -> int:
        cleaned = sorted({slug.strip() for slug in slugs if slug and slug.strip()})
        if not cleaned:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            insert into candidate_companies (source, slug, status)
            select $1, unnest($2::text[]), 'pending'
            on conflict (source, slug) do nothing
            returning slug
            """,
            source,
            cleaned,
        )
        return len(rows)

    async def update_candidate_company(
        self,
        *,
        source: str,
        slug: str,
        update: CompanyProbeUpdate,
    ) -> CandidateCompanyRecord:
        if update.status not in COMPANY_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, added, not_found")
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update candidate_companies
            set
              status = $3,
              job_count = $4,
              remote_job_count = $5,
              departments = $6::jsonb,
              suggested_category = coalesce($7, suggested_category),
              sample_jobs = $8::jsonb,
              check_count = check_count + 1,
              last_checked_at = $9,
              updated_at = now()
            where source = $1 and slug = $2
            returning {_COMPANY_COLUMNS}
            """,
            source,
            slug,
            update.status,
            update.job_count,
            update.remote_job_count,
            json.dumps(update.departments),
            update.suggested_category,
            json.dumps(update.sample_jobs),
            update.checked_at,
        )
        if row is None:
            raise RepositoryNotFoundError("candidate company not found")
        return self._company_row_to_record(row)

    async def delete_candidate_companies(self, *, source: str, slugs: list[str]) -> int:
        if not slugs:
            return 0
        pool = await self._get_pool()
        rows = await pool.fetch(
            "delete from candidate_companies where source = $1 and slug = any($2::text[]) returning slug",
            source,
            slugs,
        )
        return len(rows)

    async def _raise_for_missing_or_terminal(self, pool: asyncpg.Pool, run_id: str) -> None:
        exists = await pool.fetchval("select 1 from sync_runs where id = $1", run_id)
        if not exists:
            raise RepositoryNotFoundError("sync run not found")
        raise RepositoryConflictError("sync run is no longer running")

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("JS_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        async with self._pool_lock:
            if self._pool is not None:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self.database_url,
                    min_size=self.min_pool_size,
                    max_size=self.max_pool_size,
                    command_timeout=15,
                )
            except Exception as exc:  # pragma: no cover - depends on environment
                raise RepositoryUnavailableError("database unavailable") from exc
            return self._pool

    @staticmethod
    def _sync_run_row_to_record(row: asyncpg.Record) -> SyncRunRecord:
        raw_logs = _coerce_json(row["logs"], default=[])
        return SyncRunRecord(
            id=row["id"],
            sync_type=row["sync_type"],
            source=row["source"],
            status=row["status"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            stats=SyncStats.from_dict(_coerce_json(row["stats"], default={})),
            logs=[LogEntry.from_dict(item) for item in raw_logs if isinstance(item, dict)],
            total_units=int(row["total_units"] or 0),
            processed_units=int(row["processed_units"] or 0),
            error=row["error"],
        )

    @staticmethod
    def _listing_row_to_record(row: asyncpg.Record) -> ListingRecord:
        return ListingRecord(
            id=int(row["id"]),
            title=row["title"],
            company=row["company"],
            description_raw=row["description_raw"] or "",
            description_summary=row["description_summary"] or "",
            description_full=row["description_full"],
            is_cleansed=bool(row["is_cleansed"]),
            pay_range=row["pay_range"],
            posted_at=row["posted_at"],
            source_url=row["source_url"],
            source_name=row["source_name"],
            category_id=int(row["category_id"]),
            remote_type=row["remote_type"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _company_row_to_record(row: asyncpg.Record) -> CandidateCompanyRecord:
        return CandidateCompanyRecord(
            source=row["source"],
            slug=row["slug"],
            status=row["status"],
            name=row["name"],
            job_count=int(row["job_count"] or 0),
            remote_job_count=int(row["remote_job_count"] or 0),
            departments=[str(item) for item in _coerce_json(row["departments"], default=[])],
            suggested_category=row["suggested_category"],
            sample_jobs=[str(item) for item in _coerce_json(row["sample_jobs"], default=[])],
            check_count=int(row["check_count"] or 0),
            last_checked_at=row["last_checked_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


_SYNC_RUN_COLUMNS = """
  id,
  sync_type,
  source,
  status,
  started_at,
  completed_at,
  stats,
  logs,
  total_units,
  processed_units,
  error
"""

_LISTING_COLUMNS = """
  id,
  title,
  company,
  description_raw,
  description_summary,
  description_full,
  is_cleansed,
  pay_range,
  posted_at,
  source_url,
  source_name,
  category_id,
  remote_type,
  created_at,
  updated_at
"""

_COMPANY_COLUMNS = """
  source,
  slug,
  status,
  name,
  job_count,
  remote_job_count,
  departments,
  suggested_category,
  sample_jobs,
  check_count,
  last_checked_at,
  created_at,
  updated_at
"""


def stale_cutoff(now: datetime, threshold_seconds: int) -> datetime:
    return now - timedelta(seconds=max(0, threshold_seconds))


def _coerce_json(value: Any, *, default: Any) -> Any:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return default
    if value is None:
        return default
    return value


def _coerce_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        candidate = value.strip()
        if not candidate:
            return None
        try:
            parsed = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


@lru_cache
def get_repository() -> PostgresRepository | InMemoryRepository:
    settings = get_settings()
    if not settings.database_url:
        # Imported here because the in-memory store builds on the records above.
        from jobsync.services.store import InMemoryRepository

        logger.warning("JS_DATABASE_URL not set; using in-memory repository")
        return InMemoryRepository()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
