from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timezone
from itertools import count

from jobsync.services.repository import (
    COMPANY_STATUSES,
    SYNC_RUN_STATUSES,
    TERMINAL_SYNC_RUN_STATUSES,
    CandidateCompanyRecord,
    CompanyProbeUpdate,
    ListingRecord,
    ListingUpsert,
    LogEntry,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SyncRunRecord,
    SyncStats,
    new_sync_run_id,
    sync_lock_key,
    validate_sync_request,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local repository for local development and tests.

    Mirrors the PostgresRepository interface. No method awaits between reading
    and writing its state, so each call is atomic with respect to the event loop.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self.clock = clock or _utcnow
        self.sync_runs: dict[str, SyncRunRecord] = {}
        self.listings: dict[int, ListingRecord] = {}
        self.companies: dict[tuple[str, str], CandidateCompanyRecord] = {}
        self._listing_ids = count(1)

    async def close(self) -> None:
        return None

    async def acquire_sync_run(
        self,
        *,
        sync_type: str,
        source: str | None,
        lock_window_seconds: int,
        total_units: int = 0,
    ) -> tuple[SyncRunRecord, bool]:
        validate_sync_request(sync_type, source)
        now = self.clock()
        lock_key = sync_lock_key(sync_type, source)
        for run in self.sync_runs.values():
            if run.status != "running" or run.lock_key != lock_key:
                continue
            if (now - run.started_at).total_seconds() < lock_window_seconds:
                return _copy_run(run), False

        run = SyncRunRecord(
            id=new_sync_run_id(),
            sync_type=sync_type,
            source=source,
            status="running",
            started_at=now,
            total_units=max(0, total_units),
        )
        self.sync_runs[run.id] = run
        return _copy_run(run), True

    async def record_sync_progress(
        self,
        run_id: str,
        *,
        logs: list[LogEntry],
        processed_units: int,
        total_units: int,
        stats: SyncStats,
    ) -> None:
        run = self._running(run_id)
        run.logs.extend(logs)
        run.processed_units = processed_units
        run.total_units = total_units
        run.stats = stats.copy()

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
        run = self._running(run_id)
        run.logs.extend(logs)
        run.stats = stats.copy()
        run.processed_units = processed_units
        run.total_units = total_units
        run.error = error
        run.status = status
        run.completed_at = self.clock()
        return _copy_run(run)

    async def get_sync_run(self, run_id: str) -> SyncRunRecord:
        run = self.sync_runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("sync run not found")
        return _copy_run(run)

    async def list_sync_runs(
        self,
        *,
        limit: int,
        source: str | None = None,
        status: str | None = None,
    ) -> list[SyncRunRecord]:
        if status is not None and status not in SYNC_RUN_STATUSES:
            raise RepositoryValidationError("status must be one of: running, completed, failed")
        runs = [
            run
            for run in self.sync_runs.values()
            if (source is None or run.source == source) and (status is None or run.status == status)
        ]
        runs.sort(key=lambda run: (run.started_at, run.id), reverse=True)
        return [_copy_run(run) for run in runs[: max(1, min(limit, 200))]]

    async def fail_stale_sync_runs(self, *, older_than: datetime, message: str) -> list[str]:
        now = self.clock()
        failed: list[str] = []
        stale = sorted(
            (run for run in self.sync_runs.values() if run.status == "running" and run.started_at < older_than),
            key=lambda run: run.started_at,
        )
        for run in stale:
            run.logs.append(LogEntry(timestamp=now, level="error", message=message))
            run.status = "failed"
            run.completed_at = now
            run.error = message
            failed.append(run.id)
        return failed

    async def find_listing_by_source_url(self, source_url: str) -> ListingRecord | None:
        for listing in self.listings.values():
            if listing.source_url == source_url:
                return replace(listing)
        return None

    async def insert_listing(self, values: ListingUpsert) -> ListingRecord:
        if any(listing.source_url == values.source_url for listing in self.listings.values()):
            raise RepositoryConflictError(f"listing already exists for {values.source_url}")
        now = self.clock()
        listing = ListingRecord(
            id=next(self._listing_ids),
            title=values.title,
            company=values.company,
            description_raw=values.description_raw,
            description_summary=values.description_summary,
            description_full=None,
            is_cleansed=False,
            pay_range=values.pay_range,
            posted_at=values.posted_at,
            source_url=values.source_url,
            source_name=values.source_name,
            category_id=values.category_id,
            remote_type=values.remote_type,
            created_at=now,
            updated_at=now,
        )
        self.listings[listing.id] = listing
        return replace(listing)

    async def update_listing(self, listing_id: int, values: ListingUpsert) -> ListingRecord:
        listing = self.listings.get(listing_id)
        if listing is None:
            raise RepositoryNotFoundError("listing not found")
        listing.title = values.title
        listing.company = values.company
        listing.description_raw = values.description_raw
        listing.description_summary = values.description_summary
        listing.is_cleansed = False
        listing.pay_range = values.pay_range
        if values.posted_at is not None:
            listing.posted_at = values.posted_at
        listing.category_id = values.category_id
        listing.remote_type = values.remote_type
        listing.updated_at = self.clock()
        return replace(listing)

    async def list_listings(self, *, source_name: str | None = None) -> list[ListingRecord]:
        listings = [
            replace(listing)
            for listing in self.listings.values()
            if source_name is None or listing.source_name == source_name
        ]
        listings.sort(key=lambda listing: (listing.created_at, listing.id))
        return listings

    async def delete_listings(self, listing_ids: list[int]) -> int:
        unique_ids = set(listing_ids)
        if any(listing_id not in self.listings for listing_id in unique_ids):
            raise RepositoryConflictError("listing group changed concurrently; nothing removed")
        for listing_id in unique_ids:
            del self.listings[listing_id]
        return len(unique_ids)

    async def list_candidate_companies(
        self,
        *,
        source: str | None = None,
        status: str | None = None,
    ) -> list[CandidateCompanyRecord]:
        if status is not None and status not in COMPANY_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, added, not_found")
        companies = [
            _copy_company(company)
            for company in self.companies.values()
            if (source is None or company.source == source) and (status is None or company.status == status)
        ]
        companies.sort(key=lambda company: (company.source, company.slug))
        return companies

    async def list_candidate_companies_due(
        self,
        *,
        source: str,
        status: str,
        checked_before: datetime | None,
        limit: int,
    ) -> list[CandidateCompanyRecord]:
        due = [
            company
            for company in self.companies.values()
            if company.source == source
            and company.status == status
            and (
                checked_before is None
                or company.last_checked_at is None
                or company.last_checked_at < checked_before
            )
        ]
        never_checked = datetime.min.replace(tzinfo=timezone.utc)
        due.sort(key=lambda company: (company.last_checked_at or never_checked, company.slug))
        return [_copy_company(company) for company in due[: max(1, limit)]]

    async def add_candidate_companies(self, *, source: str, slugs: list[str]) -> int:
        inserted = 0
        now = self.clock()
        for slug in sorted({slug.strip() for slug in slugs if slug and slug.strip()}):
            if (source, slug) in self.companies:
                continue
            self.companies[(source, slug)] = CandidateCompanyRecord(
                source=source,
                slug=slug,
                created_at=now,
                updated_at=now,
            )
            inserted += 1
        return inserted

    async def update_candidate_company(
        self,
        *,
        source: str,
        slug: str,
        update: CompanyProbeUpdate,
    ) -> CandidateCompanyRecord:
        if update.status not in COMPANY_STATUSES:
            raise RepositoryValidationError("status must be one of: pending, added, not_found")
        company = self.companies.get((source, slug))
        if company is None:
            raise RepositoryNotFoundError("candidate company not found")
        company.status = update.status
        company.job_count = update.job_count
        company.remote_job_count = update.remote_job_count
        company.departments = list(update.departments)
        if update.suggested_category is not None:
            company.suggested_category = update.suggested_category
        company.sample_jobs = list(update.sample_jobs)
        company.check_count += 1
        company.last_checked_at = update.checked_at
        company.updated_at = self.clock()
        return _copy_company(company)

    async def delete_candidate_companies(self, *, source: str, slugs: list[str]) -> int:
        removed = 0
        for slug in set(slugs):
            if self.companies.pop((source, slug), None) is not None:
                removed += 1
        return removed

    def _running(self, run_id: str) -> SyncRunRecord:
        run = self.sync_runs.get(run_id)
        if run is None:
            raise RepositoryNotFoundError("sync run not found")
        if run.status != "running":
            raise RepositoryConflictError("sync run is no longer running")
        return run


def _copy_run(run: SyncRunRecord) -> SyncRunRecord:
    return replace(run, stats=run.stats.copy(), logs=list(run.logs))


def _copy_company(company: CandidateCompanyRecord) -> CandidateCompanyRecord:
    return replace(company, departments=list(company.departments), sample_jobs=list(company.sample_jobs))
