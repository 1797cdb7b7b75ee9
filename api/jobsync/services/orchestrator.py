from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any

import httpx
from opentelemetry import trace

from jobsync.core.config import Settings, get_settings
from jobsync.services.categorizer import determine_category
from jobsync.services.discovery import CompanyProber, decide_probe, plan_probes, prune_not_found
from jobsync.services.prune import FetchCoverage, PruneResult, prune_source
from jobsync.services.progress import (
    ProgressBroker,
    complete_event,
    error_event,
    get_broker,
    log_event,
    progress_event,
    run_report,
)
from jobsync.services.repository import (
    ListingUpsert,
    LogEntry,
    RepositoryConflictError,
    RepositoryError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    SyncRunRecord,
    SyncStats,
    get_repository,
    validate_sync_request,
)
from jobsync.sources.base import FetchFilter, ListingBatch, RawListing
from jobsync.sources.registry import (
    BOARD_SOURCE_NAMES,
    SOURCE_NAMES,
    build_board_source,
    build_source,
)

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class RunAccumulator:
    """Mutable state of one run, owned by the task executing it."""

    run: SyncRunRecord
    stats: SyncStats = field(default_factory=SyncStats)
    processed_units: int = 0
    total_units: int = 0
    pending_logs: list[LogEntry] = field(default_factory=list)
    prune: bool = False

    def log(self, message: str, level: str = "info") -> LogEntry:
        entry = LogEntry(timestamp=datetime.now(timezone.utc), level=level, message=message)
        self.pending_logs.append(entry)
        return entry

    def take_logs(self) -> list[LogEntry]:
        logs, self.pending_logs = self.pending_logs, []
        return logs


@dataclass(slots=True)
class SyncOutcome:
    run_id: str
    status: str
    stats: SyncStats
    reason: str | None = None


class SyncOrchestrator:
    def __init__(
        self,
        repository: Any,
        broker: ProgressBroker,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
        source_factory: Callable[..., Any] = build_source,
        board_source_factory: Callable[..., Any] = build_board_source,
    ) -> None:
        self.repository = repository
        self.broker = broker
        self.settings = settings
        self.http_client = http_client
        self.source_factory = source_factory
        self.board_source_factory = board_source_factory
        self._tasks: set[asyncio.Task[SyncRunRecord]] = set()

    async def start(self, sync_type: str, source: str | None = None, *, prune: bool = False) -> SyncOutcome:
        """Start a run in the background and return as soon as it exists."""
        run, created = await self._acquire(sync_type, source, prune)
        if not created:
            return _skipped(run)
        self._spawn(run, prune)
        return SyncOutcome(run_id=run.id, status="running", stats=run.stats)

    async def run(self, sync_type: str, source: str | None = None, *, prune: bool = False) -> SyncOutcome:
        """Start a run and wait for its terminal state."""
        run, created = await self._acquire(sync_type, source, prune)
        if not created:
            return _skipped(run)
        task = self._spawn(run, prune)
        # Shielded so a cancelled caller does not cancel the run itself.
        finished = await asyncio.shield(task)
        return SyncOutcome(run_id=finished.id, status=finished.status, stats=finished.stats, reason=finished.error)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def active_run_count(self) -> int:
        return len(self._tasks)

    async def _acquire(self, sync_type: str, source: str | None, prune: bool) -> tuple[SyncRunRecord, bool]:
        validate_sync_request(sync_type, source)
        if prune and sync_type != "job_sync":
            raise RepositoryValidationError("prune applies to job_sync runs only")
        if sync_type == "job_sync" and source is not None and source not in SOURCE_NAMES:
            raise RepositoryValidationError(f"unknown source {source!r}; expected one of: {', '.join(SOURCE_NAMES)}")
        if sync_type == "discovery" and source is not None and source not in BOARD_SOURCE_NAMES:
            raise RepositoryValidationError(
                f"discovery supports board sources only: {', '.join(BOARD_SOURCE_NAMES)}"
            )
        run, created = await self.repository.acquire_sync_run(
            sync_type=sync_type,
            source=source,
            lock_window_seconds=self.settings.sync_lock_window_seconds,
        )
        if created:
            self.broker.open(run.id)
            logger.info("sync run started run_id=%s sync_type=%s source=%s", run.id, sync_type, source)
        else:
            logger.info("sync skipped, already running run_id=%s sync_type=%s source=%s", run.id, sync_type, source)
        return run, created

    def _spawn(self, run: SyncRunRecord, prune: bool = False) -> asyncio.Task[SyncRunRecord]:
        task = asyncio.create_task(self.execute(run, prune=prune), name=f"sync-run-{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def execute(self, run: SyncRunRecord, *, prune: bool = False) -> SyncRunRecord:
        acc = RunAccumulator(run=run, stats=run.stats.copy(), prune=prune)
        with tracer.start_as_current_span("sync.run") as span:
            span.set_attribute("sync.run_id", run.id)
            span.set_attribute("sync.type", run.sync_type)
            if run.source:
                span.set_attribute("sync.source", run.source)
            scope = run.source or "all sources"
            self._log(acc, f"Starting {run.sync_type} for {scope}")
            try:
                if run.sync_type == "discovery":
                    await self._run_discovery(acc)
                else:
                    await self._run_job_sync(acc)
            except Exception as exc:
                span.record_exception(exc)
                return await self._fail(acc, exc)
            return await self._complete(acc)

    async def _run_job_sync(self, acc: RunAccumulator) -> None:
        source_names = [acc.run.source] if acc.run.source else list(SOURCE_NAMES)
        plans: list[tuple[str, FetchFilter]] = []
        for source_name in source_names:
            fetch_filter = await self._fetch_filter(source_name)
            acc.total_units += len(fetch_filter.companies) if source_name in BOARD_SOURCE_NAMES else 1
            plans.append((source_name, fetch_filter))
        await self._flush(acc)

        for source_name, fetch_filter in plans:
            adapter = self.source_factory(source_name, self.settings, http_client=self.http_client)
            coverage = FetchCoverage(source_name)
            async for batch in adapter.fetch(fetch_filter):
                with tracer.start_as_current_span("sync.unit") as span:
                    span.set_attribute("sync.source", source_name)
                    span.set_attribute("sync.unit", batch.unit)
                    await self._ingest_batch(acc, source_name, batch)
                coverage.record(batch)
                acc.processed_units += 1
                acc.total_units = max(acc.total_units, acc.processed_units)
                await self._flush(acc)
            if acc.prune:
                result = await prune_source(self.repository, coverage, dry_run=False)
                acc.stats.jobs_deleted += result.deleted
                self._log_prune(acc, result)
                await self._flush(acc)

    async def prune_listings(self, sources: list[str] | None = None, *, dry_run: bool = True) -> list[PruneResult]:
        """Fetch each source in full and remove stored listings it no longer publishes.

        Runs outside the sync run lifecycle; with `dry_run` nothing is deleted.
        """
        source_names = sources or list(SOURCE_NAMES)
        unknown = [name for name in source_names if name not in SOURCE_NAMES]
        if unknown:
            raise RepositoryValidationError(
                f"unknown source {unknown[0]!r}; expected one of: {', '.join(SOURCE_NAMES)}"
            )
        results: list[PruneResult] = []
        for source_name in source_names:
            with tracer.start_as_current_span("listings.prune") as span:
                span.set_attribute("sync.source", source_name)
                span.set_attribute("prune.dry_run", dry_run)
                adapter = self.source_factory(source_name, self.settings, http_client=self.http_client)
                coverage = FetchCoverage(source_name)
                async for batch in adapter.fetch(await self._fetch_filter(source_name)):
                    coverage.record(batch)
                result = await prune_source(self.repository, coverage, dry_run=dry_run)
                span.set_attribute("prune.orphaned", len(result.orphaned))
            logger.info(
                "listing prune source=%s dry_run=%s checked=%s orphaned=%s deleted=%s skipped=%s",
                source_name,
                dry_run,
                result.checked,
                len(result.orphaned),
                result.deleted,
                result.skipped_reason,
            )
            results.append(result)
        return results

    async def _fetch_filter(self, source_name: str) -> FetchFilter:
        fetch_filter = FetchFilter(max_pages=self.settings.aggregator_max_pages)
        if source_name in BOARD_SOURCE_NAMES:
            fetch_filter.companies = await self._board_companies(source_name)
        return fetch_filter

    def _log_prune(self, acc: RunAccumulator, result: PruneResult) -> None:
        if result.skipped_reason is not None:
            self._log(acc, f"{result.source_name}: prune skipped ({result.skipped_reason})", "warning")
            return
        level = "success" if result.deleted else "info"
        self._log(
            acc,
            f"{result.source_name}: {result.deleted} listing(s) no longer published removed "
            f"of {result.checked} stored",
            level,
        )

    async def _ingest_batch(self, acc: RunAccumulator, source_name: str, batch: ListingBatch) -> None:
        label = f"{source_name}/{batch.unit}"
        if batch.error:
            self._log(acc, f"{label}: skipped ({batch.error})", "warning")
            return
        counts = {"added": 0, "updated": 0, "skipped": 0}
        for listing in batch.listings:
            counts[await self.upsert_listing(acc, listing)] += 1
        level = "success" if counts["added"] else "info"
        self._log(
            acc,
            f"{label}: {len(batch.listings)} remote listing(s), "
            f"{counts['added']} added, {counts['updated']} updated, {counts['skipped']} skipped",
            level,
        )

    async def upsert_listing(self, acc: RunAccumulator, listing: RawListing) -> str:
        values = to_listing_upsert(listing)
        existing = await self.repository.find_listing_by_source_url(values.source_url)
        if existing is not None:
            try:
                await self.repository.update_listing(existing.id, values)
            except RepositoryNotFoundError:
                acc.stats.jobs_skipped += 1
                return "skipped"
            acc.stats.jobs_updated += 1
            return "updated"
        try:
            await self.repository.insert_listing(values)
        except RepositoryConflictError:
            # Lost an insert race to a concurrent writer; the row exists.
            acc.stats.jobs_skipped += 1
            return "skipped"
        acc.stats.jobs_added += 1
        return "added"

    async def _board_companies(self, source_name: str) -> list[str]:
        seeds: list[str] = list(getattr(self.settings, f"{source_name}_seed_companies", []))
        added = await self.repository.list_candidate_companies(source=source_name, status="added")
        companies: list[str] = []
        for slug in [*seeds, *(company.slug for company in added)]:
            if slug not in companies:
                companies.append(slug)
        return companies

    async def _run_discovery(self, acc: RunAccumulator) -> None:
        source_names = [acc.run.source] if acc.run.source else list(BOARD_SOURCE_NAMES)
        plans = []
        now = datetime.now(timezone.utc)
        for source_name in source_names:
            companies = await plan_probes(
                self.repository,
                source=source_name,
                now=now,
                batch_size=self.settings.discovery_batch_size,
                recheck_after_hours=self.settings.discovery_recheck_after_hours,
            )
            acc.total_units += len(companies)
            plans.append((source_name, companies))
        await self._flush(acc)

        for source_name, companies in plans:
            board = self.board_source_factory(
                source_name,
                self.settings,
                http_client=self.http_client,
                min_interval_seconds=self.settings.discovery_probe_interval_seconds,
            )
            prober = CompanyProber(board)
            for company in companies:
                with tracer.start_as_current_span("discovery.probe") as span:
                    span.set_attribute("discovery.source", source_name)
                    span.set_attribute("discovery.slug", company.slug)
                    result = await prober.probe(company.slug)
                    span.set_attribute("discovery.outcome", result.outcome)
                decision = decide_probe(company, result, checked_at=datetime.now(timezone.utc))
                try:
                    await self.repository.update_candidate_company(
                        source=source_name,
                        slug=company.slug,
                        update=decision.update,
                    )
                except RepositoryNotFoundError:
                    self._log(acc, f"{source_name}/{company.slug}: candidate removed during probe", "warning")
                else:
                    acc.stats.companies_added += decision.companies_added
                    acc.stats.companies_deleted += decision.companies_deleted
                    self._log(acc, decision.message, decision.level)
                acc.processed_units += 1
                await self._flush(acc)

            pruned = await prune_not_found(
                self.repository,
                source=source_name,
                prune_after_checks=self.settings.discovery_prune_after_checks,
            )
            if pruned:
                self._log(acc, f"{source_name}: pruned {len(pruned)} candidate(s) after repeated misses")

    def _log(self, acc: RunAccumulator, message: str, level: str = "info") -> None:
        entry = acc.log(message, level)
        self.broker.publish(acc.run.id, log_event(entry.message, entry.level, entry.timestamp))

    async def _flush(self, acc: RunAccumulator) -> None:
        await self.repository.record_sync_progress(
            acc.run.id,
            logs=acc.pending_logs,
            processed_units=acc.processed_units,
            total_units=acc.total_units,
            stats=acc.stats,
        )
        acc.take_logs()
        self.broker.publish(acc.run.id, progress_event(acc.processed_units, acc.total_units))

    async def _complete(self, acc: RunAccumulator) -> SyncRunRecord:
        stats = acc.stats
        self._log(
            acc,
            f"Sync completed: {stats.jobs_added} added, {stats.jobs_updated} updated, "
            f"{stats.jobs_deleted} deleted, "
            f"{stats.jobs_skipped} skipped, {stats.companies_added} companies added, "
            f"{stats.companies_deleted} companies removed",
            "success",
        )
        try:
            finished = await self.repository.finish_sync_run(
                acc.run.id,
                status="completed",
                stats=stats,
                logs=acc.take_logs(),
                processed_units=acc.processed_units,
                total_units=acc.processed_units,
            )
        except RepositoryError as exc:
            logger.exception("could not record completion run_id=%s; left for stuck-run sweep", acc.run.id)
            self.broker.publish(acc.run.id, error_event(f"could not record completion: {exc}"))
            return _unrecorded(acc, "running", str(exc))
        logger.info("sync run completed run_id=%s stats=%s", acc.run.id, stats.as_dict())
        self.broker.publish(acc.run.id, complete_event(finished.stats.as_dict(), run_report(finished)))
        return finished

    async def _fail(self, acc: RunAccumulator, exc: Exception) -> SyncRunRecord:
        message = f"Sync failed: {exc}"
        logger.exception("sync run failed run_id=%s", acc.run.id)
        self._log(acc, message, "error")
        try:
            finished = await self.repository.finish_sync_run(
                acc.run.id,
                status="failed",
                stats=acc.stats,
                logs=acc.take_logs(),
                processed_units=acc.processed_units,
                total_units=max(acc.total_units, acc.processed_units),
                error=str(exc),
            )
        except RepositoryError:
            logger.exception("could not record failure run_id=%s; left for stuck-run sweep", acc.run.id)
            finished = _unrecorded(acc, "running", str(exc))
        self.broker.publish(acc.run.id, error_event(message))
        return finished


def to_listing_upsert(listing: RawListing) -> ListingUpsert:
    return ListingUpsert(
        title=listing.title,
        company=listing.company,
        description_raw=listing.description_html,
        description_summary=listing.description_summary,
        pay_range=listing.salary_text,
        posted_at=listing.posted_at,
        source_url=listing.source_url,
        source_name=listing.source_name,
        category_id=determine_category(listing.title, listing.description_text, listing.tags),
    )


def _skipped(run: SyncRunRecord) -> SyncOutcome:
    return SyncOutcome(run_id=run.id, status="skipped", stats=run.stats, reason="sync_already_running")


def _unrecorded(acc: RunAccumulator, status: str, error: str) -> SyncRunRecord:
    run = acc.run
    return SyncRunRecord(
        id=run.id,
        sync_type=run.sync_type,
        source=run.source,
        status=status,
        started_at=run.started_at,
        stats=acc.stats.copy(),
        total_units=acc.total_units,
        processed_units=acc.processed_units,
        error=error,
    )


@lru_cache
def get_orchestrator() -> SyncOrchestrator:
    return SyncOrchestrator(get_repository(), get_broker(), get_settings())
