from __future__ import annotations

import asyncio
import os
from collections.abc import Coroutine
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import asyncpg  # type: ignore[import-untyped]
import pytest

from jobsync.services.repository import (
    CompanyProbeUpdate,
    ListingUpsert,
    LogEntry,
    PostgresRepository,
    RepositoryConflictError,
    RepositoryValidationError,
    SyncStats,
)

MIGRATION_PATH = Path(__file__).resolve().parents[1] / "migrations" / "001_sync_engine.sql"

T = TypeVar("T")


@pytest.fixture(scope="session")
def database_url() -> str:
    url = os.getenv("JS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if not url:
        pytest.skip("integration tests require JS_DATABASE_URL or DATABASE_URL")
    return url


@pytest.fixture(autouse=True)
def reset_tables(database_url: str) -> None:
    _run(_prepare_schema(database_url))


def _run(coro: Coroutine[Any, Any, T]) -> T:
    return asyncio.run(coro)


async def _prepare_schema(database_url: str) -> None:
    conn = await asyncpg.connect(database_url)
    try:
        await conn.execute(MIGRATION_PATH.read_text())
        await conn.execute("truncate table listings, sync_runs, candidate_companies restart identity")
    finally:
        await conn.close()


async def _with_repository(database_url: str, body: Any) -> Any:
    repository = PostgresRepository(database_url=database_url, min_pool_size=1, max_pool_size=4)
    try:
        return await body(repository)
    finally:
        await repository.close()


def _upsert(url: str, title: str = "Site Reliability Engineer") -> ListingUpsert:
    return ListingUpsert(
        title=title,
        company="Acme",
        description_raw="<p>Keep it up</p>",
        description_summary="Keep it up",
        pay_range=None,
        posted_at=datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc),
        source_url=url,
        source_name="greenhouse",
        category_id=6,
    )


def test_concurrent_acquire_creates_one_run(database_url: str) -> None:
    async def body(repository: PostgresRepository) -> list[bool]:
        results = await asyncio.gather(
            *[
                repository.acquire_sync_run(sync_type="job_sync", source="lever", lock_window_seconds=120)
                for _ in range(5)
            ]
        )
        assert len({run.id for run, _ in results}) == 1
        return [created for _, created in results]

    created = _run(_with_repository(database_url, body))
    assert created.count(True) == 1


def test_progress_logs_append_and_terminal_runs_are_frozen(database_url: str) -> None:
    async def body(repository: PostgresRepository) -> None:
        run, _ = await repository.acquire_sync_run(sync_type="discovery", source=None, lock_window_seconds=120)
        now = datetime.now(timezone.utc)
        await repository.record_sync_progress(
            run.id,
            logs=[LogEntry(now, "info", "one")],
            processed_units=1,
            total_units=2,
            stats=SyncStats(companies_added=1),
        )
        finished = await repository.finish_sync_run(
            run.id,
            status="completed",
            stats=SyncStats(companies_added=1),
            logs=[LogEntry(now, "success", "two")],
            processed_units=2,
            total_units=2,
        )
        assert [entry.message for entry in finished.logs] == ["one", "two"]
        assert finished.completed_at is not None
        with pytest.raises(RepositoryConflictError):
            await repository.finish_sync_run(
                run.id,
                status="failed",
                stats=SyncStats(),
                logs=[],
                processed_units=2,
                total_units=2,
                error="late",
            )

    _run(_with_repository(database_url, body))


def test_listing_upsert_conflict_and_dedupe_delete(database_url: str) -> None:
    async def body(repository: PostgresRepository) -> None:
        first = await repository.insert_listing(_upsert("https://boards.greenhouse.io/acme/jobs/1"))
        with pytest.raises(RepositoryConflictError):
            await repository.insert_listing(_upsert("https://boards.greenhouse.io/acme/jobs/1"))

        found = await repository.find_listing_by_source_url("https://boards.greenhouse.io/acme/jobs/1")
        assert found is not None and found.id == first.id

        updated = await repository.update_listing(first.id, _upsert(first.source_url, "Senior SRE"))
        assert updated.title == "Senior SRE"

        second = await repository.insert_listing(_upsert("https://boards.greenhouse.io/acme/jobs/2"))
        with pytest.raises(RepositoryConflictError):
            await repository.delete_listings([second.id, 999999])
        assert len(await repository.list_listings()) == 2
        assert await repository.delete_listings([second.id]) == 1

        bad_category = _upsert("https://boards.greenhouse.io/acme/jobs/3")
        bad_category.category_id = 42
        with pytest.raises(RepositoryValidationError):
            await repository.insert_listing(bad_category)

    _run(_with_repository(database_url, body))


def test_stale_runs_are_failed_with_log_entry(database_url: str) -> None:
    async def body(repository: PostgresRepository) -> None:
        run, _ = await repository.acquire_sync_run(sync_type="job_sync", source="jobicy", lock_window_seconds=120)
        failed = await repository.fail_stale_sync_runs(
            older_than=datetime.now(timezone.utc) + timedelta(seconds=1),
            message="Timed out",
        )
        assert failed == [run.id]
        stored = await repository.get_sync_run(run.id)
        assert stored.status == "failed"
        assert stored.logs[-1].message == "Timed out"

    _run(_with_repository(database_url, body))


def test_candidate_company_probe_updates(database_url: str) -> None:
    async def body(repository: PostgresRepository) -> None:
        assert await repository.add_candidate_companies(source="lever", slugs=["netlify", "plaid"]) == 2
        assert await repository.add_candidate_companies(source="lever", slugs=["netlify"]) == 0
        updated = await repository.update_candidate_company(
            source="lever",
            slug="netlify",
            update=CompanyProbeUpdate(
                status="added",
                checked_at=datetime.now(timezone.utc),
                job_count=4,
                remote_job_count=2,
                departments=["Engineering"],
                suggested_category="developer-tools",
                sample_jobs=["Engineer"],
            ),
        )
        assert updated.status == "added"
        assert updated.check_count == 1
        added = await repository.list_candidate_companies(source="lever", status="added")
        assert [company.slug for company in added] == ["netlify"]
        due = await repository.list_candidate_companies_due(
            source="lever", status="pending", checked_before=None, limit=10
        )
        assert [company.slug for company in due] == ["plaid"]
        assert await repository.delete_candidate_companies(source="lever", slugs=["plaid"]) == 1

    _run(_with_repository(database_url, body))
