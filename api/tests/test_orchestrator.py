from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from jobsync.core.config import Settings
from jobsync.services.orchestrator import SyncOrchestrator
from jobsync.services.progress import ProgressBroker
from jobsync.services.repository import ListingRecord, ListingUpsert, RepositoryConflictError, RepositoryValidationError
from jobsync.services.store import InMemoryRepository
from jobsync.sources.base import FetchFilter, ListingBatch, RawListing


def _listing(external_id: str, title: str = "Python Developer") -> RawListing:
    return RawListing(
        external_id=external_id,
        title=title,
        company="Initech",
        description_html="<p>Remote role</p>",
        source_url=f"https://remoteok.com/remote-jobs/{external_id}",
        source_name="remoteok",
        salary_text="USD 100,000 - 120,000",
        tags=["python"],
        location="Remote",
    )


class FakeSource:
    def __init__(self, batches: list[ListingBatch], *, fail_after: int | None = None, gate: asyncio.Event | None = None):
        self.batches = batches
        self.fail_after = fail_after
        self.gate = gate
        self.filters: list[FetchFilter | None] = []

    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        self.filters.append(fetch_filter)
        if self.gate is not None:
            await self.gate.wait()
        for index, batch in enumerate(self.batches):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("provider exploded")
            yield batch


def _settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "greenhouse_seed_companies": ["acme"],
        "lever_seed_companies": [],
        "discovery_probe_interval_seconds": 0,
        "provider_max_attempts": 1,
        "otel_enabled": False,
    }
    values.update(overrides)
    return Settings(**values)


def _orchestrator(
    repository: InMemoryRepository,
    source: FakeSource | None = None,
    *,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> tuple[SyncOrchestrator, ProgressBroker]:
    broker = ProgressBroker()
    kwargs: dict[str, Any] = {}
    if source is not None:
        kwargs["source_factory"] = lambda name, settings, **_: source
    orchestrator = SyncOrchestrator(repository, broker, settings or _settings(), http_client=http_client, **kwargs)
    return orchestrator, broker


def test_job_sync_upserts_and_is_idempotent() -> None:
    repository = InMemoryRepository()
    source = FakeSource([ListingBatch(unit="remoteok", listings=[_listing("1"), _listing("2", "Product Manager")])])
    orchestrator, _ = _orchestrator(repository, source)

    async def run() -> tuple[Any, Any]:
        first = await orchestrator.run("job_sync", "remoteok")
        second = await orchestrator.run("job_sync", "remoteok")
        return first, second

    first, second = asyncio.run(run())

    assert first.status == "completed"
    assert first.stats.jobs_added == 2
    assert second.stats.jobs_added == 0
    assert second.stats.jobs_updated == 2
    assert len(repository.listings) == 2
    categories = sorted(listing.category_id for listing in repository.listings.values())
    assert categories == [1, 9]
    run_record = repository.sync_runs[first.run_id]
    assert run_record.processed_units == run_record.total_units == 1
    assert run_record.completed_at is not None
    assert any("Sync completed" in entry.message for entry in run_record.logs)


def test_second_trigger_is_skipped_while_running() -> None:
    repository = InMemoryRepository()
    gate = asyncio.Event()
    source = FakeSource([ListingBatch(unit="remoteok", listings=[_listing("1")])], gate=gate)
    orchestrator, _ = _orchestrator(repository, source)

    async def run() -> tuple[Any, Any, Any]:
        first = await orchestrator.start("job_sync", "remoteok")
        second = await orchestrator.start("job_sync", "remoteok")
        other = await orchestrator.start("job_sync", "jobicy")
        gate.set()
        await orchestrator.drain()
        return first, second, other

    first, second, other = asyncio.run(run())

    assert first.status == "running"
    assert second.status == "skipped"
    assert second.reason == "sync_already_running"
    assert second.run_id == first.run_id
    assert other.status == "running"
    assert sum(1 for run in repository.sync_runs.values() if run.source == "remoteok") == 1
    assert repository.sync_runs[first.run_id].status == "completed"


def test_failure_keeps_earlier_writes_and_records_error() -> None:
    repository = InMemoryRepository()
    source = FakeSource(
        [
            ListingBatch(unit="offset 0", listings=[_listing("1")]),
            ListingBatch(unit="offset 20", listings=[_listing("2")]),
        ],
        fail_after=1,
    )
    orchestrator, broker = _orchestrator(repository, source)

    async def run() -> tuple[Any, list[dict[str, Any]]]:
        outcome = await orchestrator.run("job_sync", "himalayas")
        events = [event async for event in broker.subscribe(outcome.run_id)]
        return outcome, events

    outcome, events = asyncio.run(run())

    assert outcome.status == "failed"
    assert "provider exploded" in (outcome.reason or "")
    assert len(repository.listings) == 1
    run_record = repository.sync_runs[outcome.run_id]
    assert run_record.status == "failed"
    assert run_record.stats.jobs_added == 1
    assert run_record.logs[-1].level == "error"
    assert events[-1]["type"] == "error"
    assert sum(1 for event in events if event["type"] in {"complete", "error"}) == 1


def test_error_batches_are_logged_and_counted_as_processed() -> None:
    repository = InMemoryRepository()
    source = FakeSource(
        [
            ListingBatch(unit="acme", error="provider returned 503"),
            ListingBatch(unit="globex", listings=[_listing("1")]),
        ]
    )
    orchestrator, broker = _orchestrator(repository, source, settings=_settings(greenhouse_seed_companies=["acme", "globex"]))

    async def run() -> tuple[Any, list[dict[str, Any]]]:
        outcome = await orchestrator.run("job_sync", "greenhouse")
        return outcome, [event async for event in broker.subscribe(outcome.run_id)]

    outcome, events = asyncio.run(run())

    assert outcome.status == "completed"
    progress = [(event["processed"], event["total"]) for event in events if event["type"] == "progress"]
    assert progress == [(0, 2), (1, 2), (2, 2)]
    warnings = [event for event in events if event["type"] == "log" and event["level"] == "warning"]
    assert "acme" in warnings[0]["message"]
    assert events[-1]["type"] == "complete"
    assert events[-1]["stats"]["jobs_added"] == 1


def test_board_sync_includes_added_candidate_companies() -> None:
    repository = InMemoryRepository()
    source = FakeSource([])
    orchestrator, _ = _orchestrator(repository, source, settings=_settings(greenhouse_seed_companies=["acme", "vercel"]))

    async def run() -> None:
        await repository.add_candidate_companies(source="greenhouse", slugs=["acme", "newco", "pendingco"])
        for slug in ("acme", "newco"):
            repository.companies[("greenhouse", slug)].status = "added"
        await orchestrator.run("job_sync", "greenhouse")

    asyncio.run(run())

    assert source.filters[0] is not None
    assert source.filters[0].companies == ["acme", "vercel", "newco"]


def test_insert_conflict_counts_as_skip() -> None:
    class RacingRepository(InMemoryRepository):
        async def find_listing_by_source_url(self, source_url: str) -> ListingRecord | None:
            return None

        async def insert_listing(self, values: ListingUpsert) -> ListingRecord:
            raise RepositoryConflictError("listing already exists")

    repository = RacingRepository()
    source = FakeSource([ListingBatch(unit="remoteok", listings=[_listing("1")])])
    orchestrator, _ = _orchestrator(repository, source)

    outcome = asyncio.run(orchestrator.run("job_sync", "remoteok"))

    assert outcome.status == "completed"
    assert outcome.stats.jobs_skipped == 1
    assert outcome.stats.jobs_added == 0


def test_unknown_sources_are_rejected_before_a_run_exists() -> None:
    repository = InMemoryRepository()
    orchestrator, _ = _orchestrator(repository, FakeSource([]))

    with pytest.raises(RepositoryValidationError):
        asyncio.run(orchestrator.start("job_sync", "monster"))
    with pytest.raises(RepositoryValidationError):
        asyncio.run(orchestrator.start("discovery", "remoteok"))
    assert repository.sync_runs == {}


def test_discovery_promotes_demotes_and_counts_companies() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        slug = request.url.path.rsplit("/", 2)[-2]
        if slug == "hiring":
            return httpx.Response(
                200,
                json={
                    "jobs": [
                        {
                            "id": 1,
                            "title": "Platform Engineer",
                            "absolute_url": "https://boards.greenhouse.io/hiring/jobs/1",
                            "location": {"name": "Remote"},
                        }
                    ]
                },
            )
        if slug == "quiet":
            return httpx.Response(200, json={"jobs": []})
        return httpx.Response(404)

    repository = InMemoryRepository()

    async def run() -> Any:
        await repository.add_candidate_companies(source="greenhouse", slugs=["hiring", "quiet", "vanished"])
        repository.companies[("greenhouse", "vanished")].status = "added"
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator, _ = _orchestrator(repository, http_client=client)
            return await orchestrator.run("discovery", "greenhouse")

    outcome = asyncio.run(run())

    assert outcome.status == "completed"
    assert outcome.stats.companies_added == 1
    assert outcome.stats.companies_deleted == 1
    statuses = {slug: company.status for (_, slug), company in repository.companies.items()}
    assert statuses == {"hiring": "added", "quiet": "not_found", "vanished": "not_found"}
    assert repository.companies[("greenhouse", "hiring")].sample_jobs == ["Platform Engineer"]
    run_record = repository.sync_runs[outcome.run_id]
    assert run_record.processed_units == 3


def test_out_of_range_posting_date_does_not_fail_the_run() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        jobs = [
            {
                "guid": "good",
                "title": "Backend Engineer",
                "companyName": "Hooli",
                "applicationLink": "https://himalayas.app/jobs/good",
                "pubDate": 1705320000,
            },
            {
                "guid": "millis",
                "title": "Data Engineer",
                "companyName": "Hooli",
                "applicationLink": "https://himalayas.app/jobs/millis",
                "pubDate": 1700000000000000,
            },
        ]
        return httpx.Response(200, json={"jobs": jobs})

    repository = InMemoryRepository()

    async def run() -> Any:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator, _ = _orchestrator(repository, http_client=client, settings=_settings(himalayas_min_interval_seconds=0))
            return await orchestrator.run("job_sync", "himalayas")

    outcome = asyncio.run(run())

    assert outcome.status == "completed"
    assert outcome.stats.jobs_added == 2
    dates = {listing.source_url: listing.posted_at for listing in repository.listings.values()}
    assert dates["https://himalayas.app/jobs/millis"] is None
    assert dates["https://himalayas.app/jobs/good"] is not None
