from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from jobsync.services.repository import ListingRecord, RepositoryConflictError
from jobsync.sources.base import ListingBatch

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class FetchCoverage:
    """What one source fetch saw, and whether it is complete enough to prune against."""

    source_name: str
    seen_urls: set[str] = field(default_factory=set)
    failed_units: list[str] = field(default_factory=list)
    truncated: bool = False

    def record(self, batch: ListingBatch) -> None:
        if batch.error:
            self.failed_units.append(batch.unit)
            return
        self.seen_urls.update(listing.source_url for listing in batch.listings)
        self.truncated = self.truncated or batch.truncated

    @property
    def skip_reason(self) -> str | None:
        if self.failed_units:
            return f"{len(self.failed_units)} unit(s) failed to fetch"
        if self.truncated:
            return "fetch stopped before the end of the feed"
        if not self.seen_urls:
            return "fetch returned no listings"
        return None


@dataclass(slots=True)
class PruneResult:
    source_name: str
    checked: int = 0
    orphaned: list[ListingRecord] = field(default_factory=list)
    deleted: int = 0
    skipped_reason: str | None = None


class ListingRepository(Protocol):
    async def list_listings(self, *, source_name: str | None = None) -> list[ListingRecord]: ...

    async def delete_listings(self, listing_ids: list[int]) -> int: ...


def find_orphans(listings: list[ListingRecord], seen_urls: set[str]) -> list[ListingRecord]:
    return [listing for listing in listings if listing.source_url not in seen_urls]


async def prune_source(
    repository: ListingRepository,
    coverage: FetchCoverage,
    *,
    dry_run: bool,
) -> PruneResult:
    """Remove stored listings of one source that its latest fetch no longer publishes.

    Nothing is removed unless every unit of the fetch succeeded and the feed was
    read to the end.
    """
    result = PruneResult(source_name=coverage.source_name, skipped_reason=coverage.skip_reason)
    if result.skipped_reason is not None:
        return result
    stored = await repository.list_listings(source_name=coverage.source_name)
    result.checked = len(stored)
    result.orphaned = find_orphans(stored, coverage.seen_urls)
    if dry_run:
        return result
    for listing in result.orphaned:
        try:
            result.deleted += await repository.delete_listings([listing.id])
        except RepositoryConflictError:
            logger.info("listing already removed listing_id=%s source=%s", listing.id, coverage.source_name)
    return result
