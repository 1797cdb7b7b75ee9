from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from jobsync.sources.base import (
    FetchFilter,
    ListingBatch,
    ListingSource,
    RawListing,
    SourceFetchError,
    as_text,
    expect_list,
    from_epoch_seconds,
    from_iso,
)
from jobsync.sources.salary import format_salary_range

REMOTEOK_API_URL = "https://remoteok.com/api"


class RemoteOKSource(ListingSource):
    source_name = "remoteok"

    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        try:
            payload = await self.client.get_json(REMOTEOK_API_URL)
        except SourceFetchError as exc:
            yield ListingBatch(unit=self.source_name, error=str(exc))
            return
        # First element is a legal/metadata notice, not a posting.
        postings = expect_list(payload, source_name=self.source_name, what="postings")[1:]
        listings: list[RawListing] = []
        for posting in postings:
            if not isinstance(posting, dict) or not _is_live(posting):
                continue
            listing = self._normalize(posting)
            if listing is not None:
                listings.append(listing)
        yield ListingBatch(unit=self.source_name, listings=listings)

    def _normalize(self, posting: dict[str, Any]) -> RawListing | None:
        return self.make_listing(
            external_id=f"remoteok-{posting.get('id')}",
            title=as_text(posting.get("position")),
            company=as_text(posting.get("company")) or "Unknown Company",
            description_html=as_text(posting.get("description")),
            source_url=as_text(posting.get("url")),
            salary_text=format_salary_range(posting.get("salary_min"), posting.get("salary_max"), "USD"),
            posted_at=from_iso(posting.get("date")) or from_epoch_seconds(posting.get("epoch")),
            tags=[as_text(tag) for tag in posting.get("tags") or []],
            location="Remote",
        )


def _is_live(posting: dict[str, Any]) -> bool:
    return bool(posting.get("position")) and bool(posting.get("url")) and not posting.get("expired")
