from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from jobsync.sources.base import (
    FetchFilter,
    ListingBatch,
    ListingSource,
    ProviderClient,
    RawListing,
    SourceFetchError,
    as_text,
    expect_dict,
    expect_list,
    from_epoch_seconds,
)
from jobsync.sources.salary import format_salary_range

HIMALAYAS_API_URL = "https://himalayas.app/jobs/api"
HIMALAYAS_PAGE_SIZE = 20


class HimalayasSource(ListingSource):
    source_name = "himalayas"

    def __init__(self, client: ProviderClient, max_pages: int = 10) -> None:
        super().__init__(client)
        self.max_pages = max_pages

    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        max_pages = fetch_filter.max_pages if fetch_filter and fetch_filter.max_pages else self.max_pages
        for page in range(max_pages):
            offset = page * HIMALAYAS_PAGE_SIZE
            unit = f"offset {offset}"
            try:
                payload = await self.client.get_json(
                    HIMALAYAS_API_URL,
                    params={"limit": HIMALAYAS_PAGE_SIZE, "offset": offset},
                )
            except SourceFetchError as exc:
                # A failed page ends pagination; later offsets would shift under us anyway.
                yield ListingBatch(unit=unit, error=str(exc))
                return
            body = expect_dict(payload, source_name=self.source_name, what="page")
            jobs = expect_list(body.get("jobs") or [], source_name=self.source_name, what="jobs")
            listings: list[RawListing] = []
            for job in jobs:
                if not isinstance(job, dict) or job.get("locationRestrictions"):
                    continue
                listing = self._normalize(job)
                if listing is not None:
                    listings.append(listing)
            full_page = len(jobs) >= HIMALAYAS_PAGE_SIZE
            yield ListingBatch(unit=unit, listings=listings, truncated=full_page and page == max_pages - 1)
            if not full_page:
                return

    def _normalize(self, job: dict[str, Any]) -> RawListing | None:
        currency = as_text(job.get("currency"))
        return self.make_listing(
            external_id=f"himalayas-{job.get('guid')}",
            title=as_text(job.get("title")),
            company=as_text(job.get("companyName")),
            description_html=as_text(job.get("description")) or as_text(job.get("excerpt")),
            source_url=as_text(job.get("applicationLink")),
            salary_text=format_salary_range(job.get("minSalary"), job.get("maxSalary"), currency)
            if job.get("maxSalary") and currency
            else None,
            # Himalayas publishes epoch seconds.
            posted_at=from_epoch_seconds(job.get("pubDate")),
            tags=[as_text(category) for category in job.get("categories") or [] if isinstance(category, str)],
            location="Remote",
        )
