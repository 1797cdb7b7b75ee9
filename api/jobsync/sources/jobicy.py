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
    expect_dict,
    expect_list,
    from_iso,
)
from jobsync.sources.salary import format_salary_range

JOBICY_API_URL = "https://jobicy.com/api/v2/remote-jobs"
JOBICY_MAX_COUNT = 100


class JobicySource(ListingSource):
    source_name = "jobicy"

    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        params: dict[str, Any] = {"count": JOBICY_MAX_COUNT}
        if fetch_filter and fetch_filter.query:
            params["tag"] = fetch_filter.query
        try:
            payload = await self.client.get_json(JOBICY_API_URL, params=params)
        except SourceFetchError as exc:
            yield ListingBatch(unit=self.source_name, error=str(exc))
            return
        body = expect_dict(payload, source_name=self.source_name, what="response")
        jobs = expect_list(body.get("jobs") or [], source_name=self.source_name, what="jobs")
        listings: list[RawListing] = []
        for job in jobs:
            if not isinstance(job, dict):
                continue
            listing = self._normalize(job)
            if listing is not None:
                listings.append(listing)
        # The feed has no pagination; a full page may hide older live postings.
        yield ListingBatch(unit=self.source_name, listings=listings, truncated=len(jobs) >= JOBICY_MAX_COUNT)

    def _normalize(self, job: dict[str, Any]) -> RawListing | None:
        currency = as_text(job.get("salaryCurrency"))
        salary_text = None
        if job.get("annualSalaryMin") and currency:
            salary_text = format_salary_range(
                job.get("annualSalaryMin"),
                job.get("annualSalaryMax") or None,
                currency,
                period="year",
            )
        industries = job.get("jobIndustry") or []
        return self.make_listing(
            external_id=f"jobicy-{job.get('id')}",
            title=as_text(job.get("jobTitle")),
            company=as_text(job.get("companyName")),
            description_html=as_text(job.get("jobDescription")) or as_text(job.get("jobExcerpt")),
            source_url=as_text(job.get("url")),
            salary_text=salary_text,
            # "YYYY-MM-DD HH:MM:SS" in UTC, or ISO-8601.
            posted_at=from_iso(job.get("pubDate")),
            tags=[as_text(item) for item in industries if isinstance(item, str)],
            location=as_text(job.get("jobGeo")) or "Remote",
        )
