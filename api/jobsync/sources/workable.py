from __future__ import annotations

from typing import Any

from jobsync.sources.base import BoardSource, RawListing, as_text, expect_dict, expect_list, from_iso
from jobsync.sources.salary import html_to_text

WORKABLE_WIDGET_URL = "https://apply.workable.com/api/v1/widget/accounts/{slug}"
WORKABLE_JOB_URL = "https://apply.workable.com/{slug}/j/{shortcode}/"


def workable_company_name(slug: str) -> str:
    return (slug[:1].upper() + slug[1:]).replace("-", " ")


class WorkableSource(BoardSource):
    """Workable widget API.

    The widget payload carries no description or salary, so listings from this
    board are categorized on title and department only.
    """

    source_name = "workable"

    async def fetch_board(self, slug: str) -> dict[str, Any]:
        payload = await self.client.get_json(WORKABLE_WIDGET_URL.format(slug=slug))
        return expect_dict(payload, source_name=self.source_name, what="account")

    def postings(self, payload: Any) -> list[dict[str, Any]]:
        jobs = expect_list(payload.get("jobs") or [], source_name=self.source_name, what="jobs")
        return [job for job in jobs if isinstance(job, dict)]

    def is_remote(self, posting: dict[str, Any]) -> bool:
        return posting.get("telecommuting") is True or "remote" in as_text(posting.get("title")).lower()

    def posting_title(self, posting: dict[str, Any]) -> str:
        return html_to_text(as_text(posting.get("title")))

    def posting_departments(self, posting: dict[str, Any]) -> list[str]:
        names = [as_text(posting.get("department"))]
        for department in posting.get("department_hierarchy") or []:
            if isinstance(department, dict):
                names.append(as_text(department.get("name")))
        departments: list[str] = []
        for name in names:
            if name and name not in departments:
                departments.append(name)
        return departments

    def normalize_posting(self, slug: str, posting: dict[str, Any]) -> RawListing | None:
        shortcode = as_text(posting.get("shortcode")) or as_text(posting.get("id"))
        source_url = (
            as_text(posting.get("url"))
            or as_text(posting.get("application_url"))
            or WORKABLE_JOB_URL.format(slug=slug, shortcode=shortcode)
        )
        return self.make_listing(
            external_id=f"workable-{shortcode}",
            title=as_text(posting.get("title")),
            company=workable_company_name(slug),
            description_html="",
            source_url=source_url,
            salary_text=None,
            posted_at=from_iso(posting.get("published_on")) or from_iso(posting.get("created_at")),
            tags=self.posting_departments(posting),
            location=_location(posting),
        )


def _location(posting: dict[str, Any]) -> str:
    city = as_text(posting.get("city"))
    country = as_text(posting.get("country"))
    if not country:
        for entry in posting.get("locations") or []:
            if isinstance(entry, dict) and as_text(entry.get("country")):
                city = as_text(entry.get("city"))
                country = as_text(entry.get("country"))
                break
    place = f"{city}, {country}" if city and country else country
    if not place:
        return "Remote"
    return f"{place} (Remote)" if posting.get("telecommuting") is True else place
