from __future__ import annotations

from typing import Any

from jobsync.sources.base import BoardSource, RawListing, as_text, expect_dict, expect_list, from_iso
from jobsync.sources.salary import extract_salary_from_text, html_to_text

GREENHOUSE_BOARD_URL = "https://boards-api.greenhouse.io/v1/boards/{slug}/jobs"
REMOTE_MARKERS = ("remote", "anywhere")


def company_display_name(slug: str) -> str:
    return slug[:1].upper() + slug[1:]


class GreenhouseSource(BoardSource):
    source_name = "greenhouse"

    async def fetch_board(self, slug: str) -> dict[str, Any]:
        payload = await self.client.get_json(GREENHOUSE_BOARD_URL.format(slug=slug), params={"content": "true"})
        return expect_dict(payload, source_name=self.source_name, what="board")

    def postings(self, payload: Any) -> list[dict[str, Any]]:
        jobs = expect_list(payload.get("jobs", []), source_name=self.source_name, what="jobs")
        return [job for job in jobs if isinstance(job, dict)]

    def is_remote(self, posting: dict[str, Any]) -> bool:
        location_name = _location_name(posting).lower()
        return any(marker in location_name for marker in REMOTE_MARKERS)

    def posting_title(self, posting: dict[str, Any]) -> str:
        return html_to_text(as_text(posting.get("title")))

    def posting_departments(self, posting: dict[str, Any]) -> list[str]:
        names = [
            as_text(department.get("name"))
            for department in posting.get("departments") or []
            if isinstance(department, dict)
        ]
        return [name for name in names if name]

    def normalize_posting(self, slug: str, posting: dict[str, Any]) -> RawListing | None:
        content = as_text(posting.get("content"))
        return self.make_listing(
            external_id=f"greenhouse-{posting.get('id')}",
            title=as_text(posting.get("title")),
            company=as_text(posting.get("company_name")) or company_display_name(slug),
            description_html=content,
            source_url=as_text(posting.get("absolute_url")),
            salary_text=_metadata_salary(posting.get("metadata")) or extract_salary_from_text(html_to_text(content)),
            posted_at=from_iso(posting.get("updated_at")),
            tags=self.posting_departments(posting),
            location=_location_name(posting) or "Remote",
        )


def _location_name(posting: dict[str, Any]) -> str:
    location = posting.get("location")
    if not isinstance(location, dict):
        return ""
    return as_text(location.get("name"))


def _metadata_salary(metadata: Any) -> str | None:
    if not isinstance(metadata, list):
        return None
    for entry in metadata:
        if not isinstance(entry, dict):
            continue
        name = as_text(entry.get("name")).lower()
        if "salary" not in name and "compensation" not in name:
            continue
        value = entry.get("value")
        if isinstance(value, dict):
            # Currency-typed metadata carries {"amount", "unit"}.
            text = f"{as_text(value.get('unit'))} {as_text(value.get('amount'))}".strip()
        else:
            text = as_text(value)
        if text:
            return text
    return None
