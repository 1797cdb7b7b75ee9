from __future__ import annotations

from typing import Any

from jobsync.sources.base import BoardSource, RawListing, as_text, expect_list, from_epoch_millis
from jobsync.sources.greenhouse import company_display_name
from jobsync.sources.salary import extract_salary_from_text, format_salary_range, html_to_text

LEVER_POSTINGS_URL = "https://api.lever.co/v0/postings/{slug}"


class LeverSource(BoardSource):
    source_name = "lever"

    async def fetch_board(self, slug: str) -> list[Any]:
        payload = await self.client.get_json(LEVER_POSTINGS_URL.format(slug=slug), params={"mode": "json"})
        return expect_list(payload, source_name=self.source_name, what="postings")

    def postings(self, payload: Any) -> list[dict[str, Any]]:
        return [posting for posting in payload if isinstance(posting, dict)]

    def is_remote(self, posting: dict[str, Any]) -> bool:
        categories = _categories(posting)
        fields = (
            as_text(categories.get("location")),
            as_text(categories.get("commitment")),
            as_text(posting.get("descriptionPlain")),
        )
        return any("remote" in value.lower() for value in fields)

    def posting_title(self, posting: dict[str, Any]) -> str:
        return html_to_text(as_text(posting.get("text")))

    def posting_departments(self, posting: dict[str, Any]) -> list[str]:
        categories = _categories(posting)
        names = [as_text(categories.get("team")), as_text(categories.get("department"))]
        return [name for name in names if name]

    def normalize_posting(self, slug: str, posting: dict[str, Any]) -> RawListing | None:
        categories = _categories(posting)
        description_html = as_text(posting.get("description"))
        return self.make_listing(
            external_id=f"lever-{posting.get('id')}",
            title=as_text(posting.get("text")),
            company=company_display_name(slug),
            description_html=description_html,
            source_url=as_text(posting.get("applyUrl")) or as_text(posting.get("hostedUrl")),
            salary_text=_salary_text(posting, description_html),
            # Lever timestamps are epoch milliseconds.
            posted_at=from_epoch_millis(posting.get("createdAt")),
            tags=[*self.posting_departments(posting), as_text(categories.get("commitment"))],
            location=as_text(categories.get("location")) or "Remote",
        )


def _categories(posting: dict[str, Any]) -> dict[str, Any]:
    categories = posting.get("categories")
    return categories if isinstance(categories, dict) else {}


def _salary_text(posting: dict[str, Any], description_html: str) -> str | None:
    salary_range = posting.get("salaryRange")
    if isinstance(salary_range, dict) and salary_range.get("min") and salary_range.get("max"):
        formatted = format_salary_range(
            salary_range.get("min"),
            salary_range.get("max"),
            as_text(salary_range.get("currency")) or "USD",
        )
        if formatted:
            return formatted
    plain = f"{as_text(posting.get('descriptionPlain'))}\n{as_text(posting.get('additionalPlain'))}"
    return extract_salary_from_text(plain) or extract_salary_from_text(html_to_text(description_html))
