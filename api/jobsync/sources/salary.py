from __future__ import annotations

import html
import re
from typing import Any

SUMMARY_WORD_LIMIT = 200

# Tried in order; the first match is returned verbatim.
SALARY_PATTERNS = [
    re.compile(r"\$(\d{2,3})k?\s*(?:-|to)\s*\$(\d{2,3})k", re.IGNORECASE),
    re.compile(r"\$(\d{2,3})k?\s*(?:-|to)\s*(\d{2,3})k", re.IGNORECASE),
    re.compile(r"\$(\d{1,3}(?:,\d{3})+)\s*(?:-|to|—|–)\s*\$(\d{1,3}(?:,\d{3})+)", re.IGNORECASE),
    re.compile(r"\$(\d{1,3}(?:,\d{3})+)\s*[—–-]\s*\$(\d{1,3}(?:,\d{3})+)(?:\s*USD)?", re.IGNORECASE),
    re.compile(r"USD\s*(\d{1,3}(?:,\d{3})*|\d{2,3})k?\s*(?:-|to)\s*(\d{1,3}(?:,\d{3})*|\d{2,3})k?", re.IGNORECASE),
    re.compile(r"£(\d{2,3})k\s*(?:-|to)\s*£(\d{2,3})k", re.IGNORECASE),
    re.compile(r"€(\d{2,3})k\s*(?:-|to)\s*€(\d{2,3})k", re.IGNORECASE),
    re.compile(r"\b(\d{2,3})k\s*(?:-|to)\s*(\d{2,3})k\b", re.IGNORECASE),
    re.compile(r"\$(\d{2,3})\s*(?:-|to)\s*\$(\d{2,3})\s*per\s*hour", re.IGNORECASE),
    re.compile(r"\$(\d{1,3}(?:,\d{3})+)\+", re.IGNORECASE),
]

_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")


def extract_salary_from_text(text: str | None) -> str | None:
    if not text:
        return None
    for pattern in SALARY_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(0)
    return None


def format_salary_range(
    minimum: Any,
    maximum: Any,
    currency: str | None,
    *,
    period: str | None = None,
) -> str | None:
    """Render provider salary bounds as `"USD 100,000 - 150,000"`.

    A missing maximum renders as an open range (`"USD 100,000+"`) and a
    missing minimum as a ceiling (`"up to USD 150,000"`). Neither bound, or
    non-numeric bounds, yield None.
    """
    low = _as_number(minimum)
    high = _as_number(maximum)
    prefix = f"{currency.strip()} " if currency and currency.strip() else "USD "
    suffix = f"/{period}" if period else ""
    if low is None:
        if high is None:
            return None
        return f"up to {prefix}{high:,}{suffix}"
    if high is None:
        return f"{prefix}{low:,}+{suffix}"
    if high == low:
        return f"{prefix}{low:,}{suffix}"
    return f"{prefix}{low:,} - {high:,}{suffix}"


def html_to_text(raw_html: str | None) -> str:
    """Decode entities, strip tags and collapse whitespace.

    Board providers double-encode content, so entities are decoded before and
    after tag stripping.
    """
    if not raw_html:
        return ""
    decoded = html.unescape(raw_html)
    stripped = _TAG_RE.sub(" ", decoded)
    stripped = html.unescape(stripped).replace("\xa0", " ")
    return _WHITESPACE_RE.sub(" ", stripped).strip()


def summarize_text(text: str, *, word_limit: int = SUMMARY_WORD_LIMIT) -> str:
    words = text.split()
    summary = " ".join(words[:word_limit])
    if len(words) > word_limit:
        summary += "..."
    return summary


def _as_number(value: Any) -> int | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None
    if isinstance(value, str):
        digits = value.replace(",", "").strip()
        try:
            parsed = float(digits)
        except ValueError:
            return None
        return int(parsed) if parsed > 0 else None
    return None
