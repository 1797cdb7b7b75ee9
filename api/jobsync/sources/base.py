from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

import httpx

from jobsync.core.urls import normalize_source_url
from jobsync.sources.salary import html_to_text, summarize_text

logger = logging.getLogger(__name__)

USER_AGENT = "remote-jobsync/0.1"
TRANSIENT_STATUS_CODES = {408, 425, 429}


class SourceFetchError(Exception):
    """Typed failure of a provider request."""

    def __init__(self, message: str, *, status_code: int | None = None, transient: bool = False) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class SourceNotFoundError(SourceFetchError):
    """Raised when the provider confirms the board does not exist."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=404, transient=False)


class NormalizationError(Exception):
    """Raised when a provider payload has a shape the adapter cannot map."""


@dataclass(slots=True)
class RawListing:
    external_id: str
    title: str
    company: str
    description_html: str
    source_url: str
    source_name: str
    salary_text: str | None = None
    posted_at: datetime | None = None
    tags: list[str] = field(default_factory=list)
    location: str | None = None

    @property
    def description_text(self) -> str:
        return html_to_text(self.description_html)

    @property
    def description_summary(self) -> str:
        return summarize_text(self.description_text)


@dataclass(slots=True)
class ListingBatch:
    unit: str
    listings: list[RawListing] = field(default_factory=list)
    error: str | None = None
    # Set on the last batch when pagination stopped at the page cap with more pages left.
    truncated: bool = False


@dataclass(slots=True)
class FetchFilter:
    companies: list[str] = field(default_factory=list)
    query: str | None = None
    max_pages: int | None = None


def compute_retry_delay(attempt: int, *, base_seconds: float, max_seconds: float) -> float:
    exponent = max(attempt - 1, 0)
    return min(base_seconds * (2**exponent), max_seconds)


def from_epoch_seconds(value: Any) -> datetime | None:
    number = _as_float(value)
    if number is None:
        return None
    return _from_timestamp(number, value)


def from_epoch_millis(value: Any) -> datetime | None:
    number = _as_float(value)
    if number is None:
        return None
    return _from_timestamp(number / 1000.0, value)


def _from_timestamp(seconds: float, raw: Any) -> datetime | None:
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        # Providers mix seconds and milliseconds; an unrepresentable value leaves the date unset.
        logger.warning("ignoring out-of-range epoch timestamp value=%r", raw)
        return None


def from_iso(value: Any) -> datetime | None:
    """Parse ISO-8601 and `YYYY-MM-DD HH:MM:SS`; naive values are taken as UTC."""
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = value.strip()
    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


class RequestThrottle:
    """Enforces a minimum delay between consecutive requests to one provider."""

    def __init__(
        self,
        min_interval_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.min_interval_seconds = max(0.0, min_interval_seconds)
        self._clock = clock
        self._sleep = sleep
        self._last_request_at: float | None = None
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            if self._last_request_at is not None:
                remaining = self.min_interval_seconds - (self._clock() - self._last_request_at)
                if remaining > 0:
                    await self._sleep(remaining)
            self._last_request_at = self._clock()


class ProviderClient:
    def __init__(
        self,
        *,
        throttle: RequestThrottle,
        timeout_seconds: float = 10.0,
        max_attempts: int = 3,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 10.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.throttle = throttle
        self.timeout_seconds = timeout_seconds
        self.max_attempts = max(1, max_attempts)
        self.retry_base_seconds = retry_base_seconds
        self.retry_max_seconds = retry_max_seconds
        self._client = client
        self._sleep = sleep

    async def get_json(self, url: str, *, params: dict[str, Any] | None = None) -> Any:
        last_error: SourceFetchError | None = None
        for attempt in range(1, self.max_attempts + 1):
            await self.throttle.wait()
            try:
                return await self._get_json_once(url, params)
            except SourceNotFoundError:
                raise
            except SourceFetchError as exc:
                if not exc.transient:
                    raise
                last_error = exc
            if attempt < self.max_attempts:
                delay = compute_retry_delay(
                    attempt,
                    base_seconds=self.retry_base_seconds,
                    max_seconds=self.retry_max_seconds,
                )
                logger.info(
                    "provider retry url=%s attempt=%s delay_seconds=%.2f error=%s",
                    url,
                    attempt,
                    delay,
                    last_error,
                )
                await self._sleep(delay)
        assert last_error is not None
        raise last_error

    async def _get_json_once(self, url: str, params: dict[str, Any] | None) -> Any:
        try:
            if self._client is not None:
                response = await self._client.get(url, params=params, headers={"User-Agent": USER_AGENT})
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.get(url, params=params, headers={"User-Agent": USER_AGENT})
        except httpx.TimeoutException as exc:
            raise SourceFetchError(f"timeout fetching {url}", transient=True) from exc
        except httpx.TransportError as exc:
            raise SourceFetchError(f"transport error fetching {url}: {exc}", transient=True) from exc

        status = response.status_code
        if status == 404:
            raise SourceNotFoundError(f"not found: {url}")
        if status >= 500 or status in TRANSIENT_STATUS_CODES:
            raise SourceFetchError(f"provider returned {status} for {url}", status_code=status, transient=True)
        if status >= 400:
            raise SourceFetchError(f"provider returned {status} for {url}", status_code=status)

        content_type = response.headers.get("content-type", "")
        if "json" not in content_type.lower():
            raise SourceFetchError(
                f"unexpected content type {content_type or 'none'} from {url}",
                status_code=status,
                transient=True,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise SourceFetchError(f"malformed json from {url}", status_code=status, transient=True) from exc


class ListingSource:
    """Base for provider adapters.

    `fetch` is an async generator of ListingBatch values. Every call starts a
    fresh fetch; adapters keep no cursor between calls.
    """

    source_name = ""

    def __init__(self, client: ProviderClient) -> None:
        self.client = client

    def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        raise NotImplementedError

    def make_listing(
        self,
        *,
        external_id: str,
        title: str,
        company: str,
        description_html: str,
        source_url: str,
        salary_text: str | None,
        posted_at: datetime | None,
        tags: list[str],
        location: str | None,
    ) -> RawListing | None:
        try:
            normalized_url = normalize_source_url(source_url)
        except ValueError:
            logger.warning("skipping listing without usable url source=%s external_id=%s", self.source_name, external_id)
            return None
        return RawListing(
            external_id=external_id,
            title=html_to_text(title),
            company=company.strip(),
            description_html=description_html,
            source_url=normalized_url,
            source_name=self.source_name,
            salary_text=salary_text,
            posted_at=posted_at,
            tags=[tag.strip() for tag in tags if tag and tag.strip()],
            location=location,
        )


def expect_list(value: Any, *, source_name: str, what: str) -> list[Any]:
    if not isinstance(value, list):
        raise NormalizationError(f"{source_name} returned {type(value).__name__} where {what} list was expected")
    return value


def expect_dict(value: Any, *, source_name: str, what: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise NormalizationError(f"{source_name} returned {type(value).__name__} where {what} object was expected")
    return value


def as_text(value: Any) -> str:
    if isinstance(value, str):
        return value.strip()
    if value is None:
        return ""
    return str(value).strip()


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


class BoardSource(ListingSource):
    """Adapter for per-company board APIs; one unit per company slug."""

    def __init__(self, client: ProviderClient, default_companies: list[str] | None = None) -> None:
        super().__init__(client)
        self.default_companies = list(default_companies or [])

    async def fetch(self, fetch_filter: FetchFilter | None = None) -> AsyncIterator[ListingBatch]:
        companies = fetch_filter.companies if fetch_filter and fetch_filter.companies else self.default_companies
        for slug in companies:
            try:
                payload = await self.fetch_board(slug)
            except SourceFetchError as exc:
                yield ListingBatch(unit=slug, error=str(exc))
                continue
            listings: list[RawListing] = []
            for posting in self.remote_postings(payload):
                listing = self.normalize_posting(slug, posting)
                if listing is not None:
                    listings.append(listing)
            yield ListingBatch(unit=slug, listings=listings)

    async def fetch_board(self, slug: str) -> Any:
        raise NotImplementedError

    def postings(self, payload: Any) -> list[dict[str, Any]]:
        raise NotImplementedError

    def is_remote(self, posting: dict[str, Any]) -> bool:
        raise NotImplementedError

    def remote_postings(self, payload: Any) -> list[dict[str, Any]]:
        return [posting for posting in self.postings(payload) if self.is_remote(posting)]

    def normalize_posting(self, slug: str, posting: dict[str, Any]) -> RawListing | None:
        raise NotImplementedError

    def posting_title(self, posting: dict[str, Any]) -> str:
        raise NotImplementedError

    def posting_departments(self, posting: dict[str, Any]) -> list[str]:
        raise NotImplementedError
