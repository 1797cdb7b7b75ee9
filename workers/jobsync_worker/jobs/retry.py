from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class UnexpectedResponseError(Exception):
    """Raised when a response is not a JSON object."""


class RetryExhaustedError(Exception):
    def __init__(self, label: str, attempts: int, last_error: Exception) -> None:
        super().__init__(f"{label} failed after {attempts} attempt(s): {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


def retry_delay_seconds(attempt: int, base_delay_seconds: float) -> float:
    """Delay before the attempt following `attempt` (1-based): attempt * base."""
    return max(attempt, 0) * base_delay_seconds


def ensure_json_object(response: httpx.Response) -> dict[str, Any]:
    content_type = response.headers.get("content-type", "")
    if "application/json" not in content_type.lower():
        raise UnexpectedResponseError(f"expected application/json, got {content_type or 'no content type'}")
    try:
        payload = response.json()
    except ValueError as exc:
        raise UnexpectedResponseError("response body is not valid JSON") from exc
    if not isinstance(payload, dict):
        raise UnexpectedResponseError(f"expected a JSON object, got {type(payload).__name__}")
    return payload


async def call_with_retry(
    call: Callable[[], Awaitable[httpx.Response]],
    *,
    label: str,
    attempts: int = 3,
    base_delay_seconds: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict[str, Any]:
    attempts = max(1, attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            response = await call()
            response.raise_for_status()
            return ensure_json_object(response)
        except (httpx.HTTPError, UnexpectedResponseError) as exc:
            last_error = exc
            if attempt == attempts:
                break
            delay = retry_delay_seconds(attempt, base_delay_seconds)
            logger.warning(
                "call failed label=%s attempt=%s/%s error=%s; retry in %.1fs",
                label,
                attempt,
                attempts,
                exc,
                delay,
            )
            await sleep(delay)
    assert last_error is not None
    raise RetryExhaustedError(label, attempts, last_error)
