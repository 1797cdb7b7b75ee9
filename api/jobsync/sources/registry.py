from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import httpx

from jobsync.core.config import Settings
from jobsync.sources.base import BoardSource, ListingSource, ProviderClient, RequestThrottle
from jobsync.sources.greenhouse import GreenhouseSource
from jobsync.sources.himalayas import HimalayasSource
from jobsync.sources.jobicy import JobicySource
from jobsync.sources.lever import LeverSource
from jobsync.sources.remoteok import RemoteOKSource
from jobsync.sources.workable import WorkableSource

BOARD_SOURCE_NAMES = ("greenhouse", "lever", "workable")
AGGREGATOR_SOURCE_NAMES = ("remoteok", "himalayas", "jobicy")
SOURCE_NAMES = BOARD_SOURCE_NAMES + AGGREGATOR_SOURCE_NAMES


class UnknownSourceError(ValueError):
    pass


def build_provider_client(
    source_name: str,
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    min_interval_seconds: float | None = None,
) -> ProviderClient:
    min_interval = min_interval_seconds
    if min_interval is None:
        min_interval = getattr(settings, f"{source_name}_min_interval_seconds", 1.0)
    return ProviderClient(
        throttle=RequestThrottle(min_interval, sleep=sleep),
        timeout_seconds=settings.provider_timeout_seconds,
        max_attempts=settings.provider_max_attempts,
        retry_base_seconds=settings.provider_retry_base_seconds,
        retry_max_seconds=settings.provider_retry_max_seconds,
        client=http_client,
        sleep=sleep,
    )


def build_source(
    source_name: str,
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    min_interval_seconds: float | None = None,
) -> ListingSource:
    if source_name not in SOURCE_NAMES:
        raise UnknownSourceError(f"unknown source {source_name!r}; expected one of: {', '.join(SOURCE_NAMES)}")
    client = build_provider_client(
        source_name,
        settings,
        http_client=http_client,
        sleep=sleep,
        min_interval_seconds=min_interval_seconds,
    )
    if source_name == "greenhouse":
        return GreenhouseSource(client, default_companies=settings.greenhouse_seed_companies)
    if source_name == "lever":
        return LeverSource(client, default_companies=settings.lever_seed_companies)
    if source_name == "workable":
        return WorkableSource(client, default_companies=settings.workable_seed_companies)
    if source_name == "remoteok":
        return RemoteOKSource(client)
    if source_name == "himalayas":
        return HimalayasSource(client, max_pages=settings.aggregator_max_pages)
    return JobicySource(client)


def build_board_source(
    source_name: str,
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    min_interval_seconds: float | None = None,
) -> BoardSource:
    if source_name not in BOARD_SOURCE_NAMES:
        raise UnknownSourceError(f"{source_name!r} has no per-company boards")
    source = build_source(
        source_name,
        settings,
        http_client=http_client,
        sleep=sleep,
        min_interval_seconds=min_interval_seconds,
    )
    assert isinstance(source, BoardSource)
    return source
