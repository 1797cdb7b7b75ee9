from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Protocol

from jobsync.core.config import get_settings
from jobsync.services.repository import LogEntry, SyncRunRecord

logger = logging.getLogger(__name__)

TERMINAL_EVENT_TYPES = {"complete", "error"}


def log_event(message: str, level: str = "info", timestamp: datetime | None = None) -> dict[str, Any]:
    moment = timestamp or datetime.now(timezone.utc)
    return {"type": "log", "message": message, "level": level, "timestamp": moment.isoformat()}


def progress_event(processed: int, total: int) -> dict[str, Any]:
    return {"type": "progress", "processed": processed, "total": total}


def complete_event(stats: dict[str, int], report: dict[str, Any]) -> dict[str, Any]:
    return {"type": "complete", "stats": stats, "report": report}


def error_event(message: str) -> dict[str, Any]:
    return {"type": "error", "message": message}


def run_report(run: SyncRunRecord) -> dict[str, Any]:
    duration = None
    if run.completed_at is not None:
        duration = round((run.completed_at - run.started_at).total_seconds(), 3)
    return {
        "run_id": run.id,
        "sync_type": run.sync_type,
        "source": run.source,
        "status": run.status,
        "processed_units": run.processed_units,
        "total_units": run.total_units,
        "duration_seconds": duration,
    }


def terminal_event_for_run(run: SyncRunRecord) -> dict[str, Any]:
    if run.status == "failed":
        return error_event(run.error or "sync failed")
    return complete_event(run.stats.as_dict(), run_report(run))


def encode_event(event: dict[str, Any]) -> str:
    return json.dumps(event, separators=(",", ":"), default=str) + "\n"


@dataclass(slots=True)
class _Channel:
    history: list[dict[str, Any]] = field(default_factory=list)
    terminal: dict[str, Any] | None = None
    subscribers: list[asyncio.Queue[dict[str, Any]]] = field(default_factory=list)
    finished_at: float | None = None


class ProgressBroker:
    """In-process publish/subscribe of run events keyed by run id.

    Subscribing snapshots the buffered history and registers the live queue
    without yielding to the event loop in between, so no event is delivered
    twice or skipped. Terminal channels are kept for `retention_seconds`.
    """

    def __init__(self, retention_seconds: float = 3600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._channels: dict[str, _Channel] = {}

    def open(self, run_id: str) -> None:
        self.prune()
        self._channels.setdefault(run_id, _Channel())

    def knows(self, run_id: str) -> bool:
        self.prune()
        return run_id in self._channels

    def is_active(self, run_id: str) -> bool:
        channel = self._channels.get(run_id)
        return channel is not None and channel.terminal is None

    def publish(self, run_id: str, event: dict[str, Any]) -> None:
        channel = self._channels.get(run_id)
        if channel is None:
            channel = self._channels[run_id] = _Channel()
        if channel.terminal is not None:
            logger.warning("dropping event after terminal run_id=%s type=%s", run_id, event.get("type"))
            return
        if event.get("type") in TERMINAL_EVENT_TYPES:
            channel.terminal = event
            channel.finished_at = self._clock()
        else:
            channel.history.append(event)
        for queue in channel.subscribers:
            queue.put_nowait(event)

    async def subscribe(self, run_id: str) -> AsyncIterator[dict[str, Any]]:
        """Yield buffered events, then live ones, ending after the terminal event."""
        channel = self._channels.get(run_id)
        if channel is None:
            return
        replay = list(channel.history)
        terminal = channel.terminal
        queue: asyncio.Queue[dict[str, Any]] | None = None
        if terminal is None:
            queue = asyncio.Queue()
            channel.subscribers.append(queue)
        try:
            for event in replay:
                yield event
            if terminal is not None:
                yield terminal
                return
            assert queue is not None
            while True:
                event = await queue.get()
                yield event
                if event.get("type") in TERMINAL_EVENT_TYPES:
                    return
        finally:
            if queue is not None and queue in channel.subscribers:
                channel.subscribers.remove(queue)

    def prune(self) -> int:
        now = self._clock()
        expired = [
            run_id
            for run_id, channel in self._channels.items()
            if channel.finished_at is not None and now - channel.finished_at >= self.retention_seconds
        ]
        for run_id in expired:
            del self._channels[run_id]
        return len(expired)


class RunReader(Protocol):
    async def get_sync_run(self, run_id: str) -> SyncRunRecord: ...


async def persisted_run_events(
    repository: RunReader,
    run_id: str,
    *,
    poll_interval_seconds: float = 2.0,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncIterator[dict[str, Any]]:
    """Replay a run from its stored logs, polling until it reaches a terminal state.

    Used when the run is owned by another process or has aged out of the broker.
    """
    seen_logs = 0
    last_progress: tuple[int, int] | None = None
    while True:
        run = await repository.get_sync_run(run_id)
        for entry in run.logs[seen_logs:]:
            yield _log_entry_event(entry)
        seen_logs = len(run.logs)
        if run.status != "running":
            yield terminal_event_for_run(run)
            return
        progress = (run.processed_units, run.total_units)
        if progress != last_progress:
            yield progress_event(*progress)
            last_progress = progress
        await sleep(poll_interval_seconds)


def _log_entry_event(entry: LogEntry) -> dict[str, Any]:
    return log_event(entry.message, entry.level, entry.timestamp)


@lru_cache
def get_broker() -> ProgressBroker:
    return ProgressBroker(retention_seconds=get_settings().progress_retention_seconds)
