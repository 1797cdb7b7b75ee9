from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse

from jobsync.core.config import Settings, get_settings
from jobsync.schemas.sync import LogEntryOut, SweepOut, SyncRequest, SyncRunOut, SyncStatsOut, SyncTriggerOut
from jobsync.services.orchestrator import SyncOrchestrator, SyncOutcome, get_orchestrator
from jobsync.services.progress import (
    ProgressBroker,
    encode_event,
    get_broker,
    log_event,
    persisted_run_events,
)
from jobsync.services.repository import (
    PostgresRepository,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
    SyncRunRecord,
    get_repository,
)
from jobsync.services.sweeper import run_is_stale, sweep_stuck_runs

router = APIRouter()

NDJSON_MEDIA_TYPE = "application/x-ndjson"


@router.post("", response_model=SyncTriggerOut)
async def trigger_sync(
    payload: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> SyncTriggerOut:
    try:
        if payload.wait:
            outcome = await orchestrator.run(payload.sync_type, payload.source, prune=payload.prune)
        else:
            outcome = await orchestrator.start(payload.sync_type, payload.source, prune=payload.prune)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _trigger_out(outcome)


@router.post("/stream")
async def start_sync_stream(
    payload: SyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
    broker: ProgressBroker = Depends(get_broker),
    repository: PostgresRepository = Depends(get_repository),
) -> StreamingResponse:
    try:
        outcome = await orchestrator.start(payload.sync_type, payload.source, prune=payload.prune)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    events = _run_events(broker, repository, outcome.run_id)
    if outcome.status == "skipped":
        events = _prepend(
            log_event(f"Sync already running; attaching to run {outcome.run_id}", "warning"),
            events,
        )
    return StreamingResponse(
        _ndjson(events),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Sync-Run-Id": outcome.run_id},
    )


@router.get("/stream/{run_id}")
async def reconnect_sync_stream(
    run_id: str,
    broker: ProgressBroker = Depends(get_broker),
    repository: PostgresRepository = Depends(get_repository),
) -> StreamingResponse:
    if not broker.knows(run_id):
        try:
            await repository.get_sync_run(run_id)
        except RepositoryNotFoundError as exc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
        except RepositoryUnavailableError as exc:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return StreamingResponse(
        _ndjson(_run_events(broker, repository, run_id)),
        media_type=NDJSON_MEDIA_TYPE,
        headers={"X-Sync-Run-Id": run_id},
    )


@router.get("/runs", response_model=list[SyncRunOut])
async def list_sync_runs(
    limit: int = Query(default=20, ge=1, le=200),
    source: str | None = Query(default=None),
    run_status: str | None = Query(default=None, alias="status"),
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> list[SyncRunOut]:
    try:
        runs = await repository.list_sync_runs(limit=limit, source=source, status=run_status)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    now = datetime.now(timezone.utc)
    return [_run_out(run, settings, now) for run in runs]


@router.post("/runs/sweep", response_model=SweepOut)
async def sweep_runs(
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> SweepOut:
    try:
        run_ids = await sweep_stuck_runs(repository, threshold_seconds=settings.stuck_run_threshold_seconds)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return SweepOut(failed=len(run_ids), run_ids=run_ids)


@router.get("/runs/{run_id}", response_model=SyncRunOut)
async def get_sync_run(
    run_id: str,
    repository: PostgresRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> SyncRunOut:
    try:
        run = await repository.get_sync_run(run_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return _run_out(run, settings, datetime.now(timezone.utc))


def _trigger_out(outcome: SyncOutcome) -> SyncTriggerOut:
    return SyncTriggerOut(
        run_id=outcome.run_id,
        status=outcome.status,
        stats=SyncStatsOut(**outcome.stats.as_dict()),
        reason=outcome.reason,
    )


def _run_out(run: SyncRunRecord, settings: Settings, now: datetime) -> SyncRunOut:
    return SyncRunOut(
        id=run.id,
        sync_type=run.sync_type,
        source=run.source,
        status=run.status,
        started_at=run.started_at,
        completed_at=run.completed_at,
        stats=SyncStatsOut(**run.stats.as_dict()),
        logs=[LogEntryOut(timestamp=entry.timestamp, level=entry.level, message=entry.message) for entry in run.logs],
        total_units=run.total_units,
        processed_units=run.processed_units,
        error=run.error,
        stale=run_is_stale(run, threshold_seconds=settings.stuck_run_threshold_seconds, now=now),
    )


def _run_events(broker: ProgressBroker, repository: Any, run_id: str) -> AsyncIterator[dict[str, Any]]:
    if broker.knows(run_id):
        return broker.subscribe(run_id)
    return persisted_run_events(repository, run_id)


async def _prepend(first: dict[str, Any], rest: AsyncIterator[dict[str, Any]]) -> AsyncIterator[dict[str, Any]]:
    yield first
    async for event in rest:
        yield event


async def _ndjson(events: AsyncIterator[dict[str, Any]]) -> AsyncIterator[str]:
    async for event in events:
        yield encode_event(event)
