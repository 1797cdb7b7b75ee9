from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI
from starlette.requests import Request

from jobsync.api.router import api_router
from jobsync.core.config import get_settings
from jobsync.core.telemetry import TelemetryRuntime, setup_api_telemetry, shutdown_api_telemetry
from jobsync.services.orchestrator import get_orchestrator
from jobsync.services.progress import get_broker
from jobsync.services.repository import get_repository

settings = get_settings()
_telemetry_runtime: TelemetryRuntime | None = None
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    try:
        yield
    finally:
        # Background runs finish before the pool they write to is closed.
        orchestrator = get_orchestrator()
        if orchestrator.active_run_count:
            logger.info("waiting for %s background sync run(s) to finish", orchestrator.active_run_count)
        await orchestrator.drain()
        if _telemetry_runtime is not None:
            shutdown_api_telemetry(app, _telemetry_runtime)
        await get_repository().close()
        get_orchestrator.cache_clear()
        get_broker.cache_clear()
        get_repository.cache_clear()


app = FastAPI(title=settings.app_name, lifespan=lifespan)
_telemetry_runtime = setup_api_telemetry(app, settings)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    started_at = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started_at) * 1000.0
    logger.info(
        "http request method=%s path=%s status=%s duration_ms=%.2f",
        request.method,
        request.url.path,
        response.status_code,
        elapsed_ms,
    )
    return response


app.include_router(api_router)
