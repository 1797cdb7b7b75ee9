from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any

from opentelemetry import trace

from jobsync_worker.core.config import get_settings
from jobsync_worker.core.telemetry import configure_worker_logging, worker_telemetry
from jobsync_worker.jobs.retry import RetryExhaustedError
from jobsync_worker.jobs.schedule import Trigger, TriggerSchedule, build_triggers
from jobsync_worker.services.sync_client import SyncClient

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


async def fire_trigger(client: SyncClient, trigger: Trigger) -> dict[str, Any] | None:
    """Run one trigger; exhausted retries are logged and swallowed until the next interval."""
    with tracer.start_as_current_span("worker.trigger") as span:
        span.set_attribute("trigger.name", trigger.name)
        try:
            if trigger.kind == "sweep":
                result = await client.sweep_stuck_runs()
                if result.get("failed"):
                    logger.warning("stuck sync runs failed: %s", result.get("run_ids"))
                return result
            assert trigger.sync_type is not None
            result = await client.trigger_sync(trigger.sync_type, trigger.source)
        except RetryExhaustedError as exc:
            span.record_exception(exc)
            logger.error("trigger %s gave up: %s", trigger.name, exc)
            return None
        if result.get("status") == "skipped":
            logger.info("trigger %s skipped: %s run_id=%s", trigger.name, result.get("reason"), result.get("run_id"))
        else:
            logger.info("trigger %s started run_id=%s", trigger.name, result.get("run_id"))
        return result


async def run_worker() -> None:
    settings = get_settings()
    configure_worker_logging()
    client = SyncClient(
        settings.api_base_url,
        timeout_seconds=settings.request_timeout_seconds,
        attempts=settings.retry_attempts,
        base_delay_seconds=settings.retry_base_delay_seconds,
    )
    schedule = TriggerSchedule(build_triggers(settings))
    backoff = settings.poll_interval_seconds

    with worker_telemetry(settings):
        while True:
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    for trigger in schedule.due(now):
                        await fire_trigger(client, trigger)
                        schedule.mark_fired(trigger, now)
                    backoff = settings.poll_interval_seconds
                wait_for = min(settings.poll_interval_seconds, schedule.seconds_until_next(time.monotonic()))
                await asyncio.sleep(max(wait_for, 0.1))
            except Exception as exc:  # pragma: no cover - bootstrap robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(backoff * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for


if __name__ == "__main__":
    asyncio.run(run_worker())
