from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from jobsync_worker.core.config import Settings

TriggerKind = Literal["sync", "sweep"]


@dataclass(frozen=True, slots=True)
class Trigger:
    name: str
    kind: TriggerKind
    interval_seconds: float
    sync_type: str | None = None
    source: str | None = None


def build_triggers(settings: Settings) -> list[Trigger]:
    triggers = [
        Trigger(
            name="sweep:stuck-runs",
            kind="sweep",
            interval_seconds=settings.stuck_sweep_interval_seconds,
        )
    ]
    for source in settings.job_sync_sources:
        triggers.append(
            Trigger(
                name=f"job_sync:{source}",
                kind="sync",
                interval_seconds=settings.job_sync_interval_seconds,
                sync_type="job_sync",
                source=source,
            )
        )
    if settings.discovery_enabled:
        triggers.append(
            Trigger(
                name="discovery",
                kind="sync",
                interval_seconds=settings.discovery_interval_seconds,
                sync_type="discovery",
            )
        )
    return triggers


class TriggerSchedule:
    """Tracks when each trigger last fired; never-fired triggers are due at once."""

    def __init__(self, triggers: list[Trigger]) -> None:
        self.triggers = list(triggers)
        self._last_fired: dict[str, float] = {}

    def due(self, now: float) -> list[Trigger]:
        due: list[Trigger] = []
        for trigger in self.triggers:
            last = self._last_fired.get(trigger.name)
            if last is None or now - last >= trigger.interval_seconds:
                due.append(trigger)
        return due

    def mark_fired(self, trigger: Trigger, now: float) -> None:
        self._last_fired[trigger.name] = now

    def seconds_until_next(self, now: float) -> float:
        waits = []
        for trigger in self.triggers:
            last = self._last_fired.get(trigger.name)
            if last is None:
                return 0.0
            waits.append(max(0.0, trigger.interval_seconds - (now - last)))
        return min(waits) if waits else 0.0
