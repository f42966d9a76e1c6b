from __future__ import annotations

from datetime import datetime

from infrastructure.database.ops.telemetry import TelemetryOperations
from plantcare.domain.device import Reading
from plantcare.domain.irrigation import IrrigationEvent
from plantcare.enums.common import TriggerType
from plantcare.utils.time import coerce_datetime


class TelemetryRepository:
    """Typed access to readings and irrigation events.

    Satisfies ``plantcare.services.protocols.TelemetryStore``. Errors from the
    backend propagate; the sink adapter decides what to do with them.
    """

    def __init__(self, backend: TelemetryOperations) -> None:
        self._backend = backend

    def write_reading(self, device_id: str, reading: Reading) -> None:
        self._backend.insert_reading(
            device_id=device_id,
            observed_at=reading.observed_at,
            moisture=reading.moisture,
            temperature=reading.temperature,
            humidity=reading.humidity,
            light=reading.light,
        )

    def readings_since(self, device_id: str, since: datetime, limit: int = 1000) -> list[Reading]:
        rows = self._backend.get_readings_since(device_id, since, limit=limit)
        return [
            Reading(
                observed_at=coerce_datetime(row["observed_at"]),
                moisture=row["moisture"],
                temperature=row["temperature"],
                humidity=row["humidity"],
                light=row["light"],
            )
            for row in rows
        ]

    def write_irrigation_event(self, event: IrrigationEvent) -> None:
        self._backend.insert_irrigation_event(
            device_id=event.device_id,
            triggered_at=event.triggered_at,
            trigger_type=event.trigger_type.value,
            duration_ms=event.duration_ms,
            success=event.success,
            reason=event.reason,
        )

    def irrigation_events_since(
        self,
        since: datetime,
        *,
        device_id: str | None = None,
        limit: int = 100,
    ) -> list[IrrigationEvent]:
        rows = self._backend.get_irrigation_events_since(since, device_id=device_id, limit=limit)
        return [
            IrrigationEvent(
                device_id=row["device_id"],
                triggered_at=coerce_datetime(row["triggered_at"]),
                trigger_type=TriggerType(row["trigger_type"]),
                duration_ms=int(row["duration_ms"]),
                success=bool(row["success"]),
                reason=row["reason"],
            )
            for row in rows
        ]

    def prune(self, before: datetime) -> int:
        """Delete readings and events older than ``before``; returns rows removed."""
        return self._backend.delete_readings_before(before) + self._backend.delete_irrigation_events_before(before)

    def ping(self) -> None:
        self._backend.ping()
