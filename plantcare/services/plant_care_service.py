"""
PlantCare Service
=================
Application-level query and command surface over the core components.

This is what the HTTP layer (and any other embedding code) talks to:

- health snapshot, history and trend
- device listing, detail, policy and display updates
- manual and scheduled irrigation
- recent irrigation events and readings from storage

Gated manual requests become ``ConflictError`` (carrying the gate reason);
a request that passed the gates but could not be sent becomes ``DeviceError``.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from plantcare.domain.exceptions import ConflictError, DeviceError, NotFoundError, ValidationError
from plantcare.enums.common import GateReason
from plantcare.services.decision_engine import IrrigationDecisionEngine
from plantcare.services.device_registry import DeviceRegistry
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.health_aggregator import HealthAggregator
from plantcare.services.transport_gateway import TransportGateway
from plantcare.utils.time import Clock, coerce_datetime, utc_now

logger = logging.getLogger(__name__)

MAX_WINDOW = timedelta(days=90)


class PlantCareService:
    def __init__(
        self,
        *,
        registry: DeviceRegistry,
        engine: IrrigationDecisionEngine,
        health: HealthAggregator,
        sink: SinkAdapter,
        gateway: TransportGateway,
        clock: Clock = utc_now,
    ) -> None:
        self._registry = registry
        self._engine = engine
        self._health = health
        self._sink = sink
        self._gateway = gateway
        self._clock = clock

    # ------------------------------------------------------------------ health

    def get_health_snapshot(self) -> dict[str, Any]:
        return self._health.snapshot().to_dict()

    def health_history(self, limit: int = 100) -> dict[str, Any]:
        return {
            "history": [s.to_dict() for s in self._health.history(limit)],
            "trend": self._health.trend(),
        }

    # ----------------------------------------------------------------- devices

    def list_devices(self) -> list[dict[str, Any]]:
        return [device.to_dict() for device in self._registry.all()]

    def get_device(self, device_id: str) -> dict[str, Any]:
        device = self._registry.get(device_id)
        if device is None:
            raise NotFoundError(f"Unknown device: {device_id}", detail={"device_id": device_id})
        return device.to_dict()

    def update_policy(self, device_id: str, changes: Any) -> dict[str, Any]:
        """Validate and apply a partial policy, then push it to the device.

        The policy is authoritative on the server; a failed push is logged and
        the device picks it up on the next successful config command.
        """
        device = self._registry.update_config(device_id, changes)
        if not self._gateway.publish_config(device_id, device.config):
            logger.warning("Policy for %s saved but config command not delivered", device_id)
        return device.to_dict()

    def update_details(
        self,
        device_id: str,
        *,
        display_name: str | None = None,
        location_label: str | None = None,
    ) -> dict[str, Any]:
        return self._registry.update_details(
            device_id, display_name=display_name, location_label=location_label
        ).to_dict()

    # -------------------------------------------------------------- irrigation

    def request_manual_irrigation(
        self,
        device_id: str,
        duration_ms: int | None = None,
        reason: str | None = None,
    ) -> dict[str, Any]:
        """
        Water a device now, subject to daily cap and cooldown.

        Raises:
            NotFoundError: unknown device.
            ValidationError: duration outside pump bounds.
            ConflictError: a gate refused the request (``detail["reason"]``).
            DeviceError: the command could not be sent.
        """
        decision = self._engine.trigger_manual(device_id, duration_ms=duration_ms, reason=reason)
        if decision.permitted:
            return decision.to_dict()

        detail = {"device_id": device_id, "reason": decision.reason.value, **decision.detail}
        if decision.reason is GateReason.TRANSPORT_UNAVAILABLE:
            raise DeviceError("Irrigation command could not be delivered", detail=detail)
        raise ConflictError(f"Irrigation refused: {decision.reason.value}", detail=detail)

    def schedule_irrigation(
        self,
        device_id: str,
        run_at: datetime | str,
        duration_ms: int | None = None,
    ) -> dict[str, Any]:
        when = coerce_datetime(run_at)
        if when is None:
            raise ValidationError("run_at must be an ISO-8601 timestamp", detail={"run_at": run_at})
        if when <= self._clock():
            raise ValidationError("run_at must be in the future", detail={"run_at": when.isoformat()})
        job_id = self._engine.schedule_irrigation(device_id, when, duration_ms)
        return {"job_id": job_id, "device_id": device_id, "run_at": when.isoformat(), "duration_ms": duration_ms}

    def recent_irrigation_events(
        self,
        device_id: str | None = None,
        window: timedelta = timedelta(days=7),
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        if device_id is not None and device_id not in self._registry:
            raise NotFoundError(f"Unknown device: {device_id}", detail={"device_id": device_id})
        window = min(window, MAX_WINDOW)
        return [e.to_dict() for e in self._sink.query_irrigation_events(device_id, window, limit)]

    def recent_readings(self, device_id: str, window: timedelta = timedelta(hours=24)) -> list[dict[str, Any]]:
        if device_id not in self._registry:
            raise NotFoundError(f"Unknown device: {device_id}", detail={"device_id": device_id})
        window = min(window, MAX_WINDOW)
        return [r.to_dict() for r in self._sink.query_recent(device_id, window)]

    def automation_status(self) -> dict[str, Any]:
        return {"running": self._engine.is_running(), **self._engine.get_stats()}
