"""
Irrigation Decision Engine
==========================

Decides, per device, whether to water now and carries the decision out.

Every evaluation holds the device's registry lock from gate check through
publish and stats update, so two triggers for the same device can never
both fire. Gated decisions are returned to the caller but are not recorded
as irrigation events; only publish attempts are.

Send failures are not retried here. The next scheduled tick is the retry.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone, tzinfo
from typing import Any

from plantcare.constants import PUMP_MAX_DURATION_MS, PUMP_MIN_DURATION_MS
from plantcare.domain.exceptions import ValidationError
from plantcare.domain.irrigation import Decision, IrrigationEvent, evaluate_gates
from plantcare.enums.common import CommandType, GateReason, TriggerType
from plantcare.enums.events import WateringEvent
from plantcare.schemas.events import IrrigationRecordedPayload
from plantcare.services.device_registry import DeviceRegistry
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.protocols import CommandPublisher
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import Clock, to_iso, utc_now
from plantcare.workers.unified_scheduler import UnifiedScheduler

logger = logging.getLogger(__name__)

TICK_TASK = "irrigation.decision_tick"
TICK_JOB_ID = "irrigation_decision_tick"
SCHEDULED_TASK = "irrigation.scheduled_trigger"

_DEFAULT_REASONS = {
    TriggerType.AUTOMATIC: "moisture_below_min",
    TriggerType.SCHEDULED: "scheduled",
    TriggerType.MANUAL: "manual",
}


class IrrigationDecisionEngine:
    """Gate evaluation plus water-command dispatch for every registered device."""

    def __init__(
        self,
        registry: DeviceRegistry,
        publisher: CommandPublisher,
        sink: SinkAdapter,
        *,
        event_bus: EventBus | None = None,
        scheduler: UnifiedScheduler | None = None,
        clock: Clock = utc_now,
        tz: tzinfo = timezone.utc,
        interval_seconds: int = 300,
        enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._publisher = publisher
        self._sink = sink
        self._event_bus = event_bus
        self._scheduler = scheduler
        self._clock = clock
        self._tz = tz
        self._interval_seconds = int(interval_seconds)
        self._enabled = enabled

        self._stats_lock = threading.Lock()
        self._ticks = 0
        self._evaluated = 0
        self._activations = 0
        self._failures = 0
        self._errors = 0
        self._skips: dict[str, int] = {}
        self._last_tick_at: datetime | None = None

    # ------------------------------------------------------------ evaluation

    def evaluate_device(
        self,
        device_id: str,
        trigger_type: TriggerType = TriggerType.AUTOMATIC,
        duration_ms: int | None = None,
        reason: str | None = None,
    ) -> Decision:
        """
        Evaluate the gates for one device and water it when they all pass.

        Raises:
            NotFoundError: the device is not registered.
        """
        now = self._clock()
        local_now = now.astimezone(self._tz)
        event: IrrigationEvent | None = None

        with self._registry.exclusive(device_id) as device:
            policy = device.config
            errors = policy.validate()
            if errors:
                logger.error("Invalid irrigation policy on %s, skipping: %s", device_id, "; ".join(errors))
                decision = Decision.deny(device_id, trigger_type, GateReason.INVALID_POLICY, errors=errors)
                self._count_decision(decision)
                return decision

            decision = evaluate_gates(
                device_id=device_id,
                policy=policy,
                online=device.online,
                moisture=device.moisture,
                local_hour=local_now.hour,
                activations_today=device.irrigation_stats.activations_on(local_now.date()),
                last_activated_at=device.irrigation_stats.last_activated_at,
                now=now,
                trigger_type=trigger_type,
                duration_ms=duration_ms,
            )
            if not decision.permitted:
                logger.debug("Irrigation for %s gated (%s): %s", device_id, decision.reason.value, decision.detail)
                self._count_decision(decision)
                return decision

            duration = int(decision.duration_ms)
            sent = self._publisher.publish_command(device_id, CommandType.WATER.value, duration_ms=duration)
            if sent:
                self._registry.record_activation(
                    device_id,
                    now,
                    local_now.date(),
                    counts_toward_cap=trigger_type is not TriggerType.SCHEDULED,
                )
                event = IrrigationEvent(
                    device_id=device_id,
                    triggered_at=now,
                    trigger_type=trigger_type,
                    duration_ms=duration,
                    success=True,
                    reason=reason or _DEFAULT_REASONS[trigger_type],
                )
                logger.info("Watering %s for %sms (%s)", device_id, duration, trigger_type.value)
            else:
                event = IrrigationEvent(
                    device_id=device_id,
                    triggered_at=now,
                    trigger_type=trigger_type,
                    duration_ms=duration,
                    success=False,
                    reason=GateReason.TRANSPORT_UNAVAILABLE.value,
                )
                decision = Decision.deny(
                    device_id, trigger_type, GateReason.TRANSPORT_UNAVAILABLE, duration_ms=duration
                )
                logger.warning("Water command for %s not sent: transport unavailable", device_id)
            self._count_decision(decision)

        self._record(event)
        return decision

    def _record(self, event: IrrigationEvent) -> None:
        self._sink.write_irrigation_event(event)
        if self._event_bus is not None:
            self._event_bus.publish(
                WateringEvent.RECORDED,
                IrrigationRecordedPayload(
                    device_id=event.device_id,
                    trigger_type=event.trigger_type,
                    duration_ms=event.duration_ms,
                    success=event.success,
                    reason=event.reason,
                    triggered_at=to_iso(event.triggered_at),
                ),
            )

    def _count_decision(self, decision: Decision) -> None:
        with self._stats_lock:
            self._evaluated += 1
            if decision.permitted:
                self._activations += 1
            elif decision.reason is GateReason.TRANSPORT_UNAVAILABLE:
                self._failures += 1
            else:
                key = decision.reason.value
                self._skips[key] = self._skips.get(key, 0) + 1

    def run_tick(self) -> list[Decision]:
        """Evaluate every registered device once (automatic trigger)."""
        decisions: list[Decision] = []
        for device_id in self._registry.ids():
            try:
                decisions.append(self.evaluate_device(device_id))
            except Exception as exc:
                with self._stats_lock:
                    self._errors += 1
                logger.error("Irrigation evaluation failed for %s: %s", device_id, exc, exc_info=True)
        with self._stats_lock:
            self._ticks += 1
            self._last_tick_at = self._clock()
        fired = sum(1 for d in decisions if d.permitted)
        logger.info("Irrigation tick evaluated %s device(s), %s activation(s)", len(decisions), fired)
        return decisions

    # ------------------------------------------------------------ triggers

    def trigger_manual(
        self,
        device_id: str,
        duration_ms: int | None = None,
        reason: str | None = None,
    ) -> Decision:
        """
        Manual watering request. Skips the offline, moisture and quiet-hour
        checks; daily cap and cooldown still apply.

        Raises:
            NotFoundError: unknown device.
            ValidationError: ``duration_ms`` outside the pump bounds.
        """
        if duration_ms is not None and not PUMP_MIN_DURATION_MS <= duration_ms <= PUMP_MAX_DURATION_MS:
            raise ValidationError(
                f"duration_ms must be between {PUMP_MIN_DURATION_MS} and {PUMP_MAX_DURATION_MS}",
                detail={"duration_ms": duration_ms},
            )
        return self.evaluate_device(
            device_id,
            trigger_type=TriggerType.MANUAL,
            duration_ms=duration_ms,
            reason=reason or _DEFAULT_REASONS[TriggerType.MANUAL],
        )

    def schedule_irrigation(self, device_id: str, run_at: datetime, duration_ms: int | None = None) -> str:
        """Queue a one-shot ``scheduled`` trigger; returns the job id."""
        if self._scheduler is None:
            raise ValidationError("No scheduler available for scheduled irrigation")
        if duration_ms is not None and not PUMP_MIN_DURATION_MS <= duration_ms <= PUMP_MAX_DURATION_MS:
            raise ValidationError(
                f"duration_ms must be between {PUMP_MIN_DURATION_MS} and {PUMP_MAX_DURATION_MS}",
                detail={"duration_ms": duration_ms},
            )
        # Fail fast on unknown devices rather than at run time.
        with self._registry.exclusive(device_id):
            pass
        if not self._scheduler.has_task(SCHEDULED_TASK):
            self._scheduler.register_task(SCHEDULED_TASK, self._run_scheduled)
        job = self._scheduler.schedule_once(
            SCHEDULED_TASK,
            run_at,
            job_id=f"irrigation_scheduled_{device_id}_{int(run_at.timestamp())}",
            namespace="irrigation",
            kwargs={"device_id": device_id, "duration_ms": duration_ms},
        )
        return job.job_id

    def _run_scheduled(self, device_id: str, duration_ms: int | None = None) -> dict[str, Any]:
        decision = self.evaluate_device(device_id, trigger_type=TriggerType.SCHEDULED, duration_ms=duration_ms)
        return decision.to_dict()

    # ------------------------------------------------------------ scheduling

    def register_scheduled_tasks(self) -> None:
        """Register the periodic decision tick with the scheduler."""
        if not self._scheduler:
            logger.warning("No scheduler available, skipping task registration")
            return
        if not self._enabled:
            logger.info("Irrigation automation disabled; decision tick not scheduled")
            return

        @self._scheduler.task(TICK_TASK)
        def decision_tick_task():
            return len(self.run_tick())

        self._scheduler.register_task(SCHEDULED_TASK, self._run_scheduled)
        self._scheduler.schedule_interval(
            task_name=TICK_TASK,
            interval_seconds=self._interval_seconds,
            job_id=TICK_JOB_ID,
            namespace="irrigation",
        )
        logger.info("Registered irrigation decision tick (every %ss)", self._interval_seconds)

    def is_running(self) -> bool:
        return bool(self._scheduler and self._scheduler.is_job_active(TICK_JOB_ID))

    def get_stats(self) -> dict[str, Any]:
        with self._stats_lock:
            return {
                "enabled": self._enabled,
                "interval_seconds": self._interval_seconds,
                "ticks": self._ticks,
                "evaluated": self._evaluated,
                "activations": self._activations,
                "failures": self._failures,
                "errors": self._errors,
                "skips": dict(self._skips),
                "last_tick_at": to_iso(self._last_tick_at),
            }
