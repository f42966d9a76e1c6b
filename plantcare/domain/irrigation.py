"""
Irrigation Domain
=================
Immutable policy and event values plus the pure gate evaluation used by the
decision engine.

Gate order for automatic triggers (first failure wins):

1. device offline
2. no moisture deficit (reading absent or at/above ``moisture_min``)
3. quiet hours, daily cap, cooldown

Manual triggers only run the daily cap and cooldown gates. Scheduled
triggers skip the moisture check but keep everything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping

from plantcare.constants import MOISTURE_RANGE_PCT, PUMP_MAX_DURATION_MS, PUMP_MIN_DURATION_MS
from plantcare.enums.common import GateReason, TriggerType
from plantcare.utils.time import elapsed_ms, to_iso


@dataclass(frozen=True)
class QuietHours:
    """Local-time window during which automatic watering is suppressed.

    ``start_hour > end_hour`` wraps past midnight (22 -> 6 covers 22:00-05:59).
    ``start_hour == end_hour`` means there is no quiet window.
    """

    start_hour: int
    end_hour: int

    def contains(self, hour: int) -> bool:
        if self.start_hour == self.end_hour:
            return False
        if self.start_hour > self.end_hour:
            return hour >= self.start_hour or hour < self.end_hour
        return self.start_hour <= hour < self.end_hour

    def to_dict(self) -> dict[str, int]:
        return {"start_hour": self.start_hour, "end_hour": self.end_hour}


@dataclass(frozen=True)
class IrrigationPolicy:
    """Per-device watering policy. Replaced wholesale on update."""

    moisture_min: float
    moisture_max: float
    duration_ms: int
    max_activations_per_day: int
    quiet_hours: QuietHours
    cooldown_ms: int

    def validate(self) -> list[str]:
        """Return every constraint violation; an empty list means valid."""
        errors: list[str] = []
        low, high = MOISTURE_RANGE_PCT
        for name in ("moisture_min", "moisture_max"):
            value = getattr(self, name)
            if not low <= value <= high:
                errors.append(f"{name} must be between {low:g} and {high:g}")
        if self.moisture_min >= self.moisture_max:
            errors.append("moisture_min must be lower than moisture_max")
        if not PUMP_MIN_DURATION_MS <= self.duration_ms <= PUMP_MAX_DURATION_MS:
            errors.append(f"duration_ms must be between {PUMP_MIN_DURATION_MS} and {PUMP_MAX_DURATION_MS}")
        if self.max_activations_per_day < 0:
            errors.append("max_activations_per_day must not be negative")
        if self.cooldown_ms < 0:
            errors.append("cooldown_ms must not be negative")
        for name in ("start_hour", "end_hour"):
            hour = getattr(self.quiet_hours, name)
            if not 0 <= hour <= 23:
                errors.append(f"quiet_hours.{name} must be between 0 and 23")
        return errors

    @property
    def is_valid(self) -> bool:
        return not self.validate()

    def merged(self, changes: Mapping[str, Any]) -> "IrrigationPolicy":
        """Return a copy with ``changes`` applied (snake_case keys, already typed)."""
        changes = dict(changes)
        quiet = changes.pop("quiet_hours", None)
        if quiet:
            quiet_hours = QuietHours(
                start_hour=quiet.get("start_hour", self.quiet_hours.start_hour),
                end_hour=quiet.get("end_hour", self.quiet_hours.end_hour),
            )
            changes["quiet_hours"] = quiet_hours
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "moisture_min": self.moisture_min,
            "moisture_max": self.moisture_max,
            "duration_ms": self.duration_ms,
            "max_activations_per_day": self.max_activations_per_day,
            "quiet_hours": self.quiet_hours.to_dict(),
            "cooldown_ms": self.cooldown_ms,
        }


@dataclass(frozen=True)
class IrrigationEvent:
    """Append-only record of one irrigation attempt."""

    device_id: str
    triggered_at: datetime
    trigger_type: TriggerType
    duration_ms: int
    success: bool
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "triggered_at": to_iso(self.triggered_at),
            "trigger_type": self.trigger_type.value,
            "duration_ms": self.duration_ms,
            "success": self.success,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating the gates for one device."""

    device_id: str
    permitted: bool
    trigger_type: TriggerType
    reason: GateReason | None = None
    duration_ms: int | None = None
    detail: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def allow(cls, device_id: str, trigger_type: TriggerType, duration_ms: int) -> "Decision":
        return cls(device_id=device_id, permitted=True, trigger_type=trigger_type, duration_ms=duration_ms)

    @classmethod
    def deny(cls, device_id: str, trigger_type: TriggerType, reason: GateReason, **detail: Any) -> "Decision":
        return cls(device_id=device_id, permitted=False, trigger_type=trigger_type, reason=reason, detail=detail)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "permitted": self.permitted,
            "trigger_type": self.trigger_type.value,
            "reason": self.reason.value if self.reason else None,
            "duration_ms": self.duration_ms,
            "detail": dict(self.detail),
        }


def evaluate_gates(
    *,
    device_id: str,
    policy: IrrigationPolicy,
    online: bool,
    moisture: float | None,
    local_hour: int,
    activations_today: int,
    last_activated_at: datetime | None,
    now: datetime,
    trigger_type: TriggerType = TriggerType.AUTOMATIC,
    duration_ms: int | None = None,
) -> Decision:
    """Run the irrigation gates in order and return the first refusal, if any.

    ``activations_today`` must already be reset for ``now``'s day by the caller.
    """
    duration = duration_ms if duration_ms is not None else policy.duration_ms

    if trigger_type is not TriggerType.MANUAL and not online:
        return Decision.deny(device_id, trigger_type, GateReason.DEVICE_OFFLINE)

    if trigger_type is TriggerType.AUTOMATIC and (moisture is None or moisture >= policy.moisture_min):
        return Decision.deny(
            device_id,
            trigger_type,
            GateReason.NO_DEFICIT,
            moisture=moisture,
            moisture_min=policy.moisture_min,
        )

    if trigger_type is not TriggerType.MANUAL and policy.quiet_hours.contains(local_hour):
        return Decision.deny(device_id, trigger_type, GateReason.QUIET_HOURS, local_hour=local_hour)

    if activations_today >= policy.max_activations_per_day:
        return Decision.deny(
            device_id,
            trigger_type,
            GateReason.DAILY_CAP,
            activations_today=activations_today,
            max_activations_per_day=policy.max_activations_per_day,
        )

    if last_activated_at is not None:
        since_ms = elapsed_ms(last_activated_at, now)
        if since_ms < policy.cooldown_ms:
            return Decision.deny(
                device_id,
                trigger_type,
                GateReason.COOLDOWN,
                remaining_ms=int(policy.cooldown_ms - since_ms),
            )

    return Decision.allow(device_id, trigger_type, duration)
