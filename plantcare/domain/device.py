"""
Device Domain
=============
In-memory state of one sensor node / plant. The registry owns the only
mutable instances; everything handed out is a deep copy.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from plantcare.domain.irrigation import IrrigationPolicy
from plantcare.utils.time import to_iso


@dataclass
class Reading:
    """A single telemetry sample; every metric is optional."""

    observed_at: datetime
    moisture: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    light: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed_at": to_iso(self.observed_at),
            "moisture": self.moisture,
            "temperature": self.temperature,
            "humidity": self.humidity,
            "light": self.light,
        }


@dataclass
class Connectivity:
    online: bool = False
    last_seen_at: datetime | None = None
    signal_quality: float | None = None
    battery_level: float | None = None
    reported_status: str | None = None
    attributes: dict[str, Any] = field(default_factory=dict)

    def seen(self, at: datetime) -> None:
        """Advance ``last_seen_at``; it never moves backwards."""
        if self.last_seen_at is None or at > self.last_seen_at:
            self.last_seen_at = at

    def to_dict(self) -> dict[str, Any]:
        return {
            "online": self.online,
            "last_seen_at": to_iso(self.last_seen_at),
            "signal_quality": self.signal_quality,
            "battery_level": self.battery_level,
            "reported_status": self.reported_status,
            "attributes": dict(self.attributes),
        }


@dataclass
class IrrigationStats:
    total_activations: int = 0
    last_activated_at: datetime | None = None
    activations_today: int = 0
    activations_day: date | None = None

    def activations_on(self, day: date) -> int:
        """Successful activations counted for ``day`` (zero once the day rolls over)."""
        return self.activations_today if self.activations_day == day else 0

    def record(self, at: datetime, day: date, *, counts_toward_cap: bool = True) -> None:
        if counts_toward_cap:
            self.activations_today = self.activations_on(day) + 1
            self.activations_day = day
        self.total_activations += 1
        self.last_activated_at = at

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_activations": self.total_activations,
            "last_activated_at": to_iso(self.last_activated_at),
            "activations_today": self.activations_today,
            "activations_day": self.activations_day.isoformat() if self.activations_day else None,
        }


@dataclass
class Device:
    id: str
    config: IrrigationPolicy
    display_name: str = ""
    location_label: str = ""
    connectivity: Connectivity = field(default_factory=Connectivity)
    last_reading: Reading | None = None
    irrigation_stats: IrrigationStats = field(default_factory=IrrigationStats)

    @property
    def online(self) -> bool:
        return self.connectivity.online

    @property
    def moisture(self) -> float | None:
        return self.last_reading.moisture if self.last_reading else None

    @property
    def is_moisture_deficient(self) -> bool:
        moisture = self.moisture
        return moisture is not None and moisture < self.config.moisture_min

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "location_label": self.location_label,
            "config": self.config.to_dict(),
            "connectivity": self.connectivity.to_dict(),
            "last_reading": self.last_reading.to_dict() if self.last_reading else None,
            "irrigation_stats": self.irrigation_stats.to_dict(),
            "needs_water": self.is_moisture_deficient,
        }
