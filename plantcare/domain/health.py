"""
System Health Status
====================
Point-in-time health of the core plus the compact summary kept in history.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from plantcare.enums.common import AlertSeverity, HealthLevel


@dataclass(frozen=True)
class ComponentHealth:
    status: HealthLevel
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status.value, "detail": dict(self.detail)}


@dataclass(frozen=True)
class Alert:
    component: str
    severity: AlertSeverity
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"component": self.component, "severity": self.severity.value, "message": self.message}


@dataclass(frozen=True)
class HealthSnapshot:
    overall: HealthLevel
    components: dict[str, ComponentHealth]
    alerts: list[Alert]
    observed_at: datetime

    def summary(self) -> "SnapshotSummary":
        return SnapshotSummary(observed_at=self.observed_at, overall=self.overall, alert_count=len(self.alerts))

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall.value,
            "components": {name: c.to_dict() for name, c in self.components.items()},
            "alerts": [a.to_dict() for a in self.alerts],
            "observed_at": self.observed_at.isoformat(),
        }


@dataclass(frozen=True)
class SnapshotSummary:
    observed_at: datetime
    overall: HealthLevel
    alert_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "observed_at": self.observed_at.isoformat(),
            "overall": self.overall.value,
            "alert_count": self.alert_count,
        }
