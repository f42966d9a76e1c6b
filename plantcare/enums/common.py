from enum import Enum


class TriggerType(str, Enum):
    """What caused an irrigation attempt."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"


class GateReason(str, Enum):
    """Why an irrigation decision was refused (or why an attempt failed)."""

    DEVICE_OFFLINE = "device_offline"
    NO_DEFICIT = "no_deficit"
    QUIET_HOURS = "quiet_hours"
    DAILY_CAP = "daily_cap"
    COOLDOWN = "cooldown"
    TRANSPORT_UNAVAILABLE = "transport_unavailable"
    INVALID_POLICY = "invalid_policy"


class HealthLevel(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class AlertSeverity(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"


class CommandType(str, Enum):
    """Commands the core sends to devices on ``commands/<id>/<command>``."""

    WATER = "water"
    CONFIG = "config"
