from enum import Enum
from typing import TypeAlias


class DeviceEvent(str, Enum):
    """Device lifecycle and telemetry events published by the registry/gateway."""

    READING_RECEIVED = "device.reading_received"
    STATUS_CHANGED = "device.status_changed"
    HEARTBEAT = "device.heartbeat"
    PROVISIONED = "device.provisioned"
    CONFIG_UPDATED = "device.config_updated"


class WateringEvent(str, Enum):
    RECORDED = "irrigation.recorded"


class SystemEvent(str, Enum):
    HEALTH_CHANGED = "system.health_changed"
    TRANSPORT_CONNECTIVITY_CHANGED = "system.transport_connectivity_changed"


EventType: TypeAlias = DeviceEvent | WateringEvent | SystemEvent
