from plantcare.enums.common import AlertSeverity, CommandType, GateReason, HealthLevel, TriggerType
from plantcare.enums.events import DeviceEvent, EventType, SystemEvent, WateringEvent

__all__ = [
    "AlertSeverity",
    "CommandType",
    "DeviceEvent",
    "EventType",
    "GateReason",
    "HealthLevel",
    "SystemEvent",
    "TriggerType",
    "WateringEvent",
]
