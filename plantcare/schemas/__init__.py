from plantcare.schemas.commands import CommandPayload, ServerStatusPayload
from plantcare.schemas.irrigation import (
    DeviceDetailsUpdate,
    DeviceRegistration,
    ManualIrrigationRequest,
    PolicyUpdate,
    QuietHoursUpdate,
    ScheduleIrrigationRequest,
)
from plantcare.schemas.telemetry import HeartbeatPayload, StatusPayload, TelemetryPayload

__all__ = [
    "CommandPayload",
    "DeviceDetailsUpdate",
    "DeviceRegistration",
    "HeartbeatPayload",
    "ManualIrrigationRequest",
    "PolicyUpdate",
    "QuietHoursUpdate",
    "ScheduleIrrigationRequest",
    "ServerStatusPayload",
    "StatusPayload",
    "TelemetryPayload",
]
