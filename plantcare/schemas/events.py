"""Payloads published on the internal event bus.

Subscribers receive these as plain dicts (see ``EventBus.publish``).
"""

from typing import Any, Literal

from pydantic import BaseModel, Field

from plantcare.enums.common import HealthLevel, TriggerType


class ReadingReceivedPayload(BaseModel):
    device_id: str
    observed_at: str
    moisture: float | None = None
    temperature: float | None = None
    humidity: float | None = None
    light: float | None = None


class DeviceStatusChangedPayload(BaseModel):
    device_id: str
    online: bool
    last_seen_at: str | None = None
    timestamp: str


class HeartbeatPayload(BaseModel):
    device_id: str
    battery_level: float | None = None
    signal_quality: float | None = None
    timestamp: str


class DeviceProvisionedPayload(BaseModel):
    device_id: str
    source: Literal["message", "startup"]
    timestamp: str


class ConfigUpdatedPayload(BaseModel):
    device_id: str
    config: dict[str, Any]
    timestamp: str


class IrrigationRecordedPayload(BaseModel):
    device_id: str
    trigger_type: TriggerType
    duration_ms: int
    success: bool
    reason: str
    triggered_at: str


class HealthChangedPayload(BaseModel):
    previous: HealthLevel | None = None
    current: HealthLevel
    alerts: list[dict[str, Any]] = Field(default_factory=list)
    timestamp: str


class ConnectivityStatePayload(BaseModel):
    connection_type: Literal["mqtt"] = "mqtt"
    status: Literal["connected", "disconnected", "reconnecting", "gave_up"]
    endpoint: str
    attempt: int | None = None
    timestamp: str
