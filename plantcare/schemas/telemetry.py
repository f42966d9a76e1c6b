"""Inbound device payloads (telemetry, status, heartbeat).

Numeric fields are strict: a string such as ``"23.5"`` is rejected instead of
being coerced, and NaN/Infinity are refused.
"""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from plantcare.constants import HUMIDITY_RANGE_PCT, MOISTURE_RANGE_PCT, TEMPERATURE_RANGE_C


class TelemetryPayload(BaseModel):
    """Body of ``sensors/<id>/data``."""

    model_config = ConfigDict(strict=True, extra="ignore")

    temperature: float = Field(ge=TEMPERATURE_RANGE_C[0], le=TEMPERATURE_RANGE_C[1], allow_inf_nan=False)
    humidity: float = Field(ge=HUMIDITY_RANGE_PCT[0], le=HUMIDITY_RANGE_PCT[1], allow_inf_nan=False)
    moisture: float = Field(ge=MOISTURE_RANGE_PCT[0], le=MOISTURE_RANGE_PCT[1], allow_inf_nan=False)
    light: float | None = Field(default=None, ge=0, allow_inf_nan=False)
    device: str | None = None
    location: str | None = None


class HeartbeatPayload(BaseModel):
    """Body of ``devices/<id>/heartbeat``; an empty object is valid."""

    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)

    battery_level: float | None = Field(
        default=None,
        ge=0,
        le=100,
        allow_inf_nan=False,
        validation_alias=AliasChoices("batteryLevel", "battery_level", "battery"),
    )
    signal_quality: float | None = Field(
        default=None,
        allow_inf_nan=False,
        validation_alias=AliasChoices("signalQuality", "signal_quality", "wifiStrength", "wifi_rssi", "rssi"),
    )


class StatusPayload(HeartbeatPayload):
    """Body of ``sensors/<id>/status``. Unknown keys are kept as attributes."""

    model_config = ConfigDict(strict=True, extra="allow", populate_by_name=True)

    status: str | None = None

    @property
    def attributes(self) -> dict[str, Any]:
        return dict(self.model_extra or {})
