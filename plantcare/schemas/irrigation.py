"""Caller-facing irrigation schemas (policy updates, manual requests, registration)."""

from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from plantcare.constants import PUMP_MAX_DURATION_MS, PUMP_MIN_DURATION_MS


class QuietHoursUpdate(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    start_hour: int | None = Field(
        default=None, ge=0, le=23, validation_alias=AliasChoices("startHour", "start_hour", "start")
    )
    end_hour: int | None = Field(default=None, ge=0, le=23, validation_alias=AliasChoices("endHour", "end_hour", "end"))


class PolicyUpdate(BaseModel):
    """Partial irrigation policy. Omitted fields keep their current value.

    Range checks here cover single fields; cross-field rules (``min < max``)
    are enforced on the merged policy.
    """

    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    moisture_min: float | None = Field(
        default=None,
        ge=0,
        le=100,
        allow_inf_nan=False,
        validation_alias=AliasChoices("moistureMin", "moisture_min"),
    )
    moisture_max: float | None = Field(
        default=None,
        ge=0,
        le=100,
        allow_inf_nan=False,
        validation_alias=AliasChoices("moistureMax", "moisture_max"),
    )
    duration_ms: int | None = Field(
        default=None,
        ge=PUMP_MIN_DURATION_MS,
        le=PUMP_MAX_DURATION_MS,
        validation_alias=AliasChoices("durationMs", "duration_ms", "duration"),
    )
    max_activations_per_day: int | None = Field(
        default=None,
        ge=0,
        validation_alias=AliasChoices("maxActivationsPerDay", "max_activations_per_day", "maxDailyWaterings"),
    )
    quiet_hours: QuietHoursUpdate | None = Field(
        default=None, validation_alias=AliasChoices("quietHours", "quiet_hours")
    )
    cooldown_ms: int | None = Field(default=None, ge=0, validation_alias=AliasChoices("cooldownMs", "cooldown_ms"))

    def changes(self) -> dict[str, Any]:
        """Only the fields the caller actually sent, as snake_case keys."""
        return self.model_dump(exclude_unset=True, exclude_none=True)


class ManualIrrigationRequest(BaseModel):
    model_config = ConfigDict(strict=True, extra="ignore", populate_by_name=True)

    duration_ms: int | None = Field(
        default=None,
        ge=PUMP_MIN_DURATION_MS,
        le=PUMP_MAX_DURATION_MS,
        validation_alias=AliasChoices("durationMs", "duration_ms", "duration"),
    )
    reason: str = Field(default="manual", max_length=200)


class DeviceDetailsUpdate(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    display_name: str | None = Field(
        default=None, max_length=120, validation_alias=AliasChoices("displayName", "display_name", "name")
    )
    location_label: str | None = Field(
        default=None, max_length=120, validation_alias=AliasChoices("location", "locationLabel", "location_label")
    )


class DeviceRegistration(DeviceDetailsUpdate):
    """One entry of the startup devices file."""

    id: str = Field(min_length=1)
    config: PolicyUpdate | None = None



class ScheduleIrrigationRequest(BaseModel):
    model_config = ConfigDict(strict=True, extra="forbid", populate_by_name=True)

    run_at: str = Field(min_length=1, validation_alias=AliasChoices("runAt", "run_at"))
    duration_ms: int | None = Field(
        default=None,
        ge=PUMP_MIN_DURATION_MS,
        le=PUMP_MAX_DURATION_MS,
        validation_alias=AliasChoices("durationMs", "duration_ms", "duration"),
    )
