"""
Devices API Blueprint
=====================

Routes:
- GET   /api/devices - All devices with current state
- GET   /api/devices/<id> - One device
- PATCH /api/devices/<id> - Update display name / location label
- GET   /api/devices/<id>/config - Effective irrigation policy
- PUT   /api/devices/<id>/config - Partial policy update (validated atomically)
- POST  /api/devices/<id>/water - Manual irrigation (daily cap and cooldown apply)
- POST  /api/devices/<id>/schedule - One-shot scheduled irrigation
- GET   /api/devices/<id>/events - Recent irrigation events (?days=7&limit=100)
- GET   /api/devices/<id>/readings - Recent readings (?hours=24)
- GET   /api/automation - Decision engine status
"""

from __future__ import annotations

import logging
from datetime import timedelta

from flask import Blueprint, Response

from plantcare.blueprints.api._common import get_json, get_service, parse_body, query_int, success
from plantcare.schemas.irrigation import DeviceDetailsUpdate, ManualIrrigationRequest, ScheduleIrrigationRequest
from plantcare.utils.http import safe_route

logger = logging.getLogger("devices_api")

devices_api = Blueprint("devices_api", __name__, url_prefix="/api")


@devices_api.get("/devices")
@safe_route("Failed to list devices")
def list_devices() -> Response:
    return success(get_service().list_devices())


@devices_api.get("/devices/<device_id>")
@safe_route("Failed to get device")
def get_device(device_id: str) -> Response:
    return success(get_service().get_device(device_id))


@devices_api.patch("/devices/<device_id>")
@safe_route("Failed to update device")
def update_device(device_id: str) -> Response:
    body = parse_body(DeviceDetailsUpdate)
    device = get_service().update_details(
        device_id, display_name=body.display_name, location_label=body.location_label
    )
    return success(device, message="Device updated")


@devices_api.get("/devices/<device_id>/config")
@safe_route("Failed to get irrigation policy")
def get_device_config(device_id: str) -> Response:
    return success(get_service().get_device(device_id)["config"])


@devices_api.put("/devices/<device_id>/config")
@safe_route("Failed to update irrigation policy")
def update_device_config(device_id: str) -> Response:
    # Registry validation reports both schema and cross-field errors.
    device = get_service().update_policy(device_id, get_json())
    return success(device["config"], message="Irrigation policy updated")


@devices_api.post("/devices/<device_id>/water")
@safe_route("Failed to request irrigation")
def water_device(device_id: str) -> Response:
    body = parse_body(ManualIrrigationRequest)
    decision = get_service().request_manual_irrigation(device_id, duration_ms=body.duration_ms, reason=body.reason)
    return success(decision, 202, message="Water command sent")


@devices_api.post("/devices/<device_id>/schedule")
@safe_route("Failed to schedule irrigation")
def schedule_watering(device_id: str) -> Response:
    body = parse_body(ScheduleIrrigationRequest)
    job = get_service().schedule_irrigation(device_id, body.run_at, body.duration_ms)
    return success(job, 201, message="Irrigation scheduled")


@devices_api.get("/devices/<device_id>/events")
@safe_route("Failed to get irrigation events")
def get_irrigation_events(device_id: str) -> Response:
    days = query_int("days", 7, maximum=90)
    limit = query_int("limit", 100, maximum=1000)
    events = get_service().recent_irrigation_events(device_id, timedelta(days=days), limit)
    return success({"device_id": device_id, "events": events, "count": len(events)})


@devices_api.get("/devices/<device_id>/readings")
@safe_route("Failed to get readings")
def get_readings(device_id: str) -> Response:
    hours = query_int("hours", 24, maximum=24 * 90)
    readings = get_service().recent_readings(device_id, timedelta(hours=hours))
    return success({"device_id": device_id, "readings": readings, "count": len(readings)})


@devices_api.get("/automation")
@safe_route("Failed to get automation status")
def get_automation_status() -> Response:
    return success(get_service().automation_status())
