"""
Health API Blueprint
====================

Routes:
- GET /api/health - Current health snapshot (component detail and alerts)
- GET /api/health/history - Buffered snapshot summaries plus trend counts
- GET /api/health/ping - Basic liveness check
"""

from __future__ import annotations

import logging

from flask import Blueprint, Response

from plantcare.blueprints.api._common import get_service, query_int, success
from plantcare.utils.http import safe_route
from plantcare.utils.time import iso_now

logger = logging.getLogger("health_api")

health_api = Blueprint("health_api", __name__, url_prefix="/api/health")


@health_api.get("")
@safe_route("Failed to get system health")
def get_health() -> Response:
    return success(get_service().get_health_snapshot())


@health_api.get("/history")
@safe_route("Failed to get health history")
def get_health_history() -> Response:
    limit = query_int("limit", 100, maximum=1000)
    return success(get_service().health_history(limit))


@health_api.get("/ping")
@safe_route("Failed to handle ping request")
def ping() -> Response:
    return success({"status": "ok", "timestamp": iso_now()})
