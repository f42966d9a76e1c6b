"""
Blueprint Common Utilities
==========================

Shared helper functions for the API blueprints.

Usage:
    from plantcare.blueprints.api._common import (
        get_service, parse_body, success, fail,
    )
"""
from __future__ import annotations

import logging
from typing import Any, TypeVar

from flask import current_app, request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from plantcare.domain.exceptions import ValidationError
from plantcare.services.device_registry import validation_messages
from plantcare.utils.http import error_response, success_response

logger = logging.getLogger("api._common")

ModelT = TypeVar("ModelT", bound=BaseModel)

# ============================================================================
# CONTAINER ACCESS
# ============================================================================


def get_container():
    """
    Get the service container from Flask app config.

    Raises:
        RuntimeError: If container is not configured
    """
    container = current_app.config.get("CONTAINER")
    if not container:
        raise RuntimeError("ServiceContainer not found in app config")
    return container


def get_service():
    return get_container().plant_care_service


# ============================================================================
# REQUEST HELPERS
# ============================================================================


def get_json() -> dict:
    """Get JSON request body, or an empty dict when absent or malformed."""
    body = request.get_json(silent=True)
    return body if isinstance(body, dict) else {}


def parse_body(model: type[ModelT]) -> ModelT:
    """Validate the JSON body against ``model``.

    Raises:
        ValidationError: the body does not match the schema.
    """
    try:
        return model.model_validate(get_json())
    except PydanticValidationError as exc:
        raise ValidationError("Invalid request body", detail={"errors": validation_messages(exc)}) from None


def query_int(name: str, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    raw = request.args.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError(f"{name} must be an integer", detail={name: raw}) from None
    if value < minimum or (maximum is not None and value > maximum):
        raise ValidationError(f"{name} out of range", detail={name: value})
    return value


# ============================================================================
# RESPONSE HELPERS
# ============================================================================


def success(data: Any = None, status: int = 200, *, message: str | None = None):
    """Flask Response with format: {"ok": true, "data": ..., "error": null}"""
    return success_response(data, status, message=message)


def fail(message: str, status: int = 400, *, details: dict | None = None):
    """Flask Response with format: {"ok": false, "data": null, "error": {...}}"""
    return error_response(message, status, details=details)
