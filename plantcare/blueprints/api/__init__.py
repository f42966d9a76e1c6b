"""JSON API blueprints mounted under ``/api``."""

from plantcare.blueprints.api.devices import devices_api
from plantcare.blueprints.api.health import health_api

__all__ = ["devices_api", "health_api"]
