"""Repository facades exposing typed accessors over the SQLite handler."""

from infrastructure.database.repositories.telemetry import TelemetryRepository

__all__ = ["TelemetryRepository"]
