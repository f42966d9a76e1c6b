from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


def _ts(dt: datetime) -> str:
    """Fixed-width UTC ISO8601 so rows compare correctly as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


class TelemetryOperations:
    """Reading and irrigation-event persistence helpers (mixed into the handler)."""

    # --- Readings -------------------------------------------------------------

    def insert_reading(
        self,
        *,
        device_id: str,
        observed_at: datetime,
        moisture: float | None,
        temperature: float | None,
        humidity: float | None,
        light: float | None,
    ) -> int | None:
        with self.connection() as db:
            cursor = db.execute(
                """
                INSERT INTO SensorReadings (device_id, observed_at, moisture, temperature, humidity, light)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (device_id, _ts(observed_at), moisture, temperature, humidity, light),
            )
            return cursor.lastrowid

    def get_readings_since(self, device_id: str, since: datetime, limit: int = 1000) -> list[dict[str, Any]]:
        with self.connection() as db:
            rows = db.execute(
                """
                SELECT device_id, observed_at, moisture, temperature, humidity, light
                FROM SensorReadings
                WHERE device_id = ? AND observed_at >= ?
                ORDER BY observed_at DESC
                LIMIT ?
                """,
                (device_id, _ts(since), int(limit)),
            ).fetchall()
        return [dict(row) for row in rows]

    def delete_readings_before(self, cutoff: datetime) -> int:
        with self.connection() as db:
            cursor = db.execute("DELETE FROM SensorReadings WHERE observed_at < ?", (_ts(cutoff),))
            return cursor.rowcount

    # --- Irrigation events ----------------------------------------------------

    def insert_irrigation_event(
        self,
        *,
        device_id: str,
        triggered_at: datetime,
        trigger_type: str,
        duration_ms: int,
        success: bool,
        reason: str,
    ) -> int | None:
        with self.connection() as db:
            cursor = db.execute(
                """
                INSERT INTO IrrigationEvents (device_id, triggered_at, trigger_type, duration_ms, success, reason)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (device_id, _ts(triggered_at), trigger_type, int(duration_ms), 1 if success else 0, reason),
            )
            return cursor.lastrowid

    def get_irrigation_events_since(
        self,
        since: datetime,
        *,
        device_id: str | None = None,
        limit: int = 100,
    ) -> list[dict[str, Any]]:
        query = """
            SELECT device_id, triggered_at, trigger_type, duration_ms, success, reason
            FROM IrrigationEvents
            WHERE triggered_at >= ?
        """
        params: list[Any] = [_ts(since)]
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        query += " ORDER BY triggered_at DESC, event_id DESC LIMIT ?"
        params.append(int(limit))

        with self.connection() as db:
            rows = db.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def delete_irrigation_events_before(self, cutoff: datetime) -> int:
        with self.connection() as db:
            cursor = db.execute("DELETE FROM IrrigationEvents WHERE triggered_at < ?", (_ts(cutoff),))
            return cursor.rowcount

    # --- Health -----------------------------------------------------------------

    def ping(self) -> None:
        """Round-trip a trivial query; raises ``sqlite3.Error`` on failure."""
        with self.connection() as db:
            db.execute("SELECT 1").fetchone()

