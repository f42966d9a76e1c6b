"""
Configuration for PlantCare Core
================================
Runtime settings for the broker client, device registry, irrigation engine,
health aggregator and telemetry storage. Every field can be overridden from
the environment with a ``PLANTCARE_*`` variable.
Sets up the logging configuration as well.
"""

import os
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from plantcare.domain.exceptions import ConfigurationError
from plantcare.domain.irrigation import IrrigationPolicy, QuietHours


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer.") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number.") from None


@dataclass
class AppConfig:
    """Runtime configuration loaded from environment variables."""

    environment: str = field(default_factory=lambda: os.getenv("PLANTCARE_ENV", "development"))
    DEBUG: bool = field(default_factory=lambda: _env_bool("PLANTCARE_DEBUG", False))
    log_level: str = field(default_factory=lambda: os.getenv("PLANTCARE_LOG_LEVEL", "INFO"))
    log_dir: str = field(default_factory=lambda: os.getenv("PLANTCARE_LOG_DIR", "logs"))

    # Broker
    enable_mqtt: bool = field(default_factory=lambda: _env_bool("PLANTCARE_ENABLE_MQTT", True))
    mqtt_broker_host: str = field(default_factory=lambda: os.getenv("PLANTCARE_MQTT_HOST", "localhost"))
    mqtt_broker_port: int = field(default_factory=lambda: _env_int("PLANTCARE_MQTT_PORT", 1883))
    mqtt_username: str = field(default_factory=lambda: os.getenv("PLANTCARE_MQTT_USERNAME", ""))
    mqtt_password: str = field(default_factory=lambda: os.getenv("PLANTCARE_MQTT_PASSWORD", ""))
    mqtt_client_id: str = field(default_factory=lambda: os.getenv("PLANTCARE_MQTT_CLIENT_ID", "plantcare-core"))
    mqtt_keepalive_seconds: int = field(default_factory=lambda: _env_int("PLANTCARE_MQTT_KEEPALIVE", 60))
    mqtt_connect_timeout_seconds: float = field(
        default_factory=lambda: _env_float("PLANTCARE_MQTT_CONNECT_TIMEOUT", 10.0)
    )
    mqtt_reconnect_interval_seconds: float = field(
        default_factory=lambda: _env_float("PLANTCARE_MQTT_RECONNECT_INTERVAL", 5.0)
    )
    mqtt_max_reconnect_attempts: int = field(
        default_factory=lambda: _env_int("PLANTCARE_MQTT_MAX_RECONNECT_ATTEMPTS", 10)
    )

    # Storage
    database_path: str = field(default_factory=lambda: os.getenv("PLANTCARE_DATABASE_PATH", "database/plantcare.db"))
    sink_worker_count: int = field(default_factory=lambda: _env_int("PLANTCARE_SINK_WORKER_COUNT", 2))
    storage_probe_timeout_seconds: float = field(
        default_factory=lambda: _env_float("PLANTCARE_STORAGE_PROBE_TIMEOUT", 2.0)
    )
    storage_latency_threshold_ms: float = field(
        default_factory=lambda: _env_float("PLANTCARE_STORAGE_LATENCY_THRESHOLD_MS", 2000.0)
    )
    retention_days: int = field(default_factory=lambda: _env_int("PLANTCARE_RETENTION_DAYS", 30))
    retention_time_of_day: str = field(default_factory=lambda: os.getenv("PLANTCARE_RETENTION_TIME", "02:00"))

    # Registry
    devices_file: str = field(default_factory=lambda: os.getenv("PLANTCARE_DEVICES_FILE", ""))
    staleness_window_seconds: int = field(default_factory=lambda: _env_int("PLANTCARE_STALENESS_WINDOW", 300))
    sweep_interval_seconds: int = field(default_factory=lambda: _env_int("PLANTCARE_SWEEP_INTERVAL", 60))

    # Irrigation
    enable_automation: bool = field(default_factory=lambda: _env_bool("PLANTCARE_ENABLE_AUTOMATION", True))
    decision_interval_seconds: int = field(default_factory=lambda: _env_int("PLANTCARE_DECISION_INTERVAL", 300))
    timezone: str = field(default_factory=lambda: os.getenv("PLANTCARE_TIMEZONE", "UTC"))
    default_moisture_min: float = field(default_factory=lambda: _env_float("PLANTCARE_DEFAULT_MOISTURE_MIN", 30.0))
    default_moisture_max: float = field(default_factory=lambda: _env_float("PLANTCARE_DEFAULT_MOISTURE_MAX", 80.0))
    default_duration_ms: int = field(default_factory=lambda: _env_int("PLANTCARE_DEFAULT_DURATION_MS", 10_000))
    default_max_activations_per_day: int = field(
        default_factory=lambda: _env_int("PLANTCARE_DEFAULT_MAX_ACTIVATIONS", 3)
    )
    default_quiet_start_hour: int = field(default_factory=lambda: _env_int("PLANTCARE_QUIET_START_HOUR", 22))
    default_quiet_end_hour: int = field(default_factory=lambda: _env_int("PLANTCARE_QUIET_END_HOUR", 6))
    default_cooldown_ms: int = field(default_factory=lambda: _env_int("PLANTCARE_DEFAULT_COOLDOWN_MS", 300_000))

    # Health
    health_interval_seconds: int = field(default_factory=lambda: _env_int("PLANTCARE_HEALTH_INTERVAL", 60))
    health_history_size: int = field(default_factory=lambda: _env_int("PLANTCARE_HEALTH_HISTORY_SIZE", 100))
    memory_threshold_pct: float = field(default_factory=lambda: _env_float("PLANTCARE_MEMORY_THRESHOLD_PCT", 90.0))
    cpu_load_threshold_pct: float = field(
        default_factory=lambda: _env_float("PLANTCARE_CPU_LOAD_THRESHOLD_PCT", 80.0)
    )

    # Internal plumbing
    eventbus_queue_size: int = field(default_factory=lambda: _env_int("PLANTCARE_EVENTBUS_QUEUE_SIZE", 1024))
    eventbus_worker_count: int = field(default_factory=lambda: _env_int("PLANTCARE_EVENTBUS_WORKER_COUNT", 2))
    scheduler_max_workers: int = field(default_factory=lambda: _env_int("PLANTCARE_SCHEDULER_WORKERS", 4))

    # HTTP query surface
    api_host: str = field(default_factory=lambda: os.getenv("PLANTCARE_API_HOST", "0.0.0.0"))
    api_port: int = field(default_factory=lambda: _env_int("PLANTCARE_API_PORT", 8000))

    def __post_init__(self) -> None:
        try:
            ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            raise ConfigurationError(f"Unknown timezone: {self.timezone}") from None

        if self.mqtt_max_reconnect_attempts < 1:
            raise ConfigurationError("PLANTCARE_MQTT_MAX_RECONNECT_ATTEMPTS must be at least 1")

        for name, value in (
            ("PLANTCARE_MEMORY_THRESHOLD_PCT", self.memory_threshold_pct),
            ("PLANTCARE_CPU_LOAD_THRESHOLD_PCT", self.cpu_load_threshold_pct),
        ):
            if not 0 < value <= 100:
                raise ConfigurationError(f"{name} must be in (0, 100]")

        errors = self.default_policy().validate()
        if errors:
            raise ConfigurationError("Invalid default irrigation policy", detail={"errors": errors})

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def default_policy(self) -> IrrigationPolicy:
        """Build the policy applied to auto-provisioned devices."""
        return IrrigationPolicy(
            moisture_min=self.default_moisture_min,
            moisture_max=self.default_moisture_max,
            duration_ms=self.default_duration_ms,
            max_activations_per_day=self.default_max_activations_per_day,
            quiet_hours=QuietHours(self.default_quiet_start_hour, self.default_quiet_end_hour),
            cooldown_ms=self.default_cooldown_ms,
        )

    def as_flask_config(self) -> dict[str, Any]:
        return {
            "ENV": self.environment,
            "DEBUG": self.DEBUG,
            "JSON_SORT_KEYS": False,
        }


def setup_logging(debug: bool = False, log_dir: str = "logs") -> None:
    """Setup logging configuration."""
    import logging
    import sys
    from logging.handlers import RotatingFileHandler

    log_level = logging.DEBUG if debug else logging.INFO

    # Root logger
    root = logging.getLogger()
    root.setLevel(log_level)

    # Avoid adding duplicates when create_app is called multiple times
    has_console = any(getattr(h, "name", "") == "plantcare_console" for h in root.handlers)
    has_file = any(getattr(h, "name", "") == "plantcare_file" for h in root.handlers)
    added_handler = False

    stream = sys.stdout
    with suppress(AttributeError, ValueError):
        stream.reconfigure(encoding="utf-8", errors="replace")
    formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    if not has_console:
        console_handler = logging.StreamHandler(stream=stream)
        console_handler.name = "plantcare_console"
        console_handler.setLevel(log_level)
        console_handler.setFormatter(formatter)
        root.addHandler(console_handler)
        added_handler = True

    if not has_file:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "plantcare.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.name = "plantcare_file"
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
        added_handler = True

    for handler in root.handlers:
        if getattr(handler, "name", "") in {"plantcare_console", "plantcare_file"}:
            handler.setLevel(log_level)

    # Broker traffic goes to its own rotating file so a chatty fleet cannot
    # flood the main log.
    mqtt_logger = logging.getLogger("plantcare.mqtt")
    if not any(getattr(h, "name", "") == "plantcare_mqtt_file" for h in mqtt_logger.handlers):
        mqtt_handler = RotatingFileHandler(
            os.path.join(log_dir, "devices_mqtt.log"),
            maxBytes=10 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        mqtt_handler.name = "plantcare_mqtt_file"
        mqtt_handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        mqtt_logger.addHandler(mqtt_handler)
    mqtt_logger.setLevel(log_level)

    if added_handler:
        root.info("Logging initialized at level: %s", logging.getLevelName(log_level))

    if _env_bool("PLANTCARE_SILENCE_WERKZEUG", True):
        logging.getLogger("werkzeug").setLevel(logging.WARNING)


def load_config() -> AppConfig:
    """Helper for callers to load and validate configuration."""
    return AppConfig()
