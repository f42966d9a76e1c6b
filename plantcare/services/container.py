from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError

from infrastructure.database.repositories.telemetry import TelemetryRepository
from infrastructure.database.sqlite_handler import SQLiteDatabaseHandler
from plantcare.config import AppConfig
from plantcare.domain.exceptions import ConfigurationError, ValidationError
from plantcare.hardware.mqtt.mqtt_broker_wrapper import MQTTClientWrapper
from plantcare.schemas.irrigation import DeviceRegistration
from plantcare.services.decision_engine import IrrigationDecisionEngine
from plantcare.services.device_registry import DeviceRegistry, validation_messages
from plantcare.services.event_sink import SinkAdapter
from plantcare.services.health_aggregator import HealthAggregator
from plantcare.services.plant_care_service import PlantCareService
from plantcare.services.protocols import BrokerClient, TelemetryStore
from plantcare.services.transport_gateway import TransportGateway
from plantcare.utils.event_bus import EventBus
from plantcare.utils.time import Clock, utc_now
from plantcare.workers.unified_scheduler import UnifiedScheduler

logger = logging.getLogger(__name__)

SWEEP_TASK = "registry.sweep"
RETENTION_TASK = "storage.retention_prune"


@dataclass
class ServiceContainer:
    """Aggregate and manage the core components."""

    config: AppConfig
    event_bus: EventBus
    scheduler: UnifiedScheduler
    database: Optional[SQLiteDatabaseHandler]
    sink: SinkAdapter
    mqtt_client: BrokerClient
    registry: DeviceRegistry
    gateway: TransportGateway
    engine: IrrigationDecisionEngine
    health: HealthAggregator
    plant_care_service: PlantCareService
    _started: bool = field(default=False, init=False, repr=False)
    _stopped: bool = field(default=False, init=False, repr=False)

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        mqtt_client: BrokerClient | None = None,
        store: TelemetryStore | None = None,
        clock: Clock = utc_now,
    ) -> "ServiceContainer":
        """Construct every component once and wire the dependencies.

        Args:
            config: Application configuration
            mqtt_client: Broker client to use instead of a real ``MQTTClientWrapper``
            store: Telemetry backend to use instead of the SQLite repository
            clock: Time source shared by all components
        """
        logger.info("Building ServiceContainer...")
        tz = config.tzinfo
        event_bus = EventBus(queue_size=config.eventbus_queue_size, worker_count=config.eventbus_worker_count)
        scheduler = UnifiedScheduler(max_workers=config.scheduler_max_workers, clock=clock, tz=tz)

        database: SQLiteDatabaseHandler | None = None
        if store is None:
            database = SQLiteDatabaseHandler(config.database_path)
            database.init()
            store = TelemetryRepository(database)
        sink = SinkAdapter(store, max_workers=config.sink_worker_count, clock=clock)

        if mqtt_client is None:
            mqtt_client = MQTTClientWrapper(
                config.mqtt_broker_host,
                config.mqtt_broker_port,
                config.mqtt_client_id,
                username=config.mqtt_username or None,
                password=config.mqtt_password or None,
                keepalive=config.mqtt_keepalive_seconds,
                connect_timeout=config.mqtt_connect_timeout_seconds,
                reconnect_interval=config.mqtt_reconnect_interval_seconds,
                max_reconnect_attempts=config.mqtt_max_reconnect_attempts,
                event_bus=event_bus,
            )

        registry = DeviceRegistry(
            default_policy=config.default_policy(),
            event_bus=event_bus,
            clock=clock,
            staleness_window=timedelta(seconds=config.staleness_window_seconds),
        )
        gateway = TransportGateway(mqtt_client, registry, sink, event_bus=event_bus, clock=clock)
        engine = IrrigationDecisionEngine(
            registry,
            gateway,
            sink,
            event_bus=event_bus,
            scheduler=scheduler,
            clock=clock,
            tz=tz,
            interval_seconds=config.decision_interval_seconds,
            enabled=config.enable_automation,
        )
        health = HealthAggregator(
            gateway=gateway,
            sink=sink,
            engine=engine,
            registry=registry,
            event_bus=event_bus,
            scheduler=scheduler,
            clock=clock,
            history_size=config.health_history_size,
            probe_timeout_seconds=config.storage_probe_timeout_seconds,
            latency_threshold_ms=config.storage_latency_threshold_ms,
            memory_threshold_pct=config.memory_threshold_pct,
            cpu_load_threshold_pct=config.cpu_load_threshold_pct,
            interval_seconds=config.health_interval_seconds,
        )
        service = PlantCareService(
            registry=registry,
            engine=engine,
            health=health,
            sink=sink,
            gateway=gateway,
            clock=clock,
        )

        container = cls(
            config=config,
            event_bus=event_bus,
            scheduler=scheduler,
            database=database,
            sink=sink,
            mqtt_client=mqtt_client,
            registry=registry,
            gateway=gateway,
            engine=engine,
            health=health,
            plant_care_service=service,
        )
        logger.info("ServiceContainer built successfully.")
        return container

    # ----------------------------------------------------------------- startup

    def load_devices_file(self, path: str | None = None) -> int:
        """Pre-register devices from a JSON list. Returns how many were loaded.

        Raises:
            ConfigurationError: the file cannot be read or is not a JSON list.
        """
        path = path if path is not None else self.config.devices_file
        if not path:
            return 0
        devices_path = Path(path)
        if not devices_path.exists():
            logger.warning("Devices file %s not found; relying on auto-provisioning", devices_path)
            return 0
        try:
            entries = json.loads(devices_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read devices file {devices_path}: {exc}") from exc
        if not isinstance(entries, list):
            raise ConfigurationError(f"Devices file {devices_path} must contain a JSON list")

        default_policy = self.config.default_policy()
        loaded = 0
        for index, entry in enumerate(entries):
            try:
                registration = DeviceRegistration.model_validate(entry)
            except PydanticValidationError as exc:
                logger.error("Skipping devices file entry %s: %s", index, "; ".join(validation_messages(exc)))
                continue
            policy = default_policy.merged(registration.config.changes()) if registration.config else None
            try:
                self.registry.register(
                    registration.id,
                    display_name=registration.display_name,
                    location_label=registration.location_label,
                    policy=policy,
                )
            except ValidationError as exc:
                logger.error("Skipping device %s: %s %s", registration.id, exc, exc.detail)
                continue
            loaded += 1
        logger.info("Pre-registered %s device(s) from %s", loaded, devices_path)
        return loaded

    def register_scheduled_tasks(self) -> None:
        scheduler = self.scheduler

        @scheduler.task(SWEEP_TASK)
        def registry_sweep_task():
            return self.registry.sweep()

        @scheduler.task(RETENTION_TASK)
        def retention_prune_task():
            return self.sink.prune(timedelta(days=self.config.retention_days))

        scheduler.schedule_interval(
            task_name=SWEEP_TASK,
            interval_seconds=self.config.sweep_interval_seconds,
            job_id="registry_sweep",
            namespace="registry",
        )
        scheduler.schedule_daily(
            task_name=RETENTION_TASK,
            time_of_day=self.config.retention_time_of_day,
            job_id="storage_retention_prune",
            namespace="storage",
        )
        self.engine.register_scheduled_tasks()
        self.health.register_scheduled_tasks()

    def start(self) -> None:
        """Connect the broker, load devices and start the periodic jobs."""
        if self._started:
            return
        self._started = True
        self.gateway.start()
        self.load_devices_file()
        self.register_scheduled_tasks()

        if self.config.enable_mqtt and hasattr(self.mqtt_client, "start"):
            self.mqtt_client.start()
        elif not self.config.enable_mqtt:
            logger.warning("MQTT disabled by configuration; transport will report unhealthy")

        self.scheduler.start()
        logger.info("PlantCare core started")

    def status(self) -> dict[str, Any]:
        return {
            "scheduler": self.scheduler.get_status(),
            "event_bus": self.event_bus.get_metrics(),
            "gateway": self.gateway.get_stats(),
            "sink": self.sink.get_stats(),
        }

    # ---------------------------------------------------------------- shutdown

    def shutdown(self) -> None:
        """Release external resources before process exit."""
        if self._stopped:
            return
        self._stopped = True

        try:
            self.scheduler.shutdown()
            logger.info("✓ UnifiedScheduler stopped")
        except Exception as e:
            logger.warning("Failed to stop UnifiedScheduler: %s", e)

        disconnect = getattr(self.mqtt_client, "disconnect", None)
        if callable(disconnect):
            try:
                disconnect()
            except Exception as e:
                logger.warning("Failed to disconnect MQTT client: %s", e)

        self.sink.shutdown()
        self.event_bus.shutdown()
        if self.database is not None:
            self.database.close_db()
        logger.info("ServiceContainer shutdown complete.")
