"""
Service Organization
====================
One instance of each component is built by ``ServiceContainer.build()`` and
handed to its dependents:

- ``transport_gateway``: MQTT ingress routing and command publishing
- ``device_registry``: single writer of per-device state
- ``decision_engine``: irrigation gates and water commands
- ``health_aggregator``: health snapshots and history
- ``event_sink``: best-effort telemetry storage adapter
- ``plant_care_service``: query/command surface used by the HTTP layer
"""
