"""Topic layout and physical bounds shared by the gateway, registry and engine."""

# Inbound subscriptions (device id is the wildcard segment)
TELEMETRY_TOPIC = "sensors/+/data"
STATUS_TOPIC = "sensors/+/status"
HEARTBEAT_TOPIC = "devices/+/heartbeat"

TELEMETRY_QOS = 1
STATUS_QOS = 1
HEARTBEAT_QOS = 0

# Outbound
COMMAND_TOPIC_TEMPLATE = "commands/{device_id}/{command}"
COMMAND_QOS = 1
SERVER_STATUS_TOPIC = "server/status"
SERVER_STATUS_QOS = 1

# Telemetry bounds
TEMPERATURE_RANGE_C = (-50.0, 100.0)
HUMIDITY_RANGE_PCT = (0.0, 100.0)
MOISTURE_RANGE_PCT = (0.0, 100.0)

# Irrigation policy bounds
PUMP_MIN_DURATION_MS = 1_000
PUMP_MAX_DURATION_MS = 30_000
MANUAL_DEFAULT_DURATION_MS = 5_000

# Devices are considered moisture-deficient for health purposes when more
# than this fraction of them read below their own minimum.
DEFICIENT_FRACTION_THRESHOLD = 0.5
