from plantcare.hardware.mqtt.mqtt_broker_wrapper import HealthStatus, MQTTClientWrapper

__all__ = ["HealthStatus", "MQTTClientWrapper"]
