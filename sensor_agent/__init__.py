"""Sensor agent: merges device sensor streams and publishes snapshots over MQTT."""
