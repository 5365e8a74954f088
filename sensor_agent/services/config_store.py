"""Persistence for the three user-editable broker fields."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Optional

from sensor_agent.config import BrokerConfig

logger = logging.getLogger(__name__)

HOST_KEY = "mqttServer"
PORT_KEY = "mqttPort"
INTERVAL_KEY = "publishInterval"

_FIELD_KEYS = {
    HOST_KEY: "broker_host",
    PORT_KEY: "broker_port",
    INTERVAL_KEY: "publish_interval_seconds",
}


class ConfigStore:
    """String-keyed, string-valued store backed by a JSON file."""

    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Optional[Dict[str, str]]:
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError:
            logger.warning("Stored config at %s is invalid JSON; using defaults", self.path)
            return None
        if not isinstance(data, dict):
            logger.warning("Stored config at %s is not an object; using defaults", self.path)
            return None
        return {str(key): str(value) for key, value in data.items() if value is not None}

    def save(self, values: Dict[str, str]) -> None:
        temp_path = self.path.with_suffix(".tmp")
        temp_path.write_text(json.dumps(values, indent=2, sort_keys=True))
        temp_path.replace(self.path)

    def load_broker_config(self, defaults: BrokerConfig) -> BrokerConfig:
        """Read the stored fields, keeping the default for any missing or invalid one."""

        stored = self.load() or {}
        config = defaults
        for key, field in _FIELD_KEYS.items():
            if key not in stored:
                continue
            try:
                config = config.apply_edits(**{field: stored[key]})
            except ValueError as exc:
                logger.warning("Ignoring stored %s=%r: %s", key, stored[key], exc)
        return config

    def save_broker_config(self, config: BrokerConfig) -> None:
        self.save(export_config(config))


def export_config(config: BrokerConfig) -> Dict[str, str]:
    return {
        HOST_KEY: config.broker_host,
        PORT_KEY: str(config.broker_port),
        INTERVAL_KEY: str(config.publish_interval_seconds),
    }
