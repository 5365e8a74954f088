"""Runtime configuration for the sensor agent."""
from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from sensor_agent.models import SensorKind

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535
DEFAULT_BROKER_HOST = "localhost"
DEFAULT_BROKER_PORT = 1883
DEFAULT_PUBLISH_INTERVAL_SECONDS = 1
MAX_PUBLISH_INTERVAL_SECONDS = 86_400

_DIGITS = re.compile(r"[0-9]+")


class ConfigInvalid(ValueError):
    """Raised when a user edit would produce an invalid broker configuration."""


class BrokerConfig(BaseModel):
    """The three user-editable fields that drive the connection and the publish timer."""

    model_config = {"frozen": True}

    broker_host: str = Field(default=DEFAULT_BROKER_HOST, description="MQTT broker hostname or IP")
    broker_port: int = Field(default=DEFAULT_BROKER_PORT, ge=MIN_PORT, le=MAX_PORT)
    publish_interval_seconds: int = Field(
        default=DEFAULT_PUBLISH_INTERVAL_SECONDS,
        gt=0,
        le=MAX_PUBLISH_INTERVAL_SECONDS,
    )

    @field_validator("broker_host", mode="before")
    @classmethod
    def _clean_host(cls, value: Any) -> str:
        if value is None:
            raise ValueError("broker_host is required")
        cleaned = str(value).strip()
        if not cleaned:
            raise ValueError("broker_host must not be empty")
        return cleaned

    @field_validator("broker_port", "publish_interval_seconds", mode="before")
    @classmethod
    def _parse_integer(cls, value: Any, info) -> int:
        # Form fields arrive as text; accept plain digits like "1883", not "1883.5", "+1883" or "1_883".
        if isinstance(value, bool):
            raise ValueError(f"{info.field_name} must be an integer")
        if isinstance(value, int):
            return value
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError(f"{info.field_name} must be an integer")
            return int(value)
        text = str(value).strip()
        if not _DIGITS.fullmatch(text):
            raise ValueError(f"{info.field_name} must be a whole number, got {value!r}")
        return int(text)

    @property
    def sensor_update_interval_ms(self) -> int:
        return int(self.publish_interval_seconds) * 1000

    def apply_edits(self, **edits: Any) -> "BrokerConfig":
        """Return a new config with ``edits`` applied, or raise ``ConfigInvalid``.

        Validation happens on a candidate copy so a rejected edit never leaves
        a partially updated config behind.
        """

        unknown = set(edits) - set(type(self).model_fields)
        if unknown:
            raise ConfigInvalid(f"Unknown config fields: {', '.join(sorted(unknown))}")
        candidate = self.model_dump()
        candidate.update({key: value for key, value in edits.items() if value is not None})
        try:
            return BrokerConfig.model_validate(candidate)
        except ValidationError as exc:
            raise ConfigInvalid(str(exc)) from exc


class PermissionSettings(BaseModel):
    """Static answers for the two runtime permission prompts."""

    location: bool = Field(default=True, description="Grant foreground location access")
    step_counting: bool = Field(default=True, description="Grant step counting access")


class SimulationProfile(BaseModel):
    """Simulated sensor backends used on hosts without motion hardware."""

    enabled: bool = False
    seed: Optional[int] = None
    sensors: List[SensorKind] = Field(
        default_factory=lambda: [kind for kind in SensorKind if kind is not SensorKind.BATTERY_LEVEL],
        description="Sensor kinds backed by the simulator",
    )
    unavailable: List[SensorKind] = Field(
        default_factory=list,
        description="Sensor kinds the simulator reports as missing hardware",
    )


class Settings(BaseSettings):
    """Environment driven settings with defaults suitable for a local broker."""

    agent_id: str = Field(default="sensor-agent", description="Identifier used for the MQTT client id")
    service_name: str = "sensor-agent"
    service_version: str = "0.1.0"
    log_level: str = "INFO"

    broker_host: str = Field(default=DEFAULT_BROKER_HOST, description="Default broker host when storage is empty")
    broker_port: int = Field(default=DEFAULT_BROKER_PORT, ge=MIN_PORT, le=MAX_PORT)
    publish_interval_seconds: int = Field(
        default=DEFAULT_PUBLISH_INTERVAL_SECONDS,
        gt=0,
        le=MAX_PUBLISH_INTERVAL_SECONDS,
    )

    publish_topic: str = "sensor/data"
    mqtt_qos: int = Field(default=1, ge=0, le=2)
    mqtt_client_id: Optional[str] = None
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    reconnect_interval_seconds: float = Field(default=5.0, gt=0)
    connect_on_start: bool = False

    config_path: str = "storage/sensor_config.json"

    location_mode: Literal["watch", "on_demand"] = "watch"
    on_demand_timeout_seconds: float = Field(default=2.0, gt=0)
    permission_timeout_seconds: float = Field(default=5.0, gt=0)
    permissions: PermissionSettings = Field(default_factory=PermissionSettings)

    simulation: SimulationProfile = Field(default_factory=SimulationProfile)
    battery_backend: Literal["psutil", "simulated", "none"] = "psutil"

    model_config = SettingsConfigDict(
        env_prefix="SENSOR_AGENT_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
    )

    @field_validator("publish_topic")
    @classmethod
    def _check_topic(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned or "+" in cleaned or "#" in cleaned:
            raise ValueError("publish_topic must be a non-empty topic without wildcards")
        return cleaned

    @property
    def default_broker_config(self) -> BrokerConfig:
        return BrokerConfig(
            broker_host=self.broker_host,
            broker_port=self.broker_port,
            publish_interval_seconds=self.publish_interval_seconds,
        )

    @property
    def client_id(self) -> str:
        return self.mqtt_client_id or f"{self.agent_id}-publisher"

    @property
    def config_file(self) -> Path:
        path = Path(self.config_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
