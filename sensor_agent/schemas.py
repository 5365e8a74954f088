from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class ConfigUpdatePayload(BaseModel):
    """Raw form values; validation happens in ``BrokerConfig.apply_edits``."""

    broker_host: Optional[str] = Field(default=None, description="MQTT broker host")
    broker_port: Optional[str | int] = Field(default=None, description="MQTT broker port (1-65535)")
    publish_interval_seconds: Optional[str | int] = Field(
        default=None,
        description="Publish interval in whole seconds",
    )


class ConfigResponse(BaseModel):
    broker_host: str
    broker_port: int
    publish_interval_seconds: int


class ConnectionTogglePayload(BaseModel):
    connected: bool


class ConnectionResponse(BaseModel):
    intent: bool
    state: str
    last_error: Optional[str] = None
