"""FastAPI application exposing the broker settings and the connect toggle."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from sensor_agent import build_info
from sensor_agent.config import Settings, get_settings
from sensor_agent.observability import configure_observability
from sensor_agent.routers import config as config_router
from sensor_agent.routers import root as root_router
from sensor_agent.routers import status as status_router
from sensor_agent.sensors import StaticPermissionGate, build_channels
from sensor_agent.services.aggregator import Aggregator
from sensor_agent.services.config_store import ConfigStore
from sensor_agent.services.transport import AiomqttTransport

logger = logging.getLogger(__name__)


def build_aggregator(settings: Settings) -> Aggregator:
    if build_info.BUILD_FLAVOR == "prod" and settings.simulation.enabled:
        raise RuntimeError("Simulation is not allowed in production builds")
    permissions = StaticPermissionGate(settings.permissions)
    channels = build_channels(settings, permissions)

    def transport_factory() -> AiomqttTransport:
        return AiomqttTransport(
            client_id=settings.client_id,
            timeout_seconds=settings.connect_timeout_seconds,
        )

    return Aggregator(
        settings,
        channels,
        permissions,
        transport_factory,
        ConfigStore(settings.config_file),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    agg = build_aggregator(settings)
    await agg.start()
    app.state.aggregator = agg
    logger.info("Sensor agent started (%s)", settings.agent_id)
    try:
        yield
    finally:
        agg = getattr(app.state, "aggregator", None)
        if agg:
            await agg.stop()
        app.state.aggregator = None


settings = get_settings()
app = FastAPI(title="Sensor Agent", lifespan=lifespan)
configure_observability(
    app,
    service_name=settings.service_name,
    log_level=settings.log_level,
    agent_id=settings.agent_id,
)

app.include_router(root_router.router)
app.include_router(config_router.router)
app.include_router(status_router.router)


def run() -> None:  # pragma: no cover
    import uvicorn

    uvicorn.run("sensor_agent.main:app", host="0.0.0.0", port=9100)


if __name__ == "__main__":  # pragma: no cover
    run()
