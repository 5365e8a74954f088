from __future__ import annotations

from typing import Dict

from fastapi import APIRouter, Depends

from sensor_agent.http_utils import aggregator
from sensor_agent.schemas import ConnectionResponse, ConnectionTogglePayload
from sensor_agent.services.aggregator import Aggregator

router = APIRouter(prefix="/v1")


@router.get("/status")
async def status_endpoint(agg: Aggregator = Depends(aggregator)) -> Dict[str, object]:
    return agg.status()


@router.post("/connection", response_model=ConnectionResponse)
async def toggle_connection(payload: ConnectionTogglePayload, agg: Aggregator = Depends(aggregator)):
    state = await agg.set_connected(payload.connected)
    return {
        "intent": agg.connect_intent,
        "state": state.value,
        "last_error": agg.connection.last_error,
    }
