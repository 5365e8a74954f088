from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from sensor_agent.config import ConfigInvalid
from sensor_agent.http_utils import aggregator
from sensor_agent.schemas import ConfigResponse, ConfigUpdatePayload
from sensor_agent.services.aggregator import Aggregator

router = APIRouter(prefix="/v1")


@router.get("/config", response_model=ConfigResponse)
async def config(agg: Aggregator = Depends(aggregator)):
    return agg.config.model_dump()


@router.patch("/config", response_model=ConfigResponse)
async def update_config(payload: ConfigUpdatePayload, agg: Aggregator = Depends(aggregator)):
    try:
        updated = await agg.update_config(**payload.model_dump(exclude_none=True))
    except ConfigInvalid as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except OSError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Config could not be saved: {exc}",
        ) from exc
    return updated.model_dump()
