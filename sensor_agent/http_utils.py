from __future__ import annotations

from fastapi import HTTPException, Request, status

from sensor_agent.services.aggregator import Aggregator


def aggregator(request: Request) -> Aggregator:
    """FastAPI dependency returning the running aggregator."""

    agg: Aggregator | None = getattr(request.app.state, "aggregator", None)
    if agg is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Aggregator not running")
    return agg
