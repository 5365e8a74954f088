"""JSON logs stamped with the agent identity, plus request ids for the control API."""
from __future__ import annotations

import json
import logging
import sys
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

REQUEST_ID_HEADER = "X-Request-ID"
_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

# Client libraries that log every packet at debug.
NOISY_LOGGERS = ("mqtt", "aiomqtt", "paho")

_CONTEXT_KEYS = ("service", "agent_id", "request_id")
_STANDARD_KEYS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime", "taskName"}


def get_request_id() -> str | None:
    return _request_id_ctx.get()


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Echo or mint ``X-Request-ID`` so control API calls can be matched to log lines."""

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        token = _request_id_ctx.set(request_id)
        try:
            response = await call_next(request)
        finally:
            _request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class ContextFilter(logging.Filter):
    def __init__(self, service: str, agent_id: str | None = None) -> None:
        super().__init__()
        self.service = service
        self.agent_id = agent_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = self.service
        record.agent_id = self.agent_id
        record.request_id = getattr(record, "request_id", None) or get_request_id()
        return True


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; anything passed via ``extra=`` lands under ``extra``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        for key in _CONTEXT_KEYS:
            payload[key] = getattr(record, key, None)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _STANDARD_KEYS and key not in _CONTEXT_KEYS
        }
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


def configure_logging(
    service: str,
    level: str = "INFO",
    *,
    agent_id: str | None = None,
    quiet_loggers: Iterable[str] = NOISY_LOGGERS,
) -> logging.Handler:
    level = level.upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonLogFormatter())
    handler.addFilter(ContextFilter(service, agent_id))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.setLevel(level)
        server_logger.propagate = False

    if level != "DEBUG":
        for name in quiet_loggers:
            logging.getLogger(name).setLevel(logging.WARNING)
    return handler


def configure_observability(app: FastAPI, *, service_name: str, log_level: str, agent_id: str | None = None) -> None:
    configure_logging(service_name, log_level, agent_id=agent_id)
    app.add_middleware(RequestIdMiddleware)
