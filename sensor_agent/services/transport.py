"""Broker transports the connection manager drives."""
from __future__ import annotations

import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Callable, Optional, Protocol

from aiomqtt import Client, MqttError

logger = logging.getLogger(__name__)

ConnectionLostCallback = Callable[[Optional[BaseException]], None]


class Transport(Protocol):
    """Connect/publish capability over one broker session at a time."""

    on_connection_lost: Optional[ConnectionLostCallback]

    async def connect(self, host: str, port: int) -> None:
        ...

    async def disconnect(self) -> None:
        ...

    async def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        ...


TransportFactory = Callable[[], Transport]


class AiomqttTransport:
    """aiomqtt-backed transport.

    The client context is held open in an ``AsyncExitStack`` between
    ``connect`` and ``disconnect``. A watcher task iterates ``client.messages``
    (nothing is subscribed), which only ends when aiomqtt notices the broker
    connection dropped; that is reported through ``on_connection_lost``.
    """

    def __init__(
        self,
        *,
        client_id: str | None = None,
        timeout_seconds: float = 10.0,
        keepalive_seconds: int = 60,
        username: str | None = None,
        password: str | None = None,
    ) -> None:
        self.client_id = client_id
        self.timeout_seconds = float(timeout_seconds)
        self.keepalive_seconds = int(keepalive_seconds)
        self.username = username
        self.password = password
        self.on_connection_lost: Optional[ConnectionLostCallback] = None
        self._client: Client | None = None
        self._stack: AsyncExitStack | None = None
        self._watcher: asyncio.Task | None = None

    @property
    def connected(self) -> bool:
        return self._client is not None

    async def connect(self, host: str, port: int) -> None:
        if self._client is not None:
            raise MqttError("transport already connected")
        client = Client(
            host,
            port=int(port),
            identifier=self.client_id,
            username=self.username,
            password=self.password,
            keepalive=self.keepalive_seconds,
            timeout=self.timeout_seconds,
        )
        stack = AsyncExitStack()
        await stack.enter_async_context(client)
        self._client = client
        self._stack = stack
        self._watcher = asyncio.create_task(self._watch(client), name="mqtt-connection-watch")

    async def disconnect(self) -> None:
        watcher, self._watcher = self._watcher, None
        if watcher and not watcher.done() and watcher is not asyncio.current_task():
            watcher.cancel()
            try:
                await watcher
            except asyncio.CancelledError:
                pass
        await self._close()

    async def publish(self, topic: str, payload: bytes, *, qos: int = 1) -> None:
        client = self._client
        if client is None:
            raise MqttError("transport not connected")
        await client.publish(topic, payload, qos=qos, retain=False)

    async def _watch(self, client: Client) -> None:
        error: Optional[BaseException] = None
        try:
            async for _message in client.messages:
                continue
        except MqttError as exc:
            error = exc
        if self._client is not client:
            return
        self._watcher = None
        await self._close()
        logger.info("MQTT connection lost: %s", error)
        callback = self.on_connection_lost
        if callback is not None:
            callback(error)

    async def _close(self) -> None:
        stack, self._stack = self._stack, None
        self._client = None
        if stack is None:
            return
        try:
            await stack.aclose()
        except MqttError as exc:
            # Closing an already-dropped session reports the first disconnect again.
            logger.debug("MQTT session close reported: %s", exc)
