"""Websocket server pushing status events to connected clients."""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable

import websockets
from websockets.exceptions import ConnectionClosed

from .channel import StatusChannel, execution_channel, workflow_channel

logger = logging.getLogger(__name__)

RunLogger = Callable[[str, str], None]


def channel_for_path(path: str | None) -> str | None:
    """Map ``/executions/<id>`` or ``/workflows/<key>`` to a channel key."""

    if not path:
        return None
    parts = [part for part in path.split("?", 1)[0].strip("/").split("/") if part]
    if len(parts) != 2:
        return None
    kind, identifier = parts
    if kind == "executions":
        return execution_channel(identifier)
    if kind == "workflows":
        return workflow_channel(identifier)
    return None


class StatusServer:
    """Serves the status channel over websockets on the runner's event loop."""

    def __init__(
        self,
        channel: StatusChannel,
        host: str = "0.0.0.0",
        port: int = 9100,
        run_log: RunLogger | None = None,
    ) -> None:
        self.channel = channel
        self.host = host
        self.port = port
        self._run_log = run_log
        self._server = None
        self._connection_ids = itertools.count(1)

    @property
    def running(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> int | None:
        if self._server is None:
            return None
        sockets = list(self._server.sockets or [])
        return sockets[0].getsockname()[1] if sockets else self.port

    async def start(self) -> None:
        if self._server is not None:
            return
        self._server = await websockets.serve(self._on_connect, host=self.host, port=self.port)
        self._log(f"status server listening on {self.host}:{self.bound_port}")

    async def stop(self) -> None:
        if self._server is None:
            return
        server, self._server = self._server, None
        server.close()
        await server.wait_closed()
        self._log("status server stopped")

    async def _on_connect(self, websocket, path: str | None = None) -> None:
        if path is None:
            request = getattr(websocket, "request", None)
            path = getattr(request, "path", None) or getattr(websocket, "path", None)
        key = channel_for_path(path)
        if key is None:
            await websocket.close(code=4000, reason="Unknown status channel")
            return

        subscriber_id = f"ws-{next(self._connection_ids)}"
        self._log(f"{subscriber_id} subscribed to {key}")
        subscription = self.channel.subscribe(key, subscriber_id)
        forward = asyncio.ensure_future(self._forward(websocket, subscription))
        closed = asyncio.ensure_future(websocket.wait_closed())
        try:
            await asyncio.wait({forward, closed}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            subscription.close()
            for task in (forward, closed):
                task.cancel()
            self._log(f"{subscriber_id} disconnected from {key}")

    async def _forward(self, websocket, subscription) -> None:
        async for event in subscription:
            try:
                await websocket.send(event.to_json())
            except ConnectionClosed:
                return

    def _log(self, message: str) -> None:
        logger.info(message)
        if self._run_log is not None:
            self._run_log("realtime", message)
