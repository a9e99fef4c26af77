"""Websocket client for status events with automatic reconnect."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from .channel import LastSeenFilter, StatusEvent

logger = logging.getLogger(__name__)


class ReconnectingStatusClient:
    """Yields status events from a :class:`StatusServer` URL.

    A dropped or refused connection is retried after a fixed delay until
    :meth:`close` is called. Repeated statuses are filtered out, so events
    redelivered after a reconnect are not yielded twice.
    """

    def __init__(self, url: str, reconnect_delay: float = 5.0, dedupe: bool = True) -> None:
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.reconnects = 0
        self._filter = LastSeenFilter() if dedupe else None
        self._closed = asyncio.Event()
        self._websocket = None

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    async def close(self) -> None:
        self._closed.set()
        if self._websocket is not None:
            await self._websocket.close()

    async def __aenter__(self) -> "ReconnectingStatusClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def __aiter__(self) -> AsyncIterator[StatusEvent]:
        return self.events()

    async def events(self) -> AsyncIterator[StatusEvent]:
        while not self.closed:
            try:
                async with websockets.connect(self.url) as websocket:
                    self._websocket = websocket
                    logger.debug("connected to %s", self.url)
                    async for raw in websocket:
                        event = self._decode(raw)
                        if event is None:
                            continue
                        if self._filter is None or self._filter.accept(event):
                            yield event
            except (ConnectionClosed, InvalidHandshake, OSError, asyncio.TimeoutError) as exc:
                reason = str(exc) or type(exc).__name__
            else:
                reason = "closed by server"
            finally:
                self._websocket = None
            if self.closed:
                break
            self.reconnects += 1
            logger.warning(
                "status connection to %s lost (%s); retry %d in %ss",
                self.url,
                reason,
                self.reconnects,
                self.reconnect_delay,
            )
            try:
                await asyncio.wait_for(self._closed.wait(), self.reconnect_delay)
            except asyncio.TimeoutError:
                continue

    @staticmethod
    def _decode(raw: str | bytes) -> StatusEvent | None:
        try:
            return StatusEvent.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError):
            logger.warning("ignoring malformed status message: %r", raw)
            return None
