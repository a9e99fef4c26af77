"""In-process publish/subscribe channel for execution status events."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_CLOSED = object()


def execution_channel(execution_id: str) -> str:
    return f"execution:{execution_id}"


def workflow_channel(workflow_key: str) -> str:
    return f"workflow:{workflow_key}"


@dataclass(frozen=True)
class StatusEvent:
    """A status transition of an execution, a node or a propagation task."""

    entity_id: str
    kind: str
    status: str
    execution_id: str | None = None
    workflow_id: str | None = None
    progress: float | None = None
    message: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "entityId": self.entity_id,
            "kind": self.kind,
            "status": self.status,
            "executionId": self.execution_id,
            "workflowId": self.workflow_id,
            "progress": self.progress,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusEvent":
        timestamp = data.get("timestamp")
        return cls(
            entity_id=str(data["entityId"]),
            kind=str(data.get("kind", "node")),
            status=str(data["status"]),
            execution_id=data.get("executionId"),
            workflow_id=data.get("workflowId"),
            progress=data.get("progress"),
            message=data.get("message"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(timezone.utc),
        )


class Subscription:
    """Handle on a stream of events for one channel key.

    Iterate with ``async for``; the stream ends once :meth:`close` is called.
    """

    def __init__(self, channel: "StatusChannel", key: str, subscriber_id: str, maxsize: int) -> None:
        self.channel = channel
        self.key = key
        self.subscriber_id = subscriber_id
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        try:
            self._loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    @property
    def closed(self) -> bool:
        return self._closed

    def _deliver(self, item: Any) -> None:
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._put, item)
                return
        self._put(item)

    def _put(self, item: Any) -> None:
        if self._queue.full():
            dropped = self._queue.get_nowait()
            logger.warning("subscription %s on %s is full, dropped %r", self.subscriber_id, self.key, dropped)
        self._queue.put_nowait(item)

    async def get(self, timeout: float | None = None) -> StatusEvent | None:
        """Return the next event, or ``None`` on timeout or once closed."""

        if self._closed and self._queue.empty():
            return None
        try:
            if timeout is None:
                item = await self._queue.get()
            else:
                item = await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None
        if item is _CLOSED:
            return None
        return item

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> StatusEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.channel._remove(self)
        self._deliver(_CLOSED)

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class StatusChannel:
    """Fan-out of status events to subscribers, keyed by channel name."""

    def __init__(self, *, max_queue_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscriptions: dict[str, dict[str, Subscription]] = {}
        self._lock = threading.Lock()

    def subscribe(self, key: str, subscriber_id: str | None = None) -> Subscription:
        """Open a subscription; reuses the open one for the same subscriber."""

        subscriber_id = subscriber_id or uuid.uuid4().hex
        with self._lock:
            subscribers = self._subscriptions.setdefault(key, {})
            existing = subscribers.get(subscriber_id)
            if existing is not None and not existing.closed:
                return existing
            subscription = Subscription(self, key, subscriber_id, self._max_queue_size)
            subscribers[subscriber_id] = subscription
        logger.debug("subscriber %s joined %s", subscriber_id, key)
        return subscription

    def publish(self, key: str, event: StatusEvent) -> int:
        with self._lock:
            targets = list(self._subscriptions.get(key, {}).values())
        for subscription in targets:
            subscription._deliver(event)
        return len(targets)

    def subscriber_count(self, key: str) -> int:
        with self._lock:
            return len(self._subscriptions.get(key, {}))

    def close_all(self) -> None:
        with self._lock:
            subscriptions = [sub for subs in self._subscriptions.values() for sub in subs.values()]
        for subscription in subscriptions:
            subscription.close()

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscriptions.get(subscription.key)
            if subscribers is None:
                return
            if subscribers.get(subscription.subscriber_id) is subscription:
                del subscribers[subscription.subscriber_id]
            if not subscribers:
                del self._subscriptions[subscription.key]


class LastSeenFilter:
    """Drops events that repeat the last status seen for an entity."""

    def __init__(self) -> None:
        self._last: dict[tuple[str, str], tuple[str, float | None]] = {}

    def accept(self, event: StatusEvent) -> bool:
        key = (event.kind, event.entity_id)
        marker = (event.status, event.progress)
        if self._last.get(key) == marker:
            return False
        self._last[key] = marker
        return True

    def reset(self) -> None:
        self._last.clear()
