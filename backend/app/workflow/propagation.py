"""Deferred schema propagation between connected workflow nodes."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..realtime.channel import StatusChannel, StatusEvent, workflow_channel
from .errors import RegistryError
from .graph import WorkflowGraph
from .schema_registry import SchemaRegistry
from .types import WorkflowRef

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


def backoff_delay(attempts: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Seconds to wait before the next attempt: ``min(cap, base * 2**attempts)``."""

    return min(cap, base * (2 ** max(attempts, 0)))


class TaskStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.FAILED)


@dataclass
class PropagationTask:
    source_node_id: str
    target_node_id: str
    sheet_name: str | None = None
    force: bool = False
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 0
    status: TaskStatus = TaskStatus.PENDING
    created_at: float = 0.0
    last_attempt: float | None = None
    not_before: float = 0.0
    error: str | None = None

    def is_due(self, now: float) -> bool:
        return self.status is TaskStatus.PENDING and self.not_before <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sourceNodeId": self.source_node_id,
            "targetNodeId": self.target_node_id,
            "sheetName": self.sheet_name,
            "attempts": self.attempts,
            "status": self.status.value,
            "lastAttempt": self.last_attempt,
            "notBefore": self.not_before,
            "error": self.error,
            "force": self.force,
        }


# ---------------------------------------------------------------------------
# Cooldown
# ---------------------------------------------------------------------------


class CooldownState(str, Enum):
    READY = "ready"
    BUSY = "busy"
    RECENT = "recent"


def cooldown_key(workflow: WorkflowRef, source: str, target: str, sheet_name: str | None) -> str:
    return f"{workflow.key}:{source}:{target}:{sheet_name or ''}"


class PropagationCooldown:
    """Limits propagation to one per key and window.

    A key that is in progress or backing off after errors is ``busy``; a key
    propagated successfully within the window is ``recent`` unless forced.
    """

    def __init__(self, window: float = 30.0, max_error_backoff: float = 60.0, clock: Clock = time.time) -> None:
        self.window = window
        self.max_error_backoff = max_error_backoff
        self._clock = clock
        self._last_success: dict[str, float] = {}
        self._in_progress: set[str] = set()
        self._errors: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def state(self, key: str, force: bool = False) -> CooldownState:
        now = self._clock()
        with self._lock:
            if key in self._in_progress:
                return CooldownState.BUSY
            if force:
                return CooldownState.READY
            errors = self._errors.get(key)
            if errors is not None and errors[1] > now:
                return CooldownState.BUSY
            last = self._last_success.get(key)
            if last is not None and now - last < self.window:
                return CooldownState.RECENT
            return CooldownState.READY

    def begin(self, key: str) -> bool:
        with self._lock:
            if key in self._in_progress:
                return False
            self._in_progress.add(key)
            return True

    def finish(self, key: str, success: bool) -> None:
        now = self._clock()
        with self._lock:
            self._in_progress.discard(key)
            if success:
                self._last_success[key] = now
                self._errors.pop(key, None)
                return
            count = self._errors.get(key, (0, 0.0))[0] + 1
            self._errors[key] = (count, now + min(self.max_error_backoff, float(2**count)))

    def clear(self, workflow: WorkflowRef | None = None) -> None:
        """Forget history for one workflow, or for all of them."""

        with self._lock:
            if workflow is None:
                self._last_success.clear()
                self._errors.clear()
                return
            prefix = f"{workflow.key}:"
            for mapping in (self._last_success, self._errors):
                for key in [key for key in mapping if key.startswith(prefix)]:
                    del mapping[key]

    def stats(self) -> dict[str, int]:
        now = self._clock()
        with self._lock:
            return {
                "tracked": len(self._last_success),
                "inProgress": len(self._in_progress),
                "backingOff": sum(1 for _, until in self._errors.values() if until > now),
            }


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


class PropagationQueue:
    """Per-workflow queue of propagation tasks processed by a single worker."""

    def __init__(
        self,
        workflow: WorkflowRef,
        registry: SchemaRegistry,
        *,
        channel: StatusChannel | None = None,
        cooldown: PropagationCooldown | None = None,
        max_attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        retention: float = 7200.0,
        gc_interval: float = 1800.0,
        poll_interval: float = 0.5,
        clock: Clock = time.time,
        on_failed: Callable[[PropagationTask], None] | None = None,
    ) -> None:
        self.workflow = workflow
        self.registry = registry
        self.channel = channel
        self.cooldown = cooldown or PropagationCooldown(clock=clock)
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.retention = retention
        self.gc_interval = gc_interval
        self.poll_interval = poll_interval
        self._clock = clock
        self._on_failed = on_failed
        self._tasks: list[PropagationTask] = []
        self._lock = threading.Lock()
        self._running = False
        self._worker: asyncio.Task | None = None
        self._last_gc = clock()

    def enqueue(
        self, source: str, target: str, sheet_name: str | None = None, force: bool = False
    ) -> PropagationTask:
        now = self._clock()
        with self._lock:
            for task in self._tasks:
                if (
                    task.source_node_id == source
                    and task.target_node_id == target
                    and not task.status.is_terminal
                ):
                    task.sheet_name = sheet_name
                    task.attempts = 0
                    task.not_before = now
                    task.force = task.force or force
                    task.error = None
                    return task
            task = PropagationTask(
                source_node_id=source,
                target_node_id=target,
                sheet_name=sheet_name,
                force=force,
                created_at=now,
                not_before=now,
            )
            self._tasks.append(task)
        logger.debug("queued propagation %s -> %s in %s", source, target, self.workflow.key)
        return task

    def tasks(self) -> list[PropagationTask]:
        with self._lock:
            return list(self._tasks)

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for task in self._tasks if not task.status.is_terminal)

    def process_next(self) -> PropagationTask | None:
        """Process the first due task, returning it, or ``None`` if none is due."""

        now = self._clock()
        with self._lock:
            task = next((task for task in self._tasks if task.is_due(now)), None)
            if task is None:
                return None
            task.status = TaskStatus.PROCESSING
            task.last_attempt = now

        key = cooldown_key(self.workflow, task.source_node_id, task.target_node_id, task.sheet_name)
        state = self.cooldown.state(key, force=task.force)
        if state is CooldownState.RECENT:
            logger.debug("propagation %s skipped, propagated within cooldown window", key)
            self._settle_task(task, TaskStatus.SUCCESS)
            return task
        if state is CooldownState.BUSY or not self.cooldown.begin(key):
            with self._lock:
                task.status = TaskStatus.PENDING
                task.not_before = now + self.base_delay
            return task

        success = False
        try:
            source = self.registry.resolve_schema(self.workflow, task.source_node_id, task.sheet_name)
            if source is None:
                self._retry(task, f"no schema available for source node {task.source_node_id}")
                return task
            self.registry.put_schema(
                self.workflow,
                task.target_node_id,
                source.columns,
                sheet_name=task.sheet_name or source.sheet_name,
            )
            success = True
        except RegistryError as exc:
            self._retry(task, str(exc))
            return task
        finally:
            self.cooldown.finish(key, success)

        self._settle_task(task, TaskStatus.SUCCESS)
        logger.info(
            "propagated schema %s -> %s in %s", task.source_node_id, task.target_node_id, self.workflow.key
        )
        return task

    def _settle_task(self, task: PropagationTask, status: TaskStatus) -> None:
        with self._lock:
            task.status = status
            if status is TaskStatus.SUCCESS:
                task.error = None

    def _retry(self, task: PropagationTask, reason: str) -> None:
        with self._lock:
            task.attempts += 1
            task.error = reason
            if task.attempts >= self.max_attempts:
                task.status = TaskStatus.FAILED
            else:
                task.status = TaskStatus.PENDING
                task.not_before = self._clock() + backoff_delay(task.attempts, self.base_delay, self.max_delay)
        if task.status is TaskStatus.FAILED:
            self._warn(task)
        else:
            logger.debug("propagation %s -> %s retry %d: %s", task.source_node_id, task.target_node_id, task.attempts, reason)

    def _warn(self, task: PropagationTask) -> None:
        message = (
            f"Schema propagation from {task.source_node_id} to {task.target_node_id} "
            f"failed after {task.attempts} attempts: {task.error}"
        )
        logger.warning(message)
        if self.channel is not None:
            self.channel.publish(
                workflow_channel(self.workflow.key),
                StatusEvent(
                    entity_id=task.id,
                    kind="propagation",
                    status=TaskStatus.FAILED.value,
                    workflow_id=self.workflow.key,
                    message=message,
                ),
            )
        if self._on_failed is not None:
            self._on_failed(task)

    def collect_garbage(self) -> int:
        """Drop terminal tasks older than the retention period."""

        now = self._clock()
        with self._lock:
            keep = []
            for task in self._tasks:
                touched = task.last_attempt if task.last_attempt is not None else task.created_at
                if task.status.is_terminal and now - touched > self.retention:
                    continue
                keep.append(task)
            removed = len(self._tasks) - len(keep)
            self._tasks = keep
            self._last_gc = now
        if removed:
            logger.debug("removed %d finished propagation tasks from %s", removed, self.workflow.key)
        return removed

    def maybe_collect_garbage(self) -> int:
        if self._clock() - self._last_gc >= self.gc_interval:
            return self.collect_garbage()
        return 0

    def settle(self, max_steps: int = 1000) -> int:
        """Process every task that is due now; returns the number processed."""

        processed = 0
        seen: set[str] = set()
        while processed < max_steps:
            task = self.process_next()
            if task is None or (task.id in seen and task.status is TaskStatus.PENDING):
                break
            seen.add(task.id)
            processed += 1
        return processed

    async def run(self) -> None:
        self._running = True
        while self._running:
            task = self.process_next()
            self.maybe_collect_garbage()
            await asyncio.sleep(0 if task is not None else self.poll_interval)

    def start(self) -> asyncio.Task:
        """Start the worker on the running event loop."""

        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self.run())
        return self._worker

    def stop(self) -> None:
        self._running = False
        if self._worker is not None:
            self._worker.cancel()
            self._worker = None


class PropagationQueues:
    """One :class:`PropagationQueue` per workflow sharing registry and cooldown."""

    def __init__(
        self,
        registry: SchemaRegistry,
        *,
        channel: StatusChannel | None = None,
        cooldown: PropagationCooldown | None = None,
        clock: Clock = time.time,
        poll_interval: float = 0.5,
        on_failed: Callable[[WorkflowRef, PropagationTask], None] | None = None,
        **queue_options: Any,
    ) -> None:
        self.registry = registry
        self.channel = channel
        self.cooldown = cooldown or PropagationCooldown(clock=clock)
        self.poll_interval = poll_interval
        self._clock = clock
        self._on_failed = on_failed
        self._queue_options = queue_options
        self._queues: dict[str, PropagationQueue] = {}
        self._lock = threading.Lock()
        self._running = False

    def queue_for(self, workflow: WorkflowRef) -> PropagationQueue:
        with self._lock:
            queue = self._queues.get(workflow.key)
            if queue is None:
                on_failed = None
                if self._on_failed is not None:
                    callback = self._on_failed
                    on_failed = lambda task, ref=workflow: callback(ref, task)  # noqa: E731
                queue = PropagationQueue(
                    workflow,
                    self.registry,
                    channel=self.channel,
                    cooldown=self.cooldown,
                    clock=self._clock,
                    poll_interval=self.poll_interval,
                    on_failed=on_failed,
                    **self._queue_options,
                )
                self._queues[workflow.key] = queue
            return queue

    def queues(self) -> list[PropagationQueue]:
        with self._lock:
            return list(self._queues.values())

    def notify_schema_changed(
        self,
        graph: WorkflowGraph,
        node_id: str,
        sheet_name: str | None = None,
        force: bool = False,
    ) -> list[PropagationTask]:
        """Queue propagation along every outgoing edge of ``node_id``."""

        queue = self.queue_for(graph.workflow)
        return [
            queue.enqueue(edge.source, edge.target, sheet_name, force=force)
            for edge in graph.outgoing(node_id)
        ]

    def forget(self, workflow: WorkflowRef) -> None:
        with self._lock:
            self._queues.pop(workflow.key, None)
        self.cooldown.clear(workflow)

    def settle(self) -> int:
        return sum(queue.settle() for queue in self.queues())

    async def run(self) -> None:
        """Drive every queue from one worker loop."""

        self._running = True
        while self._running:
            processed = 0
            for queue in self.queues():
                if queue.process_next() is not None:
                    processed += 1
                queue.maybe_collect_garbage()
            await asyncio.sleep(0 if processed else self.poll_interval)

    def stop(self) -> None:
        self._running = False
