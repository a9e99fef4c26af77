"""Hosts the workflow runtime on a background event loop."""
from __future__ import annotations

import asyncio
import threading
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, TypeVar

from flask import Flask

from ..config import parse_flag
from ..realtime.channel import StatusChannel, StatusEvent, Subscription
from ..realtime.server import StatusServer
from ..utils.run_log import run_logger
from .engine import WorkflowEngine
from .executor import HandlerSpec, NodeExecutor
from .gateways import AIGateway, FileStore, HttpAIGateway, LocalFileStore
from .graph import WorkflowGraph
from .handlers import get_builtin_handlers
from .propagation import PropagationCooldown, PropagationQueues, PropagationTask
from .schema_registry import SchemaRegistry
from .stores import SqlExecutionStore, SqlGraphRepository, SqlSchemaStore
from .types import WorkflowRef

T = TypeVar("T")

EXTENSION_KEY = "workflow_runner"


@dataclass(frozen=True)
class RunnerSettings:
    node_timeout: float = 120.0
    node_max_attempts: int = 3
    node_retry_delay: float = 1.0
    propagation_max_attempts: int = 5
    propagation_base_delay: float = 1.0
    propagation_max_delay: float = 30.0
    propagation_cooldown: float = 30.0
    propagation_retention: float = 7200.0
    propagation_gc_interval: float = 1800.0
    propagation_poll_interval: float = 0.5
    status_server_enabled: bool = True
    status_server_host: str = "0.0.0.0"
    status_server_port: int = 9100
    file_store_root: str = "storage"
    ai_gateway_url: str = ""
    ai_gateway_api_key: str = ""
    ai_gateway_timeout: float = 60.0

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "RunnerSettings":
        defaults = cls()

        def _get(key: str, fallback: T) -> T:
            value = config.get(key)
            if value is None:
                return fallback
            if isinstance(fallback, bool):
                return parse_flag(value)
            return type(fallback)(value)

        return cls(
            node_timeout=_get("NODE_TIMEOUT_SECONDS", defaults.node_timeout),
            node_max_attempts=_get("NODE_MAX_ATTEMPTS", defaults.node_max_attempts),
            node_retry_delay=_get("NODE_RETRY_DELAY_SECONDS", defaults.node_retry_delay),
            propagation_max_attempts=_get("PROPAGATION_MAX_ATTEMPTS", defaults.propagation_max_attempts),
            propagation_base_delay=_get("PROPAGATION_BASE_DELAY_SECONDS", defaults.propagation_base_delay),
            propagation_max_delay=_get("PROPAGATION_MAX_DELAY_SECONDS", defaults.propagation_max_delay),
            propagation_cooldown=_get("PROPAGATION_COOLDOWN_SECONDS", defaults.propagation_cooldown),
            propagation_retention=_get("PROPAGATION_RETENTION_SECONDS", defaults.propagation_retention),
            propagation_gc_interval=_get("PROPAGATION_GC_INTERVAL_SECONDS", defaults.propagation_gc_interval),
            propagation_poll_interval=_get(
                "PROPAGATION_POLL_INTERVAL_SECONDS", defaults.propagation_poll_interval
            ),
            status_server_enabled=_get("ENABLE_STATUS_SERVER", defaults.status_server_enabled),
            status_server_host=_get("STATUS_SERVER_HOST", defaults.status_server_host),
            status_server_port=_get("STATUS_SERVER_PORT", defaults.status_server_port),
            file_store_root=_get("FILE_STORE_ROOT", defaults.file_store_root),
            ai_gateway_url=_get("AI_GATEWAY_URL", defaults.ai_gateway_url),
            ai_gateway_api_key=_get("AI_GATEWAY_API_KEY", defaults.ai_gateway_api_key),
            ai_gateway_timeout=_get("AI_GATEWAY_TIMEOUT_SECONDS", defaults.ai_gateway_timeout),
        )


class WorkflowRunner:
    """Owns the engine, the propagation queues and the status server.

    Everything asynchronous runs on one event loop hosted by a daemon thread;
    request handlers reach it through the synchronous helpers below.
    """

    def __init__(
        self,
        app: Flask,
        settings: RunnerSettings | None = None,
        *,
        handlers: Iterable[HandlerSpec] | None = None,
        files: FileStore | None = None,
        ai: AIGateway | None = None,
    ) -> None:
        self.app = app
        self.settings = settings or RunnerSettings.from_config(app.config)
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name="workflow-runner", daemon=True)
        self._propagation_task: asyncio.Task | None = None

        run_log = run_logger(app)
        self.channel = StatusChannel()
        self.graphs = SqlGraphRepository(app)
        self.executions = SqlExecutionStore(app)
        self.registry = SchemaRegistry(SqlSchemaStore(app), self.graphs)
        self.propagation = PropagationQueues(
            self.registry,
            channel=self.channel,
            cooldown=PropagationCooldown(window=self.settings.propagation_cooldown),
            poll_interval=self.settings.propagation_poll_interval,
            on_failed=self._propagation_failed,
            max_attempts=self.settings.propagation_max_attempts,
            base_delay=self.settings.propagation_base_delay,
            max_delay=self.settings.propagation_max_delay,
            retention=self.settings.propagation_retention,
            gc_interval=self.settings.propagation_gc_interval,
        )
        if files is None:
            files = LocalFileStore(self.settings.file_store_root)
        if ai is None and self.settings.ai_gateway_url:
            ai = HttpAIGateway(
                self.settings.ai_gateway_url,
                self.settings.ai_gateway_api_key or None,
                timeout=self.settings.ai_gateway_timeout,
            )
        self.files = files
        self.engine = WorkflowEngine(
            self.graphs,
            self.executions,
            NodeExecutor(handlers if handlers is not None else get_builtin_handlers(), self.settings.node_timeout),
            self.registry,
            propagation=self.propagation,
            channel=self.channel,
            files=files,
            ai=ai,
            max_attempts=self.settings.node_max_attempts,
            retry_delay=self.settings.node_retry_delay,
            run_log=run_log,
        )
        self.status_server: StatusServer | None = None
        if self.settings.status_server_enabled:
            self.status_server = StatusServer(
                self.channel,
                host=self.settings.status_server_host,
                port=self.settings.status_server_port,
                run_log=run_log,
            )
        self._run_log = run_log

    # -- lifecycle --------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        if self._thread.is_alive():
            return
        self._thread.start()
        self._sync(self._start_services(), timeout=5)

    def stop(self) -> None:
        if not self._thread.is_alive():
            return
        try:
            self._sync(self._stop_services(), timeout=5)
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    async def _start_services(self) -> None:
        self._propagation_task = asyncio.get_running_loop().create_task(self.propagation.run())
        if self.status_server is not None:
            await self.status_server.start()

    async def _stop_services(self) -> None:
        self.propagation.stop()
        if self._propagation_task is not None:
            self._propagation_task.cancel()
            self._propagation_task = None
        if self.status_server is not None:
            await self.status_server.stop()
        self.channel.close_all()

    def _sync(self, coro: Awaitable[T], timeout: float | None = 10) -> T:
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout=timeout)

    def _propagation_failed(self, workflow: WorkflowRef, task: PropagationTask) -> None:
        self._run_log(
            "schema",
            f"propagation {task.source_node_id} -> {task.target_node_id} in workflow "
            f"{workflow.key} failed after {task.attempts} attempts: {task.error}",
        )

    # -- executions -------------------------------------------------------

    def start_execution(self, workflow: WorkflowRef, inputs: dict[str, Any] | None = None) -> dict[str, Any]:
        async def _start() -> dict[str, Any]:
            return self.engine.start(workflow, inputs).to_dict()

        return self._sync(_start())

    def wait_for_execution(self, execution_id: str, timeout: float | None = 30) -> dict[str, Any] | None:
        async def _wait() -> dict[str, Any] | None:
            execution = await self.engine.wait(execution_id)
            return execution.to_dict() if execution is not None else None

        return self._sync(_wait(), timeout=timeout)

    def cancel_execution(self, execution_id: str) -> bool:
        async def _cancel() -> bool:
            return self.engine.cancel(execution_id)

        return self._sync(_cancel())

    def get_execution(self, execution_id: str) -> dict[str, Any] | None:
        async def _get() -> dict[str, Any] | None:
            execution = self.engine.get_execution(execution_id)
            return execution.to_dict() if execution is not None else None

        return self._sync(_get())

    # -- status events ----------------------------------------------------

    def subscribe(self, key: str, subscriber_id: str | None = None) -> Subscription:
        async def _subscribe() -> Subscription:
            return self.channel.subscribe(key, subscriber_id)

        return self._sync(_subscribe())

    def next_event(self, subscription: Subscription, timeout: float) -> StatusEvent | None:
        return self._sync(subscription.get(timeout), timeout=timeout + 5)

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._thread.is_alive():
            self._loop.call_soon_threadsafe(subscription.close)
        else:
            subscription.close()

    # -- schema propagation -----------------------------------------------

    def notify_schema_changed(
        self, graph: WorkflowGraph, node_id: str, sheet_name: str | None = None, force: bool = False
    ) -> list[dict[str, Any]]:
        async def _notify() -> list[dict[str, Any]]:
            tasks = self.propagation.notify_schema_changed(graph, node_id, sheet_name, force=force)
            return [task.to_dict() for task in tasks]

        return self._sync(_notify())

    def enqueue_propagation(
        self, workflow: WorkflowRef, source: str, target: str, sheet_name: str | None = None
    ) -> dict[str, Any]:
        async def _enqueue() -> dict[str, Any]:
            return self.propagation.queue_for(workflow).enqueue(source, target, sheet_name).to_dict()

        return self._sync(_enqueue())

    def settle_propagation(self, workflow: WorkflowRef) -> list[dict[str, Any]]:
        """Process every due task of a workflow and return the task list."""

        async def _settle() -> list[dict[str, Any]]:
            queue = self.propagation.queue_for(workflow)
            queue.settle()
            return [task.to_dict() for task in queue.tasks()]

        return self._sync(_settle())


_runner_lock = threading.Lock()


def ensure_runner_started(app: Flask) -> WorkflowRunner:
    """Ensure the workflow runner is running for the given Flask app."""
    with _runner_lock:
        runner = app.extensions.get(EXTENSION_KEY)
        if runner is None:
            runner = WorkflowRunner(app)
            app.extensions[EXTENSION_KEY] = runner
        runner.start()
    return runner


def get_runner(app: Flask) -> WorkflowRunner | None:
    return app.extensions.get(EXTENSION_KEY)


def stop_runner(app: Flask) -> None:
    with _runner_lock:
        runner = app.extensions.pop(EXTENSION_KEY, None)
    if runner is not None:
        runner.stop()
