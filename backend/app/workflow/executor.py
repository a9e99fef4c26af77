"""Dispatches a single node to the handler registered for its type."""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .errors import FatalError, HandlerNotFoundError, NodeError, TransientError, ValidationError
from .gateways import AIGateway, FileStore
from .schema_registry import SchemaRegistry, infer_schema
from .types import Node, NodeType, SchemaColumn, WorkflowRef

logger = logging.getLogger(__name__)

HandlerResult = Union[Mapping[str, Any], Awaitable[Mapping[str, Any]]]
Handler = Callable[[Node, dict[str, Any], "NodeContext"], HandlerResult]


@dataclass
class NodeContext:
    """Everything a handler may touch besides its node and inputs."""

    workflow: WorkflowRef
    execution_id: str
    node_id: str
    files: FileStore | None = None
    ai: AIGateway | None = None
    registry: SchemaRegistry | None = None
    workflow_inputs: dict[str, Any] = field(default_factory=dict)
    upstream: dict[str, dict[str, Any]] = field(default_factory=dict)
    log: Callable[[str, str], None] | None = None

    def emit(self, level: str, message: str) -> None:
        if self.log is not None:
            self.log(level, message)

    def require_files(self) -> FileStore:
        if self.files is None:
            raise ValidationError("no file store configured")
        return self.files

    def require_ai(self) -> AIGateway:
        if self.ai is None:
            raise ValidationError("no AI gateway configured")
        return self.ai


@dataclass(frozen=True)
class HandlerSpec:
    node_type: NodeType
    handler: Handler
    required_config: tuple[str, ...] = ()
    description: str = ""


@dataclass
class NodeOutput:
    node_id: str
    values: dict[str, Any]
    schema: list[SchemaColumn] | None = None
    sheet_name: str | None = None
    duration_ms: float = 0.0


class NodeExecutor:
    """Runs one node with its handler, a timeout and error classification.

    A timeout only stops waiting. A synchronous handler keeps running in its
    worker thread, so while that thread is busy the same node of the same
    execution is refused with :class:`FatalError` instead of being started a
    second time (a retried ``spreadsheetGenerator`` would upload twice).
    """

    def __init__(self, handlers: Iterable[HandlerSpec], timeout: float = 120.0) -> None:
        self._handlers: dict[NodeType, HandlerSpec] = {}
        for spec in handlers:
            if not isinstance(spec.node_type, NodeType):
                raise ValueError(f"handler registered for unknown node type {spec.node_type!r}")
            self._handlers[spec.node_type] = spec
        self.timeout = timeout
        self._busy: set[tuple[str, str]] = set()

    def handler_for(self, node_type: NodeType) -> HandlerSpec:
        spec = self._handlers.get(node_type)
        if spec is None:
            raise HandlerNotFoundError(f"no handler registered for node type {node_type.value}")
        return spec

    @property
    def node_types(self) -> list[NodeType]:
        return list(self._handlers)

    async def execute(self, node: Node, inputs: dict[str, Any], context: NodeContext) -> NodeOutput:
        spec = self.handler_for(node.type)
        missing = [key for key in spec.required_config if node.config.get(key) in (None, "")]
        if missing:
            raise ValidationError(f"node {node.id} is missing required config: {', '.join(missing)}")

        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(self._invoke(spec.handler, node, inputs, context), self.timeout)
        except asyncio.TimeoutError:
            raise TransientError(f"node {node.id} timed out after {self.timeout} seconds") from None
        except NodeError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("handler for node %s (%s) failed", node.id, node.type.value)
            raise FatalError(f"{type(exc).__name__}: {exc}") from exc
        duration_ms = round((time.perf_counter() - started) * 1000, 3)

        values = dict(result) if isinstance(result, Mapping) else {"result": result}
        schema = None
        rows = values.get("data")
        if isinstance(rows, list) and rows and all(isinstance(row, Mapping) for row in rows):
            schema = infer_schema(rows)
        sheet_name = values.get("sheetName") if isinstance(values.get("sheetName"), str) else None
        return NodeOutput(
            node_id=node.id,
            values=values,
            schema=schema,
            sheet_name=sheet_name,
            duration_ms=duration_ms,
        )

    async def _invoke(self, handler: Handler, node: Node, inputs: dict[str, Any], context: NodeContext) -> Any:
        if inspect.iscoroutinefunction(handler):
            return await handler(node, inputs, context)
        key = (context.execution_id, node.id)
        if key in self._busy:
            raise FatalError(f"node {node.id} is still running a timed out attempt")
        loop = asyncio.get_running_loop()
        call = functools.partial(self._call, key, handler, node, inputs, context)
        result = await loop.run_in_executor(None, call)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _call(
        self, key: tuple[str, str], handler: Handler, node: Node, inputs: dict[str, Any], context: NodeContext
    ) -> Any:
        self._busy.add(key)
        try:
            return handler(node, inputs, context)
        finally:
            self._busy.discard(key)
