"""Workflow engine executing node graphs in topological order."""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from ..realtime.channel import StatusChannel, StatusEvent, execution_channel, workflow_channel
from .errors import GraphValidationError, NodeError, RegistryError, TransientError, ValidationError
from .executor import NodeContext, NodeExecutor, NodeOutput
from .gateways import AIGateway, FileStore
from .graph import WorkflowGraph
from .propagation import PropagationQueues
from .schema_registry import SchemaRegistry
from .stores import ExecutionStore, GraphRepository
from .types import (
    ExecutionStatus,
    Node,
    NodeState,
    NodeStatus,
    WorkflowExecution,
    WorkflowRef,
)

logger = logging.getLogger(__name__)

# ``error_type`` of a node that was running when its execution stopped.
INTERRUPTED = "interrupted"

RunLogger = Callable[[str, str, str], None]


class WorkflowEngine:
    """Runs workflow executions on the current event loop.

    Nodes of one execution run one at a time in topological order; separate
    executions run concurrently as tasks. Cancellation is cooperative and
    takes effect before the next node is scheduled.
    """

    def __init__(
        self,
        graphs: GraphRepository,
        executions: ExecutionStore,
        executor: NodeExecutor,
        registry: SchemaRegistry,
        *,
        propagation: PropagationQueues | None = None,
        channel: StatusChannel | None = None,
        files: FileStore | None = None,
        ai: AIGateway | None = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        run_log: RunLogger | None = None,
    ) -> None:
        self.graphs = graphs
        self.executions = executions
        self.executor = executor
        self.registry = registry
        self.propagation = propagation
        self.channel = channel
        self.files = files
        self.ai = ai
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self._sleep = sleep
        self._run_log = run_log
        self._live: dict[str, WorkflowExecution] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._cancelled: set[str] = set()

    # -- public API -------------------------------------------------------

    async def execute(
        self, workflow: WorkflowRef, initial_inputs: dict[str, Any] | None = None
    ) -> WorkflowExecution:
        """Run a workflow to completion and return its final record."""

        execution = self._create(workflow, initial_inputs)
        await self._run(execution)
        return execution

    def start(self, workflow: WorkflowRef, initial_inputs: dict[str, Any] | None = None) -> WorkflowExecution:
        """Create an execution and schedule it on the running loop."""

        execution = self._create(workflow, initial_inputs)
        task = asyncio.get_running_loop().create_task(self._run(execution))
        self._tasks[execution.id] = task
        task.add_done_callback(lambda _: self._tasks.pop(execution.id, None))
        return execution

    async def wait(self, execution_id: str) -> WorkflowExecution | None:
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.shield(task)
        return self.get_execution(execution_id)

    def cancel(self, execution_id: str) -> bool:
        execution = self._live.get(execution_id)
        if execution is None or execution.status.is_terminal:
            return False
        self._cancelled.add(execution_id)
        execution.log("info", "cancellation requested")
        return True

    def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._live.get(execution_id)
        if execution is not None:
            return execution
        return self.executions.get(execution_id)

    def active_executions(self) -> list[WorkflowExecution]:
        return list(self._live.values())

    # -- execution --------------------------------------------------------

    def _create(self, workflow: WorkflowRef, initial_inputs: dict[str, Any] | None) -> WorkflowExecution:
        execution = WorkflowExecution(workflow=workflow, inputs=dict(initial_inputs or {}))
        graph = self.graphs.get_graph(workflow)
        if graph is not None:
            execution.node_states = {node.id: NodeState() for node in graph.nodes}
        self._live[execution.id] = execution
        self.executions.save(execution)
        return execution

    def _is_cancelled(self, execution: WorkflowExecution) -> bool:
        return execution.id in self._cancelled

    async def _run(self, execution: WorkflowExecution) -> None:
        try:
            await self._run_graph(execution)
        except asyncio.CancelledError:
            if not execution.status.is_terminal:
                self._interrupt_running_nodes(execution, "execution interrupted")
                execution.log("warning", "execution interrupted")
                execution.transition(ExecutionStatus.CANCELLED)
                self._finish(execution)
            raise
        except Exception as exc:
            logger.exception("execution %s crashed", execution.id)
            if not execution.status.is_terminal:
                execution.error = f"{type(exc).__name__}: {exc}"
                self._interrupt_running_nodes(execution, execution.error)
                execution.log("error", execution.error)
                execution.transition(ExecutionStatus.FAILED)
                try:
                    self._finish(execution)
                except Exception:
                    logger.exception("could not record the failure of execution %s", execution.id)
        finally:
            self._live.pop(execution.id, None)
            self._cancelled.discard(execution.id)

    def _interrupt_running_nodes(self, execution: WorkflowExecution, reason: str) -> None:
        """Fail nodes left running by a crash or a cancelled task."""
        for node_id in execution.nodes_with_status(NodeStatus.RUNNING):
            state = execution.node_states[node_id]
            state.error = reason
            state.error_type = INTERRUPTED
            state.transition(NodeStatus.FAILED)
            execution.log("error", f"interrupted: {reason}", node_id=node_id)

    async def _run_graph(self, execution: WorkflowExecution) -> None:
        graph = self.graphs.get_graph(execution.workflow)
        if graph is None:
            self._fail_early(execution, ValidationError(f"workflow {execution.workflow.key} has no graph"))
            return
        try:
            order = graph.execution_order()
        except GraphValidationError as exc:
            self._fail_early(execution, exc)
            return
        if self._is_cancelled(execution):
            execution.transition(ExecutionStatus.CANCELLED)
            self._finish(execution)
            return

        execution.transition(ExecutionStatus.RUNNING)
        execution.log("info", f"execution started with {len(order)} nodes")
        self._save_and_publish(execution)

        outputs: dict[str, dict[str, Any]] = {}
        for node_id in order:
            if self._is_cancelled(execution):
                break
            state = execution.node_states.setdefault(node_id, NodeState())
            blocked = [
                dependency
                for dependency in graph.dependencies(node_id)
                if execution.node_states[dependency].status in (NodeStatus.FAILED, NodeStatus.SKIPPED)
            ]
            if blocked:
                state.transition(NodeStatus.SKIPPED)
                execution.log("warning", f"skipped because {', '.join(blocked)} did not complete", node_id=node_id)
                self._node_changed(execution, node_id)
                continue

            inputs, upstream = self._collect_inputs(graph, node_id, outputs, execution)
            result = await self._run_node(execution, graph, graph.node(node_id), inputs, upstream)
            if result is not None:
                outputs[node_id] = result.values

        if self._is_cancelled(execution):
            execution.transition(ExecutionStatus.CANCELLED)
            execution.log("info", "execution cancelled")
        else:
            failed = execution.nodes_with_status(NodeStatus.FAILED)
            if failed:
                execution.error = f"{len(failed)} node(s) failed: {', '.join(failed)}"
                execution.transition(ExecutionStatus.FAILED)
            else:
                execution.transition(ExecutionStatus.COMPLETED)
        execution.outputs = {node_id: outputs[node_id] for node_id in graph.sinks() if node_id in outputs}
        self._finish(execution)

    def _collect_inputs(
        self,
        graph: WorkflowGraph,
        node_id: str,
        outputs: dict[str, dict[str, Any]],
        execution: WorkflowExecution,
    ) -> tuple[dict[str, Any], dict[str, dict[str, Any]]]:
        feedback = graph.feedback_edges()
        incoming = [edge for edge in graph.incoming(node_id) if edge not in feedback]
        if not incoming:
            return dict(execution.inputs), {}

        inputs: dict[str, Any] = {}
        upstream: dict[str, dict[str, Any]] = {}
        for edge in incoming:
            produced = outputs.get(edge.source)
            if produced is None:
                continue
            upstream[edge.source] = produced
            if edge.target_handle:
                if edge.source_handle:
                    inputs[edge.target_handle] = produced.get(edge.source_handle)
                else:
                    inputs[edge.target_handle] = produced.get("data", produced)
            elif edge.source_handle:
                inputs[edge.source_handle] = produced.get(edge.source_handle)
            else:
                inputs.update(produced)
        return inputs, upstream

    async def _run_node(
        self,
        execution: WorkflowExecution,
        graph: WorkflowGraph,
        node: Node,
        inputs: dict[str, Any],
        upstream: dict[str, dict[str, Any]],
    ) -> NodeOutput | None:
        state = execution.node_states[node.id]
        state.transition(NodeStatus.RUNNING)
        self._node_changed(execution, node.id)

        context = NodeContext(
            workflow=execution.workflow,
            execution_id=execution.id,
            node_id=node.id,
            files=self.files,
            ai=self.ai,
            registry=self.registry,
            workflow_inputs=dict(execution.inputs),
            upstream=upstream,
            log=lambda level, message: execution.log(level, message, node_id=node.id),
        )

        attempt = 0
        while True:
            attempt += 1
            state.attempts = attempt
            try:
                result = await self.executor.execute(node, inputs, context)
                break
            except TransientError as exc:
                if attempt >= self.max_attempts:
                    self._node_failed(execution, node, exc)
                    return None
                delay = self.retry_delay * attempt
                execution.log(
                    "warning",
                    f"attempt {attempt} failed: {exc}; retrying in {delay:g}s",
                    node_id=node.id,
                )
                await self._sleep(delay)
            except NodeError as exc:
                self._node_failed(execution, node, exc)
                return None

        state.output = result.values
        state.transition(NodeStatus.COMPLETED)
        execution.log(
            "info",
            f"completed in {result.duration_ms:.0f} ms",
            node_id=node.id,
            details={"attempts": attempt},
        )
        if result.schema:
            self._record_schema(execution, graph, node, result)
        self._node_changed(execution, node.id)
        self._persist_log(
            execution,
            "node",
            json.dumps(
                {
                    "execution": execution.id,
                    "workflow": execution.workflow.key,
                    "node": node.id,
                    "type": node.type.value,
                    "status": NodeStatus.COMPLETED.value,
                    "attempts": attempt,
                    "duration_ms": result.duration_ms,
                }
            ),
        )
        return result

    def _node_failed(self, execution: WorkflowExecution, node: Node, exc: NodeError) -> None:
        state = execution.node_states[node.id]
        state.error = str(exc)
        state.error_type = exc.kind
        state.transition(NodeStatus.FAILED)
        execution.log("error", f"{exc.kind}: {exc}", node_id=node.id, details={"attempts": state.attempts})
        self._node_changed(execution, node.id, message=str(exc))
        self._persist_log(
            execution,
            "node",
            json.dumps(
                {
                    "execution": execution.id,
                    "workflow": execution.workflow.key,
                    "node": node.id,
                    "type": node.type.value,
                    "status": NodeStatus.FAILED.value,
                    "attempts": state.attempts,
                    "error": {"type": exc.kind, "message": str(exc)},
                }
            ),
        )

    def _record_schema(
        self, execution: WorkflowExecution, graph: WorkflowGraph, node: Node, result: NodeOutput
    ) -> None:
        try:
            self.registry.put_schema(execution.workflow, node.id, result.schema or [], result.sheet_name)
        except RegistryError as exc:
            execution.log("warning", f"could not store schema: {exc}", node_id=node.id)
            return
        if self.propagation is not None:
            self.propagation.notify_schema_changed(graph, node.id, result.sheet_name, force=True)

    # -- bookkeeping ------------------------------------------------------

    def _fail_early(self, execution: WorkflowExecution, exc: Exception) -> None:
        execution.error = str(exc)
        execution.log("error", f"{type(exc).__name__}: {exc}")
        execution.transition(ExecutionStatus.FAILED)
        self._finish(execution)

    def _finish(self, execution: WorkflowExecution) -> None:
        self._save_and_publish(execution)
        summary = f"workflow {execution.workflow.key} execution {execution.id} {execution.status.value}"
        if execution.error:
            summary = f"{summary}: {execution.error}"
        logger.info(summary)
        self._persist_log(execution, "engine", summary)

    def _save_and_publish(self, execution: WorkflowExecution) -> None:
        self.executions.save(execution)
        if self.channel is None:
            return
        event = StatusEvent(
            entity_id=execution.id,
            kind="execution",
            status=execution.status.value,
            execution_id=execution.id,
            workflow_id=execution.workflow.key,
            progress=execution.progress,
            message=execution.error,
        )
        self.channel.publish(execution_channel(execution.id), event)
        self.channel.publish(workflow_channel(execution.workflow.key), event)

    def _node_changed(self, execution: WorkflowExecution, node_id: str, message: str | None = None) -> None:
        self.executions.save(execution)
        if self.channel is None:
            return
        event = StatusEvent(
            entity_id=node_id,
            kind="node",
            status=execution.node_states[node_id].status.value,
            execution_id=execution.id,
            workflow_id=execution.workflow.key,
            progress=execution.progress,
            message=message,
        )
        self.channel.publish(execution_channel(execution.id), event)

    def _persist_log(self, execution: WorkflowExecution, source: str, message: str) -> None:
        if self._run_log is not None:
            self._run_log(source, message, execution.id)
