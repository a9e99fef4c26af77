"""Persistence contracts used by the engine and their implementations.

Every store is an instance: nothing is shared through module globals, so
several engines (tests, workers) can run side by side. The SQL variants run
each call inside its own Flask application context, which makes them safe to
use from the runtime thread.
"""

from __future__ import annotations

import json
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from typing import Any, Protocol, TypeVar

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.execution import WorkflowExecutionRecord
from ..models.schema import NodeSchema
from ..models.workflow import Workflow
from .errors import RegistryError
from .graph import WorkflowGraph, parse_graph
from .types import (
    DataType,
    DraftRef,
    ExecutionStatus,
    LogEntry,
    NodeState,
    PersistedRef,
    SchemaColumn,
    SchemaRecord,
    WorkflowExecution,
    WorkflowRef,
    parse_workflow_ref,
)

T = TypeVar("T")

SchemaKey = tuple[str, str, str | None]


def schema_key(workflow: WorkflowRef, node_id: str, sheet_name: str | None) -> SchemaKey:
    return (workflow.key, node_id, sheet_name or None)


class GraphRepository(Protocol):
    def get_graph(self, workflow: WorkflowRef) -> WorkflowGraph | None: ...

    def save_graph(self, graph: WorkflowGraph) -> None: ...


class SchemaStore(Protocol):
    def get(self, workflow: WorkflowRef, node_id: str, sheet_name: str | None) -> SchemaRecord | None: ...

    def list_for_node(self, workflow: WorkflowRef, node_id: str) -> list[SchemaRecord]: ...

    def upsert(self, record: SchemaRecord) -> SchemaRecord: ...

    def move(self, source: WorkflowRef, target: WorkflowRef) -> int: ...


class ExecutionStore(Protocol):
    def save(self, execution: WorkflowExecution) -> None: ...

    def get(self, execution_id: str) -> WorkflowExecution | None: ...

    def list_for_workflow(self, workflow: WorkflowRef, limit: int = 50) -> list[WorkflowExecution]: ...


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemoryGraphRepository:
    def __init__(self, graphs: Iterable[WorkflowGraph] = ()) -> None:
        self._graphs: dict[str, WorkflowGraph] = {}
        self._lock = threading.Lock()
        for graph in graphs:
            self.save_graph(graph)

    def get_graph(self, workflow: WorkflowRef) -> WorkflowGraph | None:
        with self._lock:
            return self._graphs.get(workflow.key)

    def save_graph(self, graph: WorkflowGraph) -> None:
        with self._lock:
            self._graphs[graph.workflow.key] = graph

    def discard(self, workflow: WorkflowRef) -> None:
        with self._lock:
            self._graphs.pop(workflow.key, None)


class InMemorySchemaStore:
    def __init__(self) -> None:
        self._records: dict[SchemaKey, SchemaRecord] = {}
        self._lock = threading.Lock()

    def get(self, workflow: WorkflowRef, node_id: str, sheet_name: str | None) -> SchemaRecord | None:
        with self._lock:
            return self._records.get(schema_key(workflow, node_id, sheet_name))

    def list_for_node(self, workflow: WorkflowRef, node_id: str) -> list[SchemaRecord]:
        with self._lock:
            return [
                record
                for (workflow_key, record_node, _), record in self._records.items()
                if workflow_key == workflow.key and record_node == node_id
            ]

    def upsert(self, record: SchemaRecord) -> SchemaRecord:
        with self._lock:
            self._records[schema_key(record.workflow, record.node_id, record.sheet_name)] = record
        return record

    def move(self, source: WorkflowRef, target: WorkflowRef) -> int:
        moved = 0
        with self._lock:
            for key in [key for key in self._records if key[0] == source.key]:
                record = self._records.pop(key)
                relocated = SchemaRecord(
                    workflow=target,
                    node_id=record.node_id,
                    columns=record.columns,
                    sheet_name=record.sheet_name,
                    updated_at=record.updated_at,
                )
                self._records[schema_key(target, record.node_id, record.sheet_name)] = relocated
                moved += 1
        return moved


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._executions: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def save(self, execution: WorkflowExecution) -> None:
        # Store a snapshot so later in-memory mutations are not visible
        # until the engine saves again.
        with self._lock:
            self._executions[execution.id] = json.loads(json.dumps(execution.to_dict(), default=str))

    def get(self, execution_id: str) -> WorkflowExecution | None:
        with self._lock:
            snapshot = self._executions.get(execution_id)
        if snapshot is None:
            return None
        return execution_from_dict(snapshot)

    def list_for_workflow(self, workflow: WorkflowRef, limit: int = 50) -> list[WorkflowExecution]:
        with self._lock:
            snapshots = [item for item in self._executions.values() if item["workflowId"] == workflow.key]
        snapshots.sort(key=lambda item: item["startedAt"] or "", reverse=True)
        return [execution_from_dict(item) for item in snapshots[:limit]]


def execution_from_dict(data: dict[str, Any]) -> WorkflowExecution:
    """Inverse of ``WorkflowExecution.to_dict``."""

    def _dt(value: Any) -> datetime | None:
        return datetime.fromisoformat(value) if value else None

    return WorkflowExecution(
        workflow=parse_workflow_ref(data["workflowId"]),
        id=data["id"],
        status=ExecutionStatus(data["status"]),
        started_at=_dt(data.get("startedAt")) or datetime.now(timezone.utc),
        completed_at=_dt(data.get("completedAt")),
        node_states={
            node_id: NodeState.from_dict(state) for node_id, state in (data.get("nodeStates") or {}).items()
        },
        inputs=data.get("inputs") or {},
        outputs=data.get("outputs") or {},
        logs=[LogEntry.from_dict(entry) for entry in data.get("logs") or []],
        error=data.get("error"),
    )


# ---------------------------------------------------------------------------
# Flask-SQLAlchemy implementations
# ---------------------------------------------------------------------------


def _to_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_datetime(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class _SqlStore:
    def __init__(self, app: Flask) -> None:
        self._app = app

    def _run(self, func: Callable[[], T], *, error: type[Exception] | None = None) -> T:
        with self._app.app_context():
            try:
                return func()
            except SQLAlchemyError as exc:
                db.session.rollback()
                if error is None:
                    raise
                raise error(str(exc)) from exc


class SqlGraphRepository(_SqlStore):
    """Loads persisted graphs from ``workflows``; drafts stay in memory."""

    def __init__(self, app: Flask) -> None:
        super().__init__(app)
        self._drafts = InMemoryGraphRepository()

    def get_graph(self, workflow: WorkflowRef) -> WorkflowGraph | None:
        if isinstance(workflow, DraftRef):
            return self._drafts.get_graph(workflow)

        def _load() -> WorkflowGraph | None:
            row = db.session.get(Workflow, workflow.id)
            if row is None:
                return None
            return parse_graph(workflow, row.graph_json)

        return self._run(_load)

    def save_graph(self, graph: WorkflowGraph) -> None:
        if isinstance(graph.workflow, DraftRef):
            self._drafts.save_graph(graph)
            return

        def _store() -> None:
            row = db.session.get(Workflow, graph.workflow.id)
            if row is None:
                raise LookupError(f"workflow {graph.workflow.id} does not exist")
            row.graph_json = json.dumps(graph.to_dict())
            db.session.commit()

        self._run(_store)

    def discard_draft(self, workflow: DraftRef) -> None:
        self._drafts.discard(workflow)


def _record_from_row(row: NodeSchema) -> SchemaRecord:
    columns = tuple(
        SchemaColumn(
            name=item["name"],
            type=DataType(item.get("type", DataType.UNKNOWN.value)),
            nullable=bool(item.get("nullable", True)),
        )
        for item in json.loads(row.columns_json or "[]")
    )
    return SchemaRecord(
        workflow=parse_workflow_ref(row.workflow_key),
        node_id=row.node_id,
        columns=columns,
        sheet_name=row.sheet_name or None,
        updated_at=_from_db_datetime(row.updated_at),
    )


class SqlSchemaStore(_SqlStore):
    def get(self, workflow: WorkflowRef, node_id: str, sheet_name: str | None) -> SchemaRecord | None:
        def _get() -> SchemaRecord | None:
            row = NodeSchema.query.filter_by(
                workflow_key=workflow.key, node_id=node_id, sheet_name=sheet_name or ""
            ).first()
            return _record_from_row(row) if row is not None else None

        return self._run(_get, error=RegistryError)

    def list_for_node(self, workflow: WorkflowRef, node_id: str) -> list[SchemaRecord]:
        def _list() -> list[SchemaRecord]:
            rows = NodeSchema.query.filter_by(workflow_key=workflow.key, node_id=node_id).all()
            return [_record_from_row(row) for row in rows]

        return self._run(_list, error=RegistryError)

    def upsert(self, record: SchemaRecord) -> SchemaRecord:
        def _upsert() -> SchemaRecord:
            row = NodeSchema.query.filter_by(
                workflow_key=record.workflow.key,
                node_id=record.node_id,
                sheet_name=record.sheet_name or "",
            ).first()
            if row is None:
                row = NodeSchema(
                    workflow_key=record.workflow.key,
                    node_id=record.node_id,
                    sheet_name=record.sheet_name or "",
                )
                db.session.add(row)
            row.columns_json = json.dumps([column.to_dict() for column in record.columns])
            row.is_temporary = record.is_temporary
            row.updated_at = _to_db_datetime(record.updated_at)
            db.session.commit()
            return record

        return self._run(_upsert, error=RegistryError)

    def move(self, source: WorkflowRef, target: WorkflowRef) -> int:
        def _move() -> int:
            rows = NodeSchema.query.filter_by(workflow_key=source.key).all()
            for row in rows:
                NodeSchema.query.filter_by(
                    workflow_key=target.key, node_id=row.node_id, sheet_name=row.sheet_name
                ).delete()
                row.workflow_key = target.key
                row.is_temporary = target.is_draft
            db.session.commit()
            return len(rows)

        return self._run(_move, error=RegistryError)


class SqlExecutionStore(_SqlStore):
    def save(self, execution: WorkflowExecution) -> None:
        payload = execution.to_dict()

        def _save() -> None:
            row = db.session.get(WorkflowExecutionRecord, execution.id)
            if row is None:
                row = WorkflowExecutionRecord(id=execution.id, workflow_key=execution.workflow.key)
                db.session.add(row)
            row.status = execution.status.value
            row.started_at = _to_db_datetime(execution.started_at)
            row.completed_at = _to_db_datetime(execution.completed_at)
            row.node_states_json = json.dumps(payload["nodeStates"], default=str)
            row.inputs_json = json.dumps(payload["inputs"], default=str)
            row.outputs_json = json.dumps(payload["outputs"], default=str)
            row.logs_json = json.dumps(payload["logs"], default=str)
            row.error = execution.error
            if isinstance(execution.workflow, PersistedRef) and execution.status.is_terminal:
                workflow = db.session.get(Workflow, execution.workflow.id)
                if workflow is not None:
                    workflow.last_run_at = row.completed_at
                    workflow.last_run_status = execution.status.value
            db.session.commit()

        self._run(_save)

    def get(self, execution_id: str) -> WorkflowExecution | None:
        def _get() -> WorkflowExecution | None:
            row = db.session.get(WorkflowExecutionRecord, execution_id)
            return _execution_from_row(row) if row is not None else None

        return self._run(_get)

    def list_for_workflow(self, workflow: WorkflowRef, limit: int = 50) -> list[WorkflowExecution]:
        def _list() -> list[WorkflowExecution]:
            rows = (
                WorkflowExecutionRecord.query.filter_by(workflow_key=workflow.key)
                .order_by(WorkflowExecutionRecord.started_at.desc())
                .limit(limit)
                .all()
            )
            return [_execution_from_row(row) for row in rows]

        return self._run(_list)


def _execution_from_row(row: WorkflowExecutionRecord) -> WorkflowExecution:
    started_at = _from_db_datetime(row.started_at)
    completed_at = _from_db_datetime(row.completed_at)
    return execution_from_dict(
        {
            "id": row.id,
            "workflowId": row.workflow_key,
            "status": row.status,
            "startedAt": started_at.isoformat() if started_at else None,
            "completedAt": completed_at.isoformat() if completed_at else None,
            "nodeStates": json.loads(row.node_states_json or "{}"),
            "inputs": json.loads(row.inputs_json or "{}"),
            "outputs": json.loads(row.outputs_json or "{}"),
            "logs": json.loads(row.logs_json or "[]"),
            "error": row.error,
        }
    )
