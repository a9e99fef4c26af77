"""Value types for workflow graphs, schemas and executions."""

from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Union

from .errors import InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


# ---------------------------------------------------------------------------
# Workflow references
# ---------------------------------------------------------------------------

DRAFT_PREFIX = "draft:"


@dataclass(frozen=True)
class DraftRef:
    """A workflow that only exists in the builder and has no database row yet."""

    local_id: str

    @property
    def key(self) -> str:
        return f"{DRAFT_PREFIX}{self.local_id}"

    @property
    def is_draft(self) -> bool:
        return True

    def __str__(self) -> str:
        return self.key


@dataclass(frozen=True)
class PersistedRef:
    """A workflow stored in the ``workflows`` table."""

    id: int

    @property
    def key(self) -> str:
        return str(self.id)

    @property
    def is_draft(self) -> bool:
        return False

    def __str__(self) -> str:
        return self.key


WorkflowRef = Union[DraftRef, PersistedRef]


def parse_workflow_ref(value: str | int) -> WorkflowRef:
    """Rebuild a reference from its storage key."""

    if isinstance(value, int):
        return PersistedRef(value)
    text = str(value).strip()
    if text.startswith(DRAFT_PREFIX):
        local_id = text[len(DRAFT_PREFIX):]
        if not local_id:
            raise ValueError("draft reference requires a local id")
        return DraftRef(local_id)
    try:
        return PersistedRef(int(text))
    except ValueError:
        raise ValueError(f"invalid workflow reference: {value!r}") from None


# ---------------------------------------------------------------------------
# Nodes and edges
# ---------------------------------------------------------------------------


class NodeCategory(str, Enum):
    INPUT = "input"
    PROCESSING = "processing"
    AI = "ai"
    OUTPUT = "output"
    INTEGRATION = "integration"
    CONTROL = "control"
    UTILITY = "utility"


class NodeType(str, Enum):
    EXCEL_INPUT = "excelInput"
    CSV_INPUT = "csvInput"
    USER_INPUT = "userInput"
    DATA_TRANSFORM = "dataTransform"
    DATA_PROCESSING = "dataProcessing"
    FILTER = "filter"
    SORT = "sort"
    AI_ANALYSIS = "aiAnalysis"
    ASK_AI = "askAI"
    SPREADSHEET_GENERATOR = "spreadsheetGenerator"
    API_CALL = "apiCall"
    MERGE = "merge"
    CONDITIONAL_BRANCH = "conditionalBranch"
    LOOP = "loop"
    DELAY = "delay"

    @property
    def category(self) -> NodeCategory:
        return NODE_CATEGORIES[self]


NODE_CATEGORIES: dict[NodeType, NodeCategory] = {
    NodeType.EXCEL_INPUT: NodeCategory.INPUT,
    NodeType.CSV_INPUT: NodeCategory.INPUT,
    NodeType.USER_INPUT: NodeCategory.INPUT,
    NodeType.DATA_TRANSFORM: NodeCategory.PROCESSING,
    NodeType.DATA_PROCESSING: NodeCategory.PROCESSING,
    NodeType.FILTER: NodeCategory.PROCESSING,
    NodeType.SORT: NodeCategory.PROCESSING,
    NodeType.AI_ANALYSIS: NodeCategory.AI,
    NodeType.ASK_AI: NodeCategory.AI,
    NodeType.SPREADSHEET_GENERATOR: NodeCategory.OUTPUT,
    NodeType.API_CALL: NodeCategory.INTEGRATION,
    NodeType.MERGE: NodeCategory.CONTROL,
    NodeType.CONDITIONAL_BRANCH: NodeCategory.CONTROL,
    NodeType.LOOP: NodeCategory.CONTROL,
    NodeType.DELAY: NodeCategory.UTILITY,
}

# Control nodes allowed to close a cycle in the graph.
CYCLE_TOLERANT_TYPES = frozenset({NodeType.LOOP, NodeType.MERGE})


class NodeStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_NODE_STATUSES


_TERMINAL_NODE_STATUSES = frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED, NodeStatus.SKIPPED})


@dataclass
class Node:
    id: str
    type: NodeType
    config: dict[str, Any] = field(default_factory=dict)
    label: str = ""
    schema: list["SchemaColumn"] | None = None
    status: NodeStatus | None = None

    @property
    def category(self) -> NodeCategory:
        return self.type.category


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    source_handle: str | None = None
    target_handle: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class DataType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class SchemaColumn:
    name: str
    type: DataType = DataType.UNKNOWN
    nullable: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "type": self.type.value, "nullable": self.nullable}


@dataclass(frozen=True)
class SchemaRecord:
    """Column layout of one node (and optionally one sheet) of a workflow."""

    workflow: WorkflowRef
    node_id: str
    columns: tuple[SchemaColumn, ...]
    sheet_name: str | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_temporary(self) -> bool:
        return self.workflow.is_draft

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflowId": self.workflow.key,
            "nodeId": self.node_id,
            "sheetName": self.sheet_name,
            "columns": [column.to_dict() for column in self.columns],
            "isTemporary": self.is_temporary,
            "updatedAt": _isoformat(self.updated_at),
        }


# ---------------------------------------------------------------------------
# Executions
# ---------------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED)


_EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset(
        {ExecutionStatus.RUNNING, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
    ExecutionStatus.RUNNING: frozenset(
        {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
    ),
}

_NODE_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.RUNNING, NodeStatus.SKIPPED}),
    NodeStatus.RUNNING: frozenset({NodeStatus.COMPLETED, NodeStatus.FAILED}),
}


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    message: str
    node_id: str | None = None
    details: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": _isoformat(self.timestamp),
            "level": self.level,
            "message": self.message,
            "nodeId": self.node_id,
            "details": self.details,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LogEntry":
        return cls(
            timestamp=_parse_datetime(data.get("timestamp")) or utcnow(),
            level=str(data.get("level", "info")),
            message=str(data.get("message", "")),
            node_id=data.get("nodeId"),
            details=data.get("details"),
        )


@dataclass
class NodeState:
    status: NodeStatus = NodeStatus.PENDING
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    error_type: str | None = None
    output: dict[str, Any] | None = None

    def transition(self, status: NodeStatus) -> None:
        if status not in _NODE_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(f"node cannot move from {self.status.value} to {status.value}")
        self.status = status
        if status is NodeStatus.RUNNING:
            self.started_at = utcnow()
        elif status.is_terminal:
            self.completed_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "error": self.error,
            "errorType": self.error_type,
            "output": self.output,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "NodeState":
        return cls(
            status=NodeStatus(data.get("status", NodeStatus.PENDING.value)),
            attempts=int(data.get("attempts", 0)),
            started_at=_parse_datetime(data.get("startedAt")),
            completed_at=_parse_datetime(data.get("completedAt")),
            error=data.get("error"),
            error_type=data.get("errorType"),
            output=data.get("output"),
        )


@dataclass
class WorkflowExecution:
    """One run of a workflow graph."""

    workflow: WorkflowRef
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ExecutionStatus = ExecutionStatus.PENDING
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    node_states: dict[str, NodeState] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    logs: list[LogEntry] = field(default_factory=list)
    error: str | None = None

    def transition(self, status: ExecutionStatus) -> None:
        if status not in _EXECUTION_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(
                f"execution {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status.is_terminal:
            self.completed_at = utcnow()

    def log(
        self,
        level: str,
        message: str,
        *,
        node_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> LogEntry:
        entry = LogEntry(timestamp=utcnow(), level=level, message=message, node_id=node_id, details=details)
        self.logs.append(entry)
        return entry

    def nodes_with_status(self, status: NodeStatus) -> list[str]:
        return [node_id for node_id, state in self.node_states.items() if state.status is status]

    @property
    def progress(self) -> float:
        if not self.node_states:
            return 1.0 if self.status.is_terminal else 0.0
        done = sum(1 for state in self.node_states.values() if state.status.is_terminal)
        return round(done / len(self.node_states), 4)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "workflowId": self.workflow.key,
            "status": self.status.value,
            "startedAt": _isoformat(self.started_at),
            "completedAt": _isoformat(self.completed_at),
            "nodeStates": {node_id: state.to_dict() for node_id, state in self.node_states.items()},
            "inputs": self.inputs,
            "outputs": self.outputs,
            "logs": [entry.to_dict() for entry in self.logs],
            "error": self.error,
            "progress": self.progress,
        }
