"""Exception hierarchy shared by the workflow engine components."""

from __future__ import annotations


class WorkflowError(Exception):
    """Base class for all workflow engine errors."""


class GraphValidationError(WorkflowError):
    """Raised when a workflow graph definition is structurally invalid."""


class CycleError(GraphValidationError):
    """Raised when a cycle exists outside of loop or merge control nodes."""

    def __init__(self, node_ids: list[str]) -> None:
        self.node_ids = sorted(node_ids)
        super().__init__(f"cycle detected in workflow graph involving: {', '.join(self.node_ids)}")


class InvalidTransitionError(WorkflowError):
    """Raised when a status change is not allowed by the state machine."""


class RegistryError(WorkflowError):
    """Raised when the schema store cannot be read or written."""


class NodeError(WorkflowError):
    """Base class for failures raised while executing a single node."""

    retryable = False

    @property
    def kind(self) -> str:
        return type(self).__name__


class ValidationError(NodeError):
    """Node configuration or inputs are invalid. Never retried."""


class HandlerNotFoundError(ValidationError):
    """No handler is registered for the node type."""


class TransientError(NodeError):
    """Temporary failure of an external collaborator. Retried by the engine."""

    retryable = True


class FatalError(NodeError):
    """Unexpected failure inside a handler."""
