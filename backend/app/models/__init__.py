"""Database models for the workflow backend."""

from .execution import WorkflowExecutionRecord
from .logs import RunLog
from .schema import NodeSchema
from .workflow import Workflow

__all__ = ["NodeSchema", "RunLog", "Workflow", "WorkflowExecutionRecord"]
