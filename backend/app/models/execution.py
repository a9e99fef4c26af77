"""Workflow execution model definition."""

from __future__ import annotations

from datetime import datetime

from ..extensions import db


class WorkflowExecutionRecord(db.Model):
    """Persisted state of one workflow run."""

    __tablename__ = "workflow_executions"

    id = db.Column(db.String(36), primary_key=True)
    workflow_key = db.Column(db.String(64), nullable=False, index=True)
    status = db.Column(
        db.Enum(
            "pending",
            "running",
            "completed",
            "failed",
            "cancelled",
            name="workflow_execution_status",
        ),
        nullable=False,
    )
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    node_states_json = db.Column(db.Text, nullable=False, default="{}")
    inputs_json = db.Column(db.Text, nullable=False, default="{}")
    outputs_json = db.Column(db.Text, nullable=False, default="{}")
    logs_json = db.Column(db.Text, nullable=False, default="[]")
    error = db.Column(db.Text, nullable=True)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<WorkflowExecution {self.id} {self.status}>"
