"""Run log model definition."""

from __future__ import annotations

from datetime import datetime

from ..extensions import db

RUN_LOG_SOURCES = ("engine", "node", "schema", "realtime")


class RunLog(db.Model):
    """A line written by the engine, a node, schema propagation or the status server."""

    __tablename__ = "run_logs"

    id = db.Column(db.Integer, primary_key=True)
    source = db.Column(db.Enum(*RUN_LOG_SOURCES, name="runlog_source"), nullable=False)
    execution_id = db.Column(db.String(36), nullable=True, index=True)
    message = db.Column(db.Text, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "source": self.source,
            "executionId": self.execution_id,
            "message": self.message,
            "createdAt": self.created_at.isoformat() + "Z",
        }

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<RunLog {self.id} {self.source} execution={self.execution_id}>"
