"""Node schema model definition."""

from __future__ import annotations

from datetime import datetime

from ..extensions import db


class NodeSchema(db.Model):
    """Column layout produced by a workflow node for one sheet."""

    __tablename__ = "workflow_node_schemas"
    __table_args__ = (
        db.UniqueConstraint("workflow_key", "node_id", "sheet_name", name="uq_node_schema_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    workflow_key = db.Column(db.String(64), nullable=False, index=True)
    node_id = db.Column(db.String(128), nullable=False)
    # Empty string stands for "no sheet" so the unique constraint applies.
    sheet_name = db.Column(db.String(255), nullable=False, default="")
    columns_json = db.Column(db.Text, nullable=False)
    is_temporary = db.Column(db.Boolean, nullable=False, default=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover - repr not critical for tests
        return f"<NodeSchema {self.workflow_key}/{self.node_id}/{self.sheet_name!r}>"
