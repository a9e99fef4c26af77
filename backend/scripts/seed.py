"""Seed the database with an example spreadsheet workflow."""
from __future__ import annotations

import json
import pathlib
import sys

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.app import Config, create_app
from backend.app.extensions import db
from backend.app.models.workflow import Workflow
from backend.app.workflow.graph import parse_graph
from backend.app.workflow.handlers import find_builtin
from backend.app.workflow.types import NodeType, PersistedRef

EXAMPLE_WORKFLOW_NAME = "Upload, filter and export"


class SeedConfig(Config):
    ENABLE_WORKFLOW_RUNNER = False


def _example_graph() -> str:
    """Build a linear Excel input -> filter -> spreadsheet generator graph."""

    steps = [
        ("upload", NodeType.EXCEL_INPUT, {"fileId": "uploads/sales.xlsx", "hasHeaders": True}),
        (
            "filter",
            NodeType.FILTER,
            {"conditions": [{"field": "amount", "operator": "greaterThan", "value": 100}]},
        ),
        (
            "generate",
            NodeType.SPREADSHEET_GENERATOR,
            {"filename": "large-sales.xlsx", "format": "xlsx"},
        ),
    ]
    nodes = []
    for index, (node_id, node_type, config) in enumerate(steps):
        spec = find_builtin(node_type)
        if spec is None:
            raise RuntimeError(f"Missing built-in handler for {node_type.value}")
        nodes.append(
            {
                "id": node_id,
                "type": node_type.value,
                "position": {"x": 240 * index, "y": 0},
                "data": {"label": node_id.title(), "config": config},
            }
        )
    edges = [
        {"id": f"e-{source}-{target}", "source": source, "target": target}
        for (source, _, _), (target, _, _) in zip(steps, steps[1:])
    ]
    graph = {"nodes": nodes, "edges": edges}
    # Fails loudly if the example ever stops validating.
    parse_graph(PersistedRef(0), graph).execution_order()
    return json.dumps(graph)


def _ensure_example_workflow() -> tuple[bool, bool]:
    graph_json = _example_graph()
    workflow = Workflow.query.filter_by(name=EXAMPLE_WORKFLOW_NAME).first()
    created = False
    updated = False

    if workflow is None:
        workflow = Workflow(
            name=EXAMPLE_WORKFLOW_NAME,
            description="Keeps rows with an amount above 100 and writes them to a new workbook.",
            graph_json=graph_json,
        )
        db.session.add(workflow)
        created = True
    elif workflow.graph_json != graph_json:
        workflow.graph_json = graph_json
        updated = True
    return created, updated


def main() -> None:
    app = create_app(SeedConfig)
    with app.app_context():
        created, updated = _ensure_example_workflow()
        db.session.commit()

        print(
            "Seed completed",
            f"workflows created={int(created)}",
            f"workflows updated={int(updated)}",
        )


if __name__ == "__main__":
    main()
