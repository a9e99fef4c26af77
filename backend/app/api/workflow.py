"""REST API endpoints for storing and retrieving workflows."""

from __future__ import annotations

import json
from http import HTTPStatus
from typing import Any

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy import func

from ..extensions import db
from ..models.workflow import Workflow
from ..workflow.errors import GraphValidationError, RegistryError
from ..workflow.graph import WorkflowGraph, parse_graph
from ..workflow.runner import get_runner
from ..workflow.types import DraftRef, Edge, PersistedRef

bp = Blueprint("workflows", __name__)

MAX_GRAPH_BYTES = 500_000


def _isoformat(value) -> str | None:
    return value.isoformat() + "Z" if value is not None else None


def _serialize_workflow(workflow: Workflow) -> dict[str, Any]:
    """Return a JSON serialisable representation of a workflow."""

    try:
        graph = json.loads(workflow.graph_json)
    except (TypeError, ValueError):
        graph = {}
    return {
        "id": workflow.id,
        "name": workflow.name,
        "description": workflow.description,
        "graph_json": graph,
        "last_run_at": _isoformat(workflow.last_run_at),
        "last_run_status": workflow.last_run_status,
        "created_at": _isoformat(workflow.created_at),
        "updated_at": _isoformat(workflow.updated_at),
    }


def _normalize_graph(value: Any, *, allow_default: bool = False) -> tuple[str, list[str]]:
    """Validate and serialise the graph payload, returning errors if present."""

    errors: list[str] = []

    if value is None:
        if allow_default:
            return json.dumps({"nodes": [], "edges": []}), errors
        errors.append("graph_json is required")
        return "", errors

    if isinstance(value, str):
        if not value.strip():
            errors.append("graph_json must not be empty")
            return "", errors
        graph_text = value
    else:
        try:
            graph_text = json.dumps(value)
        except (TypeError, ValueError):
            errors.append("graph_json must be serialisable")
            return "", errors

    if len(graph_text.encode("utf-8")) > MAX_GRAPH_BYTES:
        errors.append("graph_json exceeds the maximum size")
        return "", errors

    try:
        graph = parse_graph(PersistedRef(0), graph_text)
        graph.execution_order()
    except GraphValidationError as exc:
        errors.append(str(exc))

    return graph_text, errors


def _is_name_unique(name: str, workflow_id: int | None = None) -> bool:
    """Check whether the workflow name is unique."""

    query = Workflow.query.filter(func.lower(Workflow.name) == name.lower())
    if workflow_id is not None:
        query = query.filter(Workflow.id != workflow_id)
    return not db.session.query(query.exists()).scalar()


def _runner_unavailable() -> tuple[object, int]:
    return jsonify({"error": "workflow runner is not running"}), HTTPStatus.SERVICE_UNAVAILABLE


@bp.post("/workflows")
def create_workflow() -> tuple[object, int]:
    payload = request.get_json(silent=True, force=True) or {}
    name = (payload.get("name") or "").strip()

    if not name:
        return jsonify({"error": "name is required"}), HTTPStatus.BAD_REQUEST

    if not _is_name_unique(name):
        return jsonify({"error": "a workflow with this name already exists"}), HTTPStatus.CONFLICT

    graph_text, errors = _normalize_graph(payload.get("graph_json"), allow_default=True)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    workflow = Workflow(name=name, description=payload.get("description"), graph_json=graph_text)
    db.session.add(workflow)
    db.session.commit()

    return jsonify(_serialize_workflow(workflow)), HTTPStatus.CREATED


@bp.get("/workflows")
def list_workflows() -> tuple[object, int]:
    workflows = Workflow.query.order_by(Workflow.created_at.desc()).all()
    return (
        jsonify(
            [
                {"id": wf.id, "name": wf.name, "last_run_status": wf.last_run_status}
                for wf in workflows
            ]
        ),
        HTTPStatus.OK,
    )


@bp.get("/workflows/<int:workflow_id>")
def get_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.put("/workflows/<int:workflow_id>")
def update_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(silent=True, force=True) or {}

    name = payload.get("name")
    if name is not None:
        name = name.strip()
        if not name:
            return jsonify({"error": "name must not be empty"}), HTTPStatus.BAD_REQUEST
        if not _is_name_unique(name, workflow_id):
            return jsonify({"error": "a workflow with this name already exists"}), HTTPStatus.CONFLICT
        workflow.name = name

    if "description" in payload:
        workflow.description = payload.get("description")

    graph_text, errors = _normalize_graph(payload.get("graph_json"))
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    workflow.graph_json = graph_text
    db.session.commit()

    return jsonify(_serialize_workflow(workflow)), HTTPStatus.OK


@bp.delete("/workflows/<int:workflow_id>")
def delete_workflow(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    db.session.delete(workflow)
    db.session.commit()
    runner = get_runner(current_app)
    if runner is not None:
        runner.propagation.forget(PersistedRef(workflow_id))
    return "", HTTPStatus.NO_CONTENT


def _edge_from_payload(payload: dict[str, Any]) -> tuple[Edge | None, list[str]]:
    source = payload.get("source")
    target = payload.get("target")
    errors = []
    if not isinstance(source, str) or not source:
        errors.append("source is required")
    if not isinstance(target, str) or not target:
        errors.append("target is required")
    if errors:
        return None, errors
    return (
        Edge(
            source=source,
            target=target,
            source_handle=payload.get("sourceHandle") or None,
            target_handle=payload.get("targetHandle") or None,
        ),
        [],
    )


@bp.post("/workflows/<int:workflow_id>/edges")
def add_edge(workflow_id: int) -> tuple[object, int]:
    workflow = Workflow.query.get_or_404(workflow_id)
    payload = request.get_json(silent=True, force=True) or {}
    edge, errors = _edge_from_payload(payload)
    if errors:
        return jsonify({"errors": errors}), HTTPStatus.BAD_REQUEST

    ref = PersistedRef(workflow_id)
    try:
        graph = parse_graph(ref, workflow.graph_json).with_edge(edge)
        graph.execution_order()
    except GraphValidationError as exc:
        return jsonify({"errors": [str(exc)]}), HTTPStatus.BAD_REQUEST

    workflow.graph_json = json.dumps(graph.to_dict())
    db.session.commit()

    task = None
    runner = get_runner(current_app)
    if runner is not None:
        task = runner.enqueue_propagation(ref, edge.source, edge.target, payload.get("sheetName") or None)

    return jsonify({"graph": graph.to_dict(), "propagation": task}), HTTPStatus.CREATED


@bp.put("/drafts/<local_id>")
def save_draft(local_id: str) -> tuple[object, int]:
    runner = get_runner(current_app)
    if runner is None:
        return _runner_unavailable()
    payload = request.get_json(silent=True, force=True) or {}
    try:
        graph = parse_graph(DraftRef(local_id), payload.get("graph_json"))
        graph.execution_order()
    except GraphValidationError as exc:
        return jsonify({"errors": [str(exc)]}), HTTPStatus.BAD_REQUEST

    runner.graphs.save_graph(graph)
    return jsonify({"id": graph.workflow.key, "graph_json": graph.to_dict()}), HTTPStatus.OK


@bp.post("/drafts/<local_id>/persist")
def persist_draft(local_id: str) -> tuple[object, int]:
    runner = get_runner(current_app)
    if runner is None:
        return _runner_unavailable()
    draft = DraftRef(local_id)
    graph: WorkflowGraph | None = runner.graphs.get_graph(draft)
    if graph is None:
        return jsonify({"error": "draft not found"}), HTTPStatus.NOT_FOUND

    payload = request.get_json(silent=True, force=True) or {}
    name = (payload.get("name") or "").strip()
    if not name:
        return jsonify({"error": "name is required"}), HTTPStatus.BAD_REQUEST
    if not _is_name_unique(name):
        return jsonify({"error": "a workflow with this name already exists"}), HTTPStatus.CONFLICT

    workflow = Workflow(
        name=name,
        description=payload.get("description"),
        graph_json=json.dumps(graph.to_dict()),
    )
    db.session.add(workflow)
    db.session.commit()

    try:
        moved = runner.registry.promote(draft, PersistedRef(workflow.id))
    except RegistryError as exc:
        current_app.logger.warning("Could not move schemas of %s: %s", draft.key, exc)
        moved = 0
    runner.graphs.discard_draft(draft)
    runner.propagation.forget(draft)

    body = _serialize_workflow(workflow)
    body["schemas_moved"] = moved
    return jsonify(body), HTTPStatus.CREATED
