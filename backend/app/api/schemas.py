"""REST API endpoints for node schemas and their propagation."""

from __future__ import annotations

from http import HTTPStatus

from flask import Blueprint, current_app, jsonify, request

from ..workflow.errors import GraphValidationError, RegistryError
from ..workflow.runner import get_runner
from ..workflow.types import parse_workflow_ref

bp = Blueprint("schemas", __name__)


def _lookup(workflow_id: str):
    runner = get_runner(current_app)
    if runner is None:
        return None, None, (
            jsonify({"error": "workflow runner is not running"}),
            HTTPStatus.SERVICE_UNAVAILABLE,
        )
    try:
        ref = parse_workflow_ref(workflow_id)
    except ValueError as exc:
        return None, None, (jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST)
    return runner, ref, None


@bp.get("/workflows/<workflow_id>/nodes/<node_id>/schema")
def get_node_schema(workflow_id: str, node_id: str) -> tuple[object, int]:
    runner, ref, error = _lookup(workflow_id)
    if error is not None:
        return error

    sheet_name = request.args.get("sheet") or None
    resolve = request.args.get("resolve", "false").lower() in {"1", "true", "yes"}
    try:
        if resolve:
            record = runner.registry.resolve_schema(ref, node_id, sheet_name)
        else:
            record = runner.registry.get_schema(ref, node_id, sheet_name)
    except RegistryError as exc:
        current_app.logger.warning("Schema lookup for %s/%s failed: %s", ref.key, node_id, exc)
        return jsonify({"error": "schema store unavailable"}), HTTPStatus.SERVICE_UNAVAILABLE

    if record is None:
        return jsonify({"error": "schema not found"}), HTTPStatus.NOT_FOUND
    return jsonify(record.to_dict()), HTTPStatus.OK


@bp.put("/workflows/<workflow_id>/nodes/<node_id>/schema")
def put_node_schema(workflow_id: str, node_id: str) -> tuple[object, int]:
    runner, ref, error = _lookup(workflow_id)
    if error is not None:
        return error

    graph = runner.graphs.get_graph(ref)
    if graph is None or node_id not in graph:
        return jsonify({"error": "node not found"}), HTTPStatus.NOT_FOUND

    payload = request.get_json(silent=True, force=True) or {}
    columns = payload.get("columns")
    if not isinstance(columns, list):
        return jsonify({"error": "columns must be a list"}), HTTPStatus.BAD_REQUEST
    sheet_name = payload.get("sheetName") or None

    try:
        record = runner.registry.put_schema(ref, node_id, columns, sheet_name)
    except (ValueError, AttributeError) as exc:
        return jsonify({"errors": [str(exc)]}), HTTPStatus.BAD_REQUEST
    except RegistryError as exc:
        current_app.logger.warning("Schema write for %s/%s failed: %s", ref.key, node_id, exc)
        return jsonify({"error": "schema store unavailable"}), HTTPStatus.SERVICE_UNAVAILABLE

    try:
        tasks = runner.notify_schema_changed(graph, node_id, sheet_name)
    except GraphValidationError as exc:
        return jsonify({"errors": [str(exc)]}), HTTPStatus.BAD_REQUEST

    return jsonify({"schema": record.to_dict(), "propagation": tasks}), HTTPStatus.OK


@bp.get("/workflows/<workflow_id>/propagation")
def get_propagation(workflow_id: str) -> tuple[object, int]:
    runner, ref, error = _lookup(workflow_id)
    if error is not None:
        return error

    tasks = runner.settle_propagation(ref)
    return (
        jsonify({"tasks": tasks, "cooldown": runner.propagation.cooldown.stats()}),
        HTTPStatus.OK,
    )
