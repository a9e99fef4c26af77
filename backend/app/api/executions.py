"""REST API endpoints for starting and following workflow executions."""

from __future__ import annotations

import json
from concurrent.futures import TimeoutError as FutureTimeoutError
from http import HTTPStatus
from typing import Iterable

from flask import Blueprint, Response, current_app, jsonify, request, stream_with_context

from ..extensions import limiter
from ..realtime.channel import LastSeenFilter, execution_channel
from ..workflow.runner import get_runner
from ..workflow.stores import SqlExecutionStore
from ..workflow.types import ExecutionStatus, parse_workflow_ref

bp = Blueprint("executions", __name__)

STREAM_POLL_SECONDS = 15.0
MAX_WAIT_SECONDS = 120.0


def _execution_rate_limit() -> str:
    return current_app.config.get("EXECUTION_RATE_LIMIT", "10 per minute")


def _runner_or_error():
    runner = get_runner(current_app)
    if runner is None:
        return None, (jsonify({"error": "workflow runner is not running"}), HTTPStatus.SERVICE_UNAVAILABLE)
    return runner, None


def _parse_ref(value: str):
    try:
        return parse_workflow_ref(value), None
    except ValueError as exc:
        return None, (jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST)


@bp.post("/workflows/<workflow_id>/executions")
@limiter.limit(_execution_rate_limit)
def start_execution(workflow_id: str) -> tuple[object, int]:
    ref, error = _parse_ref(workflow_id)
    if error is not None:
        return error
    runner, error = _runner_or_error()
    if error is not None:
        return error

    payload = request.get_json(silent=True, force=True) or {}
    inputs = payload.get("inputs") or {}
    if not isinstance(inputs, dict):
        return jsonify({"error": "inputs must be an object"}), HTTPStatus.BAD_REQUEST
    if runner.graphs.get_graph(ref) is None:
        return jsonify({"error": "workflow not found"}), HTTPStatus.NOT_FOUND

    execution = runner.start_execution(ref, inputs)
    if not payload.get("wait"):
        return jsonify(execution), HTTPStatus.ACCEPTED

    try:
        timeout = min(float(payload.get("timeout") or 30), MAX_WAIT_SECONDS)
    except (TypeError, ValueError):
        return jsonify({"error": "timeout must be a number"}), HTTPStatus.BAD_REQUEST
    try:
        finished = runner.wait_for_execution(execution["id"], timeout=timeout)
    except (TimeoutError, FutureTimeoutError):
        return jsonify(runner.get_execution(execution["id"]) or execution), HTTPStatus.ACCEPTED
    return jsonify(finished or execution), HTTPStatus.OK


@bp.get("/executions/<execution_id>")
def get_execution(execution_id: str) -> tuple[object, int]:
    runner = get_runner(current_app)
    if runner is not None:
        execution = runner.get_execution(execution_id)
    else:
        record = SqlExecutionStore(current_app._get_current_object()).get(execution_id)
        execution = record.to_dict() if record is not None else None
    if execution is None:
        return jsonify({"error": "execution not found"}), HTTPStatus.NOT_FOUND
    return jsonify(execution), HTTPStatus.OK


@bp.get("/workflows/<workflow_id>/executions")
def list_executions(workflow_id: str) -> tuple[object, int]:
    ref, error = _parse_ref(workflow_id)
    if error is not None:
        return error
    limit = request.args.get("limit", type=int) or 50
    limit = max(1, min(limit, 200))
    store = SqlExecutionStore(current_app._get_current_object())
    executions = store.list_for_workflow(ref, limit=limit)
    summaries = [
        {
            "id": execution.id,
            "status": execution.status.value,
            "startedAt": execution.started_at.isoformat() if execution.started_at else None,
            "completedAt": execution.completed_at.isoformat() if execution.completed_at else None,
            "error": execution.error,
        }
        for execution in executions
    ]
    return jsonify(summaries), HTTPStatus.OK


@bp.post("/executions/<execution_id>/cancel")
def cancel_execution(execution_id: str) -> tuple[object, int]:
    runner, error = _runner_or_error()
    if error is not None:
        return error
    if runner.cancel_execution(execution_id):
        return jsonify({"id": execution_id, "cancelled": True}), HTTPStatus.ACCEPTED
    if runner.get_execution(execution_id) is None:
        return jsonify({"error": "execution not found"}), HTTPStatus.NOT_FOUND
    return jsonify({"error": "execution already finished"}), HTTPStatus.CONFLICT


@bp.get("/executions/<execution_id>/stream")
def stream_execution(execution_id: str) -> Response | tuple[object, int]:
    runner, error = _runner_or_error()
    if error is not None:
        return error
    snapshot = runner.get_execution(execution_id)
    if snapshot is None:
        return jsonify({"error": "execution not found"}), HTTPStatus.NOT_FOUND

    subscription = runner.subscribe(execution_channel(execution_id))
    seen = LastSeenFilter()

    @stream_with_context
    def event_stream() -> Iterable[str]:
        try:
            yield f"event: snapshot\ndata: {json.dumps(snapshot)}\n\n"
            if ExecutionStatus(snapshot["status"]).is_terminal:
                return
            while True:
                event = runner.next_event(subscription, STREAM_POLL_SECONDS)
                if event is None:
                    if subscription.closed:
                        break
                    yield ": keep-alive\n\n"
                    continue
                if not seen.accept(event):
                    continue
                yield f"data: {event.to_json()}\n\n"
                if event.kind == "execution" and ExecutionStatus(event.status).is_terminal:
                    break
        finally:
            runner.unsubscribe(subscription)

    return Response(event_stream(), mimetype="text/event-stream")
