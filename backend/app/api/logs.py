"""Run log endpoints: list, NDJSON export and live tail."""

from __future__ import annotations

import json
import time
from http import HTTPStatus
from typing import Iterable

from flask import Blueprint, Response, jsonify, request, stream_with_context

from ..models.logs import RUN_LOG_SOURCES, RunLog

bp = Blueprint("logs", __name__)

TAIL_POLL_SECONDS = 1.0


class _BadFilter(ValueError):
    pass


def _filtered_query():
    """Apply the ``source`` and ``execution`` query arguments."""

    query = RunLog.query
    source = request.args.get("source")
    if source:
        if source not in RUN_LOG_SOURCES:
            raise _BadFilter(f"source must be one of {', '.join(RUN_LOG_SOURCES)}")
        query = query.filter_by(source=source)
    execution_id = request.args.get("execution")
    if execution_id:
        query = query.filter_by(execution_id=execution_id)
    return query


def _limit(maximum: int) -> int:
    limit = request.args.get("limit", type=int) or 200
    return max(1, min(limit, maximum))


def _newest_first(maximum: int) -> list[RunLog]:
    query = _filtered_query()
    after = request.args.get("after", type=int)
    if after:
        query = query.filter(RunLog.id > after)
    return query.order_by(RunLog.id.desc()).limit(_limit(maximum)).all()


@bp.errorhandler(_BadFilter)
def _bad_filter(exc: _BadFilter) -> tuple[object, int]:
    return jsonify({"error": str(exc)}), HTTPStatus.BAD_REQUEST


@bp.get("/logs")
def get_logs() -> tuple[object, int]:
    return jsonify([entry.to_dict() for entry in _newest_first(200)]), HTTPStatus.OK


@bp.get("/executions/<execution_id>/logs")
def get_execution_logs(execution_id: str) -> tuple[object, int]:
    entries = (
        RunLog.query.filter_by(execution_id=execution_id)
        .order_by(RunLog.id.asc())
        .limit(_limit(1000))
        .all()
    )
    return jsonify([entry.to_dict() for entry in entries]), HTTPStatus.OK


@bp.get("/logs/download")
def download_logs() -> Response:
    entries = _newest_first(1000)
    payload = "\n".join(json.dumps(entry.to_dict()) for entry in reversed(entries))
    response = Response(payload, mimetype="application/x-ndjson")
    response.headers["Content-Disposition"] = "attachment; filename=run-logs.ndjson"
    return response


@bp.get("/logs/stream")
def stream_logs() -> Response:
    query = _filtered_query()
    latest = query.order_by(RunLog.id.desc()).first()
    cursor = latest.id if latest is not None else 0

    @stream_with_context
    def event_stream() -> Iterable[str]:
        nonlocal cursor
        yield ": stream-start\n\n"
        while True:
            fresh = query.filter(RunLog.id > cursor).order_by(RunLog.id.asc()).all()
            for entry in fresh:
                cursor = entry.id
                yield f"id: {entry.id}\ndata: {json.dumps(entry.to_dict())}\n\n"
            if not fresh:
                yield ": keep-alive\n\n"
            time.sleep(TAIL_POLL_SECONDS)

    return Response(event_stream(), mimetype="text/event-stream")
