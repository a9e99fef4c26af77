"""Health check endpoint."""

from flask import Blueprint, current_app, jsonify

from ..workflow.runner import get_runner

bp = Blueprint("health", __name__)


@bp.get("/health")
def health() -> tuple[dict[str, object], int]:
    """Return the service health status."""
    runner = get_runner(current_app)
    status_server = runner.status_server if runner is not None else None
    return (
        jsonify(
            {
                "status": "ok",
                "runner": bool(runner is not None and runner.running),
                "statusServer": bool(status_server is not None and status_server.running),
                "activeExecutions": len(runner.engine.active_executions()) if runner is not None else 0,
            }
        ),
        200,
    )
