"""Utility helpers for persisting workflow runtime logs."""

from __future__ import annotations

from collections.abc import Callable

from flask import Flask
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models.logs import RUN_LOG_SOURCES, RunLog


def persist_run_log(app: Flask, source: str, message: str, execution_id: str | None = None) -> None:
    """Persist a run log entry without raising exceptions."""
    if not message:
        return
    if source not in RUN_LOG_SOURCES:
        app.logger.warning("Dropping run log entry with unknown source %r", source)
        return

    try:
        with app.app_context():
            db.session.add(RunLog(source=source, message=message, execution_id=execution_id))
            db.session.commit()
    except SQLAlchemyError:
        app.logger.exception("Failed to persist %s run log entry", source)
        with app.app_context():
            db.session.rollback()


def run_logger(app: Flask) -> Callable[..., None]:
    """Bind :func:`persist_run_log` to an application."""

    def _persist(source: str, message: str, execution_id: str | None = None) -> None:
        persist_run_log(app, source, message, execution_id)

    return _persist
