"""Application factory for the spreadsheet workflow backend."""
from __future__ import annotations

import atexit
import logging
import time

from flask import Flask
from sqlalchemy.exc import OperationalError

from .config import Config
from .extensions import cors, db, limiter

logger = logging.getLogger(__name__)


def create_app(config_class: type[Config] = Config) -> Flask:
    """Create and configure the Flask application instance."""
    app = Flask(__name__)
    app.config.from_object(config_class)

    logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)

    _configure_cors(app)
    limiter.init_app(app)
    _register_blueprints(app)

    with app.app_context():
        # Import models to ensure they are registered with SQLAlchemy before creating tables.
        from .models import execution, logs, schema, workflow  # noqa: F401

        _initialize_database(app)

    if app.config.get("ENABLE_WORKFLOW_RUNNER", True):
        _start_runtime(app)
    else:
        logger.info("Workflow runner disabled; execution and schema endpoints answer 503.")

    return app


def _configure_cors(app: Flask) -> None:
    origins = [
        origin.strip()
        for origin in (app.config.get("CORS_ALLOWED_ORIGINS") or "").split(",")
        if origin.strip()
    ]
    cors.init_app(app, resources={r"/api/*": {"origins": origins}}, allow_headers=["Content-Type"])


def _register_blueprints(app: Flask) -> None:
    from .api import executions, health, logs, schemas, workflow

    for module in (health, logs, workflow, executions, schemas):
        app.register_blueprint(module.bp, url_prefix="/api")


def _start_runtime(app: Flask) -> None:
    """Start the background runner and stop it again at interpreter exit."""
    from .workflow.runner import ensure_runner_started, stop_runner

    runner = ensure_runner_started(app)
    atexit.register(stop_runner, app)
    if runner.status_server is not None:
        logger.info(
            "Status server configured on %s:%s.",
            runner.settings.status_server_host,
            runner.settings.status_server_port,
        )


def _initialize_database(app: Flask) -> None:
    """Initialize the database with retry logic to handle delayed availability."""

    max_retries = int(app.config.get("DB_INIT_MAX_RETRIES", 30))
    retry_delay = float(app.config.get("DB_INIT_RETRY_DELAY", 2))

    for attempt in range(1, max_retries + 1):
        try:
            db.create_all()
            return
        except OperationalError as exc:
            if attempt >= max_retries:
                app.logger.exception("Database initialization failed after %s attempts.", attempt)
                raise

            app.logger.warning(
                "Database initialization attempt %s/%s failed: %s", attempt, max_retries, exc
            )
            time.sleep(retry_delay)
