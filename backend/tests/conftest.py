from __future__ import annotations

import pathlib
import sys
from collections.abc import Callable

import pytest

ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_dependencies():
    from app import Config, create_app
    from backend.app.extensions import db

    return Config, create_app, db


ConfigBase, create_app, db = _load_dependencies()


class TestConfig(ConfigBase):
    TESTING = True
    SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"check_same_thread": False, "timeout": 30}}
    CORS_ALLOWED_ORIGINS = "http://localhost"
    RATELIMIT_ENABLED = False
    ENABLE_WORKFLOW_RUNNER = True
    ENABLE_STATUS_SERVER = False
    NODE_RETRY_DELAY_SECONDS = 0.01
    NODE_TIMEOUT_SECONDS = 5
    PROPAGATION_BASE_DELAY_SECONDS = 0.01
    PROPAGATION_MAX_DELAY_SECONDS = 0.05
    PROPAGATION_POLL_INTERVAL_SECONDS = 0.01
    PROPAGATION_COOLDOWN_SECONDS = 0
    AI_GATEWAY_URL = ""


@pytest.fixture(scope="module")
def app(tmp_path_factory):
    # The runner thread and the request thread need their own connections,
    # so each module gets a file database instead of a shared in-memory one.
    root = tmp_path_factory.mktemp("sheetflow")

    class ModuleConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite+pysqlite:///{root / 'app.db'}"
        FILE_STORE_ROOT = str(root / "storage")

    app = create_app(ModuleConfig)
    ctx = app.app_context()
    ctx.push()
    yield app
    from backend.app.workflow.runner import stop_runner

    stop_runner(app)
    db.session.remove()
    ctx.pop()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def runner(app):
    from backend.app.workflow.runner import get_runner

    return get_runner(app)


@pytest.fixture(autouse=True)
def cleanup_records(request):
    yield

    if "app" not in request.fixturenames:
        return
    from backend.app.models import NodeSchema, RunLog, Workflow, WorkflowExecutionRecord

    for model in (WorkflowExecutionRecord, NodeSchema, RunLog, Workflow):
        db.session.query(model).delete()
    db.session.commit()


@pytest.fixture()
def graph_factory() -> Callable[..., object]:
    """Build a validated graph from ``(id, type, config)`` tuples and edge pairs."""

    from backend.app.workflow.graph import parse_graph
    from backend.app.workflow.types import PersistedRef

    def factory(nodes, edges=(), workflow=None):
        definition = {
            "nodes": [
                {"id": node_id, "type": node_type, "data": {"config": config or {}}}
                for node_id, node_type, config in nodes
            ],
            "edges": [
                edge if isinstance(edge, dict) else {"source": edge[0], "target": edge[1]}
                for edge in edges
            ],
        }
        return parse_graph(workflow or PersistedRef(1), definition)

    return factory
