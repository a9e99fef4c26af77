"""Tests for the healthcheck endpoint."""

from __future__ import annotations

from app import Config, create_app
from backend.app.workflow.runner import RunnerSettings


class NoRunnerConfig(Config):
    """Configuration without the background runtime."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    ENABLE_WORKFLOW_RUNNER = False


def test_health_endpoint_without_runner():
    """The healthcheck reports ok even when the runtime is disabled."""

    app = create_app(NoRunnerConfig)
    client = app.test_client()

    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.get_json() == {
        "status": "ok",
        "runner": False,
        "statusServer": False,
        "activeExecutions": 0,
    }


def test_health_endpoint_reports_runner(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "ok"
    assert body["runner"] is True
    assert body["statusServer"] is False


def test_runtime_endpoints_need_the_runner():
    app = create_app(NoRunnerConfig)
    client = app.test_client()

    assert client.post("/api/workflows/1/executions", json={}).status_code == 503
    assert client.get("/api/workflows/1/nodes/a/schema").status_code == 503
    assert client.get("/api/executions/unknown").status_code == 404


def test_runner_settings_parse_string_flags():
    assert RunnerSettings.from_config({"ENABLE_STATUS_SERVER": "false"}).status_server_enabled is False
    assert RunnerSettings.from_config({"ENABLE_STATUS_SERVER": "0"}).status_server_enabled is False
    assert RunnerSettings.from_config({"ENABLE_STATUS_SERVER": "yes"}).status_server_enabled is True
    assert RunnerSettings.from_config({"ENABLE_STATUS_SERVER": False}).status_server_enabled is False

    settings = RunnerSettings.from_config({"STATUS_SERVER_PORT": "9200", "NODE_TIMEOUT_SECONDS": "2.5"})
    assert settings.status_server_port == 9200
    assert settings.node_timeout == 2.5
    assert settings.status_server_enabled is True
