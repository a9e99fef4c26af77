"""Tests for the execution, schema and log REST endpoints."""

from __future__ import annotations

import concurrent.futures

import pytest


def _node(node_id: str, node_type: str, config: dict | None = None) -> dict:
    return {"id": node_id, "type": node_type, "data": {"config": config or {}}}


@pytest.fixture()
def form_workflow(client):
    graph = {
        "nodes": [
            _node("form", "userInput", {"defaults": {"data": [{"region": "north", "amount": 120}]}}),
            _node("sorted", "sort", {"sortBy": [{"field": "amount", "direction": "desc"}]}),
        ],
        "edges": [{"source": "form", "target": "sorted"}],
    }
    response = client.post("/api/workflows", json={"name": "Form", "graph_json": graph})
    assert response.status_code == 201
    return response.get_json()


def test_execution_runs_to_completion(client, form_workflow):
    workflow_id = form_workflow["id"]
    response = client.post(
        f"/api/workflows/{workflow_id}/executions",
        json={"inputs": {"user": "ada"}, "wait": True, "timeout": 10},
    )
    assert response.status_code == 200
    execution = response.get_json()
    assert execution["status"] == "completed"
    assert execution["workflowId"] == str(workflow_id)
    assert execution["progress"] == 1.0
    assert execution["outputs"]["form"]["user"] == "ada"
    assert execution["nodeStates"]["sorted"]["status"] == "completed"

    detail = client.get(f"/api/executions/{execution['id']}")
    assert detail.status_code == 200
    assert detail.get_json()["status"] == "completed"

    history = client.get(f"/api/workflows/{workflow_id}/executions").get_json()
    assert [(item["id"], item["status"]) for item in history] == [(execution["id"], "completed")]

    workflow = client.get(f"/api/workflows/{workflow_id}").get_json()
    assert workflow["last_run_status"] == "completed"
    assert workflow["last_run_at"] is not None

    cancel = client.post(f"/api/executions/{execution['id']}/cancel")
    assert cancel.status_code == 409


def test_execution_without_wait_is_accepted(client, runner, form_workflow):
    response = client.post(f"/api/workflows/{form_workflow['id']}/executions", json={})
    assert response.status_code == 202
    execution = response.get_json()
    assert execution["status"] in {"pending", "running"}
    assert set(execution["nodeStates"]) == {"form", "sorted"}

    finished = runner.wait_for_execution(execution["id"], timeout=10)
    assert finished["status"] == "completed"


def test_stream_of_finished_execution_sends_snapshot(client, runner, form_workflow):
    started = client.post(f"/api/workflows/{form_workflow['id']}/executions", json={"wait": True}).get_json()

    response = client.get(f"/api/executions/{started['id']}/stream")
    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"
    body = response.get_data(as_text=True)
    assert body.startswith("event: snapshot\n")
    assert '"status": "completed"' in body


def test_execution_errors(client, form_workflow):
    assert client.post("/api/workflows/999/executions", json={}).status_code == 404
    assert client.post("/api/workflows/not-a-ref/executions", json={}).status_code == 400
    bad_inputs = client.post(f"/api/workflows/{form_workflow['id']}/executions", json={"inputs": [1, 2]})
    assert bad_inputs.status_code == 400
    assert client.get("/api/executions/missing").status_code == 404
    assert client.post("/api/executions/missing/cancel").status_code == 404
    assert client.get("/api/executions/missing/stream").status_code == 404


def test_failed_node_is_reported(client):
    graph = {"nodes": [_node("form", "userInput", {"requiredFields": ["email"]})], "edges": []}
    created = client.post("/api/workflows", json={"name": "Needs email", "graph_json": graph}).get_json()

    response = client.post(f"/api/workflows/{created['id']}/executions", json={"wait": True})
    execution = response.get_json()
    assert execution["status"] == "failed"
    assert execution["error"] == "1 node(s) failed: form"
    assert execution["nodeStates"]["form"]["errorType"] == "ValidationError"
    assert "email" in execution["nodeStates"]["form"]["error"]


def test_schema_endpoints(client, runner):
    graph = {
        "nodes": [_node("upload", "excelInput", {"fileId": "f"}), _node("filter", "filter"), _node("out", "sort")],
        "edges": [{"source": "upload", "target": "filter"}, {"source": "filter", "target": "out"}],
    }
    workflow_id = client.post("/api/workflows", json={"name": "Schemas", "graph_json": graph}).get_json()["id"]
    base = f"/api/workflows/{workflow_id}/nodes"

    assert client.get(f"{base}/out/schema").status_code == 404

    response = client.put(
        f"{base}/upload/schema",
        json={"columns": [{"name": "amount", "type": "float"}, {"name": "region"}]},
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["schema"]["columns"][0] == {"name": "amount", "type": "number", "nullable": True}
    assert [(task["sourceNodeId"], task["targetNodeId"]) for task in body["propagation"]] == [("upload", "filter")]

    resolved = client.get(f"{base}/out/schema?resolve=true")
    assert resolved.status_code == 200
    assert [column["name"] for column in resolved.get_json()["columns"]] == ["amount", "region"]

    propagation = client.get(f"/api/workflows/{workflow_id}/propagation")
    assert propagation.status_code == 200
    assert "cooldown" in propagation.get_json()

    assert client.put(f"{base}/ghost/schema", json={"columns": []}).status_code == 404
    assert client.put(f"{base}/upload/schema", json={"columns": "amount"}).status_code == 400
    assert client.put(f"{base}/upload/schema", json={"columns": [{"type": "number"}]}).status_code == 400


def test_logs_are_filtered_by_source(client, form_workflow):
    execution = client.post(f"/api/workflows/{form_workflow['id']}/executions", json={"wait": True}).get_json()

    response = client.get("/api/logs?source=engine")
    assert response.status_code == 200
    entries = response.get_json()
    assert entries
    assert all(entry["source"] == "engine" for entry in entries)
    assert any(entry["message"].endswith("completed") for entry in entries)

    assert client.get("/api/logs?source=ocean").status_code == 400

    download = client.get("/api/logs/download?source=node")
    assert download.status_code == 200
    assert download.mimetype == "application/x-ndjson"
    assert download.headers["Content-Disposition"].endswith("run-logs.ndjson")

    timeline = client.get(f"/api/executions/{execution['id']}/logs").get_json()
    assert [entry["source"] for entry in timeline] == ["node", "node", "engine"]
    assert all(entry["executionId"] == execution["id"] for entry in timeline)
    assert '"node": "form"' in timeline[0]["message"]

    filtered = client.get(f"/api/logs?execution={execution['id']}&source=node").get_json()
    assert len(filtered) == 2
    assert client.get("/api/logs?execution=unknown").get_json() == []


def test_wait_that_outlives_the_timeout_is_accepted(client, runner, form_workflow, monkeypatch):
    wait = runner.wait_for_execution

    def _too_slow(execution_id, timeout=None):
        raise concurrent.futures.TimeoutError()

    monkeypatch.setattr(runner, "wait_for_execution", _too_slow)
    response = client.post(
        f"/api/workflows/{form_workflow['id']}/executions", json={"wait": True, "timeout": 0.01}
    )
    assert response.status_code == 202
    assert set(response.get_json()["nodeStates"]) == {"form", "sorted"}
    assert wait(response.get_json()["id"], timeout=10)["status"] == "completed"
