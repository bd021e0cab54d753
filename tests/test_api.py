"""End-to-end tests for the HTTP and WebSocket API."""

import time

import pytest
from fastapi.testclient import TestClient

from nodeflow.factory import create_app
from nodeflow.storage.database import reset_database_engine


@pytest.fixture
def client(test_config):
    reset_database_engine()
    app = create_app(test_config)
    with TestClient(app) as test_client:
        yield test_client
    reset_database_engine()


def simple_graph(name: str = "Greeting"):
    return {
        "name": name,
        "nodes": [
            {"id": "t", "type": "trigger", "data": {"label": "Hello"}},
            {"id": "s", "type": "script", "data": {"code": 'return input + " world"'}},
            {"id": "o", "type": "output", "data": {}},
        ],
        "edges": [
            {"id": "e1", "source": "t", "target": "s"},
            {"id": "e2", "source": "s", "target": "o"},
        ],
    }


def input_graph():
    return {
        "nodes": [
            {"id": "t", "type": "trigger", "data": {}},
            {"id": "ask", "type": "input", "data": {"prompt": "Your name?"}},
            {"id": "o", "type": "output", "data": {}},
        ],
        "edges": [
            {"source": "t", "target": "ask"},
            {"source": "ask", "target": "o"},
        ],
    }


def wait_for_run(client, run_id, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        body = client.get(f"/api/v1/runs/{run_id}").json()
        if body["status"] not in ("pending", "running"):
            return body
        time.sleep(0.02)
    raise AssertionError(f"Run {run_id} did not finish within {timeout}s")


def wait_for_input(client, run_id, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        pending = client.get(f"/api/v1/runs/{run_id}/inputs").json()
        if pending:
            return pending
        time.sleep(0.02)
    raise AssertionError(f"Run {run_id} never asked for input")


class TestHealthEndpoints:

    def test_root_and_health(self, client):
        assert client.get("/").json()["message"] == "nodeflow is running"
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["version"] == "0.1.0"

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        body = response.json()
        assert body["ready"] is True
        assert body["checks"]["database"]["status"] == "healthy"


class TestGraphEndpoints:

    def test_create_get_update_delete(self, client):
        response = client.post("/api/v1/graphs", json={"graph": simple_graph()})
        assert response.status_code == 201
        graph_id = response.json()["graph_id"]

        detail = client.get(f"/api/v1/graphs/{graph_id}").json()
        assert detail["summary"]["node_count"] == 3
        assert [n["id"] for n in detail["graph"]["nodes"]] == ["t", "s", "o"]

        updated = client.put(f"/api/v1/graphs/{graph_id}", json={"graph": simple_graph("Renamed")})
        assert updated.status_code == 200
        assert updated.json()["name"] == "Renamed"

        assert [g["name"] for g in client.get("/api/v1/graphs").json()] == ["Renamed"]

        assert client.delete(f"/api/v1/graphs/{graph_id}").status_code == 200
        assert client.get(f"/api/v1/graphs/{graph_id}").status_code == 404
        assert client.delete(f"/api/v1/graphs/{graph_id}").status_code == 404

    def test_duplicate_name_conflicts(self, client):
        client.post("/api/v1/graphs", json={"graph": simple_graph()})
        response = client.post("/api/v1/graphs", json={"graph": simple_graph()})
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "GraphValidationError"

    def test_validate_returns_warnings(self, client):
        graph = {"nodes": [{"id": "s", "type": "script", "data": {}}], "edges": []}
        body = client.post("/api/v1/graphs/validate", json={"graph": graph}).json()
        assert body["is_valid"] is True
        assert any("no trigger" in w for w in body["warnings"])

    def test_malformed_graph_rejected(self, client):
        graph = {"nodes": [{"id": "a"}, {"id": "a"}], "edges": []}
        assert client.post("/api/v1/graphs", json={"graph": graph}).status_code == 422


class TestRunEndpoints:

    def test_run_stored_graph(self, client):
        graph_id = client.post("/api/v1/graphs", json={"graph": simple_graph()}).json()["graph_id"]

        response = client.post(f"/api/v1/graphs/{graph_id}/run")
        assert response.status_code == 202
        run_id = response.json()["run_id"]

        run = wait_for_run(client, run_id)
        assert run["status"] == "completed"
        assert run["final_output"] == "Hello world"
        assert run["execution_order"] == ["t", "s", "o"]
        assert run["node_states"]["s"]["status"] == "completed"

        logs = client.get(f"/api/v1/runs/{run_id}/logs").json()
        assert logs[0]["message"] == "Starting execution from 1 trigger node(s)"
        assert logs[-1]["level"] == "success"

        assert run_id in [r["run_id"] for r in client.get("/api/v1/runs").json()]

    def test_run_missing_graph(self, client):
        assert client.post("/api/v1/graphs/missing/run").status_code == 404

    def test_inline_run(self, client):
        response = client.post("/api/v1/runs", json={"graph": simple_graph()})
        assert response.status_code == 202

        run = wait_for_run(client, response.json()["run_id"])
        assert run["final_output"] == "Hello world"

    def test_unknown_run(self, client):
        assert client.get("/api/v1/runs/missing").status_code == 404
        assert client.post("/api/v1/runs/missing/cancel").status_code == 404

    def test_human_input_round_trip(self, client):
        run_id = client.post("/api/v1/runs", json={"graph": input_graph()}).json()["run_id"]

        pending = wait_for_input(client, run_id)
        assert pending[0]["node_id"] == "ask"
        assert pending[0]["prompt"] == "Your name?"

        response = client.post(f"/api/v1/runs/{run_id}/inputs/ask", json={"value": "Ada"})
        assert response.status_code == 200

        run = wait_for_run(client, run_id)
        assert run["status"] == "completed"
        assert run["final_output"] == "Ada"

    def test_declined_input_fails_node(self, client):
        run_id = client.post("/api/v1/runs", json={"graph": input_graph()}).json()["run_id"]
        wait_for_input(client, run_id)

        assert client.post(f"/api/v1/runs/{run_id}/inputs/ask/decline").status_code == 200

        run = wait_for_run(client, run_id)
        assert run["node_states"]["ask"]["status"] == "error"
        assert any(entry["message"] == "ask failed: User cancelled input" for entry in run["logs"])

    def test_answer_without_pending_request(self, client):
        response = client.post("/api/v1/runs/nope/inputs/ask", json={"value": "x"})
        assert response.status_code == 404

    def test_cancel_run_and_active_limit(self, client):
        first = client.post("/api/v1/runs", json={"graph": input_graph()}).json()["run_id"]
        second = client.post("/api/v1/runs", json={"graph": input_graph()}).json()["run_id"]

        rejected = client.post("/api/v1/runs", json={"graph": input_graph()})
        assert rejected.status_code == 503

        for run_id in (first, second):
            cancel = client.post(f"/api/v1/runs/{run_id}/cancel").json()
            assert cancel["cancelled"] is True
            assert wait_for_run(client, run_id)["status"] == "cancelled"

        assert client.post(f"/api/v1/runs/{first}/cancel").json()["cancelled"] is False


class TestWebSocketMonitor:

    def test_ping_and_subscribe(self, client):
        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            assert websocket.receive_json()["event_type"] == "connection_established"

            websocket.send_json({"action": "ping"})
            assert websocket.receive_json()["event_type"] == "pong"

            websocket.send_json({"action": "subscribe", "run_id": "run-123"})
            confirmation = websocket.receive_json()
            assert confirmation["event_type"] == "subscription_confirmed"
            assert confirmation["run_id"] == "run-123"

            websocket.send_json({"action": "dance"})
            assert websocket.receive_json()["event_type"] == "error"

    def test_run_events_are_streamed(self, client):
        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            websocket.receive_json()
            run_id = client.post("/api/v1/runs", json={"graph": input_graph()}).json()["run_id"]
            websocket.send_json({"action": "subscribe", "run_id": run_id})
            assert websocket.receive_json()["event_type"] == "subscription_confirmed"

            wait_for_input(client, run_id)
            client.post(f"/api/v1/runs/{run_id}/inputs/ask", json={"value": "Ada"})

            event_types = []
            while "run_finished" not in event_types:
                message = websocket.receive_json()
                assert message["run_id"] == run_id
                event_types.append(message["event_type"])

            assert "node_status" in event_types
            assert "log" in event_types

    def test_subscribing_after_run_finished_returns_snapshot(self, client):
        run_id = client.post("/api/v1/runs", json={"graph": simple_graph()}).json()["run_id"]
        wait_for_run(client, run_id)

        with client.websocket_connect("/api/v1/ws/monitor") as websocket:
            websocket.receive_json()
            websocket.send_json({"action": "subscribe", "run_id": run_id})
            assert websocket.receive_json()["event_type"] == "subscription_confirmed"

            snapshot = websocket.receive_json()
            assert snapshot["event_type"] == "run_snapshot"
            assert snapshot["run_id"] == run_id
            assert snapshot["data"]["status"] == "completed"
            assert snapshot["data"]["final_output"] == "Hello world"
            assert snapshot["data"]["execution_order"] == ["t", "s", "o"]
