"""
Auto Mode API Tests
===================

REST endpoints and the WebSocket event stream, driven through TestClient
with an orchestrator backed by the scripted provider.
"""

import time

import pytest
from fastapi.testclient import TestClient

from automode.provider import TextMessage
from conftest import BLOCK, FakeProvider, read_feature, write_feature
from server.main import create_app


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        time.sleep(0.02)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def orchestrator(make_orchestrator, provider):
    return make_orchestrator(provider)


@pytest.fixture
def client(orchestrator):
    with TestClient(create_app(lambda: orchestrator)) as test_client:
        yield test_client


# =============================================================================
# Basics
# =============================================================================

class TestBasics:
    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_status_is_camel_case(self, client):
        response = client.get("/api/auto-mode/status")
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "isRunning": False,
            "runningFeatures": [],
            "runningCount": 0,
            "autoLoopRunning": False,
        }

    def test_validation_error(self, client):
        response = client.post("/api/auto-mode/run-feature", json={"projectPath": "/tmp/x"})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"


# =============================================================================
# Feature runs
# =============================================================================

class TestFeatureRuns:
    def test_run_feature_completes(self, client, project):
        write_feature(project, "f1")

        response = client.post(
            "/api/auto-mode/run-feature", json={"projectPath": project, "featureId": "f1"}
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

        wait_until(lambda: read_feature(project, "f1")["status"] == "verified")

        exists = client.post(
            "/api/auto-mode/context-exists", json={"projectPath": project, "featureId": "f1"}
        )
        assert exists.json() == {"success": True, "exists": True}

    @pytest.mark.parametrize("provider", [FakeProvider(scripts=[[TextMessage("working"), BLOCK]])])
    def test_duplicate_run_conflicts(self, client, project, orchestrator):
        write_feature(project, "f1")
        body = {"projectPath": project, "featureId": "f1"}

        assert client.post("/api/auto-mode/run-feature", json=body).status_code == 200
        conflict = client.post("/api/auto-mode/run-feature", json=body)
        assert conflict.status_code == 409
        assert conflict.json()["error_code"] == "CONFLICT"
        assert conflict.json()["message"] == "Feature f1 is already running"

        agents = client.get("/api/auto-mode/running-agents").json()["agents"]
        assert [a["featureId"] for a in agents] == ["f1"]

        stop = client.post("/api/auto-mode/stop-feature", json={"featureId": "f1"})
        assert stop.json() == {"success": True, "stopped": True}
        wait_until(lambda: orchestrator.running_count == 0)

    def test_stop_unknown_feature(self, client):
        response = client.post("/api/auto-mode/stop-feature", json={"featureId": "ghost"})
        assert response.json() == {"success": True, "stopped": False}

    def test_follow_up(self, client, project, provider, orchestrator):
        write_feature(project, "f1", status="verified")

        response = client.post(
            "/api/auto-mode/follow-up-feature",
            json={"projectPath": project, "featureId": "f1", "prompt": "Also add a footer"},
        )
        assert response.status_code == 200

        wait_until(lambda: orchestrator.running_count == 0)
        assert read_feature(project, "f1")["status"] == "verified"
        assert "Also add a footer" in provider.prompts[0]


# =============================================================================
# Human-in-the-loop
# =============================================================================

class TestHumanInput:
    def test_approve_without_pending_plan(self, client, project):
        write_feature(project, "f1")
        response = client.post(
            "/api/auto-mode/approve-plan",
            json={"featureId": "f1", "approved": True, "projectPath": project},
        )
        assert response.status_code == 400
        assert response.json()["message"] == "No pending approval for feature f1"

    def test_approve_from_disk(self, client, project):
        write_feature(
            project,
            "f1",
            planningMode="spec",
            planSpec={"status": "generated", "content": "Do the thing", "version": 1},
        )
        response = client.post(
            "/api/auto-mode/approve-plan",
            json={"featureId": "f1", "approved": True, "projectPath": project},
        )
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "approved": True,
            "message": "Plan approved - implementation continuing",
        }
        wait_until(lambda: read_feature(project, "f1")["status"] == "verified")

    def test_wizard_answer_without_question(self, client, project):
        response = client.post(
            "/api/auto-mode/wizard-answer",
            json={"projectPath": project, "featureId": "f1", "questionId": "Q1", "answer": ["a", "b"]},
        )
        assert response.status_code == 400
        assert response.json()["error_code"] == "BAD_REQUEST"


# =============================================================================
# Auto loop
# =============================================================================

class TestAutoLoopEndpoints:
    def test_start_twice_then_stop(self, client, project):
        body = {"projectPath": project, "maxConcurrency": 2}

        started = client.post("/api/auto-mode/start", json=body)
        assert started.json() == {"success": True, "message": "Auto mode started"}
        assert client.post("/api/auto-mode/start", json=body).status_code == 409
        assert client.get("/api/auto-mode/status").json()["autoLoopRunning"] is True

        stopped = client.post("/api/auto-mode/stop")
        assert stopped.json() == {"success": True, "runningFeatures": 0}


# =============================================================================
# WebSocket
# =============================================================================

class TestEventStream:
    def test_ping_and_events(self, client, project):
        write_feature(project, "f1")

        with client.websocket_connect("/api/auto-mode/events") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_text("not json")
            assert websocket.receive_json() == {"type": "error", "message": "Invalid JSON"}

            client.post("/api/auto-mode/run-feature", json={"projectPath": project, "featureId": "f1"})

            first = websocket.receive_json()
            assert first["type"] == "auto-mode:event"
            assert first["payload"]["type"] == "auto_mode_feature_start"
            assert first["payload"]["featureId"] == "f1"

            types = []
            while "auto_mode_feature_complete" not in types:
                types.append(websocket.receive_json()["payload"]["type"])
            assert "auto_mode_progress" in types
