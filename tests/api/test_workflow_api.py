import pytest
from fastapi.testclient import TestClient

import bugflow.main as main

MAJOR_AFFECTED = {"versionAffected": True, "bugSeverity": "Major", "severityIsMajorOrCritical": True}


@pytest.fixture
def client(monkeypatch):
    # lifespan creates the in-memory schema and seeds the bundled definitions
    monkeypatch.setattr(main, "AUTO_SEED", True)
    with TestClient(main.app) as c:
        yield c


def start(client, task_id="task-api", **body):
    body.setdefault("context", MAJOR_AFFECTED)
    return client.post(f"/workflows/{task_id}/start", json=body)


def test_root(client):
    assert client.get("/").json() == {"message": "bugflow is running"}


def test_list_definitions(client):
    resp = client.get("/workflow_definitions/")
    assert resp.status_code == 200
    [definition] = resp.json()
    assert definition["name"] == "Bug Assessment Workflow"
    assert definition["isActive"] is True


def test_start_and_read_state(client):
    resp = start(client, startedBy="alice")
    assert resp.status_code == 201
    body = resp.json()
    assert body["taskId"] == "task-api"
    assert body["currentStepId"] == "version-check"
    assert body["startedBy"] == "alice"

    state = client.get("/workflows/task-api/state").json()
    assert state["status"] == "Active"
    assert state["currentStep"]["stepId"] == "version-check"
    assert state["availableActions"][0]["actionId"] == "auto_evaluate"


def test_start_errors(client):
    assert start(client).status_code == 201
    assert start(client).status_code == 409
    assert start(client, task_id="other", workflowName="Unknown").status_code == 404


def test_state_of_unknown_task(client):
    assert client.get("/workflows/nope/state").status_code == 404


def test_execute_actions(client):
    start(client)

    resp = client.post("/workflows/task-api/actions", json={"actionId": "auto_evaluate"})
    assert resp.status_code == 200
    assert resp.json()["nextStepId"] == "clone-bug"

    rejected = client.post("/workflows/task-api/actions", json={"actionId": "complete"})
    assert rejected.status_code == 422
    body = rejected.json()
    assert body["success"] is False
    assert body["errorCode"] == "VALIDATION_FAILED"
    assert "NOTES_REQUIRED" in [e["code"] for e in body["errors"]]

    ok = client.post(
        "/workflows/task-api/actions",
        json={"actionId": "complete", "notes": "STUDY-1", "performedBy": "qa"},
    )
    assert ok.status_code == 200
    assert ok.json()["newState"]["currentStep"]["stepId"] == "check-preconditions"


def test_action_on_unknown_task(client):
    resp = client.post("/workflows/nope/actions", json={"actionId": "complete"})
    assert resp.status_code == 404
    assert resp.json()["errorCode"] == "WORKFLOW_NOT_FOUND"


def test_action_on_completed_workflow(client):
    start(client, context={"versionAffected": False})
    client.post("/workflows/task-api/actions", json={"actionId": "auto_evaluate"})

    resp = client.post("/workflows/task-api/actions", json={"actionId": "auto_evaluate"})
    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "WORKFLOW_NOT_ACTIVE"


def test_audit_trail(client):
    start(client)
    client.post("/workflows/task-api/actions", json={"actionId": "auto_evaluate"})

    entries = client.get("/workflows/task-api/audit").json()
    assert [e["action"] for e in entries] == ["workflow_started", "auto_evaluate"]
    assert entries[1]["previousStepId"] == "version-check"
    assert entries[1]["nextStepId"] == "clone-bug"

    assert client.get("/workflows/nope/audit").json() == []


def test_validate_definition(client):
    document = {
        "workflowId": "w", "name": "W", "initialStepId": "missing",
        "steps": [{"stepId": "a", "name": "A", "isTerminal": True}],
    }
    report = client.post("/workflow_definitions/validate", json=document).json()
    assert report["isValid"] is False
    assert [e["code"] for e in report["errors"]] == ["STEP_NOT_FOUND"]


def test_statistics(client):
    start(client)
    start(client, task_id="task-done", context={"versionAffected": False})
    client.post("/workflows/task-done/actions", json={"actionId": "auto_evaluate"})

    resp = client.get("/workflows/statistics")
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total"] == 2
    assert stats["active"] == 1
    assert stats["completed"] == 1
    assert stats["definition_usage"] == {"Bug Assessment Workflow": 2}
    assert stats["step_completions"] == {"Version Check": 1}
