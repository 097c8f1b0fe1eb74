from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from storyflow.core.config import StoryflowSettings
from storyflow.server.app import create_app


@pytest.fixture
def make_client(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, ledger_path: Path, workflows_dir: Path
) -> Callable[..., TestClient]:
    def _make(*, enforce_wip_limits: bool = False) -> TestClient:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("STORYFLOW_LEDGER_PATH", str(ledger_path))
        monkeypatch.setenv("STORYFLOW_WORKFLOWS_DIR", str(workflows_dir))
        monkeypatch.setenv("STORYFLOW_WORKFLOW_STATE_DIR", str(tmp_path / "state"))
        monkeypatch.setenv("STORYFLOW_ENFORCE_WIP_LIMITS", "true" if enforce_wip_limits else "false")
        return TestClient(create_app(StoryflowSettings()))

    return _make


@pytest.fixture
def client(make_client: Callable[..., TestClient]) -> TestClient:
    return make_client()


def test_health(client: TestClient) -> None:
    health = client.get("/api/health").json()

    assert health["status"] == "ok"
    assert "version" in health


def test_list_stories(client: TestClient) -> None:
    body = client.get("/api/stories").json()

    assert [s["id"] for s in body["stories"]["backlog"]] == ["STORY-011", "STORY-012"]
    assert body["stories"]["inProgress"][0]["startedDate"] == "2025-10-25"
    assert body["counts"]["total"] == 4
    assert body["warnings"] == []


def test_get_story(client: TestClient) -> None:
    story = client.get("/api/stories/story-013").json()

    assert story["id"] == "STORY-013"
    assert story["state"] == "IN_PROGRESS"
    assert story["points"] == 21

    missing = client.get("/api/stories/STORY-999")
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Story not found: STORY-999"


def test_transition_story(client: TestClient, ledger_path: Path) -> None:
    resp = client.post("/api/stories/STORY-011/transition", json={"state": "TODO"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["story"]["state"] == "TODO"
    assert body["validation"] == {"valid": True, "errors": []}
    todo_section = ledger_path.read_text(encoding="utf-8").split("## TODO")[1].split("## IN PROGRESS")[0]
    assert "**[STORY-011]**" in todo_section

    illegal = client.post("/api/stories/STORY-011/transition", json={"state": "DONE"})
    assert illegal.status_code == 409


def test_soft_wip_limit_is_reported_by_validation(client: TestClient) -> None:
    client.post("/api/stories/STORY-011/transition", json={"state": "TODO"})

    resp = client.post("/api/stories/STORY-012/transition", json={"state": "TODO"})

    assert resp.status_code == 200
    assert resp.json()["validation"]["valid"] is False
    report = client.get("/api/stories/validate").json()
    assert report["errors"] == ["Too many stories in TODO: 2 (expected 1)"]


def test_hard_wip_limit_is_a_conflict(make_client: Callable[..., TestClient]) -> None:
    client = make_client(enforce_wip_limits=True)
    client.post("/api/stories/STORY-011/transition", json={"state": "TODO"})

    resp = client.post("/api/stories/STORY-012/transition", json={"state": "TODO"})

    assert resp.status_code == 409


def test_transition_requires_state(client: TestClient) -> None:
    assert client.post("/api/stories/STORY-011/transition", json={}).status_code == 422


def test_workflow_lifecycle(client: TestClient, write_workflow: Callable[..., Path]) -> None:
    write_workflow(
        "planning",
        [
            {"name": "Intro", "action": "guide", "prompt": "Welcome"},
            {"name": "Load", "action": "load_state_machine"},
            {"name": "Done", "action": "display", "message": "Next: {{in_progress_story_id}}"},
        ],
    )

    listed = client.get("/api/workflows").json()
    assert listed == [
        {
            "name": "planning",
            "description": "planning workflow",
            "path": listed[0]["path"],
            "steps": 3,
            "status": None,
            "current_step": None,
        }
    ]

    before = client.get("/api/workflows/planning").json()
    assert [s["name"] for s in before["steps"]] == ["Intro", "Load", "Done"]
    assert before["state"] is None

    step = client.post("/api/workflows/planning/execute", json={"mode": "step"}).json()
    assert step["success"] is True
    assert step["state"]["currentStep"] == 1

    rest = client.post("/api/workflows/planning/execute", json={}).json()
    assert rest["success"] is True
    assert rest["state"]["completed"] is True
    assert rest["state"]["context"]["in_progress_story_id"] == "STORY-013"

    after = client.get("/api/workflows/planning").json()
    assert after["state"]["status"] == "completed"
    assert after["hierarchy"]["children"] == []
    assert client.get("/api/workflows").json()[0]["status"] == "completed"

    reset = client.post("/api/workflows/planning/reset").json()
    assert reset == {"workflow": "planning", "removed": True}
    assert client.get("/api/workflows/planning").json()["state"] is None


def test_workflow_input_and_resume(client: TestClient, write_workflow: Callable[..., Path]) -> None:
    write_workflow(
        "interview",
        [
            {"name": "Ask", "action": "elicit", "prompt": "Scope?", "variable": "scope"},
            {"name": "Check", "action": "validate", "check": "${scope} === 'mvp'"},
        ],
    )

    not_started = client.post("/api/workflows/interview/input", json={"values": {"scope": "mvp"}})
    assert not_started.status_code == 409

    waiting = client.post("/api/workflows/interview/execute", json={}).json()
    assert waiting["success"] is False
    assert waiting["awaitingInput"] == "scope"
    assert waiting["state"]["status"] == "failed"

    state = client.post("/api/workflows/interview/input", json={"values": {"scope": "mvp"}}).json()
    assert state["context"]["scope"] == "mvp"

    resumed = client.post("/api/workflows/interview/resume").json()
    assert resumed["success"] is True
    assert resumed["state"]["currentStep"] == 1

    finished = client.post("/api/workflows/interview/resume").json()
    assert finished["state"]["completed"] is True


def test_execute_with_variables(client: TestClient, write_workflow: Callable[..., Path]) -> None:
    write_workflow(
        "interview",
        [{"name": "Ask", "action": "elicit", "prompt": "Scope?", "variable": "scope"}],
    )

    resp = client.post("/api/workflows/interview/execute", json={"variables": {"scope": "mvp"}})

    assert resp.json()["success"] is True


def test_unknown_workflow_is_404(client: TestClient) -> None:
    assert client.get("/api/workflows/nope").status_code == 404
    assert client.post("/api/workflows/nope/execute", json={}).status_code == 404


def test_invalid_execute_request_is_422(client: TestClient, write_workflow: Callable[..., Path]) -> None:
    write_workflow("planning", [{"name": "Intro", "action": "guide"}])

    resp = client.post("/api/workflows/planning/execute", json={"mode": "sideways"})

    assert resp.status_code == 422
