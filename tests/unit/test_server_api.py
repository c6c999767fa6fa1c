from __future__ import annotations

import time
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from claude_runner.server.app import create_app


def _write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def _wait_for_job(client: TestClient, job_id: str, timeout: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        job = client.get(f"/api/runs/{job_id}").json()
        if job["status"] not in ("queued", "running"):
            return job
        if time.monotonic() > deadline:
            raise AssertionError(f"job {job_id} did not finish: {job}")
        time.sleep(0.05)


@pytest.fixture
def client(monkeypatch, tmp_path: Path, fake_cli, chain_workflow_text: str) -> TestClient:
    workflows = tmp_path / "workflows"
    _write(workflows / "claude-chain.yml", chain_workflow_text)
    _write(
        workflows / "claude-limited.yml",
        """\
name: Limited
jobs:
  main:
    steps:
      - id: only
        uses: anthropics/claude-pipeline-action@v1
        with:
          prompt: RATELIMIT
""",
    )

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("CLAUDE_RUNNER_COMMAND", fake_cli.command)
    monkeypatch.setenv("CLAUDE_RUNNER_MAX_RETRIES", "1")
    monkeypatch.setenv("CLAUDE_RUNNER_STATE_PATH", str(tmp_path / "state" / "states.json"))
    monkeypatch.setenv("CLAUDE_RUNNER_WORKFLOWS_DIR", str(workflows))

    return TestClient(create_app())


def test_health_and_docs(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/api/openapi.json").status_code == 200


def test_list_and_validate_workflows(client: TestClient) -> None:
    workflows = client.get("/api/workflows").json()
    assert sorted(w["id"] for w in workflows) == ["claude-chain", "claude-limited"]

    assert client.get("/api/workflows/claude-chain/validate").json() == {
        "valid": True,
        "errors": [],
    }


def test_run_workflow_in_background(client: TestClient, workdir: Path, fake_cli) -> None:
    resp = client.post(
        "/api/runs", json={"workflow": "claude-chain", "working_directory": str(workdir)}
    )
    assert resp.status_code == 200
    job = resp.json()
    assert job["kind"] == "run"

    job = _wait_for_job(client, job["job_id"])
    assert job["status"] == "succeeded"
    assert job["steps_executed"] == 3
    execution_id = job["execution_id"]
    assert execution_id
    assert len(fake_cli.calls()) == 3

    states = client.get("/api/states").json()
    assert [(s["execution_id"], s["status"]) for s in states] == [(execution_id, "completed")]

    state = client.get(f"/api/states/{execution_id}").json()
    assert state["session_mappings"]["analyze"] == "ses_1"

    # Finished runs can be neither paused nor resumed.
    assert client.post(f"/api/states/{execution_id}/pause").status_code == 409
    assert client.post(f"/api/states/{execution_id}/resume").status_code == 409

    assert client.delete(f"/api/states/{execution_id}").json() == {"status": "deleted"}
    assert client.get(f"/api/states/{execution_id}").status_code == 404

    assert [j["job_id"] for j in client.get("/api/runs").json()] == [job["job_id"]]


def test_rate_limited_run_can_be_resumed(client: TestClient, workdir: Path) -> None:
    job = client.post(
        "/api/runs", json={"workflow": "claude-limited", "working_directory": str(workdir)}
    ).json()
    job = _wait_for_job(client, job["job_id"])

    assert job["status"] == "paused"
    execution_id = job["execution_id"]

    resumable = client.get("/api/states", params={"resumable": True}).json()
    assert [s["execution_id"] for s in resumable] == [execution_id]
    assert resumable[0]["pause_reason"] == "timeout"

    resumed = client.post(
        f"/api/states/{execution_id}/resume", json={"working_directory": str(workdir)}
    ).json()
    assert resumed["kind"] == "resume"
    assert resumed["execution_id"] == execution_id

    # Still limited: the resumed run pauses again on the same step.
    resumed = _wait_for_job(client, resumed["job_id"])
    assert resumed["status"] == "paused"


def test_unknown_resources(client: TestClient) -> None:
    assert client.post("/api/runs", json={"workflow": "claude-nope"}).status_code == 404
    assert client.get("/api/runs/missing").status_code == 404
    assert client.get("/api/states/exec_missing").status_code == 404
    assert client.delete("/api/states/exec_missing").status_code == 404
    assert client.post("/api/states/exec_missing/pause").status_code == 404
    assert client.post("/api/states/exec_missing/resume").status_code == 404
