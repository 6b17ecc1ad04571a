#!/usr/bin/env python3
"""Test the HTTP API: runs, gavels, previews, pipelines and the event stream."""

import time

import pytest
import yaml

from council import create_app
from conftest import FakeInferenceClient, single_phase


ENGINE_CONFIG = {
    "agents": [
        {"id": "analyst", "name": "Analyst", "system_prompt": "Be precise.", "generation": {"model": "test-model"}},
    ],
    "prompt_presets": {"short": "Briefly: {{input}}"},
    "stores": {"notes": {}, "facts": {"sky": {"text": "The sky is blue"}}},
    "retrieval_pipelines": {"knowledge": ["facts", "notes"]},
}


@pytest.fixture
def app(tmp_path):
    pipelines_dir = tmp_path / "pipelines"
    pipelines_dir.mkdir()
    presets = {
        "echo": single_phase({"id": "echo", "kind": "system"}, pipeline_id="echo"),
        "ask": single_phase({"id": "ask", "agent_id": "analyst", "prompt": "Answer: {{input}}"}, pipeline_id="ask"),
        "review": single_phase(
            {"id": "ask", "agent_id": "analyst", "prompt": "Answer: {{input}}"},
            {"id": "check", "kind": "user_gavel", "gavel": {"prompt": "Approve?"}},
            pipeline_id="review",
        ),
    }
    for name, definition in presets.items():
        (pipelines_dir / f"{name}.yaml").write_text(yaml.safe_dump(definition))
    engine_path = tmp_path / "engine.yaml"
    engine_path.write_text(yaml.safe_dump(ENGINE_CONFIG))

    app = create_app(
        config_overrides={
            "TESTING": True,
            "PIPELINES_DIR": str(pipelines_dir),
            "ENGINE_CONFIG": str(engine_path),
            "RETRY_BASE_DELAY": 0.01,
        },
        inference_client=FakeInferenceClient(default="model answer"),
    )
    yield app
    app.extensions["council"]["host"].stop()


@pytest.fixture
def client(app):
    return app.test_client()


def wait_until(fetch, predicate, timeout=5.0):
    """Poll ``fetch`` until ``predicate`` accepts its result."""
    deadline = time.time() + timeout
    while time.time() < deadline:
        value = fetch()
        if predicate(value):
            return value
        time.sleep(0.02)
    raise AssertionError("condition not reached before timeout")


# ============================================================================
# Runs
# ============================================================================

def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "mode": "synthesis"}


def test_start_run_and_wait(client):
    """Test a waited run returns the full result."""
    response = client.post("/api/runs", json={"pipeline_id": "ask", "input": "why", "wait": True})

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "completed"
    assert body["output"] == "model answer"
    assert body["step_results"][0]["prompt"] == "Answer: why"


def test_start_run_in_background(client):
    response = client.post("/api/runs", json={"pipeline_id": "echo", "input": "hello", "options": {"run_id": "bg-1"}})

    assert response.status_code == 202
    assert response.get_json()["run_id"] == "bg-1"

    state = wait_until(
        lambda: client.get("/api/runs/bg-1/state"),
        lambda r: r.status_code == 200 and r.get_json()["status"] == "completed",
    ).get_json()
    assert state["phase_outputs"] == {"main": "hello"}

    output = client.get("/api/runs/bg-1/output").get_json()
    assert output == {"run_id": "bg-1", "status": "completed", "mode": "synthesis", "output": "hello"}
    assert client.get("/api/runs/bg-1/progress").get_json()["percentage"] == 100

    listing = client.get("/api/runs").get_json()
    assert listing["active"] == []
    assert [s["run_id"] for s in listing["history"]] == ["bg-1"]


def test_start_run_validation(client):
    assert client.post("/api/runs", json={}).status_code == 400
    assert client.post("/api/runs", json={"pipeline_id": "nope"}).status_code == 404
    bad_mode = client.post("/api/runs", json={"pipeline_id": "echo", "options": {"mode": "telepathy"}})
    assert bad_mode.status_code == 400


def test_unknown_run(client):
    assert client.get("/api/runs/ghost/state").status_code == 404
    assert client.get("/api/runs/ghost/output").status_code == 404
    assert client.post("/api/runs/ghost/pause").get_json() == {"run_id": "ghost", "success": False}
    assert client.post("/api/runs/ghost/abort").get_json()["success"] is False


# ============================================================================
# Gavels
# ============================================================================

def test_gavel_approval_over_http(client):
    """Test a run paused on a gavel continues after an HTTP approval with edits."""
    client.post("/api/runs", json={"pipeline_id": "review", "input": "q", "options": {"run_id": "gv-1"}})

    gavel = wait_until(
        lambda: client.get("/api/gavels/active?run_id=gv-1").get_json()["gavel"],
        lambda g: g is not None,
    )
    assert gavel["current_output"] == "model answer"
    assert client.get("/api/runs/gv-1/state").get_json()["status"] == "paused"

    response = client.post(
        f"/api/gavels/{gavel['gavel_id']}/approve",
        json={"edited_values": {"output": "edited answer"}},
    )
    assert response.status_code == 200
    assert response.get_json()["decision"] == "approved"

    wait_until(
        lambda: client.get("/api/runs/gv-1/state").get_json()["status"],
        lambda status: status == "completed",
    )
    assert client.get("/api/runs/gv-1/output").get_json()["output"] == "edited answer"


def test_gavel_reject_over_http(client):
    client.post("/api/runs", json={"pipeline_id": "review", "input": "q", "options": {"run_id": "gv-2"}})
    gavel = wait_until(
        lambda: client.get("/api/gavels/active?run_id=gv-2").get_json()["gavel"],
        lambda g: g is not None,
    )

    response = client.post(f"/api/gavels/{gavel['gavel_id']}/reject", json={"reason": "wrong"})

    assert response.get_json()["decision"] == "rejected"
    wait_until(
        lambda: client.get("/api/runs/gv-2/state").get_json()["status"],
        lambda status: status == "aborted",
    )


def test_reusing_active_run_id_conflicts(client):
    """Test a background start with the id of an active run is refused with 409."""
    client.post("/api/runs", json={"pipeline_id": "review", "input": "q", "options": {"run_id": "dup-1"}})
    gavel = wait_until(
        lambda: client.get("/api/gavels/active?run_id=dup-1").get_json()["gavel"],
        lambda g: g is not None,
    )

    response = client.post("/api/runs", json={"pipeline_id": "echo", "input": "x", "options": {"run_id": "dup-1"}})

    assert response.status_code == 409
    assert "already active" in response.get_json()["error"]
    assert client.get("/api/runs/dup-1/state").get_json()["pipeline_id"] == "review"

    client.post(f"/api/gavels/{gavel['gavel_id']}/reject")
    wait_until(
        lambda: client.get("/api/runs/dup-1/state").get_json()["status"],
        lambda status: status == "aborted",
    )


def test_unknown_gavel(client):
    assert client.post("/api/gavels/gavel_missing/approve").status_code == 404
    assert client.post("/api/gavels/gavel_missing/skip").status_code == 404


# ============================================================================
# Preview
# ============================================================================

def test_preview_endpoint(client, app):
    response = client.post("/api/preview", json={"pipeline_id": "ask", "input": "why"})

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "completed"
    assert body["steps"][0]["prompt"] == "Answer: why"
    assert app.extensions["council"]["controller"].executor.inference_client.calls == []

    assert client.post("/api/preview", json={"pipeline_id": "nope"}).status_code == 404
    assert client.post("/api/preview", json={}).status_code == 400


def test_cancel_unknown_execution(client):
    response = client.post("/api/executions/nothing/cancel")
    assert response.get_json() == {"execution_id": "nothing", "success": False}


# ============================================================================
# Pipelines and mode
# ============================================================================

def test_pipeline_registration(client):
    listing = client.get("/api/pipelines").get_json()
    assert listing == {"presets": ["ask", "echo", "review"], "custom": []}

    definition = single_phase({"id": "shout", "kind": "system", "prompt": "{{input}}!"}, pipeline_id="shout")
    created = client.post("/api/pipelines", json=definition)
    assert created.status_code == 201
    assert created.get_json()["pipeline"]["id"] == "shout"

    assert client.get("/api/pipelines/shout").get_json()["id"] == "shout"
    run = client.post("/api/runs", json={"pipeline_id": "shout", "input": "hey", "wait": True}).get_json()
    assert run["output"] == "hey!"

    assert client.delete("/api/pipelines/shout").status_code == 200
    assert client.delete("/api/pipelines/shout").status_code == 404
    assert client.get("/api/pipelines/shout").status_code == 404


def test_pipeline_registration_rejects_invalid(client):
    invalid = {"id": "bad", "phases": [{"id": "one", "actions": [{"id": "a", "agent_id": "ghost"}]}]}
    assert client.post("/api/pipelines", json=invalid).status_code == 400
    assert client.post("/api/pipelines", json={}).status_code == 400


def test_delivery_mode(client):
    assert client.get("/api/mode").get_json() == {"mode": "synthesis"}
    assert client.put("/api/mode", json={"mode": "compilation"}).get_json() == {"mode": "compilation"}
    assert client.put("/api/mode", json={"mode": "telepathy"}).status_code == 409

    run = client.post("/api/runs", json={"pipeline_id": "echo", "input": "prompt text", "wait": True}).get_json()
    assert run["compiled_prompt"] == "prompt text"


# ============================================================================
# Event stream
# ============================================================================

def test_event_stream_ends_after_terminal_event(client):
    """Test the run event stream delivers events and closes after run:completed."""
    stream = client.get("/api/runs/sse-1/events")
    assert stream.mimetype == "text/event-stream"

    client.post("/api/runs", json={"pipeline_id": "echo", "input": "x", "options": {"run_id": "sse-1"}, "wait": True})

    body = stream.get_data(as_text=True)
    assert body.startswith("event: connected\n")
    assert "event: run:started\n" in body
    assert "event: step:complete\n" in body
    assert body.rstrip().split("\n\n")[-1].startswith("event: run:completed\n")
