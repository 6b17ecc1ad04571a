#!/usr/bin/env python3
"""Test gavel checkpoints: approval, edits, rejection, skipping and timeouts."""

import asyncio

import pytest

from council.events import EventType
from council.pipeline.errors import PipelineValidationError
from council.pipeline.gavel import apply_modifications
from council.pipeline.state import GavelDecision, RunStatus
from conftest import FakeInferenceClient, event_types, single_phase


def review_pipeline(gavel=None):
    return single_phase(
        {"id": "draft", "agent_id": "alpha", "prompt": "Draft {{input}}"},
        {"id": "check", "kind": "user_gavel", "gavel": gavel or {"prompt": "Is the draft good?"}},
        {"id": "publish", "kind": "system"},
    )


async def wait_for_gavel(controller, run_id, timeout=2.0):
    """Poll until the run has a pending gavel."""
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        gavel = controller.get_active_gavel(run_id)
        if gavel is not None:
            return gavel
        await asyncio.sleep(0.01)
    raise AssertionError(f"Run {run_id} never opened a gavel")


# ============================================================================
# Decisions
# ============================================================================

@pytest.mark.asyncio
async def test_approve_with_edited_output(make_controller, event_bus):
    """Test approving a gavel with an edited value continues with the edit."""
    controller = make_controller(review_pipeline(), client=FakeInferenceClient("first draft"))
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g1"}))

    gavel = await wait_for_gavel(controller, "g1")
    assert gavel.step_id == "check"
    assert gavel.current_output == "first draft"
    assert gavel.prompt == "Is the draft good?"
    assert controller.get_run_state("g1").status == RunStatus.PAUSED
    assert controller.resume_run("g1") is False

    outcome = controller.approve_gavel(gavel.gavel_id, {"edited_values": {"output": "better draft"}})
    result = await asyncio.wait_for(task, timeout=2)

    assert outcome.decision == GavelDecision.APPROVED
    assert result.status == RunStatus.COMPLETED
    assert result.output == "better draft"
    assert controller.get_active_gavel("g1") is None
    types = event_types(event_bus, "g1")
    assert "gavel:requested" in types
    assert "gavel:approved" in types


@pytest.mark.asyncio
async def test_second_gavel_for_same_run_is_refused(make_controller):
    controller = make_controller(review_pipeline(), client=FakeInferenceClient("draft"))
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g2"}))
    first = await wait_for_gavel(controller, "g2")

    with pytest.raises(PipelineValidationError, match="already has an active gavel"):
        await controller.request_gavel("g2", {"prompt": "Another?"}, "draft")

    assert controller.get_active_gavel("g2").gavel_id == first.gavel_id
    controller.approve_gavel(first.gavel_id)
    result = await asyncio.wait_for(task, timeout=2)
    assert result.output == "draft"


@pytest.mark.asyncio
async def test_gavel_decision_keeps_user_pause(make_controller):
    """Test a user pause taken during a reviewed step survives the gavel approval."""
    client = FakeInferenceClient("draft text", "final text", delay=0.2)
    controller = make_controller(
        single_phase(
            {"id": "draft", "agent_id": "alpha", "prompt": "Q", "review": {"prompt": "Keep the draft?"}},
            {"id": "polish", "agent_id": "beta", "prompt": "Polish {{previousOutput}}"},
        ),
        client=client,
    )
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "p1"}))
    while not client.calls:
        await asyncio.sleep(0.01)
    assert controller.pause_run("p1") is True

    gavel = await wait_for_gavel(controller, "p1")
    controller.approve_gavel(gavel.gavel_id)
    await asyncio.sleep(0.1)

    assert len(client.calls) == 1
    assert controller.get_run_state("p1").status == RunStatus.PAUSED

    assert controller.resume_run("p1") is True
    result = await asyncio.wait_for(task, timeout=2)

    assert result.status == RunStatus.COMPLETED
    assert len(client.calls) == 2
    assert result.output == "final text"


@pytest.mark.asyncio
async def test_reject_aborts_run(make_controller, event_bus):
    client = FakeInferenceClient("draft")
    controller = make_controller(review_pipeline(), client=client)
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g3"}))
    gavel = await wait_for_gavel(controller, "g3")

    outcome = controller.reject_gavel(gavel.gavel_id, "off topic")
    result = await asyncio.wait_for(task, timeout=2)

    assert outcome.decision == GavelDecision.REJECTED
    assert result.status == RunStatus.ABORTED
    assert [r.step_id for r in result.step_results] == ["draft", "check"]
    rejected = event_bus.get_history("g3", EventType.GAVEL_REJECTED)
    assert rejected[0].data["reason"] == "off topic"
    assert "run:aborted" in event_types(event_bus, "g3")


@pytest.mark.asyncio
async def test_skip_keeps_output(make_controller, event_bus):
    controller = make_controller(review_pipeline(), client=FakeInferenceClient("draft"))
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g4"}))
    gavel = await wait_for_gavel(controller, "g4")

    controller.skip_gavel(gavel.gavel_id)
    result = await asyncio.wait_for(task, timeout=2)

    assert result.status == RunStatus.COMPLETED
    assert result.output == "draft"
    skipped = event_bus.get_history("g4", EventType.GAVEL_SKIPPED)
    assert skipped[0].data["automatic"] is False


@pytest.mark.asyncio
async def test_skip_refused_when_not_skippable(make_controller):
    controller = make_controller(
        review_pipeline({"prompt": "Must review", "can_skip": False}),
        client=FakeInferenceClient("draft"),
    )
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g5"}))
    gavel = await wait_for_gavel(controller, "g5")

    with pytest.raises(PipelineValidationError, match="cannot be skipped"):
        controller.skip_gavel(gavel.gavel_id)

    assert controller.get_active_gavel("g5") is not None
    controller.approve_gavel(gavel.gavel_id)
    result = await asyncio.wait_for(task, timeout=2)
    assert result.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_timeout_auto_skips(make_controller, event_bus):
    """Test a skippable gavel with a timeout resolves itself with the output unchanged."""
    controller = make_controller(
        review_pipeline({"prompt": "Quick look", "timeout_ms": 100}),
        client=FakeInferenceClient("draft"),
    )

    result = await asyncio.wait_for(controller.start_run("test", "x", {"run_id": "g6"}), timeout=2)

    assert result.status == RunStatus.COMPLETED
    assert result.output == "draft"
    skipped = event_bus.get_history("g6", EventType.GAVEL_SKIPPED)
    assert len(skipped) == 1
    assert skipped[0].data["automatic"] is True


@pytest.mark.asyncio
async def test_abort_cancels_pending_gavel(make_controller):
    controller = make_controller(review_pipeline(), client=FakeInferenceClient("draft"))
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g7"}))
    await wait_for_gavel(controller, "g7")

    assert controller.abort_run("g7") is True
    result = await asyncio.wait_for(task, timeout=2)

    assert result.status == RunStatus.ABORTED
    assert controller.get_active_gavel("g7") is None


def test_decisions_on_unknown_gavel_raise(make_controller):
    controller = make_controller()
    with pytest.raises(PipelineValidationError):
        controller.approve_gavel("gavel_missing")
    with pytest.raises(PipelineValidationError):
        controller.reject_gavel("gavel_missing")
    with pytest.raises(PipelineValidationError):
        controller.skip_gavel("gavel_missing")


# ============================================================================
# Review and phase checkpoints
# ============================================================================

@pytest.mark.asyncio
async def test_action_review_gates_parsed_output(make_controller):
    controller = make_controller(
        single_phase({"id": "ask", "agent_id": "alpha", "prompt": "Q", "review": {"prompt": "Check answer"}}),
        client=FakeInferenceClient("raw answer"),
    )
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g8"}))
    gavel = await wait_for_gavel(controller, "g8")

    assert gavel.step_id == "ask"
    assert gavel.current_output == "raw answer"
    controller.approve_gavel(gavel.gavel_id, {"editedValues": {"output": "reviewed answer"}})

    result = await asyncio.wait_for(task, timeout=2)
    assert result.output == "reviewed answer"


@pytest.mark.asyncio
async def test_phase_gavel_merges_editable_fields(make_controller):
    pipeline = single_phase(
        {"id": "outline", "agent_id": "alpha", "prompt": "Q", "output": {"shape": "json"}},
        gavel={"prompt": "Approve outline", "editable_fields": ["title"]},
    )
    controller = make_controller(pipeline, client=FakeInferenceClient('{"title": "Draft", "body": "text"}'))
    task = asyncio.create_task(controller.start_run("test", "x", {"run_id": "g9"}))
    gavel = await wait_for_gavel(controller, "g9")

    assert gavel.phase_id == "main"
    assert gavel.step_id is None
    controller.approve_gavel(gavel.gavel_id, {"edited_values": {"title": "Final", "body": "ignored"}})

    result = await asyncio.wait_for(task, timeout=2)
    assert result.output == {"title": "Final", "body": "text"}


# ============================================================================
# Modification merging
# ============================================================================

def test_apply_modifications_without_edits_returns_output():
    assert apply_modifications("text", ["output"], None) == "text"
    assert apply_modifications("text", ["output"], {"edited_values": {}}) == "text"


def test_apply_modifications_dict_without_declared_fields():
    merged = apply_modifications({"a": 1}, [], {"edited_values": {"b": 2}})
    assert merged == {"a": 1, "b": 2}


def test_apply_modifications_string_needs_single_editable_field():
    assert apply_modifications("text", ["output", "notes"], {"edited_values": {"output": "new"}}) == "text"
