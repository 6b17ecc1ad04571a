#!/usr/bin/env python3
"""Test preview execution: no side effects, change summaries and estimates."""

import pytest

from council.events import EventType
from council.pipeline.errors import PipelineValidationError
from council.pipeline.preview import PreviewEngine, PreviewStore, SimulatedInferenceClient
from council.pipeline.schema import GenerationConfig, OutputShape
from conftest import FakeInferenceClient, RecordingStore, make_agent, single_phase


def editing_pipeline():
    return single_phase(
        {
            "id": "summarize",
            "agent_id": "alpha",
            "prompt": "Summarize {{input}}",
            "output": {"type": "store", "shape": "json", "store_id": "notes", "key": "n1"},
        },
        {
            "id": "refresh",
            "kind": "crud_pipeline",
            "input_source": {"type": "custom", "value": {"text": "Grass is greener"}},
            "crud": {"operation": "update", "store_id": "facts", "key": "grass"},
        },
        {
            "id": "forget",
            "kind": "crud_pipeline",
            "crud": {"operation": "delete", "store_id": "facts", "key": "sky"},
        },
    )


# ============================================================================
# Preview engine
# ============================================================================

@pytest.mark.asyncio
async def test_preview_has_no_side_effects(make_controller, store):
    """Test preview never calls the inference client and never writes the store."""
    client = FakeInferenceClient()
    controller = make_controller(editing_pipeline(), client=client)
    engine = PreviewEngine(controller)

    result = await engine.execute_preview("test", "the meeting")

    assert result.status == "completed"
    assert client.calls == []
    assert store.writes == []
    assert store.deletes == []
    assert store.read("facts", "sky") == {"text": "The sky is blue"}
    assert controller.get_active_runs() == []
    assert controller.get_history() == []


@pytest.mark.asyncio
async def test_preview_summarizes_would_be_changes(make_controller):
    controller = make_controller(editing_pipeline())
    engine = PreviewEngine(controller)

    result = await engine.execute_preview("test", "the meeting")

    changes = result.changes
    assert changes["total_changes"] == 3
    assert [item["id"] for item in changes["stores"]["notes"]["added"]] == ["n1"]
    assert changes["stores"]["notes"]["added"][0]["data"]["preview"] is True
    assert changes["stores"]["facts"]["modified"][0]["after"] == {"text": "Grass is greener"}
    assert [item["id"] for item in changes["stores"]["facts"]["deleted"]] == ["sky"]
    assert sorted(changes["summary"]) == ["facts: 1 modified, 1 deleted", "notes: 1 added"]
    assert [w["operation"] for w in result.preview_writes] == ["write", "write", "delete"]


@pytest.mark.asyncio
async def test_preview_reports_prompts_and_estimates(make_controller, agents):
    agents["alpha"] = make_agent("alpha", model="gpt-4o-mini")
    controller = make_controller(
        single_phase({"id": "ask", "agent_id": "alpha", "prompt": "Explain {{input}}"})
    )
    engine = PreviewEngine(controller)

    result = await engine.execute_preview("test", "x" * 1000)

    step = result.steps[0]
    assert step.valid is True
    assert step.prompt_chars == len("Explain ") + 1000
    assert step.prompt.startswith("Explain xxx")
    assert "more chars" in step.prompt
    assert step.agents[0]["id"] == "alpha"
    assert step.agents[0]["generation"]["model"] == "gpt-4o-mini"
    # Completion is estimated at the agent's max_tokens
    assert step.estimated_tokens >= 1024
    assert step.estimated_cost_usd > 0
    assert result.total_tokens == step.estimated_tokens


@pytest.mark.asyncio
async def test_preview_continues_past_failures(make_controller):
    controller = make_controller(
        single_phase(
            {"id": "read", "kind": "crud_pipeline", "crud": {"operation": "read", "store_id": "missing", "key": "k"}},
            {"id": "ask", "agent_id": "alpha", "prompt": "Q"},
        )
    )
    engine = PreviewEngine(controller)

    result = await engine.execute_preview("test", "x")

    assert result.status == "completed"
    assert [s.valid for s in result.steps] == [False, True]
    assert "missing" in result.steps[0].error
    assert result.errors[0]["type"] == "store"


@pytest.mark.asyncio
async def test_preview_auto_approves_gavels(make_controller, event_bus):
    controller = make_controller(
        single_phase(
            {"id": "draft", "agent_id": "alpha", "prompt": "Q"},
            {"id": "check", "kind": "user_gavel"},
        )
    )
    engine = PreviewEngine(controller)

    result = await engine.execute_preview("test", "x", execution_id="preview-gavel")

    assert result.status == "completed"
    assert controller.get_active_gavel() is None
    approved = event_bus.get_history("preview-gavel", EventType.GAVEL_APPROVED)
    assert len(approved) == 1


@pytest.mark.asyncio
async def test_preview_warns_about_pipeline_issues(make_controller):
    controller = make_controller(single_phase({"id": "echo", "kind": "system"}))

    result = await PreviewEngine(controller).execute_preview("test", "x")

    assert any("passes its input through" in w for w in result.warnings)


@pytest.mark.asyncio
async def test_cancel_preview(make_controller, event_bus):
    controller = make_controller(
        single_phase(
            {"id": "one", "kind": "system"},
            {"id": "two", "kind": "system"},
        )
    )
    engine = PreviewEngine(controller)
    observed = []

    def cancel_after_first(event):
        if event.data.get("step_id") == "one":
            observed.append(engine.get_active_previews())
            observed.append(engine.cancel_execution("p1"))

    event_bus.subscribe(EventType.STEP_COMPLETE, cancel_after_first)
    result = await engine.execute_preview("test", "x", execution_id="p1")

    assert observed == [["p1"], True]
    assert result.status == "cancelled"
    assert [s.step_id for s in result.steps] == ["one"]
    assert engine.get_active_previews() == []
    assert engine.cancel_execution("p1") is False


@pytest.mark.asyncio
async def test_preview_unknown_pipeline(make_controller):
    engine = PreviewEngine(make_controller())
    with pytest.raises(PipelineValidationError):
        await engine.execute_preview("missing")


# ============================================================================
# Preview building blocks
# ============================================================================

def test_preview_store_copy_on_write():
    backing = RecordingStore(initial={"notes": {"a": 1}})
    overlay = PreviewStore(backing)

    overlay.write("notes", "b", 2)
    overlay.delete("notes", "a")

    assert overlay.snapshot("notes").keys == ["b"]
    assert backing.read("notes") == {"a": 1}
    assert backing.writes == []
    summary = overlay.summarize_changes()
    assert summary["summary"] == ["notes: 1 added, 1 deleted"]


def test_preview_store_new_singleton_store():
    overlay = PreviewStore(RecordingStore())

    overlay.write("settings", None, {"theme": "dark"})

    assert overlay.read("settings") == {"theme": "dark"}
    assert overlay.summarize_changes()["stores"]["settings"]["added"] == [
        {"id": "settings", "data": {"theme": "dark"}}
    ]


@pytest.mark.asyncio
async def test_simulated_client_shapes():
    client = SimulatedInferenceClient()
    config = GenerationConfig(model="local", max_tokens=64)

    text = await client.generate("hi", config)
    array = await client.generate("hi", config, output_shape=OutputShape.ARRAY)

    assert text.text == "[Preview response from local]"
    assert array.text.startswith("[\"simulated item 1\"")
    assert text.usage["completion_tokens"] == 64
    assert client.call_count == 2
