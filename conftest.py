"""Shared fixtures: a scripted inference client, stores and controller factory."""

import asyncio
from typing import Any, Callable, Dict, List, Optional

import pytest

from council.events import EventBus
from council.pipeline.controller import RunController
from council.pipeline.interfaces import GenerationResult, InMemoryStore
from council.pipeline.loader import PipelineLoader, PipelineRegistry
from council.pipeline.schema import AgentDefinition, GenerationConfig
from council.utils.retry import RetryConfig


class FakeInferenceClient:
    """Inference client returning scripted responses and recording every call.

    Each script entry is consumed by one call: a string is returned as the
    response text, an exception instance is raised, and a callable receives
    the prompt and returns the text. When the script runs out, ``default``
    is returned. ``scripts`` keys per-model scripts by model name.
    """

    def __init__(
        self,
        *script: Any,
        default: str = "fake response",
        scripts: Optional[Dict[str, List[Any]]] = None,
        delay: float = 0.0,
    ):
        self.script = list(script)
        self.scripts = {model: list(entries) for model, entries in (scripts or {}).items()}
        self.default = default
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def generate(self, prompt, generation_config, timeout=None, system_prompt=None, output_shape=None):
        self.calls.append({
            "prompt": prompt,
            "model": generation_config.model,
            "system_prompt": system_prompt,
            "output_shape": output_shape,
            "timeout": timeout,
        })
        if self.delay:
            await asyncio.sleep(self.delay)

        queue = self.scripts.get(generation_config.model) or self.script
        entry = queue.pop(0) if queue else self.default
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry):
            entry = entry(prompt)
        return GenerationResult(
            text=entry,
            model=generation_config.model,
            usage={"prompt_tokens": len(prompt) // 4, "completion_tokens": len(entry) // 4},
        )

    @property
    def prompts(self) -> List[str]:
        return [call["prompt"] for call in self.calls]


class RecordingStore(InMemoryStore):
    """In-memory store that records writes and deletes."""

    def __init__(self, initial=None, singletons=None):
        super().__init__(initial, singletons)
        self.writes: List[tuple] = []
        self.deletes: List[tuple] = []

    def write(self, store_id, key, value):
        self.writes.append((store_id, key, value))
        super().write(store_id, key, value)

    def delete(self, store_id, key):
        self.deletes.append((store_id, key))
        super().delete(store_id, key)


def make_agent(agent_id: str, model: Optional[str] = None, **kwargs) -> AgentDefinition:
    return AgentDefinition(
        id=agent_id,
        name=kwargs.pop("name", agent_id.title()),
        system_prompt=kwargs.pop("system_prompt", f"You are {agent_id}."),
        generation=GenerationConfig(model=model or f"model-{agent_id}"),
        **kwargs,
    )


def single_phase(*actions: Dict[str, Any], pipeline_id: str = "test", **phase_fields) -> Dict[str, Any]:
    """Build a one-phase pipeline definition dict."""
    return {
        "id": pipeline_id,
        "name": "Test pipeline",
        "phases": [{"id": "main", "actions": list(actions), **phase_fields}],
    }


@pytest.fixture
def agents() -> Dict[str, AgentDefinition]:
    return {
        "alpha": make_agent("alpha"),
        "beta": make_agent("beta"),
        "gamma": make_agent("gamma"),
    }


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore(
        initial={
            "facts": {
                "sky": {"text": "The sky is blue"},
                "grass": {"text": "Grass is green"},
            },
            "notes": {},
        }
    )


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def make_controller(agents, store, event_bus, tmp_path) -> Callable[..., RunController]:
    """Factory building a controller with the given pipelines registered as custom pipelines."""

    def factory(*pipelines: Dict[str, Any], client: Optional[FakeInferenceClient] = None, **kwargs) -> RunController:
        registry = PipelineRegistry(PipelineLoader(tmp_path, agents))
        for pipeline in pipelines:
            registry.register_custom(pipeline)
        kwargs.setdefault("retry_config", RetryConfig(base_delay=0.01, max_delay=0.05))
        kwargs.setdefault("store", store)
        return RunController(
            inference_client=client if client is not None else FakeInferenceClient(),
            registry=registry,
            agents=agents,
            event_bus=event_bus,
            **kwargs,
        )

    return factory


def event_types(bus: EventBus, run_id: Optional[str] = None) -> List[str]:
    return [event.type.value for event in bus.get_history(run_id)]
