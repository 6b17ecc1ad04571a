"""Preview execution: run a pipeline without side effects.

The preview path drives the same phase runner and step executor as a real
run, but against a store overlay that records writes instead of applying
them and an inference client that synthesizes responses locally. Gavels are
approved automatically. The result is a report (prompts, agent settings,
estimated tokens and cost, would-be store changes) rather than an output.
"""

import copy
import json
import logging
import time
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel, Field

from council.pipeline.controller import RunController
from council.pipeline.errors import PipelineError, PipelineValidationError, StoreError
from council.pipeline.cost import CostEstimator
from council.pipeline.executor import StepExecutor
from council.pipeline.gavel import GavelCoordinator
from council.pipeline.interfaces import (
    GenerationResult,
    PersistentStore,
    StoreRetrievalService,
    StoreSnapshot,
)
from council.pipeline.phase import PhaseRunner
from council.pipeline.schema import AGENT_KINDS, GenerationConfig, OutputShape
from council.pipeline.state import RunHandle, RunOptions, StepResult, StepStatus
from council.utils.helpers import estimate_tokens, generate_id, truncate_text

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_CHARS = 500


class PreviewStore:
    """Copy-on-write overlay over a persistent store.

    The first access to a store copies its contents from the backing store;
    writes and deletes then apply to the copy only and are logged in
    ``preview_writes``.
    """

    def __init__(self, backing: PersistentStore):
        self.backing = backing
        self.preview_writes: List[Dict[str, Any]] = []
        self._data: Dict[str, Any] = {}
        self._singletons: Set[str] = set()
        self._baseline: Dict[str, Any] = {}

    def _load(self, store_id: str) -> bool:
        """Seed the overlay for a store. Returns False if the store does not exist."""
        if store_id in self._data:
            return True
        try:
            self.backing.read(store_id)
        except StoreError:
            return False
        snapshot = self.backing.snapshot(store_id)
        self._data[store_id] = copy.deepcopy(snapshot.data)
        if snapshot.is_singleton:
            self._singletons.add(store_id)
        self._baseline[store_id] = copy.deepcopy(snapshot.data)
        return True

    def read(self, store_id: str, key: Optional[str] = None) -> Any:
        if not self._load(store_id):
            raise StoreError(f"Unknown store: {store_id}")
        value = self._data[store_id]
        if key is None or store_id in self._singletons:
            return copy.deepcopy(value)
        if key not in value:
            raise StoreError(f"Entry '{key}' not found in store '{store_id}'")
        return copy.deepcopy(value[key])

    def write(self, store_id: str, key: Optional[str], value: Any) -> None:
        if not self._load(store_id):
            self._baseline[store_id] = None
        if key is None:
            self._singletons.add(store_id)
            self._data[store_id] = copy.deepcopy(value)
        else:
            if store_id in self._singletons:
                raise StoreError(f"Store '{store_id}' is a singleton and has no keys")
            entries = self._data.get(store_id)
            if entries is None:
                entries = self._data[store_id] = {}
            entries[key] = copy.deepcopy(value)
        self.preview_writes.append(
            {"operation": "write", "store_id": store_id, "key": key, "value": copy.deepcopy(value)}
        )

    def delete(self, store_id: str, key: str) -> None:
        self._load(store_id)
        entries = self._data.get(store_id)
        if entries is None or store_id in self._singletons or key not in entries:
            raise StoreError(f"Entry '{key}' not found in store '{store_id}'")
        del entries[key]
        self.preview_writes.append({"operation": "delete", "store_id": store_id, "key": key, "value": None})

    def snapshot(self, store_id: str) -> StoreSnapshot:
        if not self._load(store_id):
            return StoreSnapshot(store_id=store_id)
        value = self._data[store_id]
        if store_id in self._singletons:
            return StoreSnapshot(
                store_id=store_id,
                count=0 if value is None else 1,
                data=copy.deepcopy(value),
                is_singleton=True,
            )
        entries = value or {}
        return StoreSnapshot(
            store_id=store_id,
            count=len(entries),
            keys=list(entries.keys()),
            data=copy.deepcopy(entries),
        )

    def summarize_changes(self) -> Dict[str, Any]:
        """
        Diff every written store against its state before the preview.

        Returns:
            Dict with ``stores`` (added/modified/deleted per store),
            ``total_changes`` and human-readable ``summary`` lines
        """
        stores: Dict[str, Dict[str, List[Dict[str, Any]]]] = {}
        touched = []
        for write in self.preview_writes:
            if write["store_id"] not in touched:
                touched.append(write["store_id"])

        for store_id in touched:
            before = self._baseline.get(store_id)
            after = self._data.get(store_id)
            diff = {"added": [], "modified": [], "deleted": []}

            if store_id in self._singletons:
                if before is None and after is not None:
                    diff["added"].append({"id": store_id, "data": after})
                elif before != after:
                    diff["modified"].append({"id": store_id, "before": before, "after": after})
            else:
                before = before or {}
                after = after or {}
                for key, value in after.items():
                    if key not in before:
                        diff["added"].append({"id": key, "data": value})
                    elif before[key] != value:
                        diff["modified"].append({"id": key, "before": before[key], "after": value})
                for key, value in before.items():
                    if key not in after:
                        diff["deleted"].append({"id": key, "data": value})
            stores[store_id] = diff

        summary = []
        total = 0
        for store_id, diff in stores.items():
            counts = {kind: len(items) for kind, items in diff.items()}
            total += sum(counts.values())
            parts = [f"{count} {kind}" for kind, count in counts.items() if count]
            if parts:
                summary.append(f"{store_id}: {', '.join(parts)}")

        return {"stores": stores, "total_changes": total, "summary": summary}


class SimulatedInferenceClient:
    """Inference client that never leaves the process.

    Responses are placeholders shaped like the step's declared output, so
    downstream parsing and routing behave as they would for a real call.
    """

    def __init__(self):
        self.call_count = 0

    async def generate(
        self,
        prompt: str,
        generation_config: GenerationConfig,
        timeout: Optional[float] = None,
        system_prompt: Optional[str] = None,
        output_shape: Optional[OutputShape] = None,
    ) -> GenerationResult:
        self.call_count += 1
        model = generation_config.model

        if output_shape == OutputShape.JSON:
            text = json.dumps({"preview": True, "model": model, "response": "simulated"})
        elif output_shape == OutputShape.ARRAY:
            text = json.dumps([f"simulated item {i}" for i in range(1, 4)])
        else:
            text = f"[Preview response from {model}]"

        return GenerationResult(
            text=text,
            model=model,
            usage={
                "prompt_tokens": estimate_tokens((system_prompt or "") + prompt),
                "completion_tokens": generation_config.max_tokens or estimate_tokens(text),
            },
        )


class PreviewStep(BaseModel):
    """Preview report for one step."""
    step_id: str
    phase_id: Optional[str] = None
    kind: str
    valid: bool
    error: Optional[str] = None
    prompt: Optional[str] = None
    prompt_chars: int = 0
    agents: List[Dict[str, Any]] = Field(default_factory=list)
    estimated_tokens: int = 0
    estimated_cost_usd: float = 0.0


class PreviewResult(BaseModel):
    """Result of ``PreviewEngine.execute_preview``."""
    execution_id: str
    pipeline_id: str
    status: str
    steps: List[PreviewStep] = Field(default_factory=list)
    changes: Dict[str, Any] = Field(default_factory=dict)
    preview_writes: List[Dict[str, Any]] = Field(default_factory=list)
    total_tokens: int = 0
    estimated_cost_usd: float = 0.0
    warnings: List[str] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    duration_ms: int = 0


class PreviewEngine:
    """Dry-run pipelines through a run controller's configuration."""

    def __init__(self, controller: RunController, cost_estimator: Optional[CostEstimator] = None):
        """
        Initialize preview engine.

        Args:
            controller: Controller whose registry, agents, store and presets are previewed
            cost_estimator: Token pricing used for cost estimates
        """
        self.controller = controller
        self.cost_estimator = cost_estimator or CostEstimator()
        self._previews: Dict[str, RunHandle] = {}

    async def execute_preview(
        self,
        pipeline_id: str,
        input: Any = None,
        variables: Optional[Dict[str, Any]] = None,
        execution_id: Optional[str] = None,
    ) -> PreviewResult:
        """
        Execute a pipeline in preview mode.

        No store is written and the configured inference client is never
        called. Every step runs even after another fails, so the report
        covers the whole pipeline.

        Args:
            pipeline_id: Pipeline to preview
            input: Run input
            variables: Initial run variables
            execution_id: Id used to cancel the preview

        Returns:
            PreviewResult

        Raises:
            PipelineValidationError: If the pipeline is unknown
        """
        controller = self.controller
        definition = controller.registry.get_pipeline(pipeline_id)
        if definition is None:
            raise PipelineValidationError(f"Unknown pipeline: {pipeline_id}")

        execution_id = execution_id or generate_id("preview")
        store = PreviewStore(controller.store)
        client = SimulatedInferenceClient()
        gavels = GavelCoordinator(controller.event_bus, auto_approve=True)

        retrieval = controller.retrieval
        if isinstance(retrieval, StoreRetrievalService):
            retrieval = StoreRetrievalService(store, retrieval.pipelines)

        base = controller.executor
        executor = StepExecutor(
            inference_client=client,
            store=store,
            prompt_resolver=base.prompt_resolver,
            retrieval=retrieval,
            gavels=gavels,
            prompt_presets=base.prompt_presets,
            retry_config=base.retry_config,
        )
        runner = PhaseRunner(executor, gavels)

        pipeline = definition.model_copy(deep=True)
        handle = controller.build_handle(
            execution_id,
            pipeline,
            input,
            RunOptions(run_id=execution_id, variables=variables or {}, continue_on_error=True),
        )
        handle.context.preview = True
        self._previews[execution_id] = handle

        for message in controller.registry.loader.validate_pipeline(pipeline):
            handle.context.add_warning(message)

        logger.info(f"Preview {execution_id} started: pipeline={pipeline_id}")
        start_time = time.time()
        status = "completed"
        phase_input = input
        try:
            for index, phase in enumerate(pipeline.phases):
                await handle.checkpoint()
                phase_input = await runner.run_phase(phase, handle, index, phase_input)
        except PipelineError as e:
            status = "cancelled" if e.is_cancelled else "error"
            if not e.reported:
                handle.context.errors.append(e.to_dict())
            logger.info(f"Preview {execution_id} stopped ({status}): {e.message}")
        finally:
            self._previews.pop(execution_id, None)

        steps = [self._describe_step(result, handle) for result in handle.context.step_results]
        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Preview {execution_id} finished in {duration_ms}ms: "
            f"{len(steps)} steps, {len(store.preview_writes)} would-be writes, {client.call_count} simulated calls"
        )

        return PreviewResult(
            execution_id=execution_id,
            pipeline_id=pipeline_id,
            status=status,
            steps=steps,
            changes=store.summarize_changes(),
            preview_writes=store.preview_writes,
            total_tokens=sum(step.estimated_tokens for step in steps),
            estimated_cost_usd=round(sum(step.estimated_cost_usd for step in steps), 6),
            warnings=list(handle.context.warnings),
            errors=list(handle.context.errors),
            duration_ms=duration_ms,
        )

    def _describe_step(self, result: StepResult, handle: RunHandle) -> PreviewStep:
        action = handle.pipeline.get_action(result.step_id)
        agents = []
        if action is not None and action.kind in AGENT_KINDS:
            for agent_id in action.agent_ids:
                agent = handle.agents.get(agent_id)
                agents.append({
                    "id": agent_id,
                    "name": agent.display_name if agent else None,
                    "generation": agent.generation.model_dump() if agent and agent.generation else None,
                })

        usage = result.usage or {}
        models = usage.get("models") or []
        estimate = self.cost_estimator.estimate(
            models[0] if models else "",
            input_tokens=usage.get("prompt_tokens", 0),
            output_tokens=usage.get("completion_tokens", 0),
        )

        return PreviewStep(
            step_id=result.step_id,
            phase_id=result.phase_id,
            kind=result.kind,
            valid=result.status == StepStatus.SUCCESS,
            error=result.error.get("message") if result.error else None,
            prompt=truncate_text(result.prompt, PROMPT_PREVIEW_CHARS) if result.prompt else None,
            prompt_chars=len(result.prompt or ""),
            agents=agents,
            estimated_tokens=estimate.total_tokens,
            estimated_cost_usd=estimate.cost_usd,
        )

    def get_active_previews(self) -> List[str]:
        return list(self._previews.keys())

    def cancel_execution(self, execution_id: str) -> bool:
        """
        Cancel a preview or a run by id.

        Returns:
            True if cancellation was requested
        """
        handle = self._previews.get(execution_id)
        if handle is not None:
            if handle.cancelled:
                return False
            handle.cancel_event.set()
            handle.resume_event.set()
            logger.info(f"Preview {execution_id} cancelled")
            return True
        return self.controller.abort_run(execution_id)
