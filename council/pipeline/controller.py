"""Run controller: the top-level state machine for pipeline runs.

Owns the registry of in-flight runs, drives phases in order, exposes
pause/resume/abort, and finalizes output according to the delivery mode.
"""

import asyncio
import copy
import inspect
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Union

from council.events import EventBus, EventEmitter, EventType
from council.pipeline.errors import PipelineError, PipelineValidationError, summarize_errors
from council.pipeline.executor import StepExecutor
from council.pipeline.gavel import GavelCoordinator
from council.pipeline.interfaces import (
    InferenceClient,
    InMemoryStore,
    PersistentStore,
    PromptResolver,
    RetrievalService,
    StoreRetrievalService,
    TokenPromptResolver,
)
from council.pipeline.loader import PipelineRegistry
from council.pipeline.phase import PhaseRunner
from council.pipeline.schema import AgentDefinition, GavelConfig, PipelineDefinition
from council.pipeline.state import (
    ACTIVE_STATUSES,
    DeliveryMode,
    ExecutionContext,
    GavelOutcome,
    GavelRequest,
    Progress,
    RunHandle,
    RunOptions,
    RunResult,
    RunState,
    RunStatus,
)
from council.utils.helpers import generate_id, stringify, utc_now_iso
from council.utils.retry import RetryConfig

logger = logging.getLogger(__name__)

INJECTION_TOKEN_TEMPLATE = "{{{{{token}}}}}"


class RunController:
    """Start, pause, resume and abort pipeline runs.

    Several runs with different ids may be in flight on one controller; each
    owns its own state, pause event and cancel event.
    """

    def __init__(
        self,
        inference_client: InferenceClient,
        registry: Optional[PipelineRegistry] = None,
        store: Optional[PersistentStore] = None,
        prompt_resolver: Optional[PromptResolver] = None,
        retrieval: Optional[RetrievalService] = None,
        agents: Optional[Dict[str, AgentDefinition]] = None,
        prompt_presets: Optional[Dict[str, str]] = None,
        event_bus: Optional[EventBus] = None,
        retry_config: Optional[RetryConfig] = None,
        history_limit: int = 10,
        default_mode: DeliveryMode = DeliveryMode.SYNTHESIS,
        deliver: Optional[Callable[[Any], Any]] = None,
        compile_handler: Optional[Callable[[str], Any]] = None,
    ):
        """
        Initialize run controller.

        Args:
            inference_client: Client used for agent calls
            registry: Pipeline registry (presets and custom pipelines)
            store: Persistent store (in-memory if not given)
            prompt_resolver: Prompt resolver (token substitution if not given)
            retrieval: Retrieval service for RAG actions and injection mode
            agents: Agents available to every pipeline
            prompt_presets: Named prompt presets
            event_bus: Bus events are published on
            retry_config: Step retry backoff settings
            history_limit: Number of finished runs kept for inspection
            default_mode: Delivery mode used when a run does not pick one
            deliver: Callback receiving synthesized output
            compile_handler: Callback receiving the compiled prompt
        """
        self.registry = registry or PipelineRegistry()
        self.store = store if store is not None else InMemoryStore()
        self.retrieval = retrieval if retrieval is not None else StoreRetrievalService(self.store)
        self.agents: Dict[str, AgentDefinition] = dict(agents or {})
        self.event_bus = event_bus or EventBus()
        self.deliver = deliver
        self.compile_handler = compile_handler

        self.gavels = GavelCoordinator(self.event_bus, host=self)
        self.executor = StepExecutor(
            inference_client=inference_client,
            store=self.store,
            prompt_resolver=prompt_resolver if prompt_resolver is not None else TokenPromptResolver(),
            retrieval=self.retrieval,
            gavels=self.gavels,
            prompt_presets=prompt_presets,
            retry_config=retry_config,
        )
        self.phase_runner = PhaseRunner(self.executor, self.gavels)

        self._mode = DeliveryMode(default_mode)
        self._runs: Dict[str, RunHandle] = {}
        self._history: Deque[RunState] = deque(maxlen=history_limit)
        self._injection_mappings: Dict[str, str] = {}
        self._injection_cache: Dict[str, str] = {}

    # ===== RUN LIFECYCLE =====

    async def start_run(
        self,
        pipeline_id: str,
        input: Any = None,
        options: Optional[Union[RunOptions, Dict[str, Any]]] = None,
    ) -> RunResult:
        """
        Execute a pipeline to completion.

        Step failures do not raise: they end the run in ``error`` (or
        ``aborted`` for cancellation) and are reported on the result, with
        partial step results intact.

        Args:
            pipeline_id: Pipeline to run
            input: Run input handed to the first phase
            options: RunOptions or dict (run_id, mode, variables, continue_on_error, verbose)

        Returns:
            RunResult

        Raises:
            PipelineValidationError: If the pipeline is unknown or the run id is already active
        """
        if options is None:
            options = RunOptions()
        elif isinstance(options, dict):
            options = RunOptions(**options)

        definition = self.registry.get_pipeline(pipeline_id)
        if definition is None:
            raise PipelineValidationError(f"Unknown pipeline: {pipeline_id}")

        run_id = options.run_id or generate_id("run")
        existing = self._runs.get(run_id)
        if existing is not None and existing.state.is_active:
            raise PipelineValidationError(f"Run {run_id} is already {existing.state.status.value}")

        handle = self.build_handle(run_id, definition.model_copy(deep=True), input, options)
        self._runs[run_id] = handle
        state = handle.state

        handle.emitter.run_started(pipeline_id, state.mode.value)
        logger.info(f"Run {run_id} started: pipeline={pipeline_id} mode={state.mode.value}")

        try:
            final_output = await self._drive(handle)
            await self._finalize(handle, final_output)
            state.status = RunStatus.COMPLETED
            state.progress.recalculate(completed=True)
            self._close(handle)
            handle.emitter.run_completed(pipeline_id, state.duration_ms)
            logger.info(f"Run {run_id} completed in {state.duration_ms}ms")
        except PipelineError as e:
            self._fail(handle, e)
        except Exception as e:
            logger.exception(f"Run {run_id} failed unexpectedly")
            self._fail(handle, PipelineError.from_exception(e))

        return self._build_result(handle)

    def build_handle(
        self, run_id: str, pipeline: PipelineDefinition, input: Any, options: RunOptions
    ) -> RunHandle:
        """Create the state, context and control events for a new run (or preview)."""
        agents = dict(self.agents)
        agents.update({agent.id: agent for agent in pipeline.agents})

        state = RunState(
            run_id=run_id,
            pipeline_id=pipeline.id,
            mode=options.mode or self._mode,
            status=RunStatus.RUNNING,
            progress=Progress(phases_total=len(pipeline.phases), actions_total=pipeline.total_actions),
            globals=copy.deepcopy(pipeline.globals),
            started_at=utc_now_iso(),
        )
        context = ExecutionContext(
            run_id=run_id,
            pipeline={
                "id": pipeline.id,
                "name": pipeline.name or pipeline.id,
                "version": pipeline.version,
                "description": pipeline.description,
            },
            input=input,
            phase_input=input,
            variables=copy.deepcopy(options.variables),
            verbose=options.verbose,
            continue_on_error=options.continue_on_error,
        )
        # Run state and context share globals and the error list
        context.globals = state.globals
        state.errors = context.errors

        return RunHandle(
            state=state,
            context=context,
            pipeline=pipeline,
            emitter=EventEmitter(run_id, self.event_bus),
            agents=agents,
        )

    async def _drive(self, handle: RunHandle) -> Any:
        """Run phases in order. Returns the last phase's output."""
        state = handle.state
        phase_input = handle.context.input
        output = None

        for index, phase in enumerate(handle.pipeline.phases):
            await handle.checkpoint()
            state.current_phase_index = index
            state.current_phase_id = phase.id
            state.current_action_index = 0

            output = await self.phase_runner.run_phase(phase, handle, index, phase_input)

            state.phase_outputs[phase.id] = output
            state.progress.phases_completed += 1
            state.progress.recalculate()
            phase_input = output

        handle.ensure_not_cancelled()
        return output

    async def _finalize(self, handle: RunHandle, final_output: Any):
        """Hand over the final phase output according to the run's delivery mode."""
        state = handle.state

        if state.mode == DeliveryMode.COMPILATION:
            state.compiled_prompt = stringify(final_output)
            if self.compile_handler is not None:
                await _maybe_await(self.compile_handler(state.compiled_prompt))
            return

        if state.mode == DeliveryMode.INJECTION:
            if self._injection_mappings:
                query = stringify(final_output if final_output is not None else handle.context.input)
                await self.execute_injection_retrieval(query, run_id=handle.run_id)
            return

        state.output = final_output
        if self.deliver is not None:
            await _maybe_await(self.deliver(final_output))

    def _fail(self, handle: RunHandle, error: PipelineError):
        state = handle.state
        pipeline_id = state.pipeline_id

        if error.is_cancelled or handle.cancelled:
            state.status = RunStatus.ABORTED
            self._close(handle)
            handle.emitter.run_aborted(pipeline_id, state.duration_ms)
            logger.info(f"Run {state.run_id} aborted after {state.duration_ms}ms")
            return

        if not error.reported:
            handle.context.errors.append(error.to_dict())
            error.reported = True
        state.status = RunStatus.ERROR
        self._close(handle)
        handle.emitter.run_error(pipeline_id, error.message, state.duration_ms)
        logger.error(f"Run {state.run_id} failed ({error.type.value}): {error.message}")

    def _close(self, handle: RunHandle):
        """Record end time, archive the state and drop the run from the active registry."""
        state = handle.state
        state.ended_at = utc_now_iso()
        state.duration_ms = handle.elapsed_ms()
        self.gavels.cancel_for_run(handle.run_id)
        self._history.append(state.model_copy(deep=True))
        self._runs.pop(handle.run_id, None)

    def _build_result(self, handle: RunHandle) -> RunResult:
        state = handle.state
        context = handle.context
        return RunResult(
            run_id=state.run_id,
            pipeline_id=state.pipeline_id,
            status=state.status,
            mode=state.mode,
            output=state.output,
            compiled_prompt=state.compiled_prompt,
            phase_outputs=dict(state.phase_outputs),
            step_results=list(context.step_results),
            errors=list(context.errors),
            error_summary=summarize_errors(context.errors),
            warnings=list(context.warnings),
            duration_ms=state.duration_ms,
        )

    # ===== CONTROL =====

    def _resolve_handle(self, run_id: Optional[str]) -> Optional[RunHandle]:
        if run_id is not None:
            return self._runs.get(run_id)
        active = [h for h in self._runs.values() if h.state.status in ACTIVE_STATUSES]
        if len(active) != 1:
            raise PipelineValidationError(
                f"run_id is required when {len(active)} runs are active"
            )
        return active[0]

    def pause_run(self, run_id: Optional[str] = None) -> bool:
        """
        Pause a running run. Takes effect at the next phase or action boundary.

        Returns:
            True if the run was paused
        """
        handle = self._resolve_handle(run_id)
        if handle is None:
            logger.warning(f"Cannot pause unknown run {run_id}")
            return False
        state = handle.state
        if state.status == RunStatus.PAUSED:
            logger.debug(f"Run {state.run_id} is already paused")
            return False
        if state.status != RunStatus.RUNNING:
            logger.warning(f"Cannot pause run {state.run_id} from status {state.status.value}")
            return False

        state.status = RunStatus.PAUSED
        handle.resume_event.clear()
        handle.emitter.run_paused()
        logger.info(f"Run {state.run_id} paused")
        return True

    def resume_run(self, run_id: Optional[str] = None) -> bool:
        """
        Resume a paused run.

        Returns:
            True if the run was resumed
        """
        handle = self._resolve_handle(run_id)
        if handle is None:
            logger.warning(f"Cannot resume unknown run {run_id}")
            return False
        state = handle.state
        if state.status == RunStatus.RUNNING:
            logger.debug(f"Run {state.run_id} is already running")
            return False
        if state.status != RunStatus.PAUSED:
            logger.warning(f"Cannot resume run {state.run_id} from status {state.status.value}")
            return False
        if self.gavels.has_active_gavel(state.run_id):
            logger.warning(f"Run {state.run_id} is waiting on a gavel; resolve the gavel to continue")
            return False

        state.status = RunStatus.RUNNING
        handle.resume_event.set()
        handle.emitter.run_resumed()
        logger.info(f"Run {state.run_id} resumed")
        return True

    def abort_run(self, run_id: Optional[str] = None) -> bool:
        """
        Abort a running or paused run.

        Cancellation is cooperative: the in-flight step finishes (or its
        retry backoff is cut short) and the run then ends as ``aborted``.

        Returns:
            True if cancellation was requested
        """
        handle = self._resolve_handle(run_id)
        if handle is None:
            logger.warning(f"Cannot abort unknown run {run_id}")
            return False
        state = handle.state
        if state.status not in ACTIVE_STATUSES:
            logger.warning(f"Cannot abort run {state.run_id} from status {state.status.value}")
            return False
        if handle.cancelled:
            logger.debug(f"Run {state.run_id} is already aborting")
            return False

        handle.cancel_event.set()
        handle.resume_event.set()
        handle.emitter.run_aborting(state.pipeline_id)
        self.gavels.cancel_for_run(state.run_id)
        logger.info(f"Run {state.run_id} aborting")
        return True

    def cancel_execution(self, execution_id: str) -> bool:
        return self.abort_run(execution_id)

    # Gavel host hooks

    def hold_for_gavel(self, run_id: str):
        handle = self._runs.get(run_id)
        if handle is None or handle.state.status != RunStatus.RUNNING:
            return
        handle.state.status = RunStatus.PAUSED
        handle.paused_by_gavel = True
        handle.emitter.run_paused()

    def release_from_gavel(self, run_id: str):
        """Resume a run the gavel paused. A pause requested by the user stays until resume_run."""
        handle = self._runs.get(run_id)
        if handle is None or not handle.paused_by_gavel:
            return
        handle.paused_by_gavel = False
        if handle.state.status != RunStatus.PAUSED:
            return
        handle.state.status = RunStatus.RUNNING
        handle.resume_event.set()
        handle.emitter.run_resumed()

    # ===== QUERIES =====

    def get_run_state(self, run_id: Optional[str] = None) -> Optional[RunState]:
        """Copy of the run's state, from active runs or history."""
        if run_id is None:
            handle = self._resolve_handle(None)
            return handle.state.model_copy(deep=True)
        handle = self._runs.get(run_id)
        if handle is not None:
            return handle.state.model_copy(deep=True)
        for state in reversed(self._history):
            if state.run_id == run_id:
                return state.model_copy(deep=True)
        return None

    def get_progress(self, run_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        state = self.get_run_state(run_id)
        if state is None:
            return None
        progress = state.progress.model_dump()
        progress.update({
            "run_id": state.run_id,
            "status": state.status.value,
            "current_phase_id": state.current_phase_id,
            "current_action_id": state.current_action_id,
        })
        return progress

    def get_output(self, run_id: Optional[str] = None) -> Any:
        state = self.get_run_state(run_id)
        if state is None:
            return None
        if state.mode == DeliveryMode.COMPILATION:
            return state.compiled_prompt
        return state.output

    def get_active_runs(self) -> List[str]:
        return [run_id for run_id, h in self._runs.items() if h.state.status in ACTIVE_STATUSES]

    def get_history(self) -> List[RunState]:
        return [state.model_copy(deep=True) for state in self._history]

    def clear_history(self):
        self._history.clear()

    def get_summary(self) -> Dict[str, Any]:
        return {
            "mode": self._mode.value,
            "active_runs": self.get_active_runs(),
            "history_size": len(self._history),
            "active_gavel": bool(self.gavels.get_active_gavel()),
            "injection_mappings": len(self._injection_mappings),
            "injection_cache": len(self._injection_cache),
        }

    # ===== GAVELS =====

    async def request_gavel(
        self,
        run_id: str,
        config: Union[GavelConfig, Dict[str, Any]],
        current_output: Any,
        step_id: Optional[str] = None,
        phase_id: Optional[str] = None,
    ) -> Any:
        if isinstance(config, dict):
            config = GavelConfig(**config)
        return await self.gavels.request_gavel(run_id, config, current_output, step_id, phase_id)

    def approve_gavel(self, gavel_id: str, modifications: Optional[Dict[str, Any]] = None) -> GavelOutcome:
        return self.gavels.approve_gavel(gavel_id, modifications)

    def reject_gavel(self, gavel_id: str, reason: Optional[str] = None) -> GavelOutcome:
        return self.gavels.reject_gavel(gavel_id, reason)

    def skip_gavel(self, gavel_id: str) -> GavelOutcome:
        return self.gavels.skip_gavel(gavel_id)

    def get_active_gavel(self, run_id: Optional[str] = None) -> Optional[GavelRequest]:
        return self.gavels.get_active_gavel(run_id)

    # ===== DELIVERY MODES =====

    @property
    def mode(self) -> DeliveryMode:
        return self._mode

    def set_mode(self, mode: Union[DeliveryMode, str]):
        """
        Set the delivery mode for future runs.

        Raises:
            PipelineValidationError: If any run is active, or the mode is unknown
        """
        if self.get_active_runs():
            raise PipelineValidationError("Cannot change delivery mode while a run is active")
        try:
            self._mode = DeliveryMode(mode)
        except ValueError as e:
            raise PipelineValidationError(f"Unknown delivery mode: {mode}", cause=e) from e
        logger.info(f"Delivery mode set to {self._mode.value}")

    def configure_injection_mappings(self, mappings: Dict[str, str]):
        """Map template tokens to the retrieval pipelines that fill them."""
        self._injection_mappings = dict(mappings)
        self._injection_cache = {
            token: value for token, value in self._injection_cache.items() if token in self._injection_mappings
        }

    def get_injection_mappings(self) -> Dict[str, str]:
        return dict(self._injection_mappings)

    async def execute_injection_retrieval(
        self, query: str, limit: int = 5, run_id: Optional[str] = None
    ) -> Dict[str, str]:
        """
        Resolve every mapped token through its retrieval pipeline and cache the text.

        Raises:
            PipelineValidationError: If no retrieval service is configured
        """
        if not self._injection_mappings:
            return {}
        if self.retrieval is None:
            raise PipelineValidationError("Injection mode requires a retrieval service")

        async def resolve(token: str, pipeline_id: str):
            hits = await self.retrieval.retrieve(pipeline_id, query, limit)
            return token, "\n\n".join(hit.format() for hit in hits)

        results = await asyncio.gather(
            *(resolve(token, pipeline_id) for token, pipeline_id in self._injection_mappings.items())
        )
        self._injection_cache.update(dict(results))
        logger.info(f"Injection retrieval cached {len(results)} tokens")
        if run_id is not None:
            EventEmitter(run_id, self.event_bus).emit(
                EventType.INJECTION_APPLIED, {"tokens": sorted(self._injection_cache), "stage": "retrieval"}
            )
        return dict(self._injection_cache)

    def inject_into_template(self, template: str) -> str:
        """Replace ``{{token}}`` occurrences with cached retrieval results."""
        result = template
        for token, value in self._injection_cache.items():
            result = result.replace(INJECTION_TOKEN_TEMPLATE.format(token=token), value)
        return result

    def get_injection_cache(self) -> Dict[str, str]:
        return dict(self._injection_cache)

    def clear_injection_cache(self):
        self._injection_cache.clear()


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
