"""Step executor for single-action execution.

Runs one action through four stages (input resolution, prompt resolution,
invocation and output handling), emitting a progress event before each.
The whole sequence is wrapped in a retry loop, and every failure leaves the
executor as a ``PipelineError``.
"""

import asyncio
import copy
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from council.events import ProgressStage
from council.pipeline.errors import (
    ErrorType,
    ExecutionStage,
    PipelineError,
    PipelineValidationError,
)
from council.pipeline.gavel import GavelCoordinator
from council.pipeline.interfaces import (
    GenerationResult,
    InferenceClient,
    PersistentStore,
    PromptResolver,
    RetrievalHit,
    RetrievalService,
)
from council.pipeline.parsing import parse_output
from council.pipeline.schema import (
    AGENT_KINDS,
    ActionDefinition,
    ActionKind,
    AgentDefinition,
    CrudOperation,
    ExecutionMode,
    FragmentType,
    InputSourceType,
    OutputTargetType,
    PhaseDefinition,
    PromptFragment,
    PromptMode,
)
from council.pipeline.state import RunHandle, StepResult, StepStatus
from council.pipeline.tokens import build_resolution_context, lookup_token, substitute_tokens
from council.utils.helpers import debug_run_log, generate_id, stringify, truncate_text, utc_now_iso
from council.utils.retry import DEFAULT_STEP_RETRY_CONFIG, RetryConfig, retry_async

logger = logging.getLogger(__name__)

NO_RESULTS_MESSAGE = "No relevant information found."

CONSENSUS_PROMPT = (
    "Review these responses and synthesize a consensus:\n\n{responses}\n\n"
    "Provide a synthesized response that captures the best elements."
)

_PREVIOUS_RESPONSE_TOKEN = re.compile(r"\{\{\s*previous_?[Rr]esponse\s*\}\}")


@dataclass
class StoreMutation:
    """A store change produced by an action, applied when its output is routed."""
    operation: str  # "write" or "delete"
    store_id: str
    key: Optional[str]
    value: Any = None


@dataclass
class StepTrace:
    """Per-attempt record of what a step sent and received."""
    prompt: Optional[str] = None
    prompt_chars: int = 0
    response_chars: int = 0
    calls: List[Dict[str, Any]] = field(default_factory=list)
    mutations: List[StoreMutation] = field(default_factory=list)

    def record_call(self, agent: AgentDefinition, prompt: str, result: GenerationResult):
        self.prompt_chars += len(prompt)
        self.response_chars += len(result.text or "")
        self.calls.append({
            "agent_id": agent.id,
            "model": result.model or (agent.generation.model if agent.generation else None),
            "prompt_chars": len(prompt),
            "response_chars": len(result.text or ""),
            "usage": dict(result.usage or {}),
        })

    def usage(self) -> Dict[str, Any]:
        prompt_tokens = sum(int(c["usage"].get("prompt_tokens", 0) or 0) for c in self.calls)
        completion_tokens = sum(int(c["usage"].get("completion_tokens", 0) or 0) for c in self.calls)
        return {
            "calls": len(self.calls),
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
            "models": sorted({c["model"] for c in self.calls if c["model"]}),
        }


@dataclass
class StepInvocation:
    """State of one attempt at one action."""
    action: ActionDefinition
    phase: PhaseDefinition
    handle: RunHandle
    trace: StepTrace = field(default_factory=StepTrace)
    input: Any = None
    store_snapshot: Optional[Dict[str, Any]] = None
    prompt: Optional[str] = None
    resolution_context: Dict[str, Any] = field(default_factory=dict)

    @property
    def step_id(self) -> str:
        return self.action.id


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, PipelineError) and error.retryable


def format_responses(responses: List[Tuple[AgentDefinition, str]]) -> str:
    return "\n\n".join(f"[{agent.display_name}]: {text}" for agent, text in responses)


class StepExecutor:
    """Execute single actions with retry, progress reporting and error normalization."""

    def __init__(
        self,
        inference_client: InferenceClient,
        store: PersistentStore,
        prompt_resolver: Optional[PromptResolver] = None,
        retrieval: Optional[RetrievalService] = None,
        gavels: Optional[GavelCoordinator] = None,
        prompt_presets: Optional[Dict[str, str]] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        """
        Initialize step executor.

        Args:
            inference_client: Client used for agent calls
            store: Persistent store for store input, CRUD and store output
            prompt_resolver: Template resolver (falls back to built-in substitution)
            retrieval: Retrieval service for RAG actions
            gavels: Gavel coordinator for user_gavel actions and reviews
            prompt_presets: Named prompt presets for preset-mode prompts
            retry_config: Backoff settings (attempts come from each action)
        """
        self.inference_client = inference_client
        self.store = store
        self.prompt_resolver = prompt_resolver
        self.retrieval = retrieval
        self.gavels = gavels
        self.prompt_presets = dict(prompt_presets or {})
        self.retry_config = retry_config or DEFAULT_STEP_RETRY_CONFIG

        self._handlers: Dict[ActionKind, Callable[[StepInvocation], Any]] = {
            ActionKind.STANDARD: self._execute_standard,
            ActionKind.CRUD_PIPELINE: self._execute_crud,
            ActionKind.RAG_PIPELINE: self._execute_rag,
            ActionKind.DELIBERATIVE_RAG: self._execute_deliberative_rag,
            ActionKind.USER_GAVEL: self._execute_user_gavel,
            ActionKind.SYSTEM: self._execute_system,
            ActionKind.CHARACTER_WORKSHOP: self._execute_character_workshop,
        }

    async def execute(
        self,
        action: ActionDefinition,
        handle: RunHandle,
        phase: PhaseDefinition,
        step_index: int,
        total_steps: int,
    ) -> StepResult:
        """
        Execute one action.

        Never raises for step failures: the returned result carries the
        normalized error (``StepResult.pipeline_error``).

        Args:
            action: Action to execute
            handle: Owning run
            phase: Phase the action belongs to
            step_index: Zero-based index of the step within the run
            total_steps: Number of steps in the run

        Returns:
            StepResult
        """
        emitter = handle.emitter
        emitter.step_started(action.id, step_index, total_steps, action.kind.value)
        logger.debug(f"[{handle.run_id}] Step {action.id} ({action.kind.value}) started")
        start_time = time.time()

        policy = action.retry_policy
        max_attempts = policy.max_attempts if policy.enabled else 1
        retry_config = RetryConfig(
            max_attempts=max_attempts,
            base_delay=self.retry_config.base_delay,
            max_delay=self.retry_config.max_delay,
            exponential_base=self.retry_config.exponential_base,
            jitter=self.retry_config.jitter,
        )

        attempts = 0
        invocation: Optional[StepInvocation] = None

        async def attempt(number: int):
            nonlocal attempts, invocation
            attempts = number
            invocation = StepInvocation(action=action, phase=phase, handle=handle)
            return await self._run_stages(invocation)

        def on_retry(next_attempt: int, delay: float, error: BaseException):
            emitter.step_retry(action.id, next_attempt, max_attempts, delay, str(error))

        try:
            output = await retry_async(
                attempt,
                config=retry_config,
                is_retryable=_is_retryable,
                is_cancelled=handle.cancel_event.is_set,
                on_cancelled=lambda: PipelineError.cancelled(action.id),
                on_retry=on_retry,
                cancel_event=handle.cancel_event,
            )
        except Exception as e:
            error = PipelineError.from_exception(e, step_id=action.id)
            result = self._build_result(action, phase, invocation, StepStatus.ERROR, None, attempts, start_time)
            result.error = error.to_dict()
            result._pipeline_error = error

            if error.is_cancelled:
                logger.info(f"[{handle.run_id}] Step {action.id} cancelled")
            else:
                logger.error(f"[{handle.run_id}] Step {action.id} failed ({error.type.value}): {error.message}")
            emitter.step_failed(action.id, step_index, total_steps, error.to_dict())
            return result

        result = self._build_result(action, phase, invocation, StepStatus.SUCCESS, output, attempts, start_time)
        emitter.step_completed(action.id, step_index, total_steps, result.duration_ms)
        logger.debug(f"[{handle.run_id}] Step {action.id} completed in {result.duration_ms}ms")
        return result

    async def _run_stages(self, inv: StepInvocation) -> Any:
        """Run the four stages once. Raises PipelineError on failure."""
        action = inv.action

        # Stage 1 and 2: input and prompt
        self._progress(inv, ProgressStage.PROMPT_RESOLVING)
        try:
            inv.input = self._resolve_input(inv)
        except PipelineError:
            raise
        except Exception as e:
            if action.input_source.type == InputSourceType.STORE_DATA:
                raise PipelineError(
                    ErrorType.STORE, f"Could not read store '{action.input_source.store_id}': {e}",
                    cause=e, step_id=action.id,
                ) from e
            raise PipelineError.from_exception(e, ExecutionStage.INPUT, action.id) from e

        try:
            inv.resolution_context = self._build_context(inv)
            inv.prompt = self._resolve_prompt(inv)
        except Exception as e:
            raise PipelineError.from_exception(e, ExecutionStage.PROMPT, action.id) from e
        inv.trace.prompt = inv.prompt
        if inv.prompt and inv.handle.context.verbose:
            debug_run_log(f"[{inv.handle.run_id}] Step {action.id} prompt: {truncate_text(inv.prompt)}")

        # Stage 3: invocation
        self._progress(inv, ProgressStage.LLM_CALLING)
        handler = self._handlers[action.kind]
        try:
            if action.kind == ActionKind.USER_GAVEL:
                raw = await handler(inv)
            else:
                raw = await asyncio.wait_for(handler(inv), timeout=action.timeout)
        except asyncio.TimeoutError as e:
            raise PipelineError(
                ErrorType.TIMEOUT, f"Step '{action.id}' timed out after {action.timeout}s",
                cause=e, step_id=action.id,
            ) from e
        except Exception as e:
            raise PipelineError.from_exception(e, ExecutionStage.INVOKE, action.id) from e

        inv.handle.ensure_not_cancelled(action.id)

        # Stage 4: output handling
        self._progress(inv, ProgressStage.OUTPUT_PARSING)
        try:
            output = parse_output(raw, action.output.shape)
        except Exception as e:
            raise PipelineError.from_exception(e, ExecutionStage.PARSE, action.id) from e

        if action.review is not None:
            try:
                output = await self._require_gavels(inv).request_gavel(
                    inv.handle.run_id, action.review, output, step_id=action.id, phase_id=inv.phase.id
                )
            except Exception as e:
                raise PipelineError.from_exception(e, ExecutionStage.GAVEL, action.id) from e

        writes_store = bool(inv.trace.mutations) or action.output.type == OutputTargetType.STORE
        self._progress(inv, ProgressStage.STORE_WRITING if writes_store else ProgressStage.STEP_COMPLETE)
        try:
            self._route_output(inv, output)
        except Exception as e:
            raise PipelineError.from_exception(e, ExecutionStage.ROUTE, action.id) from e

        return output

    # ===== INPUT AND PROMPT =====

    def _resolve_input(self, inv: StepInvocation) -> Any:
        source = inv.action.input_source
        context = inv.handle.context

        if source.type == InputSourceType.PIPELINE_INPUT:
            return context.input
        if source.type == InputSourceType.PREVIOUS_STEP:
            return context.previous_step_output
        if source.type == InputSourceType.PHASE_INPUT:
            return context.phase_input
        if source.type == InputSourceType.STORE_DATA:
            snapshot = self.store.snapshot(source.store_id).model_dump()
            inv.store_snapshot = snapshot
            return snapshot
        if source.type == InputSourceType.STEP_PROMPT:
            return self._select_template(inv.action, self._build_context(inv), inv.handle)
        if source.type == InputSourceType.CUSTOM:
            return copy.deepcopy(source.value)
        if source.type == InputSourceType.VARIABLE:
            if source.variable in context.variables:
                return context.variables[source.variable]
            if source.variable in context.globals:
                return context.globals[source.variable]
            raise PipelineValidationError(
                f"Step '{inv.action.id}' reads unknown variable '{source.variable}'", step_id=inv.action.id
            )
        raise PipelineValidationError(f"Unsupported input source: {source.type}", step_id=inv.action.id)

    def _build_context(self, inv: StepInvocation) -> Dict[str, Any]:
        handle = inv.handle
        context = handle.context
        return build_resolution_context(
            input_value=inv.input,
            previous_output=context.previous_step_output,
            variables=context.variables,
            globals_=context.globals,
            extra={
                "pipeline": context.pipeline,
                "phase": {"id": inv.phase.id, "name": inv.phase.display_name, "input": context.phase_input},
                "phase_input": context.phase_input,
                "step": {"id": inv.action.id, "name": inv.action.display_name, "kind": inv.action.kind.value},
                "store": inv.store_snapshot,
                "run": {"id": handle.run_id, "mode": handle.state.mode.value},
                "timing": {
                    "started_at": context.started_at,
                    "now": utc_now_iso(),
                    "elapsed_ms": handle.elapsed_ms(),
                },
            },
        )

    def _select_template(self, action: ActionDefinition, context: Dict[str, Any], handle: RunHandle) -> Optional[str]:
        """Pick the unresolved template for an action."""
        prompt = action.prompt

        if prompt.mode == PromptMode.PRESET:
            if not prompt.preset:
                raise PipelineError(ErrorType.PROMPT, f"Step '{action.id}' uses preset mode without a preset name")
            if prompt.preset not in self.prompt_presets:
                raise PipelineError(ErrorType.PROMPT, f"Unknown prompt preset '{prompt.preset}'")
            return self.prompt_presets[prompt.preset]

        if prompt.mode == PromptMode.STACK and prompt.stack:
            return self._assemble_stack(prompt.stack, context, prompt.separator)

        if prompt.mode == PromptMode.INLINE_TEMPLATE:
            template = prompt.inline_template or prompt.text
        else:
            template = prompt.text or prompt.inline_template
        if template:
            return template

        if action.kind in AGENT_KINDS:
            agent_ids = action.agent_ids
            agent = handle.agents.get(agent_ids[0]) if agent_ids else None
            if agent is not None and agent.prompt_template:
                return agent.prompt_template
            return "{{input}}"
        return None

    def _assemble_stack(self, fragments: List[PromptFragment], context: Dict[str, Any], separator: str) -> str:
        parts = []
        for fragment in fragments:
            if fragment.type == FragmentType.TEXT:
                if fragment.text:
                    parts.append(fragment.text)
            elif fragment.type == FragmentType.TOKEN:
                if fragment.token:
                    parts.append("{{" + fragment.token + "}}")
            else:
                value = lookup_token(fragment.condition, context, None) if fragment.condition else None
                branch = fragment.fragments if value else fragment.else_fragments
                nested = self._assemble_stack(branch, context, separator)
                if nested:
                    parts.append(nested)
        return separator.join(parts)

    def _resolve_prompt(self, inv: StepInvocation) -> Optional[str]:
        template = self._select_template(inv.action, inv.resolution_context, inv.handle)
        if template is None:
            return None
        return self._resolve_template(inv, template)

    def _resolve_template(self, inv: StepInvocation, template: str) -> str:
        if self.prompt_resolver is None:
            self._warn(inv, f"No prompt resolver configured for step '{inv.action.id}'; using built-in token substitution")
            return substitute_tokens(template, inv.resolution_context)
        try:
            return self.prompt_resolver.resolve(template, inv.resolution_context, {"preserve_unresolved": True})
        except Exception as e:
            self._warn(
                inv, f"Prompt resolver failed for step '{inv.action.id}' ({e}); using built-in token substitution"
            )
            return substitute_tokens(template, inv.resolution_context)

    # ===== AGENTS =====

    def _resolve_agents(self, inv: StepInvocation) -> List[AgentDefinition]:
        agents = []
        for agent_id in inv.action.agent_ids:
            agent = inv.handle.agents.get(agent_id)
            if agent is None:
                raise PipelineError(ErrorType.AGENT, f"Agent '{agent_id}' not found", step_id=inv.action.id)
            agents.append(agent)
        if not agents:
            raise PipelineValidationError(f"Step '{inv.action.id}' has no agents", step_id=inv.action.id)

        # Validate everything before the first network call
        for agent in agents:
            if agent.generation is None:
                raise PipelineValidationError(
                    f"Agent '{agent.id}' has no generation config", step_id=inv.action.id
                )
            if not (inv.prompt or agent.system_prompt or agent.prompt_template):
                raise PipelineValidationError(
                    f"Agent '{agent.id}' has no usable prompt source", step_id=inv.action.id
                )
        return agents

    async def _call_agent(self, inv: StepInvocation, agent: AgentDefinition, prompt: str) -> str:
        result = await self.inference_client.generate(
            prompt,
            agent.generation,
            timeout=inv.action.timeout,
            system_prompt=agent.system_prompt or None,
            output_shape=inv.action.output.shape,
        )
        inv.trace.record_call(agent, prompt, result)
        return result.text

    def _participant_prompt(self, prompt: str, agent: AgentDefinition, previous_response: str) -> str:
        return substitute_tokens(
            prompt,
            {
                "previous_response": previous_response,
                "participant": {"id": agent.id, "name": agent.display_name},
            },
        )

    async def _run_parallel(
        self, inv: StepInvocation, agents: List[AgentDefinition], prompt: str
    ) -> List[Tuple[AgentDefinition, str]]:
        results = await asyncio.gather(
            *(self._call_agent(inv, agent, self._participant_prompt(prompt, agent, "")) for agent in agents),
            return_exceptions=True,
        )

        responses = []
        failures = []
        for agent, result in zip(agents, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                failures.append(result)
                self._warn(inv, f"Participant '{agent.id}' failed in step '{inv.action.id}': {result}")
                continue
            responses.append((agent, result))

        if not responses:
            raise failures[0]
        return responses

    # ===== KIND HANDLERS =====

    async def _execute_standard(self, inv: StepInvocation) -> str:
        agents = self._resolve_agents(inv)
        prompt = inv.prompt or ""
        mode = inv.action.execution_mode

        if len(agents) == 1:
            return await self._call_agent(inv, agents[0], self._participant_prompt(prompt, agents[0], ""))

        if mode == ExecutionMode.PARALLEL:
            return format_responses(await self._run_parallel(inv, agents, prompt))

        if mode == ExecutionMode.CONSENSUS:
            responses = await self._run_parallel(inv, agents, prompt)
            if len(responses) == 1:
                return responses[0][1]
            synthesizer = agents[0]
            if inv.action.synthesizer_id:
                synthesizer = next(a for a in agents if a.id == inv.action.synthesizer_id)
            synthesis_prompt = CONSENSUS_PROMPT.format(responses=format_responses(responses))
            return await self._call_agent(inv, synthesizer, synthesis_prompt)

        if mode == ExecutionMode.ROUND_ROBIN:
            transcript: List[Tuple[AgentDefinition, str]] = []
            for agent in agents:
                agent_prompt = self._participant_prompt(prompt, agent, transcript[-1][1] if transcript else "")
                if transcript:
                    agent_prompt += f"\n\nDiscussion so far:\n{format_responses(transcript)}"
                transcript.append((agent, await self._call_agent(inv, agent, agent_prompt)))
            return format_responses(transcript)

        # Sequential: each participant sees the prior response
        references_previous = bool(_PREVIOUS_RESPONSE_TOKEN.search(prompt))
        previous = ""
        for agent in agents:
            agent_prompt = self._participant_prompt(prompt, agent, previous)
            if previous and not references_previous:
                agent_prompt += f"\n\nPrevious response:\n{previous}"
            previous = await self._call_agent(inv, agent, agent_prompt)
        return previous

    async def _execute_character_workshop(self, inv: StepInvocation) -> str:
        agents = self._resolve_agents(inv)
        prompt = inv.prompt or ""
        responses = []
        for agent in agents:
            agent_prompt = self._participant_prompt(prompt, agent, "")
            agent_prompt += f"\n\nAs {agent.display_name}, respond in character."
            responses.append((agent, await self._call_agent(inv, agent, agent_prompt)))
        return format_responses(responses)

    async def _execute_crud(self, inv: StepInvocation) -> Any:
        crud = inv.action.crud
        value = inv.input
        key = self._crud_key(inv)

        if crud.operation == CrudOperation.READ:
            return self._read_store(inv, crud.store_id, key)

        if crud.operation == CrudOperation.CREATE:
            if key is None:
                key = generate_id("entry")
            inv.trace.mutations.append(StoreMutation("write", crud.store_id, key, copy.deepcopy(value)))
            return value

        if key is None:
            raise PipelineValidationError(
                f"Step '{inv.action.id}': {crud.operation.value} needs an entry key", step_id=inv.action.id
            )

        existing = self._read_store(inv, crud.store_id, key)
        if crud.operation == CrudOperation.UPDATE:
            if isinstance(existing, dict) and isinstance(value, dict):
                updated = dict(existing)
                updated.update(value)
            else:
                updated = value
            inv.trace.mutations.append(StoreMutation("write", crud.store_id, key, copy.deepcopy(updated)))
            return updated

        inv.trace.mutations.append(StoreMutation("delete", crud.store_id, key))
        return {"deleted": key, "store_id": crud.store_id, "entry": existing}

    def _crud_key(self, inv: StepInvocation) -> Optional[str]:
        crud = inv.action.crud
        if crud.key:
            return substitute_tokens(crud.key, inv.resolution_context, preserve_unresolved=False) or None
        if isinstance(inv.input, dict) and inv.input.get("id") is not None:
            return str(inv.input["id"])
        if crud.operation == CrudOperation.DELETE and isinstance(inv.input, str) and inv.input:
            return inv.input
        return None

    def _read_store(self, inv: StepInvocation, store_id: str, key: Optional[str]) -> Any:
        try:
            return self.store.read(store_id, key)
        except Exception as e:
            raise PipelineError(
                ErrorType.STORE, f"Could not read '{key or store_id}' from store '{store_id}': {e}",
                cause=e, step_id=inv.action.id,
            ) from e

    async def _execute_rag(self, inv: StepInvocation) -> str:
        rag = inv.action.rag
        if rag.query:
            query = self._resolve_template(inv, rag.query)
        else:
            query = stringify(inv.input)
        return await self._retrieve(inv, query)

    async def _execute_deliberative_rag(self, inv: StepInvocation) -> str:
        # The step's prompt is the question put to the knowledge stores
        if inv.prompt:
            question = inv.prompt
        elif inv.action.rag.query:
            question = self._resolve_template(inv, inv.action.rag.query)
        else:
            question = stringify(inv.input)
        return await self._retrieve(inv, question)

    async def _retrieve(self, inv: StepInvocation, query: str) -> str:
        rag = inv.action.rag
        if self.retrieval is None:
            raise PipelineValidationError("No retrieval service configured", step_id=inv.action.id)

        pipeline_ids = [rag.retrieval_pipeline_id] if rag.retrieval_pipeline_id else list(rag.store_ids)
        if not pipeline_ids:
            raise PipelineValidationError(
                f"Step '{inv.action.id}' has no retrieval pipeline or stores", step_id=inv.action.id
            )

        hits: List[RetrievalHit] = []
        try:
            for pipeline_id in pipeline_ids:
                hits.extend(await self.retrieval.retrieve(pipeline_id, query, rag.limit))
        except Exception as e:
            raise PipelineError(
                ErrorType.STORE, f"Retrieval failed: {e}", cause=e, step_id=inv.action.id
            ) from e

        hits.sort(key=lambda hit: hit.score, reverse=True)
        hits = hits[: rag.limit]
        logger.debug(f"[{inv.handle.run_id}] Step {inv.action.id} retrieved {len(hits)} results")
        if not hits:
            return NO_RESULTS_MESSAGE
        return "\n\n".join(hit.format() for hit in hits)

    async def _execute_user_gavel(self, inv: StepInvocation) -> Any:
        return await self._require_gavels(inv).request_gavel(
            inv.handle.run_id, inv.action.gavel, inv.input, step_id=inv.action.id, phase_id=inv.phase.id
        )

    async def _execute_system(self, inv: StepInvocation) -> Any:
        if inv.prompt:
            return inv.prompt
        return inv.input if inv.input is not None else ""

    # ===== OUTPUT =====

    def _route_output(self, inv: StepInvocation, output: Any):
        """Apply store mutations and deliver the output to its single target."""
        action = inv.action
        context = inv.handle.context

        for mutation in inv.trace.mutations:
            if mutation.operation == "delete":
                self.store.delete(mutation.store_id, mutation.key)
            else:
                self.store.write(mutation.store_id, mutation.key, mutation.value)

        target = action.output
        if target.type == OutputTargetType.NEXT_STEP:
            context.previous_step_output = output
        elif target.type == OutputTargetType.VARIABLE:
            context.variables[target.variable] = output
        else:
            key = None
            if target.key:
                key = substitute_tokens(target.key, inv.resolution_context, preserve_unresolved=False) or None
            self.store.write(target.store_id, key, output)

        if target.export:
            context.globals[target.export_as or action.id] = output

    # ===== HELPERS =====

    def _require_gavels(self, inv: StepInvocation) -> GavelCoordinator:
        if self.gavels is None:
            raise PipelineValidationError("No gavel coordinator configured", step_id=inv.action.id)
        return self.gavels

    def _progress(self, inv: StepInvocation, stage: ProgressStage):
        progress = inv.handle.state.progress
        inv.handle.emitter.progress(
            stage.value,
            progress.percentage,
            {
                "phases_completed": progress.phases_completed,
                "phases_total": progress.phases_total,
                "actions_completed": progress.actions_completed,
                "actions_total": progress.actions_total,
            },
            step_id=inv.action.id,
        )

    def _warn(self, inv: StepInvocation, message: str):
        logger.warning(f"[{inv.handle.run_id}] {message}")
        inv.handle.context.add_warning(message)
        inv.handle.emitter.warning(message, {"step_id": inv.action.id})

    def _build_result(
        self,
        action: ActionDefinition,
        phase: PhaseDefinition,
        inv: Optional[StepInvocation],
        status: StepStatus,
        output: Any,
        attempts: int,
        start_time: float,
    ) -> StepResult:
        trace = inv.trace if inv is not None else StepTrace()
        return StepResult(
            step_id=action.id,
            phase_id=phase.id,
            kind=action.kind.value,
            status=status,
            output=output,
            attempts=max(attempts, 1),
            prompt=trace.prompt,
            prompt_chars=trace.prompt_chars,
            response_chars=trace.response_chars,
            usage=trace.usage(),
            duration_ms=int((time.time() - start_time) * 1000),
        )
