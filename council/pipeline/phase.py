"""Phase runner: executes a phase's actions in order and consolidates them."""

import logging
import time
from typing import Any, Dict, List, Optional

from council.pipeline.errors import PipelineError, PipelineValidationError
from council.pipeline.executor import StepExecutor
from council.pipeline.gavel import GavelCoordinator
from council.pipeline.schema import ConsolidationPolicy, PhaseDefinition
from council.pipeline.state import RunHandle, StepResult, StepStatus

logger = logging.getLogger(__name__)


class PhaseRunner:
    """Run one phase: actions strictly in declaration order."""

    def __init__(self, executor: StepExecutor, gavels: Optional[GavelCoordinator] = None):
        """
        Initialize phase runner.

        Args:
            executor: Step executor for individual actions
            gavels: Gavel coordinator for phase-level checkpoints
        """
        self.executor = executor
        self.gavels = gavels

    async def run_phase(self, phase: PhaseDefinition, handle: RunHandle, phase_index: int, phase_input: Any) -> Any:
        """
        Execute a phase and return its consolidated output.

        Each step result is appended to the run's execution context before
        the next action starts. Recoverable errors, and any error when the
        phase (or run) continues on error, are recorded and skipped past.

        Args:
            phase: Phase to run
            handle: Owning run
            phase_index: Index of the phase in the pipeline
            phase_input: Run input for the first phase, else the previous phase output

        Returns:
            Consolidated phase output

        Raises:
            PipelineError: The error that halted the phase (cancelled errors always halt)
        """
        state = handle.state
        context = handle.context
        pipeline = handle.pipeline
        total_steps = pipeline.total_actions

        handle.emitter.phase_started(phase.id, phase_index, len(pipeline.phases))
        logger.info(f"[{handle.run_id}] Phase {phase.id} started ({len(phase.actions)} actions)")
        start_time = time.time()

        context.phase_input = phase_input
        context.previous_step_output = phase_input
        successes: Dict[str, StepResult] = {}
        ordered: List[StepResult] = []

        for action_index, action in enumerate(phase.actions):
            await handle.checkpoint(action.id)

            state.current_action_index = action_index
            state.current_action_id = action.id
            step_index = handle.step_counter
            handle.step_counter += 1

            result = await self.executor.execute(action, handle, phase, step_index, total_steps)
            context.step_results.append(result)
            state.progress.actions_completed += 1
            state.progress.recalculate()

            if result.status == StepStatus.SUCCESS:
                successes[action.id] = result
                ordered.append(result)
                continue

            error: PipelineError = result.pipeline_error
            if error.is_cancelled:
                raise error

            context.errors.append(error.to_dict())
            error.reported = True

            if error.recoverable or phase.continue_on_error or context.continue_on_error:
                logger.warning(
                    f"[{handle.run_id}] Continuing phase {phase.id} past {error.type.value} error in {action.id}"
                )
                continue

            logger.error(f"[{handle.run_id}] Phase {phase.id} halted by {action.id}: {error.message}")
            raise error

        handle.ensure_not_cancelled()
        output = self._consolidate(phase, successes, ordered, handle)

        if phase.gavel is not None:
            await handle.checkpoint()
            if self.gavels is None:
                raise PipelineValidationError("No gavel coordinator configured")
            output = await self.gavels.request_gavel(handle.run_id, phase.gavel, output, phase_id=phase.id)

        if phase.export_as:
            context.globals[phase.export_as] = output

        duration_ms = int((time.time() - start_time) * 1000)
        handle.emitter.phase_completed(phase.id, duration_ms)
        logger.info(f"[{handle.run_id}] Phase {phase.id} completed in {duration_ms}ms")
        return output

    def _consolidate(
        self,
        phase: PhaseDefinition,
        successes: Dict[str, StepResult],
        ordered: List[StepResult],
        handle: RunHandle,
    ) -> Any:
        if phase.consolidation == ConsolidationPolicy.DESIGNATED:
            result = successes.get(phase.designated_action_id)
            if result is None:
                message = (
                    f"Designated action '{phase.designated_action_id}' of phase '{phase.id}' produced no output"
                )
                logger.warning(f"[{handle.run_id}] {message}")
                handle.context.add_warning(message)
                handle.emitter.warning(message, {"phase_id": phase.id})
                return None
            return result.output

        if phase.consolidation == ConsolidationPolicy.MERGE:
            merged: Dict[str, Any] = {}
            for action in phase.actions:
                result = successes.get(action.id)
                if result is None or not action.output.export:
                    continue
                if isinstance(result.output, dict):
                    merged.update(result.output)
                else:
                    merged[action.output.export_as or action.id] = result.output
            return merged

        return ordered[-1].output if ordered else None
