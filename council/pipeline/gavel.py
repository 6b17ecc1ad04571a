"""Gavel (human checkpoint) coordination.

A gavel suspends the owning run until a reviewer approves, edits, rejects
or skips the pending output. Each pending gavel is backed by a future keyed
by ``gavel_id``; the decision methods resolve that future.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from council.events import EventBus, EventEmitter
from council.pipeline.errors import ErrorType, PipelineError, PipelineValidationError
from council.pipeline.schema import GavelConfig
from council.pipeline.state import GavelDecision, GavelOutcome, GavelRequest
from council.utils.helpers import generate_id

logger = logging.getLogger(__name__)


class GavelHost(Protocol):
    """Run-side hooks the coordinator drives."""

    def hold_for_gavel(self, run_id: str) -> None:
        ...

    def release_from_gavel(self, run_id: str) -> None:
        ...

    def abort_run(self, run_id: Optional[str] = None) -> bool:
        ...


@dataclass
class _PendingGavel:
    request: GavelRequest
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None


def apply_modifications(
    current_output: Any,
    editable_fields,
    modifications: Optional[Dict[str, Any]],
) -> Any:
    """
    Merge reviewer edits into the pending output.

    Dict outputs merge ``edited_values`` field by field (restricted to the
    editable fields when any are declared). String outputs are replaced
    wholesale when the single editable field is edited.
    """
    if not modifications:
        return current_output
    edited = modifications.get("edited_values") or modifications.get("editedValues") or {}
    if not edited:
        return current_output

    if isinstance(current_output, dict):
        merged = copy.deepcopy(current_output)
        for field_name, value in edited.items():
            if editable_fields and field_name not in editable_fields:
                logger.warning(f"Ignoring edit to non-editable field '{field_name}'")
                continue
            merged[field_name] = value
        return merged

    if len(editable_fields) == 1 and editable_fields[0] in edited:
        return edited[editable_fields[0]]
    return current_output


class GavelCoordinator:
    """Creates, tracks and resolves gavel requests.

    At most one gavel may be pending per run.
    """

    def __init__(self, event_bus: EventBus, host: Optional[GavelHost] = None, auto_approve: bool = False):
        """
        Initialize gavel coordinator.

        Args:
            event_bus: Bus gavel events are published on
            host: Run controller (pauses, resumes and aborts runs)
            auto_approve: Approve every gavel immediately (preview mode)
        """
        self.event_bus = event_bus
        self.host = host
        self.auto_approve = auto_approve
        self._pending: Dict[str, _PendingGavel] = {}
        self._by_run: Dict[str, str] = {}

    def open_gavel(
        self,
        run_id: str,
        config: GavelConfig,
        current_output: Any,
        step_id: Optional[str] = None,
        phase_id: Optional[str] = None,
    ) -> GavelRequest:
        """
        Register a gavel and suspend the owning run.

        Raises:
            PipelineValidationError: If the run already has a pending gavel
        """
        if run_id in self._by_run:
            raise PipelineValidationError(
                f"Run {run_id} already has an active gavel ({self._by_run[run_id]})", step_id=step_id
            )

        loop = asyncio.get_running_loop()
        request = GavelRequest(
            gavel_id=generate_id("gavel"),
            run_id=run_id,
            step_id=step_id,
            phase_id=phase_id,
            prompt=config.prompt,
            current_output=copy.deepcopy(current_output),
            editable_fields=list(config.editable_fields),
            can_skip=config.can_skip,
            timeout_ms=config.timeout_ms,
        )
        pending = _PendingGavel(request=request, future=loop.create_future())
        self._pending[request.gavel_id] = pending
        self._by_run[run_id] = request.gavel_id

        if self.host is not None:
            self.host.hold_for_gavel(run_id)

        if config.timeout_ms:
            if config.can_skip:
                pending.timer = loop.call_later(
                    config.timeout_ms / 1000.0, self._auto_skip, request.gavel_id
                )
            else:
                logger.info(
                    f"Gavel {request.gavel_id} has a timeout but cannot be skipped; waiting for a decision"
                )

        logger.info(f"Gavel requested for run {run_id}: {request.gavel_id}")
        EventEmitter(run_id, self.event_bus).gavel_requested(request.model_dump())
        return request

    async def wait_for_decision(self, gavel_id: str) -> GavelOutcome:
        pending = self._pending.get(gavel_id)
        if pending is None:
            raise PipelineValidationError(f"Unknown gavel: {gavel_id}")
        return await pending.future

    async def request_gavel(
        self,
        run_id: str,
        config: GavelConfig,
        current_output: Any,
        step_id: Optional[str] = None,
        phase_id: Optional[str] = None,
    ) -> Any:
        """
        Open a gavel and wait for its resolution.

        Returns:
            The output to continue with (edited on approval, unchanged on skip)

        Raises:
            PipelineValidationError: If the run already has a pending gavel
            PipelineError: cancelled, if the gavel is rejected or the run aborted
        """
        if self.auto_approve:
            return self._auto_approve(run_id, config, current_output, step_id, phase_id)

        request = self.open_gavel(run_id, config, current_output, step_id, phase_id)
        outcome = await self.wait_for_decision(request.gavel_id)

        if outcome.decision == GavelDecision.REJECTED:
            message = f"Gavel rejected: {outcome.reason}" if outcome.reason else "Gavel rejected"
            raise PipelineError(ErrorType.CANCELLED, message, step_id=step_id)
        if outcome.decision == GavelDecision.CANCELLED:
            raise PipelineError.cancelled(step_id)
        return outcome.output

    def approve_gavel(self, gavel_id: str, modifications: Optional[Dict[str, Any]] = None) -> GavelOutcome:
        """
        Approve a pending gavel, merging any edited values.

        Raises:
            PipelineValidationError: If the gavel is not pending
        """
        pending = self._get_pending(gavel_id)
        request = pending.request
        output = apply_modifications(request.current_output, request.editable_fields, modifications)
        outcome = GavelOutcome(gavel_id=gavel_id, decision=GavelDecision.APPROVED, output=output)

        self._resolve(pending, outcome)
        if self.host is not None:
            self.host.release_from_gavel(request.run_id)
        logger.info(f"Gavel approved: {gavel_id}")
        EventEmitter(request.run_id, self.event_bus).gavel_approved(gavel_id, modifications)
        return outcome

    def reject_gavel(self, gavel_id: str, reason: Optional[str] = None) -> GavelOutcome:
        """
        Reject a pending gavel. Rejection aborts the owning run.

        Raises:
            PipelineValidationError: If the gavel is not pending
        """
        pending = self._get_pending(gavel_id)
        request = pending.request
        outcome = GavelOutcome(gavel_id=gavel_id, decision=GavelDecision.REJECTED, reason=reason)

        self._resolve(pending, outcome)
        logger.info(f"Gavel rejected: {gavel_id} ({reason or 'no reason given'})")
        EventEmitter(request.run_id, self.event_bus).gavel_rejected(gavel_id, reason)
        if self.host is not None:
            self.host.abort_run(request.run_id)
        return outcome

    def skip_gavel(self, gavel_id: str) -> GavelOutcome:
        """
        Skip a pending gavel, continuing with the output unchanged.

        Raises:
            PipelineValidationError: If the gavel is not pending or cannot be skipped
        """
        pending = self._get_pending(gavel_id)
        if not pending.request.can_skip:
            raise PipelineValidationError(f"Gavel {gavel_id} cannot be skipped")
        return self._skip(pending, automatic=False)

    def cancel_for_run(self, run_id: str) -> bool:
        """Resolve the run's pending gavel as cancelled (used on abort)."""
        gavel_id = self._by_run.get(run_id)
        if gavel_id is None:
            return False
        pending = self._pending[gavel_id]
        self._resolve(pending, GavelOutcome(gavel_id=gavel_id, decision=GavelDecision.CANCELLED))
        logger.info(f"Gavel cancelled with run {run_id}: {gavel_id}")
        return True

    def get_active_gavel(self, run_id: Optional[str] = None) -> Optional[GavelRequest]:
        if run_id is not None:
            gavel_id = self._by_run.get(run_id)
            return self._pending[gavel_id].request if gavel_id else None
        for pending in self._pending.values():
            return pending.request
        return None

    def has_active_gavel(self, run_id: str) -> bool:
        return run_id in self._by_run

    def _get_pending(self, gavel_id: str) -> _PendingGavel:
        pending = self._pending.get(gavel_id)
        if pending is None:
            raise PipelineValidationError(f"No active gavel with id {gavel_id}")
        return pending

    def _skip(self, pending: _PendingGavel, automatic: bool) -> GavelOutcome:
        request = pending.request
        outcome = GavelOutcome(
            gavel_id=request.gavel_id,
            decision=GavelDecision.SKIPPED,
            output=request.current_output,
            automatic=automatic,
        )
        self._resolve(pending, outcome)
        if self.host is not None:
            self.host.release_from_gavel(request.run_id)
        logger.info(f"Gavel skipped{' (timeout)' if automatic else ''}: {request.gavel_id}")
        EventEmitter(request.run_id, self.event_bus).gavel_skipped(request.gavel_id, automatic)
        return outcome

    def _auto_skip(self, gavel_id: str):
        pending = self._pending.get(gavel_id)
        if pending is None:
            return
        self._skip(pending, automatic=True)

    def _resolve(self, pending: _PendingGavel, outcome: GavelOutcome):
        request = pending.request
        if pending.timer is not None:
            pending.timer.cancel()
        self._pending.pop(request.gavel_id, None)
        if self._by_run.get(request.run_id) == request.gavel_id:
            del self._by_run[request.run_id]
        if not pending.future.done():
            pending.future.set_result(outcome)

    def _auto_approve(self, run_id, config, current_output, step_id, phase_id) -> Any:
        emitter = EventEmitter(run_id, self.event_bus)
        gavel_id = generate_id("gavel")
        request = GavelRequest(
            gavel_id=gavel_id,
            run_id=run_id,
            step_id=step_id,
            phase_id=phase_id,
            prompt=config.prompt,
            current_output=current_output,
            editable_fields=list(config.editable_fields),
            can_skip=config.can_skip,
            timeout_ms=config.timeout_ms,
        )
        emitter.gavel_requested(request.model_dump())
        emitter.gavel_approved(gavel_id, None)
        return current_output
