"""Runtime state for pipeline runs.

Unlike the definitions in ``schema``, these models are mutable and owned by
the run controller for the lifetime of one run.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, PrivateAttr

from council.events import EventEmitter
from council.pipeline.errors import PipelineError
from council.pipeline.schema import AgentDefinition, PipelineDefinition
from council.utils.helpers import utc_now_iso


class RunStatus(str, Enum):
    """Run lifecycle status."""
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    ABORTED = "aborted"


ACTIVE_STATUSES = {RunStatus.RUNNING, RunStatus.PAUSED}


class DeliveryMode(str, Enum):
    """How a completed run hands over its result."""
    SYNTHESIS = "synthesis"
    COMPILATION = "compilation"
    INJECTION = "injection"


class StepStatus(str, Enum):
    """Outcome of a single step."""
    SUCCESS = "success"
    ERROR = "error"


class Progress(BaseModel):
    """Progress counters for a run."""
    percentage: int = 0
    phases_completed: int = 0
    phases_total: int = 0
    actions_completed: int = 0
    actions_total: int = 0

    def recalculate(self, completed: bool = False) -> int:
        if completed:
            self.percentage = 100
        elif self.actions_total:
            self.percentage = round(self.actions_completed / self.actions_total * 100)
        else:
            self.percentage = 0
        return self.percentage


class StepResult(BaseModel):
    """Result of one step, appended to the execution context."""
    step_id: str
    phase_id: Optional[str] = None
    kind: str
    status: StepStatus
    output: Any = None
    error: Optional[Dict[str, Any]] = None
    attempts: int = 1
    prompt: Optional[str] = None
    prompt_chars: int = 0
    response_chars: int = 0
    usage: Dict[str, Any] = Field(default_factory=dict)
    duration_ms: int = 0

    _pipeline_error: Any = PrivateAttr(default=None)

    @property
    def pipeline_error(self):
        """The PipelineError behind a failed result, if any."""
        return self._pipeline_error


class ExecutionContext(BaseModel):
    """Context for one run. Steps read from it and append to it."""
    run_id: str
    pipeline: Dict[str, Any] = Field(default_factory=dict, description="Pipeline metadata")
    input: Any = None
    phase_input: Any = None
    previous_step_output: Any = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    globals: Dict[str, Any] = Field(default_factory=dict)
    step_results: List[StepResult] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    started_at: str = Field(default_factory=utc_now_iso)
    preview: bool = False
    verbose: bool = False
    continue_on_error: bool = False

    def add_warning(self, message: str):
        self.warnings.append(message)


class RunState(BaseModel):
    """Mutable state of one run."""
    run_id: str
    pipeline_id: str
    mode: DeliveryMode = DeliveryMode.SYNTHESIS
    status: RunStatus = RunStatus.IDLE
    current_phase_index: int = 0
    current_action_index: int = 0
    current_phase_id: Optional[str] = None
    current_action_id: Optional[str] = None
    progress: Progress = Field(default_factory=Progress)
    globals: Dict[str, Any] = Field(default_factory=dict)
    phase_outputs: Dict[str, Any] = Field(default_factory=dict)
    output: Any = None
    compiled_prompt: Optional[str] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    duration_ms: int = 0

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class RunOptions(BaseModel):
    """Options accepted by ``RunController.start_run``."""
    run_id: Optional[str] = None
    mode: Optional[DeliveryMode] = None
    variables: Dict[str, Any] = Field(default_factory=dict)
    continue_on_error: bool = False
    verbose: bool = False


class RunResult(BaseModel):
    """Final result of a run, returned by ``start_run``."""
    run_id: str
    pipeline_id: str
    status: RunStatus
    mode: DeliveryMode
    output: Any = None
    compiled_prompt: Optional[str] = None
    phase_outputs: Dict[str, Any] = Field(default_factory=dict)
    step_results: List[StepResult] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    error_summary: str = ""
    warnings: List[str] = Field(default_factory=list)
    duration_ms: int = 0


class GavelRequest(BaseModel):
    """A pending human decision."""
    gavel_id: str
    run_id: str
    step_id: Optional[str] = None
    phase_id: Optional[str] = None
    prompt: str
    current_output: Any = None
    editable_fields: List[str] = Field(default_factory=list)
    can_skip: bool = True
    timeout_ms: Optional[int] = None
    created_at: str = Field(default_factory=utc_now_iso)


class GavelDecision(str, Enum):
    """How a gavel was resolved."""
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class GavelOutcome(BaseModel):
    """Resolution delivered to the awaiting step."""
    gavel_id: str
    decision: GavelDecision
    output: Any = None
    reason: Optional[str] = None
    automatic: bool = False


@dataclass
class RunHandle:
    """Everything the engine holds for one in-flight run.

    ``resume_event`` is set while the run may proceed; ``cancel_event`` is set
    once the run is aborted.
    """

    state: RunState
    context: ExecutionContext
    pipeline: PipelineDefinition
    emitter: EventEmitter
    agents: Dict[str, AgentDefinition] = field(default_factory=dict)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    resume_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_monotonic: float = field(default_factory=time.monotonic)
    step_counter: int = 0
    paused_by_gavel: bool = False

    def __post_init__(self):
        self.resume_event.set()

    @property
    def run_id(self) -> str:
        return self.state.run_id

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_monotonic) * 1000)

    def ensure_not_cancelled(self, step_id: Optional[str] = None):
        """Raise the cancelled error if the run was aborted. Never blocks on a pause."""
        if self.cancel_event.is_set():
            raise PipelineError.cancelled(step_id)

    async def checkpoint(self, step_id: Optional[str] = None):
        """
        Block while the run is paused.

        Raises:
            PipelineError: cancelled, if the run was aborted before or while waiting
        """
        self.ensure_not_cancelled(step_id)
        if not self.resume_event.is_set():
            await self.resume_event.wait()
        self.ensure_not_cancelled(step_id)
