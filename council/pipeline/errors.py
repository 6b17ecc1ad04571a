"""Error vocabulary for pipeline execution.

Every failure that leaves the step executor is a ``PipelineError``. The
``type`` field is assigned from the stage the failure came from and the
exception class, and is the only field control flow looks at.
"""

import asyncio
from collections import OrderedDict
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Union

from council.utils.retry import RateLimitError, ServiceUnavailableError


class ErrorType(str, Enum):
    """Classification of a pipeline failure."""
    VALIDATION = "validation"
    AGENT = "agent"
    PROMPT = "prompt"
    LLM = "llm"
    PARSE = "parse"
    STORE = "store"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class ExecutionStage(str, Enum):
    """Step stage a failure originated from."""
    INPUT = "input"
    PROMPT = "prompt"
    INVOKE = "invoke"
    PARSE = "parse"
    ROUTE = "route"
    GAVEL = "gavel"


RETRYABLE_TYPES = {ErrorType.LLM, ErrorType.TIMEOUT}
RECOVERABLE_TYPES = {ErrorType.PARSE, ErrorType.PROMPT}

STAGE_ERROR_TYPES = {
    ExecutionStage.INPUT: ErrorType.VALIDATION,
    ExecutionStage.PROMPT: ErrorType.PROMPT,
    ExecutionStage.INVOKE: ErrorType.LLM,
    ExecutionStage.PARSE: ErrorType.PARSE,
    ExecutionStage.ROUTE: ErrorType.STORE,
    ExecutionStage.GAVEL: ErrorType.UNKNOWN,
}

HUMAN_MESSAGES = {
    ErrorType.VALIDATION: "The step is misconfigured and could not run.",
    ErrorType.AGENT: "The agent assigned to this step is missing or misconfigured.",
    ErrorType.PROMPT: "The prompt for this step could not be resolved.",
    ErrorType.LLM: "The language model request failed.",
    ErrorType.PARSE: "The model response could not be parsed into the expected format.",
    ErrorType.STORE: "Reading or writing the data store failed.",
    ErrorType.TIMEOUT: "The step took too long and timed out.",
    ErrorType.CANCELLED: "The run was cancelled.",
    ErrorType.UNKNOWN: "An unexpected error occurred.",
}

SUMMARY_LABELS = {
    ErrorType.LLM: "LLM",
}


class StoreError(Exception):
    """Raised by stores for missing stores or entries."""


class PipelineError(Exception):
    """Canonical error raised by pipeline components."""

    def __init__(
        self,
        error_type: Union[ErrorType, str],
        message: str,
        *,
        cause: Optional[BaseException] = None,
        step_id: Optional[str] = None,
        recoverable: Optional[bool] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.type = ErrorType(error_type)
        self.message = message
        self.cause = cause
        self.step_id = step_id
        self.recoverable = self.type in RECOVERABLE_TYPES if recoverable is None else recoverable
        self.retryable = self.type in RETRYABLE_TYPES if retryable is None else retryable
        # Set once the error is recorded in the run's error list
        self.reported = False
        if self.type == ErrorType.CANCELLED:
            self.recoverable = False
            self.retryable = False

    @property
    def human_message(self) -> str:
        return HUMAN_MESSAGES[self.type]

    @property
    def is_cancelled(self) -> bool:
        return self.type == ErrorType.CANCELLED

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for results and events."""
        return {
            "type": self.type.value,
            "message": self.message,
            "human_message": self.human_message,
            "step_id": self.step_id,
            "recoverable": self.recoverable,
            "retryable": self.retryable,
            "cause": repr(self.cause) if self.cause is not None else None,
        }

    @classmethod
    def cancelled(cls, step_id: Optional[str] = None) -> "PipelineError":
        return cls(ErrorType.CANCELLED, "Run cancelled", step_id=step_id)

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        stage: Optional[ExecutionStage] = None,
        step_id: Optional[str] = None,
    ) -> "PipelineError":
        """
        Normalize any exception into a PipelineError.

        Args:
            error: The caught exception
            stage: Stage the exception was raised in
            step_id: Step that was executing

        Returns:
            PipelineError (the same instance if already normalized)
        """
        if isinstance(error, PipelineError):
            if error.step_id is None:
                error.step_id = step_id
            return error

        if isinstance(error, asyncio.TimeoutError):
            error_type = ErrorType.TIMEOUT
        elif isinstance(error, (RateLimitError, ServiceUnavailableError)):
            error_type = ErrorType.LLM
        elif isinstance(error, StoreError):
            error_type = ErrorType.STORE
        elif stage is not None:
            error_type = STAGE_ERROR_TYPES[ExecutionStage(stage)]
        else:
            error_type = ErrorType.UNKNOWN

        message = str(error) or error.__class__.__name__
        return cls(error_type, message, cause=error, step_id=step_id)


class PipelineValidationError(PipelineError):
    """Invalid use of the control surface or invalid configuration."""

    def __init__(self, message: str, *, step_id: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(ErrorType.VALIDATION, message, cause=cause, step_id=step_id)


def _error_type_of(error: Union[PipelineError, Dict[str, Any]]) -> ErrorType:
    if isinstance(error, PipelineError):
        return error.type
    return ErrorType(error.get("type", ErrorType.UNKNOWN.value))


def summarize_errors(errors: Iterable[Union[PipelineError, Dict[str, Any]]]) -> str:
    """
    Roll errors up into a short summary such as "2 LLM errors, 1 prompt error".

    Types are listed in order of first occurrence.
    """
    counts: "OrderedDict[ErrorType, int]" = OrderedDict()
    for error in errors:
        error_type = _error_type_of(error)
        counts[error_type] = counts.get(error_type, 0) + 1

    parts = []
    for error_type, count in counts.items():
        label = SUMMARY_LABELS.get(error_type, error_type.value)
        parts.append(f"{count} {label} error{'s' if count != 1 else ''}")
    return ", ".join(parts)
