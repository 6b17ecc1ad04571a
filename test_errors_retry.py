#!/usr/bin/env python3
"""Test error classification and cancellation-aware retry."""

import asyncio

import pytest

from council.pipeline.errors import (
    ErrorType,
    ExecutionStage,
    PipelineError,
    PipelineValidationError,
    StoreError,
    summarize_errors,
)
from council.pipeline.parsing import OutputParseError
from council.utils.retry import (
    RateLimitError,
    RetryConfig,
    ServiceUnavailableError,
    retry_async,
    sleep_unless_cancelled,
)


# ============================================================================
# Classification
# ============================================================================

@pytest.mark.parametrize(
    "error, stage, expected",
    [
        (RuntimeError("connection reset"), ExecutionStage.INVOKE, ErrorType.LLM),
        (RateLimitError("slow down"), None, ErrorType.LLM),
        (ServiceUnavailableError("503"), ExecutionStage.ROUTE, ErrorType.LLM),
        (asyncio.TimeoutError(), ExecutionStage.INVOKE, ErrorType.TIMEOUT),
        (StoreError("missing"), ExecutionStage.INVOKE, ErrorType.STORE),
        (OutputParseError("bad json"), ExecutionStage.PARSE, ErrorType.PARSE),
        (KeyError("x"), ExecutionStage.PROMPT, ErrorType.PROMPT),
        (ValueError("x"), ExecutionStage.INPUT, ErrorType.VALIDATION),
        (ValueError("x"), None, ErrorType.UNKNOWN),
    ],
)
def test_classification_by_stage_and_class(error, stage, expected):
    """Test error type comes from the stage and exception class."""
    assert PipelineError.from_exception(error, stage, "step").type == expected


def test_message_text_does_not_drive_classification():
    error = PipelineError.from_exception(ValueError("LLM timeout rate limit"), ExecutionStage.PARSE)
    assert error.type == ErrorType.PARSE


def test_flags_follow_type():
    assert PipelineError(ErrorType.LLM, "x").retryable is True
    assert PipelineError(ErrorType.TIMEOUT, "x").retryable is True
    assert PipelineError(ErrorType.PARSE, "x").recoverable is True
    assert PipelineError(ErrorType.PROMPT, "x").recoverable is True
    assert PipelineError(ErrorType.STORE, "x").recoverable is False

    cancelled = PipelineError(ErrorType.CANCELLED, "x", retryable=True, recoverable=True)
    assert cancelled.retryable is False
    assert cancelled.recoverable is False


def test_existing_pipeline_error_is_kept():
    original = PipelineValidationError("bad config")
    assert PipelineError.from_exception(original, ExecutionStage.INVOKE, "s1") is original
    assert original.step_id == "s1"
    assert original.type == ErrorType.VALIDATION


def test_error_dict_has_human_message():
    data = PipelineError(ErrorType.LLM, "boom", step_id="ask").to_dict()
    assert data["type"] == "llm"
    assert data["step_id"] == "ask"
    assert data["human_message"] == "The language model request failed."


def test_summarize_errors():
    errors = [
        PipelineError(ErrorType.LLM, "a"),
        {"type": "prompt"},
        PipelineError(ErrorType.LLM, "b"),
    ]
    assert summarize_errors(errors) == "2 LLM errors, 1 prompt error"
    assert summarize_errors([]) == ""


# ============================================================================
# Retry
# ============================================================================

def _is_retryable(error):
    return isinstance(error, PipelineError) and error.retryable


@pytest.mark.asyncio
async def test_retry_succeeds_after_retryable_failures():
    attempts = []
    retries = []

    async def func(attempt):
        attempts.append(attempt)
        if attempt < 3:
            raise PipelineError(ErrorType.LLM, "flaky")
        return "done"

    result = await retry_async(
        func,
        config=RetryConfig(max_attempts=3, base_delay=0.001),
        is_retryable=_is_retryable,
        on_cancelled=lambda: PipelineError.cancelled(),
        on_retry=lambda attempt, delay, err: retries.append((attempt, delay)),
    )

    assert result == "done"
    assert attempts == [1, 2, 3]
    assert [attempt for attempt, _ in retries] == [2, 3]


@pytest.mark.asyncio
async def test_non_retryable_error_attempted_once():
    attempts = []

    async def func(attempt):
        attempts.append(attempt)
        raise PipelineError(ErrorType.STORE, "broken")

    with pytest.raises(PipelineError):
        await retry_async(
            func,
            config=RetryConfig(max_attempts=3, base_delay=0.001),
            is_retryable=_is_retryable,
            on_cancelled=lambda: PipelineError.cancelled(),
        )
    assert attempts == [1]


@pytest.mark.asyncio
async def test_retry_exhaustion_raises_last_error():
    async def func(attempt):
        raise PipelineError(ErrorType.TIMEOUT, f"attempt {attempt}")

    with pytest.raises(PipelineError, match="attempt 3"):
        await retry_async(
            func,
            config=RetryConfig(max_attempts=3, base_delay=0.001),
            is_retryable=_is_retryable,
            on_cancelled=lambda: PipelineError.cancelled(),
        )


@pytest.mark.asyncio
async def test_cancellation_during_backoff_prevents_retry():
    """Test setting the cancel event during backoff means the retry never fires."""
    cancel_event = asyncio.Event()
    attempts = []

    async def func(attempt):
        attempts.append(attempt)
        raise PipelineError(ErrorType.LLM, "flaky")

    def on_retry(attempt, delay, error):
        asyncio.get_running_loop().call_later(0.01, cancel_event.set)

    with pytest.raises(PipelineError) as exc_info:
        await retry_async(
            func,
            config=RetryConfig(max_attempts=3, base_delay=5.0),
            is_retryable=_is_retryable,
            is_cancelled=cancel_event.is_set,
            on_cancelled=lambda: PipelineError.cancelled(),
            on_retry=on_retry,
            cancel_event=cancel_event,
        )

    assert exc_info.value.is_cancelled
    assert attempts == [1]


@pytest.mark.asyncio
async def test_sleep_unless_cancelled():
    event = asyncio.Event()
    assert await sleep_unless_cancelled(0.001, event) is False
    event.set()
    assert await sleep_unless_cancelled(10.0, event) is True


def test_backoff_is_exponential_and_capped():
    config = RetryConfig(base_delay=1.0, max_delay=3.0)
    assert config.calculate_delay(1) == 1.0
    assert config.calculate_delay(2) == 2.0
    assert config.calculate_delay(3) == 3.0
    assert config.calculate_delay(1, retry_after=2.5) == 2.5
