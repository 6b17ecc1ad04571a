"""Utility modules for Council.

This package contains shared utilities:
- helpers: Ids, timestamps, dotted-path lookup and text helpers
- retry: Retry logic with cancellation-aware backoff
- provider_errors: Shared error handling for inference providers
"""

from council.utils.helpers import (
    debug_run_log,
    estimate_tokens,
    generate_id,
    get_path,
    stringify,
    truncate_text,
    utc_now_iso,
)

from council.utils.retry import (
    DEFAULT_STEP_RETRY_CONFIG,
    RateLimitError,
    RetryConfig,
    ServiceUnavailableError,
    retry_async,
    sleep_unless_cancelled,
)

from council.utils.provider_errors import (
    extract_retry_after,
    handle_http_error,
    handle_openai_error,
)

__all__ = [
    # helpers
    "debug_run_log",
    "estimate_tokens",
    "generate_id",
    "get_path",
    "stringify",
    "truncate_text",
    "utc_now_iso",
    # retry
    "DEFAULT_STEP_RETRY_CONFIG",
    "RateLimitError",
    "RetryConfig",
    "ServiceUnavailableError",
    "retry_async",
    "sleep_unless_cancelled",
    # provider_errors
    "extract_retry_after",
    "handle_http_error",
    "handle_openai_error",
]
