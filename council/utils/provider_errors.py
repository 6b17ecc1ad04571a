"""Shared error handling utilities for inference providers."""

import logging
from typing import Any, Optional

from council.utils.retry import RateLimitError, ServiceUnavailableError

logger = logging.getLogger(__name__)


def extract_retry_after(error: Any) -> Optional[float]:
    """
    Extract retry-after value from an error's response headers.

    Args:
        error: Exception with potential response.headers.retry-after

    Returns:
        Float seconds to wait, or None if not available
    """
    headers = None
    if hasattr(error, 'response') and error.response is not None and hasattr(error.response, 'headers'):
        headers = error.response.headers
    elif getattr(error, 'headers', None) is not None:
        # aiohttp.ClientResponseError exposes headers directly
        headers = error.headers

    if headers:
        retry_after_header = headers.get('retry-after') or headers.get('Retry-After')
        if retry_after_header:
            try:
                return float(retry_after_header)
            except ValueError:
                pass
    if hasattr(error, 'retry_after'):
        return error.retry_after
    return None


def handle_openai_error(error: Any, openai_module: Any, provider_name: str = "OpenAI") -> None:
    """
    Handle OpenAI SDK errors and convert to standard exceptions.

    Args:
        error: The caught exception
        openai_module: The openai module (for exception type checking)
        provider_name: Name for logging (OpenAI or compatible)

    Raises:
        RateLimitError: For rate limit errors
        ServiceUnavailableError: For service unavailable errors
        The original error: For non-retryable errors
    """
    retry_after = extract_retry_after(error)

    if isinstance(error, openai_module.RateLimitError):
        logger.warning(f"{provider_name} rate limit exceeded: {error}")
        raise RateLimitError(f"{provider_name} rate limit: {error}", retry_after=retry_after) from error

    if isinstance(error, (openai_module.APIConnectionError, openai_module.APITimeoutError)):
        logger.warning(f"{provider_name} connection/timeout error: {error}")
        raise ServiceUnavailableError(f"{provider_name} service unavailable: {error}") from error

    if isinstance(error, openai_module.APIStatusError):
        if error.status_code in (503, 504):
            logger.warning(f"{provider_name} service unavailable (status {error.status_code}): {error}")
            raise ServiceUnavailableError(
                f"{provider_name} service unavailable: {error}", retry_after=retry_after
            ) from error
        logger.error(f"{provider_name} API status error: {error}")
        raise error

    logger.error(f"{provider_name} API error: {error}")
    raise error


def handle_http_error(error: Any, provider_name: str = "Ollama") -> None:
    """
    Handle aiohttp errors from HTTP-based providers.

    Args:
        error: The caught exception
        provider_name: Name for logging

    Raises:
        RateLimitError: For HTTP 429
        ServiceUnavailableError: For 503/504 and connection failures
        The original error: For everything else
    """
    import aiohttp

    if isinstance(error, aiohttp.ClientResponseError):
        if error.status == 429:
            logger.warning(f"{provider_name} rate limit exceeded: {error}")
            raise RateLimitError(
                f"{provider_name} rate limit: {error}", retry_after=extract_retry_after(error)
            ) from error
        if error.status in (502, 503, 504):
            logger.warning(f"{provider_name} service unavailable (status {error.status}): {error}")
            raise ServiceUnavailableError(f"{provider_name} service unavailable: {error}") from error
        logger.error(f"{provider_name} HTTP error: {error}")
        raise error

    if isinstance(error, aiohttp.ClientConnectionError):
        logger.warning(f"{provider_name} connection error: {error}")
        raise ServiceUnavailableError(f"{provider_name} service unavailable: {error}") from error

    logger.error(f"{provider_name} provider error: {error}")
    raise error
