"""Base class for inference providers."""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from council.pipeline.interfaces import GenerationResult
from council.pipeline.schema import GenerationConfig, OutputShape

logger = logging.getLogger(__name__)


class InferenceProviderBase(ABC):
    """
    Abstract base class for inference providers.

    Providers make a single request per ``generate`` call. Retries and
    backoff belong to the step executor, which also enforces the step
    timeout; providers only translate transport errors into
    ``RateLimitError`` / ``ServiceUnavailableError`` so they are classified
    as retryable LLM errors.

    Subclasses must implement:
    - _make_generate_request(): Make the actual API call
    """

    provider_name: str = "InferenceProvider"

    def __init__(self, default_model: Optional[str] = None, timeout: int = 120, **kwargs):
        """
        Initialize provider base.

        Args:
            default_model: Model used when a generation config does not name one
            timeout: Request timeout in seconds when the caller gives none
            **kwargs: Provider-specific options
        """
        self.default_model = default_model
        self.timeout = timeout
        self.kwargs = kwargs

    @abstractmethod
    async def _make_generate_request(
        self,
        prompt: str,
        model: str,
        generation_config: GenerationConfig,
        system_prompt: Optional[str],
        timeout: float,
        output_shape: Optional[OutputShape],
    ) -> GenerationResult:
        """
        Make the actual API request for text generation.

        Returns:
            GenerationResult with text and usage
        """
        pass

    async def generate(
        self,
        prompt: str,
        generation_config: GenerationConfig,
        timeout: Optional[float] = None,
        system_prompt: Optional[str] = None,
        output_shape: Optional[OutputShape] = None,
    ) -> GenerationResult:
        """
        Generate a completion.

        Args:
            prompt: User prompt
            generation_config: Model and sampling parameters
            timeout: Request timeout in seconds
            system_prompt: Optional system prompt
            output_shape: Declared output shape (providers may request JSON mode)

        Returns:
            GenerationResult
        """
        model = generation_config.model or self.default_model
        if not model:
            raise ValueError(f"{self.provider_name}: no model configured")

        result = await self._make_generate_request(
            prompt=prompt,
            model=model,
            generation_config=generation_config,
            system_prompt=system_prompt,
            timeout=timeout or self.timeout,
            output_shape=output_shape,
        )
        usage = result.usage or {}
        logger.debug(
            f"{self.provider_name} call: model={model}, "
            f"prompt_tokens={usage.get('prompt_tokens', 0)}, "
            f"completion_tokens={usage.get('completion_tokens', 0)}"
        )
        return result

    async def close(self) -> None:
        """Release provider resources."""
        pass
