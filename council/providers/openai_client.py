"""OpenAI inference client for GPT models."""

import logging
import os
from typing import Any, Dict, List, Optional

from council.pipeline.interfaces import GenerationResult
from council.pipeline.schema import GenerationConfig, OutputShape
from council.providers.base import InferenceProviderBase
from council.utils.provider_errors import handle_openai_error

logger = logging.getLogger(__name__)


class OpenAIInferenceClient(InferenceProviderBase):
    """Client for the OpenAI chat completions API (and compatible servers)."""

    provider_name = "OpenAI"

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        organization: Optional[str] = None,
        default_model: Optional[str] = "gpt-4o-mini",
        timeout: int = 120,
    ):
        """
        Initialize OpenAI client.

        Args:
            api_key: OpenAI API key (or set OPENAI_API_KEY env var)
            base_url: Custom base URL (default: https://api.openai.com/v1)
            organization: OpenAI organization ID
            default_model: Model used when a generation config does not name one
            timeout: Request timeout in seconds
        """
        super().__init__(default_model=default_model, timeout=timeout)

        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.base_url = base_url or "https://api.openai.com/v1"
        self.organization = organization

        self._validate_api_key()
        self._create_client()

        logger.info(f"Initialized OpenAI client: base_url={self.base_url}")

    def _validate_api_key(self) -> None:
        """Validate API key is present."""
        if not self.api_key:
            raise ValueError("OpenAI API key required. Set OPENAI_API_KEY environment variable or pass api_key parameter.")

    def _create_client(self) -> None:
        """Create the OpenAI async client. SDK retries are disabled; the step executor retries."""
        import openai

        self.openai = openai
        self.client = openai.AsyncOpenAI(
            api_key=self.api_key,
            base_url=self.base_url,
            organization=self.organization,
            timeout=self.timeout,
            max_retries=0,
        )

    @staticmethod
    def _build_messages(prompt: str, system_prompt: Optional[str]) -> List[Dict[str, str]]:
        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": prompt})
        return messages

    async def _make_generate_request(
        self,
        prompt: str,
        model: str,
        generation_config: GenerationConfig,
        system_prompt: Optional[str],
        timeout: float,
        output_shape: Optional[OutputShape],
    ) -> GenerationResult:
        params: Dict[str, Any] = {
            "model": model,
            "messages": self._build_messages(prompt, system_prompt),
            "temperature": generation_config.temperature,
            "top_p": generation_config.top_p,
            "timeout": timeout,
        }
        if generation_config.max_tokens:
            params["max_tokens"] = generation_config.max_tokens
        if output_shape == OutputShape.JSON:
            params["response_format"] = {"type": "json_object"}

        try:
            response = await self.client.chat.completions.create(**params)
        except Exception as e:
            handle_openai_error(e, self.openai, self.provider_name)

        usage = response.usage
        return GenerationResult(
            text=response.choices[0].message.content or "",
            model=response.model or model,
            usage={
                "prompt_tokens": usage.prompt_tokens if usage else 0,
                "completion_tokens": usage.completion_tokens if usage else 0,
                "total_tokens": usage.total_tokens if usage else 0,
            },
        )

    async def close(self) -> None:
        await self.client.close()
