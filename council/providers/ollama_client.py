"""Ollama inference client over aiohttp."""

import logging
from typing import Any, Dict, Optional

import aiohttp
import requests

from council.pipeline.interfaces import GenerationResult
from council.pipeline.schema import GenerationConfig, OutputShape
from council.providers.base import InferenceProviderBase
from council.utils.provider_errors import handle_http_error

logger = logging.getLogger(__name__)


class OllamaInferenceClient(InferenceProviderBase):
    """Client for a local Ollama server (``/api/generate``)."""

    provider_name = "Ollama"

    def __init__(self, base_url: str = "http://localhost:11434", default_model: Optional[str] = None, timeout: int = 600):
        """
        Initialize Ollama client.

        Args:
            base_url: Ollama server URL
            default_model: Model used when a generation config does not name one
            timeout: Request timeout in seconds
        """
        super().__init__(default_model=default_model, timeout=timeout)
        self.base_url = base_url.rstrip("/")
        logger.info(f"Initialized Ollama client: base_url={self.base_url}")

    def _build_payload(
        self,
        prompt: str,
        model: str,
        generation_config: GenerationConfig,
        system_prompt: Optional[str],
        output_shape: Optional[OutputShape],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": {
                "temperature": generation_config.temperature,
                "top_p": generation_config.top_p,
            },
        }
        if generation_config.max_tokens:
            payload["options"]["num_predict"] = generation_config.max_tokens
        if system_prompt:
            payload["system"] = system_prompt
        if output_shape in (OutputShape.JSON, OutputShape.ARRAY):
            payload["format"] = "json"
        return payload

    async def _make_generate_request(
        self,
        prompt: str,
        model: str,
        generation_config: GenerationConfig,
        system_prompt: Optional[str],
        timeout: float,
        output_shape: Optional[OutputShape],
    ) -> GenerationResult:
        url = f"{self.base_url}/api/generate"
        payload = self._build_payload(prompt, model, generation_config, system_prompt, output_shape)

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)
                ) as response:
                    response.raise_for_status()
                    result = await response.json()
        except aiohttp.ClientError as e:
            handle_http_error(e, self.provider_name)

        prompt_tokens = result.get("prompt_eval_count", 0)
        completion_tokens = result.get("eval_count", 0)
        return GenerationResult(
            text=result.get("response", ""),
            model=model,
            usage={
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
            },
        )

    def health_check(self) -> bool:
        """Check that the Ollama server is reachable."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=5)
            return response.status_code == 200
        except requests.RequestException as e:
            logger.warning(f"Ollama health check failed: {e}")
            return False
