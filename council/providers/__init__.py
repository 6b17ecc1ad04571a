"""Inference provider adapters."""

from council.providers.base import InferenceProviderBase
from council.providers.ollama_client import OllamaInferenceClient
from council.providers.openai_client import OpenAIInferenceClient

__all__ = ["InferenceProviderBase", "OllamaInferenceClient", "OpenAIInferenceClient"]
