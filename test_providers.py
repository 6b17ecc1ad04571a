#!/usr/bin/env python3
"""Test inference provider adapters and provider error translation."""

from types import SimpleNamespace

import aiohttp
import pytest

from council.pipeline.interfaces import GenerationResult
from council.pipeline.schema import GenerationConfig, OutputShape
from council.providers import InferenceProviderBase, OllamaInferenceClient, OpenAIInferenceClient
from council.utils.provider_errors import extract_retry_after, handle_http_error, handle_openai_error
from council.utils.retry import RateLimitError, ServiceUnavailableError


class EchoProvider(InferenceProviderBase):
    provider_name = "Echo"

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.requests = []

    async def _make_generate_request(self, prompt, model, generation_config, system_prompt, timeout, output_shape):
        self.requests.append({"model": model, "timeout": timeout, "output_shape": output_shape})
        return GenerationResult(text=prompt.upper(), model=model, usage={"prompt_tokens": 1, "completion_tokens": 1})


def response_error(status, headers=None):
    return aiohttp.ClientResponseError(
        SimpleNamespace(real_url="http://localhost:11434/api/generate"),
        (),
        status=status,
        message="boom",
        headers=headers,
    )


# ============================================================================
# Base provider
# ============================================================================

@pytest.mark.asyncio
async def test_base_generate_uses_default_timeout():
    provider = EchoProvider(default_model="fallback", timeout=42)

    result = await provider.generate("hi", GenerationConfig(model="m1"))

    assert result.text == "HI"
    assert provider.requests == [{"model": "m1", "timeout": 42, "output_shape": None}]


@pytest.mark.asyncio
async def test_base_generate_passes_step_timeout():
    provider = EchoProvider(timeout=42)
    await provider.generate("hi", GenerationConfig(model="m1"), timeout=5, output_shape=OutputShape.JSON)
    assert provider.requests[0]["timeout"] == 5
    assert provider.requests[0]["output_shape"] == OutputShape.JSON


# ============================================================================
# Ollama
# ============================================================================

def test_ollama_payload():
    """Test the Ollama payload carries options, system prompt and JSON format."""
    client = OllamaInferenceClient(base_url="http://ollama:11434/")
    config = GenerationConfig(model="llama3", temperature=0.2, max_tokens=256)

    payload = client._build_payload("Q", "llama3", config, "Be brief.", OutputShape.JSON)

    assert client.base_url == "http://ollama:11434"
    assert payload == {
        "model": "llama3",
        "prompt": "Q",
        "stream": False,
        "options": {"temperature": 0.2, "top_p": 1.0, "num_predict": 256},
        "system": "Be brief.",
        "format": "json",
    }


def test_ollama_payload_text_shape_has_no_format():
    client = OllamaInferenceClient()
    payload = client._build_payload("Q", "llama3", GenerationConfig(model="llama3"), None, OutputShape.TEXT)
    assert "format" not in payload
    assert "system" not in payload


# ============================================================================
# OpenAI
# ============================================================================

def test_openai_requires_api_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(ValueError, match="API key required"):
        OpenAIInferenceClient()


def test_openai_client_disables_sdk_retries():
    client = OpenAIInferenceClient(api_key="sk-test")
    assert client.client.max_retries == 0
    assert client.default_model == "gpt-4o-mini"


def test_openai_messages():
    messages = OpenAIInferenceClient._build_messages("Q", "System")
    assert messages == [{"role": "system", "content": "System"}, {"role": "user", "content": "Q"}]
    assert OpenAIInferenceClient._build_messages("Q", None) == [{"role": "user", "content": "Q"}]


# ============================================================================
# Error translation
# ============================================================================

def test_http_429_becomes_rate_limit_with_retry_after():
    with pytest.raises(RateLimitError) as exc_info:
        handle_http_error(response_error(429, {"Retry-After": "3"}))
    assert exc_info.value.retry_after == 3.0


@pytest.mark.parametrize("status", [502, 503, 504])
def test_http_unavailable_statuses(status):
    with pytest.raises(ServiceUnavailableError):
        handle_http_error(response_error(status))


def test_http_client_errors_are_reraised():
    error = response_error(400)
    with pytest.raises(aiohttp.ClientResponseError) as exc_info:
        handle_http_error(error)
    assert exc_info.value is error


def test_http_connection_error_is_unavailable():
    with pytest.raises(ServiceUnavailableError):
        handle_http_error(aiohttp.ClientConnectionError("refused"))


class _FakeOpenAIError(Exception):
    def __init__(self, message, status_code=None, headers=None):
        super().__init__(message)
        self.status_code = status_code
        self.response = SimpleNamespace(headers=headers or {})


class _RateLimit(_FakeOpenAIError):
    pass


class _Connection(_FakeOpenAIError):
    pass


class _Timeout(_FakeOpenAIError):
    pass


class _Status(_FakeOpenAIError):
    pass


FAKE_OPENAI = SimpleNamespace(
    RateLimitError=_RateLimit,
    APIConnectionError=_Connection,
    APITimeoutError=_Timeout,
    APIStatusError=_Status,
)


def test_openai_rate_limit_translation():
    with pytest.raises(RateLimitError) as exc_info:
        handle_openai_error(_RateLimit("slow down", headers={"retry-after": "7"}), FAKE_OPENAI)
    assert exc_info.value.retry_after == 7.0


@pytest.mark.parametrize("error", [_Connection("down"), _Timeout("slow"), _Status("busy", status_code=503)])
def test_openai_unavailable_translation(error):
    with pytest.raises(ServiceUnavailableError):
        handle_openai_error(error, FAKE_OPENAI)


def test_openai_other_errors_reraised():
    error = _Status("bad request", status_code=400)
    with pytest.raises(_Status):
        handle_openai_error(error, FAKE_OPENAI)


def test_extract_retry_after_missing():
    assert extract_retry_after(ValueError("no headers")) is None
