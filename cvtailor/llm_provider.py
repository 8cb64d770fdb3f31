"""
Generative service client.

Architecture:
  - ProviderConfig: model, key, endpoint and limits, built from Settings
  - OpenAICompatibleGenerator: one chat completion per ``generate(prompt)``
    against any OpenAI-compatible endpoint (OpenRouter by default)
  - MockGenerator: deterministic local output for development and tests

Both generators expose the same capability: ``generate(prompt) -> str``.
Transport failures are translated here so callers only see ApiError
subclasses: timeouts become OperationTimeoutError, every other SDK failure
becomes GenerativeServiceError. Format problems in the returned text are the
caller's concern.

Configuration via environment variables:
  LLM_API_KEY / OPENROUTER_API_KEY
  LLM_BASE_URL          = https://openrouter.ai/api/v1
  LLM_MODEL             = anthropic/claude-3-opus
  LLM_TEMPERATURE       = 0.2
  LLM_MAX_TOKENS        = 2000
  LLM_TIMEOUT_S         = 120
  MOCK_LLM_ENABLED      = true when no key is configured
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any

from cvtailor.errors import GenerativeServiceError, OperationTimeoutError
from cvtailor.mock_llm import mock_generate
from cvtailor.settings import Settings

logger = logging.getLogger(__name__)

_SYSTEM_PROMPT = "You rewrite CVs for specific job applications and answer with a single JSON object only."


@dataclass
class ProviderConfig:
    model: str
    api_key: str = ""
    base_url: str = ""
    temperature: float = 0.2
    max_tokens: int = 2_000
    timeout_s: float = 120.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderConfig":
        return cls(
            model=settings.llm_model,
            api_key=settings.llm_api_key,
            base_url=settings.llm_base_url,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            timeout_s=settings.llm_timeout_s,
        )


@dataclass
class LLMUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: str = ""
    latency_ms: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "model": self.model,
            "latency_ms": self.latency_ms,
        }


def _import_openai():
    try:
        import openai
    except ImportError as exc:
        raise GenerativeServiceError(
            "openai package is required for the generative service",
            code="GENERATIVE_DEPENDENCY_MISSING",
        ) from exc
    return openai


def _create_client(config: ProviderConfig):
    openai = _import_openai()
    kwargs: dict[str, Any] = {"api_key": config.api_key, "timeout": config.timeout_s}
    if config.base_url:
        kwargs["base_url"] = config.base_url
    # retries belong to the job queue, not the SDK
    kwargs["max_retries"] = 0
    return openai.OpenAI(**kwargs)


def _call_chat(
    *,
    client,
    model: str,
    messages: list[dict[str, str]],
    temperature: float = 0.2,
    max_tokens: int = 2_000,
) -> tuple[str, LLMUsage]:
    """Call chat completions and return (content, usage)."""
    t0 = time.monotonic()
    response = client.chat.completions.create(
        model=model,
        temperature=temperature,
        messages=messages,
        max_tokens=max_tokens,
    )
    elapsed_ms = (time.monotonic() - t0) * 1000

    content = ""
    if response.choices:
        content = response.choices[0].message.content or ""
    usage_data = response.usage
    usage = LLMUsage(
        prompt_tokens=getattr(usage_data, "prompt_tokens", 0) if usage_data else 0,
        completion_tokens=getattr(usage_data, "completion_tokens", 0) if usage_data else 0,
        total_tokens=getattr(usage_data, "total_tokens", 0) if usage_data else 0,
        model=model,
        latency_ms=round(elapsed_ms, 1),
    )
    return content, usage


class OpenAICompatibleGenerator:
    name = "openai"

    def __init__(self, config: ProviderConfig, *, client: Any | None = None) -> None:
        self.config = config
        self._client = client
        self._lock = threading.Lock()
        self.last_usage: LLMUsage | None = None

    def _get_client(self):
        with self._lock:
            if self._client is None:
                self._client = _create_client(self.config)
            return self._client

    def generate(self, prompt: str) -> str:
        openai = _import_openai()
        client = self._get_client()
        messages = [
            {"role": "system", "content": _SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ]
        try:
            content, usage = _call_chat(
                client=client,
                model=self.config.model,
                messages=messages,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        except openai.APITimeoutError as exc:
            logger.error("llm_call_timeout model=%s timeout_s=%s", self.config.model, self.config.timeout_s)
            raise OperationTimeoutError("generative service did not respond in time", code="GENERATIVE_TIMEOUT") from exc
        except openai.APIError as exc:
            status = getattr(exc, "status_code", None)
            logger.exception("llm_call_failed model=%s status=%s error=%s", self.config.model, status, type(exc).__name__)
            raise GenerativeServiceError() from exc
        self.last_usage = usage
        logger.info(
            "llm_call_completed model=%s prompt_tokens=%s completion_tokens=%s latency_ms=%s",
            usage.model,
            usage.prompt_tokens,
            usage.completion_tokens,
            usage.latency_ms,
        )
        return content

    def info(self) -> dict[str, Any]:
        """Current provider configuration (safe for logging, no secrets)."""
        return {
            "provider": self.name,
            "model": self.config.model,
            "base_url": self.config.base_url or "(default)",
            "has_api_key": bool(self.config.api_key),
        }


class MockGenerator:
    name = "mock"

    def generate(self, prompt: str) -> str:
        return mock_generate(prompt)

    def info(self) -> dict[str, Any]:
        return {"provider": self.name, "model": "mock", "base_url": None, "has_api_key": False}


def create_generator(settings: Settings) -> OpenAICompatibleGenerator | MockGenerator:
    if settings.mock_llm_enabled or not settings.llm_api_key:
        logger.info("llm_provider_selected provider=mock")
        return MockGenerator()
    config = ProviderConfig.from_settings(settings)
    logger.info("llm_provider_selected provider=openai model=%s base_url=%s", config.model, config.base_url)
    return OpenAICompatibleGenerator(config)
