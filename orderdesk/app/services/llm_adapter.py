"""
Cloud-Agnostic LLM Adapter.

OrderDesk does not lock into any AI vendor. This module provides the chat
completion capability used by the row normalizer and the conversation
planner: an ordered list of {role, content} messages in, free-form text out.
Callers own the JSON contract and its parse failures.

Every call carries a bounded timeout and passes through a circuit breaker.
Timeouts, an open circuit and provider 429/5xx answers surface as
TransientError; other provider rejections as ModelRequestError.
"""
import hashlib
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import List, Literal, Optional

import httpx
from google.genai import errors as genai_errors
from pydantic import BaseModel

from orderdesk.app.core.config import Settings
from orderdesk.app.core.exceptions import ConfigurationError, ModelRequestError, TransientError
from orderdesk.app.core.logging import get_logger
from orderdesk.app.core.resilience import CircuitBreaker, with_timeout

logger = get_logger(__name__)


def provider_error(what: str, status_code: Optional[int], message: str) -> Exception:
    """
    Map a provider HTTP status onto the error taxonomy: throttling (429),
    server-side failures (5xx) and unknown codes are transient, any other
    rejection is a ModelRequestError.
    """
    if not status_code or status_code == 429 or status_code >= 500:
        return TransientError(f"{what} unavailable (HTTP {status_code}): {message}")
    return ModelRequestError(f"{what} rejected the request (HTTP {status_code}): {message}", status_code)


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    """Standardised response from any LLM adapter."""
    text: str
    model_version: str
    prompt_hash: str
    timestamp: datetime
    token_count: Optional[int] = None
    provider: str  # "gemini", "on-prem"


class LLMAdapterConfig(BaseModel):
    """Configuration for an LLM adapter instance."""
    provider: str
    model_name: str
    api_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    max_tokens: int = 1024
    temperature: float = 0.2
    timeout_seconds: float = 45.0


class LLMAdapter(ABC):
    """Abstract base class for LLM adapters."""

    def __init__(self, config: LLMAdapterConfig, breaker: Optional[CircuitBreaker] = None):
        self.config = config
        self.breaker = breaker or CircuitBreaker(failure_threshold=3, recovery_timeout=60)

    async def chat(
        self,
        messages: List[ChatMessage],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> LLMResponse:
        """Send the conversation to the model under the configured deadline."""
        return await self.breaker.call(
            self._timed_chat,
            messages,
            temperature if temperature is not None else self.config.temperature,
            max_tokens or self.config.max_tokens,
        )

    async def _timed_chat(self, messages: List[ChatMessage], temperature: float, max_tokens: int) -> LLMResponse:
        what = f"llm:{self.model_version}"
        try:
            return await with_timeout(
                self._chat(messages, temperature, max_tokens),
                self.config.timeout_seconds,
                what,
            )
        except genai_errors.APIError as e:
            raise provider_error(what, e.code, getattr(e, "message", None) or str(e)) from e
        except httpx.HTTPStatusError as e:
            raise provider_error(what, e.response.status_code, str(e)) from e

    @abstractmethod
    async def _chat(self, messages: List[ChatMessage], temperature: float, max_tokens: int) -> LLMResponse:
        ...

    def compute_prompt_hash(self, messages: List[ChatMessage]) -> str:
        """Compute a SHA-256 hash of the prompt for audit logging."""
        joined = "\n".join(f"{m.role}:{m.content}" for m in messages)
        return hashlib.sha256(joined.encode()).hexdigest()[:16]

    @property
    def model_version(self) -> str:
        return f"{self.config.provider}/{self.config.model_name}"


class GeminiAdapter(LLMAdapter):
    """Google Gemini implementation."""

    def __init__(self, config: LLMAdapterConfig, breaker: Optional[CircuitBreaker] = None):
        super().__init__(config, breaker)
        from google import genai
        self._client = genai.Client(api_key=config.api_key)

    async def _chat(self, messages: List[ChatMessage], temperature: float, max_tokens: int) -> LLMResponse:
        system = "\n".join(m.content for m in messages if m.role == "system")
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
            if m.role != "system"
        ]
        response = await self._client.aio.models.generate_content(
            model=self.config.model_name,
            contents=contents,
            config={
                "system_instruction": system or None,
                "temperature": temperature,
                "max_output_tokens": max_tokens,
            },
        )
        return LLMResponse(
            text=response.text if response.text else "",
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(messages),
            timestamp=datetime.now(timezone.utc),
            provider="gemini",
        )


class OnPremAdapter(LLMAdapter):
    """Adapter for on-premises LLM (vLLM, Ollama, TGI) speaking the OpenAI chat API."""

    def __init__(
        self,
        config: LLMAdapterConfig,
        breaker: Optional[CircuitBreaker] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(config, breaker)
        self._http = http_client

    async def _chat(self, messages: List[ChatMessage], temperature: float, max_tokens: int) -> LLMResponse:
        payload = {
            "model": self.config.model_name,
            "messages": [m.model_dump() for m in messages],
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": False,
        }
        url = f"{self.config.endpoint_url}/v1/chat/completions"
        if self._http is not None:
            resp = await self._http.post(url, json=payload, timeout=self.config.timeout_seconds)
        else:
            async with httpx.AsyncClient() as client:
                resp = await client.post(url, json=payload, timeout=self.config.timeout_seconds)
        resp.raise_for_status()
        data = resp.json()
        choice = (data.get("choices") or [{}])[0]
        usage = data.get("usage") or {}
        return LLMResponse(
            text=(choice.get("message") or {}).get("content", "") or "",
            model_version=self.model_version,
            prompt_hash=self.compute_prompt_hash(messages),
            timestamp=datetime.now(timezone.utc),
            token_count=usage.get("total_tokens"),
            provider="on-prem",
        )


def get_adapter(settings: Settings) -> LLMAdapter:
    """Factory function. Returns the adapter selected by settings.llm_provider."""
    if settings.llm_provider == "gemini":
        if not settings.gemini_api_key:
            raise ConfigurationError("GEMINI_API_KEY is required when LLM_PROVIDER=gemini")
        return GeminiAdapter(LLMAdapterConfig(
            provider="gemini",
            model_name=settings.gemini_model,
            api_key=settings.gemini_api_key,
            timeout_seconds=settings.llm_timeout_seconds,
        ))
    elif settings.llm_provider == "on-prem":
        return OnPremAdapter(LLMAdapterConfig(
            provider="on-prem",
            model_name=settings.onprem_llm_model,
            endpoint_url=settings.onprem_llm_url,
            timeout_seconds=settings.llm_timeout_seconds,
        ))
    else:
        raise ConfigurationError(f"Unknown LLM provider: {settings.llm_provider}")
