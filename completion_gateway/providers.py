"""
LLM provider adapters.

Each adapter exposes the same streaming contract: stream_completion()
yields CompletionChunks in provider order and raises a ProviderError as the
terminal error event.
"""

import asyncio
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Type

import httpx

from .errors import (
    ProviderError,
    ProviderSemanticError,
    ProviderTimeoutError,
    ProviderTransportError,
)
from .pricing import ModelPricing, calculate_cost, get_pricing
from .rate_limiter import RateLimit, RateLimitTracker
from .types import CompletionChunk, CompletionRequest, Delta, TokenUsage

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4


class ProviderStatus(Enum):
    """Provider health status."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


@dataclass
class ProviderConfig:
    """Configuration for an LLM provider."""
    name: str
    type: str = "openai"
    family: Optional[str] = None
    api_key: str = ""
    api_key_env: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0
    cost_per_1k_input: Optional[float] = None
    cost_per_1k_output: Optional[float] = None
    models: List[str] = field(default_factory=list)
    priority: int = 0  # Higher = preferred
    max_tokens: int = 4096
    options: Dict[str, Any] = field(default_factory=dict)

    def resolve_api_key(self, default_env: Optional[str] = None) -> str:
        """Explicit key first, then the configured (or default) env var."""
        if self.api_key:
            return self.api_key
        env = self.api_key_env or default_env
        return os.environ.get(env, "") if env else ""

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "type": self.type,
            "family": self.family,
            "base_url": self.base_url,
            "timeout": self.timeout,
            "cost_per_1k_input": self.cost_per_1k_input,
            "cost_per_1k_output": self.cost_per_1k_output,
            "models": self.models,
            "priority": self.priority,
            "max_tokens": self.max_tokens,
        }


@dataclass
class ProviderMetrics:
    """Metrics for a provider."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_latency_ms: float = 0.0
    total_tokens_input: int = 0
    total_tokens_output: int = 0
    total_cost: float = 0.0
    last_request_time: Optional[float] = None
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    @property
    def avg_latency_ms(self) -> float:
        if self.successful_requests == 0:
            return 0.0
        return self.total_latency_ms / self.successful_requests

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 1.0
        return self.successful_requests / self.total_requests

    def to_dict(self) -> dict:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "avg_latency_ms": round(self.avg_latency_ms, 2),
            "success_rate": round(self.success_rate, 4),
            "total_tokens_input": self.total_tokens_input,
            "total_tokens_output": self.total_tokens_output,
            "total_cost": round(self.total_cost, 6),
            "consecutive_failures": self.consecutive_failures,
        }


class Provider(ABC):
    """Abstract base class for LLM provider adapters."""

    family = "local"

    def __init__(
        self,
        config: ProviderConfig,
        rate_limits: Optional[RateLimitTracker] = None,
    ):
        self.config = config
        self.metrics = ProviderMetrics()
        self.rate_limits = rate_limits or RateLimitTracker(
            config.name, max_tokens=config.max_tokens,
        )

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def provider_family(self) -> str:
        return self.config.family or self.family

    @property
    def status(self) -> ProviderStatus:
        # Mark as unhealthy after consecutive failures
        if self.metrics.consecutive_failures >= 3:
            return ProviderStatus.UNHEALTHY
        elif self.metrics.consecutive_failures >= 1:
            return ProviderStatus.DEGRADED
        return ProviderStatus.HEALTHY

    @abstractmethod
    def stream_completion(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        """
        Stream a completion from the provider.

        Args:
            request: The completion request

        Returns:
            Async iterator of chunks in provider order. Transport and
            provider errors are raised from iteration, never from the call
            itself. Closing the iterator releases the connection.
        """
        pass

    def current_rate_limit(self, model: str) -> RateLimit:
        """Current budget for a model; defaults while nothing is tracked."""
        limit = self.rate_limits.get(model)
        if limit is None:
            return RateLimit(max_tokens=self.config.max_tokens)
        return limit

    def output_token_cap(self, request: CompletionRequest) -> Optional[int]:
        """Requested max_tokens capped to the model's rate-limit ceiling."""
        if request.max_tokens is None:
            return None
        return min(request.max_tokens, self.current_rate_limit(request.model).max_tokens)

    def estimate_usage(self, model: str, prompt: str) -> TokenUsage:
        """Cheap local prompt-token estimate (~4 chars per token)."""
        tokens = 0
        if prompt:
            tokens = max(1, len(prompt) // CHARS_PER_TOKEN)
        return TokenUsage.from_counts(tokens, 0)

    def supports_model(self, model: str) -> bool:
        """Check if provider supports the given model."""
        if not self.config.models:
            return True  # No restrictions
        return model in self.config.models

    def calculate_cost(self, model: str, usage: TokenUsage) -> float:
        """Cost of a request; config prices override the pricing table."""
        if self.config.cost_per_1k_input is None and self.config.cost_per_1k_output is None:
            return calculate_cost(model, usage)
        fallback = get_pricing(model) or ModelPricing(prompt=0.0, completion=0.0)
        input_rate = self.config.cost_per_1k_input
        output_rate = self.config.cost_per_1k_output
        if input_rate is None:
            input_rate = fallback.prompt
        if output_rate is None:
            output_rate = fallback.completion
        return (usage.prompt_tokens * input_rate + usage.completion_tokens * output_rate) / 1000

    def record_success(self, latency_ms: float, usage: TokenUsage, cost: float) -> None:
        """Record a successful request."""
        self.metrics.total_requests += 1
        self.metrics.successful_requests += 1
        self.metrics.total_latency_ms += latency_ms
        self.metrics.total_tokens_input += usage.prompt_tokens
        self.metrics.total_tokens_output += usage.completion_tokens
        self.metrics.total_cost += cost
        self.metrics.last_request_time = time.time()
        self.metrics.consecutive_failures = 0

    def record_failure(self, error: str) -> None:
        """Record a failed request."""
        self.metrics.total_requests += 1
        self.metrics.failed_requests += 1
        self.metrics.last_error = error
        self.metrics.consecutive_failures += 1
        self.metrics.last_request_time = time.time()

    async def aclose(self) -> None:
        """Release provider resources."""
        pass


def _error_message(body: str) -> str:
    """Pull the provider's error message out of a JSON error body."""
    try:
        data = json.loads(body)
    except ValueError:
        return body.strip() or "empty response body"
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str):
        return error
    return body.strip()


class HTTPProvider(Provider):
    """
    Base for adapters streaming server-sent events over httpx.

    Subclasses build the URL, headers and payload, and turn each SSE data
    payload into chunks.
    """

    default_api_key_env: Optional[str] = None

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        rate_limits: Optional[RateLimitTracker] = None,
    ):
        super().__init__(config, rate_limits)
        self.api_key = config.resolve_api_key(self.default_api_key_env)
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    def build_url(self, request: CompletionRequest) -> str:
        pass

    @abstractmethod
    def build_headers(self) -> Dict[str, str]:
        pass

    @abstractmethod
    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        pass

    @abstractmethod
    def parse_event(self, data: Dict[str, Any], state: Dict[str, Any]) -> List[CompletionChunk]:
        """Turn one decoded SSE payload into chunks. ``state`` is per stream."""
        pass

    def finish(self, state: Dict[str, Any]) -> List[CompletionChunk]:
        """Chunks to emit once the event stream ends (the terminal chunk)."""
        return []

    def status_error(self, status_code: int, body: str) -> ProviderError:
        message = _error_message(body)
        if status_code >= 500 or status_code == 408:
            return ProviderTransportError(self.name, message, status_code=status_code)
        return ProviderSemanticError(self.name, message, status_code=status_code)

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        state: Dict[str, Any] = {"usage": None, "finish_reason": None}
        logger.info(
            "Making request to %s/%s with %d messages",
            self.name, request.model, len(request.messages),
        )
        try:
            async with self.client.stream(
                "POST",
                self.build_url(request),
                json=self.build_payload(request),
                headers=self.build_headers(),
            ) as response:
                self.rate_limits.update(request.model, response.headers)

                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise self.status_error(response.status_code, body)

                data_lines: List[str] = []
                async for line in response.aiter_lines():
                    if line.startswith("data:"):
                        data_lines.append(line[5:].strip())
                        continue
                    if line or not data_lines:
                        continue
                    payload = "\n".join(data_lines)
                    data_lines = []
                    if payload == "[DONE]":
                        break
                    for chunk in self.parse_event(self._decode(payload), state):
                        yield chunk
                else:
                    if data_lines and data_lines != ["[DONE]"]:
                        for chunk in self.parse_event(self._decode("\n".join(data_lines)), state):
                            yield chunk

                for chunk in self.finish(state):
                    yield chunk
        except ProviderError as e:
            if e.usage is None:
                e.usage = state["usage"]
            logger.error("Provider %s stream failed: %s", self.name, e)
            raise
        except httpx.TimeoutException as e:
            logger.error("Provider %s timed out: %s", self.name, e)
            raise ProviderTimeoutError(
                self.name, f"Request timed out: {e}", usage=state["usage"],
            ) from e
        except httpx.HTTPError as e:
            logger.error("Provider %s transport error: %s", self.name, e)
            raise ProviderTransportError(
                self.name, str(e) or type(e).__name__, usage=state["usage"],
            ) from e

    def _decode(self, payload: str) -> Dict[str, Any]:
        try:
            data = json.loads(payload)
        except ValueError as e:
            raise ProviderTransportError(self.name, f"Malformed stream event: {payload[:200]!r}") from e
        if not isinstance(data, dict):
            raise ProviderTransportError(self.name, f"Unexpected stream event: {payload[:200]!r}")
        if data.get("error"):
            raise ProviderSemanticError(self.name, _error_message(payload))
        return data


class OpenAIProvider(HTTPProvider):
    """OpenAI (and OpenAI-compatible) chat completions provider."""

    family = "openai"
    default_api_key_env = "OPENAI_API_KEY"

    def build_url(self, request: CompletionRequest) -> str:
        base_url = (self.config.base_url or "https://api.openai.com/v1").rstrip("/")
        return f"{base_url}/chat/completions"

    def build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": request.model,
            "messages": [m.to_dict() for m in request.messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        max_tokens = self.output_token_cap(request)
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    def parse_event(self, data: Dict[str, Any], state: Dict[str, Any]) -> List[CompletionChunk]:
        if data.get("usage"):
            state["usage"] = TokenUsage.from_openai(data["usage"])

        chunks = []
        for choice in (data.get("choices") or [])[:1]:
            delta = choice.get("delta") or {}
            if choice.get("finish_reason"):
                # Held back until the trailing usage event arrives
                state["finish_reason"] = choice["finish_reason"]
                state["finish_delta"] = Delta(role=delta.get("role"), content=delta.get("content"))
                continue
            if delta.get("role") is None and delta.get("content") is None:
                continue
            chunks.append(CompletionChunk(delta=Delta(role=delta.get("role"), content=delta.get("content"))))
        return chunks

    def finish(self, state: Dict[str, Any]) -> List[CompletionChunk]:
        if state["finish_reason"] is None:
            raise ProviderTransportError(self.name, "Stream ended before a finish reason was received")
        return [CompletionChunk(
            delta=state.get("finish_delta") or Delta(),
            finish_reason=state["finish_reason"],
            usage=state["usage"],
        )]


_GEMINI_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
    "BLOCKLIST": "content_filter",
    "PROHIBITED_CONTENT": "content_filter",
    "SPII": "content_filter",
}


class VertexAIProvider(HTTPProvider):
    """
    Google Vertex AI (Gemini) provider using streamGenerateContent.

    Requires ``project`` in config options; ``location`` defaults to
    us-central1. Vertex sends no rate-limit headers, so tracked budgets only
    decay toward their reset.
    """

    family = "vertexai"
    default_api_key_env = "VERTEX_ACCESS_TOKEN"

    def build_url(self, request: CompletionRequest) -> str:
        location = self.config.options.get("location", "us-central1")
        project = self.config.options.get("project")
        if not project:
            raise ProviderSemanticError(self.name, "Vertex AI provider requires a 'project' option")
        base_url = (
            self.config.base_url or f"https://{location}-aiplatform.googleapis.com/v1"
        ).rstrip("/")
        return (
            f"{base_url}/projects/{project}/locations/{location}"
            f"/publishers/google/models/{request.model}:streamGenerateContent?alt=sse"
        )

    def build_headers(self) -> Dict[str, str]:
        headers = {"Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def build_payload(self, request: CompletionRequest) -> Dict[str, Any]:
        contents = []
        system_parts = []
        for message in request.messages:
            if message.role == "system":
                system_parts.append({"text": message.content})
                continue
            role = "model" if message.role == "assistant" else "user"
            contents.append({"role": role, "parts": [{"text": message.content}]})

        payload: Dict[str, Any] = {"contents": contents}
        if system_parts:
            payload["systemInstruction"] = {"parts": system_parts}
        generation_config: Dict[str, Any] = {}
        max_tokens = self.output_token_cap(request)
        if max_tokens is not None:
            generation_config["maxOutputTokens"] = max_tokens
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def parse_event(self, data: Dict[str, Any], state: Dict[str, Any]) -> List[CompletionChunk]:
        metadata = data.get("usageMetadata")
        if metadata:
            state["usage"] = TokenUsage.from_counts(
                int(metadata.get("promptTokenCount", 0)),
                int(metadata.get("candidatesTokenCount", 0)),
            )

        chunks = []
        for candidate in (data.get("candidates") or [])[:1]:
            parts = (candidate.get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts)
            if text:
                role = None if state.get("role_sent") else "assistant"
                state["role_sent"] = True
                chunks.append(CompletionChunk(delta=Delta(role=role, content=text)))
            reason = candidate.get("finishReason")
            if reason:
                state["finish_reason"] = _GEMINI_FINISH_REASONS.get(reason, reason.lower())
        return chunks

    def finish(self, state: Dict[str, Any]) -> List[CompletionChunk]:
        if state["finish_reason"] is None:
            raise ProviderTransportError(self.name, "Stream ended before a finish reason was received")
        return [CompletionChunk(finish_reason=state["finish_reason"], usage=state["usage"])]


class MockProvider(Provider):
    """
    Scripted provider for tests and examples.

    Args:
        config: Provider configuration
        response: Response text, emitted as a single chunk unless
            ``chunks`` is given
        chunks: Content fragments to emit in order
        fail: Fail before emitting anything
        fail_after: Fail after emitting this many content chunks
        error: "transport" or "semantic"
        stall_after: Stop producing chunks (hang) after this many
        latency_ms: Delay before each chunk
        headers: Rate-limit headers reported at stream start
        report_usage: Attach usage to the terminal chunk
        partial_usage: Provider-reported usage attached to a failure
    """

    family = "mock"

    def __init__(
        self,
        config: ProviderConfig,
        response: Optional[str] = None,
        chunks: Optional[List[str]] = None,
        fail: bool = False,
        fail_after: Optional[int] = None,
        error: str = "transport",
        stall_after: Optional[int] = None,
        latency_ms: float = 0,
        headers: Optional[Mapping[str, str]] = None,
        report_usage: bool = True,
        partial_usage: Optional[TokenUsage] = None,
        rate_limits: Optional[RateLimitTracker] = None,
    ):
        super().__init__(config, rate_limits)
        self.chunks = list(chunks) if chunks is not None else [response or "Mock response"]
        self.fail_after = 0 if fail else fail_after
        self.error = error
        self.stall_after = stall_after
        self.mock_latency_ms = latency_ms
        self.headers = dict(headers) if headers else None
        self.report_usage = report_usage
        self.partial_usage = partial_usage
        self.requests: List[CompletionRequest] = []
        self.open_streams = 0
        self.closed_streams = 0

    def _failure(self) -> ProviderError:
        error_class: Type[ProviderError] = ProviderTransportError
        if self.error == "semantic":
            error_class = ProviderSemanticError
        return error_class(self.name, "Mock failure", usage=self.partial_usage)

    async def stream_completion(self, request: CompletionRequest) -> AsyncIterator[CompletionChunk]:
        self.requests.append(request)
        self.open_streams += 1
        try:
            self.rate_limits.update(request.model, self.headers)

            for i, text in enumerate(self.chunks):
                if self.fail_after is not None and i >= self.fail_after:
                    raise self._failure()
                if self.stall_after is not None and i >= self.stall_after:
                    await asyncio.Event().wait()
                if self.mock_latency_ms > 0:
                    await asyncio.sleep(self.mock_latency_ms / 1000)
                yield CompletionChunk(delta=Delta(role="assistant" if i == 0 else None, content=text))

            if self.fail_after is not None:
                raise self._failure()

            usage = None
            if self.report_usage:
                prompt = self.estimate_usage(request.model, request.prompt_text()).prompt_tokens
                completion = self.estimate_usage(request.model, "".join(self.chunks)).prompt_tokens
                usage = TokenUsage.from_counts(prompt, completion)
            yield CompletionChunk(finish_reason="stop", usage=usage)
        finally:
            self.open_streams -= 1
            self.closed_streams += 1


PROVIDER_TYPES: Dict[str, Type[Provider]] = {
    "openai": OpenAIProvider,
    "vertexai": VertexAIProvider,
    "mock": MockProvider,
}


def create_provider(config: ProviderConfig, **kwargs) -> Provider:
    """
    Create a provider adapter from its configuration.

    Raises:
        ValueError: If the provider type is not implemented
    """
    provider_class = PROVIDER_TYPES.get(config.type)
    if provider_class is None:
        raise ValueError(f"Provider type {config.type} is not implemented")
    return provider_class(config, **kwargs)
