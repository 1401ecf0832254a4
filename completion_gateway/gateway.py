"""
Main gateway implementation.

Combines routing, rate-limit admission, token counting, streaming relay and
cost accounting.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, List, Optional

from .errors import (
    EncodingLoadError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitExceeded,
    NoProviderError,
    WorkerUnavailableError,
)
from .ledger import CostEntry, CostLedger
from .providers import Provider
from .routing import Router, RoutingStrategy
from .stream import CompletionStream
from .tokenizer_pool import TokenizerPool, TokenizerPoolConfig
from .types import CompletionChunk, CompletionRequest, TokenUsage, join_content

logger = logging.getLogger(__name__)


@dataclass
class Response:
    """Collected result of a completion."""
    content: str
    model: str
    provider: str
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=lambda: TokenUsage.from_counts(0, 0))
    cost: float = 0.0
    latency_ms: float = 0.0

    def to_dict(self) -> dict:
        return {
            "content": self.content,
            "model": self.model,
            "provider": self.provider,
            "finish_reason": self.finish_reason,
            "usage": self.usage.to_dict(),
            "cost": round(self.cost, 6),
            "latency_ms": round(self.latency_ms, 2),
        }


@dataclass
class GatewayConfig:
    """Gateway configuration."""
    stall_timeout: float = 30.0
    queue_when_rate_limited: bool = False
    max_queue_wait: float = 60.0
    tokenizer_queue_threshold: int = 100
    default_attribution_key: str = "anonymous"
    tokenizer: Optional[TokenizerPoolConfig] = None

    def __post_init__(self):
        if self.stall_timeout <= 0:
            raise ValueError("stall_timeout must be positive")
        if self.max_queue_wait < 0:
            raise ValueError("max_queue_wait must be >= 0")
        if self.tokenizer_queue_threshold < 1:
            raise ValueError("tokenizer_queue_threshold must be >= 1")

    def to_dict(self) -> dict:
        return {
            "stall_timeout": self.stall_timeout,
            "queue_when_rate_limited": self.queue_when_rate_limited,
            "max_queue_wait": self.max_queue_wait,
            "tokenizer_queue_threshold": self.tokenizer_queue_threshold,
            "default_attribution_key": self.default_attribution_key,
            "tokenizer": self.tokenizer.to_dict() if self.tokenizer else None,
        }


async def _next_chunk(source: AsyncIterator[CompletionChunk]) -> CompletionChunk:
    return await source.__anext__()


class Gateway:
    """
    Completion gateway over multiple LLM providers.

    Routes each request to one provider with:
    - Model-family routing and explicit provider override
    - Rate-limit admission from provider-reported budgets
    - Prompt token estimation on a tokenizer worker pool
    - Ordered chunk relay with stall detection and cancellation
    - Per-request cost accounting in a CostLedger
    - Metrics collection

    Usage:
        gateway = Gateway([OpenAIProvider(ProviderConfig(name="openai"))])
        stream = await gateway.stream(request, attribution_key="team-a")
        async for chunk in stream:
            ...
    """

    def __init__(
        self,
        providers: Optional[List[Provider]] = None,
        config: Optional[GatewayConfig] = None,
        strategy: Optional[RoutingStrategy] = None,
        ledger: Optional[CostLedger] = None,
        tokenizer_pool: Optional[TokenizerPool] = None,
    ):
        self.config = config or GatewayConfig()
        self.router = Router(providers=providers or [], strategy=strategy)
        self.ledger = ledger if ledger is not None else CostLedger()
        self.tokenizer_pool = tokenizer_pool

        # Metrics
        self.total_requests = 0
        self.rejected_requests = 0
        self.failed_requests = 0
        self.cancelled_requests = 0
        self.completed_requests = 0
        self.total_latency_ms = 0.0
        self.total_cost = 0.0

    def add_provider(self, provider: Provider) -> None:
        """Add a provider to the gateway."""
        self.router.add_provider(provider)

    def remove_provider(self, name: str) -> bool:
        """Remove a provider by name."""
        return self.router.remove_provider(name)

    @property
    def providers(self) -> List[Provider]:
        """Get list of providers from router."""
        return self.router.providers

    async def stream(
        self,
        request: CompletionRequest,
        attribution_key: Optional[str] = None,
    ) -> CompletionStream:
        """
        Admit a request and open its completion stream.

        Args:
            request: Completion request
            attribution_key: Key the request's cost is attributed to

        Returns:
            CompletionStream relaying the provider's chunks in order

        Raises:
            NoProviderError: If no provider can serve the request
            RateLimitExceeded: If the provider's budget does not admit it
        """
        self.total_requests += 1
        key = attribution_key or self.config.default_attribution_key

        try:
            provider = self.router.resolve(request)
            await self._admit(provider, request.model, 0)
            prompt_tokens = await self._count_tokens(provider, request.model, request.prompt_text())
            await self._admit(provider, request.model, prompt_tokens)
        except (NoProviderError, RateLimitExceeded):
            self.rejected_requests += 1
            raise

        logger.info(
            "Dispatching %s request for %s to %s (~%d prompt tokens)",
            key, request.model, provider.name, prompt_tokens,
        )
        stream = CompletionStream(request, provider.name, key)
        stream.attach(self._relay(stream, provider, request, prompt_tokens))
        return stream

    async def complete(
        self,
        request: CompletionRequest,
        attribution_key: Optional[str] = None,
    ) -> Response:
        """
        Send a completion request and collect the whole response.

        Raises:
            NoProviderError: If no provider can serve the request
            RateLimitExceeded: If the provider's budget does not admit it
            ProviderError: If the provider stream fails
        """
        stream = await self.stream(request, attribution_key)
        async with stream:
            chunks = await stream.collect()

        return Response(
            content=join_content(chunks),
            model=request.model,
            provider=stream.provider,
            finish_reason=stream.finish_reason,
            usage=stream.usage or TokenUsage.from_counts(0, 0),
            cost=stream.cost,
            latency_ms=stream.latency_ms,
        )

    async def _admit(self, provider: Provider, model: str, estimated_tokens: int) -> None:
        waited = 0.0
        while True:
            try:
                provider.rate_limits.check(model, estimated_tokens)
                return
            except RateLimitExceeded as e:
                if not self.config.queue_when_rate_limited:
                    raise
                if waited + e.retry_after > self.config.max_queue_wait:
                    raise
                delay = max(e.retry_after, 0.01)
                logger.info(
                    "Queueing request for %s/%s %.2fs until its rate limit resets",
                    provider.name, model, delay,
                )
                await asyncio.sleep(delay)
                waited += delay

    async def _count_tokens(self, provider: Provider, model: str, text: str) -> int:
        if not text:
            return 0

        pool = self.tokenizer_pool
        if pool is not None and not pool.is_closing:
            if pool.queue_depth >= self.config.tokenizer_queue_threshold:
                logger.warning(
                    "Tokenizer queue depth %d over threshold, estimating %s tokens heuristically",
                    pool.queue_depth, model,
                )
            else:
                try:
                    return await pool.count_tokens(text, model)
                except EncodingLoadError as e:
                    logger.warning("%s; estimating tokens heuristically", e)
                except WorkerUnavailableError as e:
                    logger.warning("Tokenizer unavailable (%s); estimating tokens heuristically", e)

        return provider.estimate_usage(model, text).prompt_tokens

    def _bill(
        self,
        stream: CompletionStream,
        provider: Provider,
        usage: TokenUsage,
        partial: bool = False,
    ) -> CostEntry:
        cost = provider.calculate_cost(stream.request.model, usage)
        self.total_cost += cost
        stream.usage = usage
        stream.cost_entry = self.ledger.record(
            attribution_key=stream.attribution_key,
            provider=provider.name,
            model=stream.request.model,
            usage=usage,
            cost=cost,
            partial=partial,
        )
        return stream.cost_entry

    async def _finalize(
        self,
        stream: CompletionStream,
        provider: Provider,
        usage: Optional[TokenUsage],
        prompt_tokens: int,
        content: List[str],
        start_time: float,
    ) -> None:
        if usage is None:
            completion_tokens = await self._count_tokens(
                provider, stream.request.model, "".join(content),
            )
            usage = TokenUsage.from_counts(prompt_tokens, completion_tokens)

        entry = self._bill(stream, provider, usage)
        stream.latency_ms = (time.time() - start_time) * 1000
        self.total_latency_ms += stream.latency_ms
        self.completed_requests += 1
        provider.record_success(stream.latency_ms, usage, entry.cost)

    async def _relay(
        self,
        stream: CompletionStream,
        provider: Provider,
        request: CompletionRequest,
        prompt_tokens: int,
    ) -> AsyncIterator[CompletionChunk]:
        start_time = time.time()
        source = provider.stream_completion(request)
        usage: Optional[TokenUsage] = None
        content: List[str] = []
        billed = False

        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(
                        _next_chunk(source), timeout=self.config.stall_timeout,
                    )
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise ProviderTimeoutError(
                        provider.name,
                        f"No chunk received within {self.config.stall_timeout}s",
                        usage=usage,
                    ) from e

                stream.chunks_received += 1
                if chunk.usage is not None:
                    usage = chunk.usage
                if chunk.delta.content:
                    content.append(chunk.delta.content)
                if chunk.finish_reason is not None and not billed:
                    # Billed before the terminal chunk reaches the consumer
                    stream.finish_reason = chunk.finish_reason
                    await self._finalize(stream, provider, usage, prompt_tokens, content, start_time)
                    billed = True
                yield chunk

            if not billed:
                logger.warning("Provider %s ended %s stream without a finish reason", provider.name, request.model)
                await self._finalize(stream, provider, usage, prompt_tokens, content, start_time)
                billed = True
        except ProviderError as e:
            self.failed_requests += 1
            provider.record_failure(str(e))
            reported = e.usage or usage
            logger.error(
                "Request for %s to %s failed after %d chunks: %s",
                request.model, provider.name, stream.chunks_received, e,
            )
            if reported is not None and not billed:
                self._bill(stream, provider, reported, partial=True)
            raise
        except (asyncio.CancelledError, GeneratorExit):
            if not billed:
                self.cancelled_requests += 1
                logger.info(
                    "Request for %s to %s cancelled after %d chunks",
                    request.model, provider.name, stream.chunks_received,
                )
                if usage is not None:
                    self._bill(stream, provider, usage, partial=True)
            raise
        except Exception as e:
            self.failed_requests += 1
            provider.record_failure(str(e))
            logger.exception("Unexpected error relaying %s stream from %s", request.model, provider.name)
            raise
        finally:
            await source.aclose()

    def get_metrics(self) -> dict:
        """Get gateway metrics."""
        avg_latency = 0.0
        if self.completed_requests > 0:
            avg_latency = self.total_latency_ms / self.completed_requests

        result = {
            "total_requests": self.total_requests,
            "completed_requests": self.completed_requests,
            "rejected_requests": self.rejected_requests,
            "failed_requests": self.failed_requests,
            "cancelled_requests": self.cancelled_requests,
            "avg_latency_ms": round(avg_latency, 2),
            "total_cost": round(self.total_cost, 6),
            "providers": self.router.get_provider_metrics(),
        }

        if self.tokenizer_pool is not None:
            result["tokenizer"] = self.tokenizer_pool.stats()

        return result

    def get_provider_status(self) -> dict:
        """Get status of all providers."""
        return {
            p.name: {
                "status": p.status.value,
                "family": p.provider_family,
                "metrics": p.metrics.to_dict(),
                "rate_limits": p.rate_limits.snapshot(),
            }
            for p in self.providers
        }

    async def aclose(self) -> None:
        """Close provider clients and shut the tokenizer pool down."""
        for provider in self.providers:
            await provider.aclose()
        if self.tokenizer_pool is not None:
            await self.tokenizer_pool.shutdown()

    async def __aenter__(self) -> "Gateway":
        if self.tokenizer_pool is not None:
            await self.tokenizer_pool.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()


def create_gateway(
    providers: Optional[List[Provider]] = None,
    strategy: Optional[RoutingStrategy] = None,
    tokenizer: Optional[TokenizerPoolConfig] = None,
    ledger: Optional[CostLedger] = None,
    **config_kwargs,
) -> Gateway:
    """
    Create a gateway with common defaults.

    Args:
        providers: List of providers
        strategy: Routing strategy
        tokenizer: Tokenizer pool configuration; no pool when None
        ledger: Cost ledger to record into
        **config_kwargs: Further GatewayConfig fields

    Returns:
        Configured Gateway instance. Start its pool with
        ``async with gateway`` before streaming.
    """
    config = GatewayConfig(tokenizer=tokenizer, **config_kwargs)
    pool = TokenizerPool(tokenizer) if tokenizer is not None else None
    return Gateway(
        providers=providers or [],
        config=config,
        strategy=strategy,
        ledger=ledger,
        tokenizer_pool=pool,
    )
