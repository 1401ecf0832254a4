#!/usr/bin/env python3
"""
Completion Gateway - Basic Streaming Example

Streams completions through scripted providers, shows rate-limit
rejection, cancellation and the resulting cost ledger. Runs offline.
"""

import asyncio
import logging

from completion_gateway import (
    CompletionRequest,
    Gateway,
    GatewayConfig,
    MockProvider,
    ProviderConfig,
    ProviderTransportError,
    RateLimitExceeded,
)


async def main():
    logging.basicConfig(level=logging.INFO, format="%(name)s %(levelname)s %(message)s")

    print("=" * 60)
    print("Completion Gateway - Basic Streaming Example")
    print("=" * 60)

    providers = [
        MockProvider(
            ProviderConfig(name="openai", type="mock", family="openai"),
            chunks=["The capital ", "of France ", "is Paris."],
            latency_ms=50,
        ),
        MockProvider(
            ProviderConfig(name="limited", type="mock"),
            headers={
                "x-ratelimit-limit-requests": "1",
                "x-ratelimit-remaining-requests": "0",
                "x-ratelimit-reset-requests": "20s",
            },
        ),
        MockProvider(
            ProviderConfig(name="flaky", type="mock"),
            chunks=["one ", "two ", "three ", "four"],
            fail_after=3,
        ),
    ]
    gateway = Gateway(providers, config=GatewayConfig(stall_timeout=5.0))

    request = CompletionRequest(
        model="gpt-4o",
        messages=[{"role": "user", "content": "What is the capital of France?"}],
    )

    # Example 1: Stream chunk by chunk
    print("\n1. Streaming a completion...")
    stream = await gateway.stream(request, attribution_key="team-a")
    async with stream:
        async for chunk in stream:
            if chunk.delta.content:
                print(f"   chunk: {chunk.delta.content!r}")
    print(f"   Provider: {stream.provider}, finish: {stream.finish_reason}, cost: ${stream.cost:.6f}")

    # Example 2: Collected response
    print("\n2. Collected completion...")
    response = await gateway.complete(request, attribution_key="team-b")
    print(f"   Response: {response.content}")
    print(f"   Usage: {response.usage.to_dict()}")

    # Example 3: Provider failure mid-stream
    print("\n3. Provider failure after three chunks...")
    flaky = CompletionRequest(model="gpt-4o", messages=request.messages, provider_override="flaky")
    try:
        await gateway.complete(flaky, attribution_key="team-a")
    except ProviderTransportError as e:
        print(f"   Failed: {e}")

    # Example 4: Cancellation
    print("\n4. Cancelling after the first chunk...")
    stream = await gateway.stream(request, attribution_key="team-a")
    async for chunk in stream:
        print(f"   chunk: {chunk.delta.content!r}, cancelling")
        stream.cancel()
    print(f"   Cancelled: {stream.cancelled}, billed: {stream.cost_entry is not None}")

    # Example 5: Rate limit
    print("\n5. Exhausting the rate limit...")
    limited = CompletionRequest(model="gpt-4o", messages=request.messages, provider_override="limited")
    try:
        for _ in range(2):
            await gateway.complete(limited)
    except RateLimitExceeded as e:
        print(f"   Rejected: {e}")

    print("\n6. Cost ledger totals:")
    for key, totals in gateway.ledger.totals().items():
        print(f"   {key}: {totals.to_dict()}")

    await gateway.aclose()


if __name__ == "__main__":
    asyncio.run(main())
