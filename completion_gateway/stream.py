"""
Consumer handle for a streamed completion.
"""

import asyncio
from typing import AsyncGenerator, List, Optional

from .ledger import CostEntry
from .types import CompletionChunk, CompletionRequest, TokenUsage


class CompletionStream:
    """
    Lazy, finite, non-restartable stream of CompletionChunks for one request.

    Iterate with ``async for``. The stream ends after the terminal chunk or
    raises the provider error that terminated it. ``cancel()`` may be called
    from any coroutine; the pending chunk wait is abandoned, the provider
    connection is closed and iteration ends without a further chunk.

    After iteration, ``usage``, ``finish_reason`` and ``cost_entry``
    describe the outcome (``cost_entry`` is None when nothing was billed).
    """

    def __init__(self, request: CompletionRequest, provider: str, attribution_key: str):
        self.request = request
        self.provider = provider
        self.attribution_key = attribution_key
        self.usage: Optional[TokenUsage] = None
        self.finish_reason: Optional[str] = None
        self.cost_entry: Optional[CostEntry] = None
        self.latency_ms = 0.0
        self.chunks_received = 0
        self._source: Optional[AsyncGenerator[CompletionChunk, None]] = None
        self._cancel = asyncio.Event()
        self._done = False

    def attach(self, source: AsyncGenerator[CompletionChunk, None]) -> None:
        if self._source is not None:
            raise RuntimeError("Stream source already attached")
        self._source = source

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    @property
    def done(self) -> bool:
        return self._done

    @property
    def cost(self) -> float:
        return self.cost_entry.cost if self.cost_entry else 0.0

    def cancel(self) -> None:
        """Request cancellation of the in-flight completion."""
        self._cancel.set()

    def __aiter__(self) -> "CompletionStream":
        return self

    async def __anext__(self) -> CompletionChunk:
        if self._done:
            raise StopAsyncIteration
        if self._cancel.is_set():
            await self.aclose()
            raise StopAsyncIteration

        pull = asyncio.ensure_future(self._pull())
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({pull, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # The consuming task itself was cancelled
            self._done = True
            waiter.cancel()
            pull.cancel()
            await asyncio.wait({pull})
            raise

        if pull in done:
            waiter.cancel()
            try:
                return pull.result()
            except BaseException:
                self._done = True
                raise

        self._done = True
        pull.cancel()
        await asyncio.wait({pull})
        raise StopAsyncIteration

    async def aclose(self) -> None:
        """Cancel if still running and release the provider stream."""
        self._cancel.set()
        self._done = True
        if self._source is not None:
            await self._source.aclose()

    async def collect(self) -> List[CompletionChunk]:
        """Drain the stream into a list."""
        return [chunk async for chunk in self]

    async def __aenter__(self) -> "CompletionStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _pull(self) -> CompletionChunk:
        return await self._source.__anext__()
