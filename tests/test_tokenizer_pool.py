"""Tests for completion_gateway.tokenizer_pool module."""

import asyncio
import logging
import os
import signal

import pytest

import fake_tokenizer
from completion_gateway.errors import EncodingLoadError, WorkerUnavailableError
from completion_gateway.tokenizer_pool import TokenizerPool, TokenizerPoolConfig


def thread_pool(loader=None, **kwargs) -> TokenizerPool:
    config = TokenizerPoolConfig(mode="thread", **{"size": 2, **kwargs})
    return TokenizerPool(config, loader=loader or fake_tokenizer.CountingLoader())


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class TestTokenizerPoolConfig:
    def test_defaults(self):
        config = TokenizerPoolConfig()
        assert config.size == 4
        assert config.mode == "process"
        assert config.task_timeout == 30.0
        assert config.max_tasks_per_worker == 1000

    def test_invalid(self):
        with pytest.raises(ValueError):
            TokenizerPoolConfig(size=0)
        with pytest.raises(ValueError):
            TokenizerPoolConfig(mode="fiber")

    def test_to_dict(self):
        d = TokenizerPoolConfig(size=2).to_dict()
        assert d["size"] == 2


class TestTokenizerPool:
    @pytest.mark.asyncio
    async def test_count_tokens(self):
        async with thread_pool() as pool:
            assert await pool.count_tokens("one two three", "gpt-4o") == 3

    @pytest.mark.asyncio
    async def test_submit_before_start(self):
        pool = thread_pool()
        with pytest.raises(WorkerUnavailableError):
            pool.submit("hello", "gpt-4o")

    @pytest.mark.asyncio
    async def test_rejects_empty_text(self):
        async with thread_pool() as pool:
            with pytest.raises(ValueError):
                pool.submit("", "gpt-4o")

    @pytest.mark.asyncio
    async def test_encoding_loaded_once_per_worker(self):
        loader = fake_tokenizer.CountingLoader()
        async with thread_pool(loader, size=2) as pool:
            counts = await asyncio.gather(*(
                pool.count_tokens("a b c", "gpt-4o") for _ in range(50)
            ))

        assert counts == [3] * 50
        assert loader.loads["gpt-4o"] <= 2

    @pytest.mark.asyncio
    async def test_results_correlated_by_id(self):
        texts = [" ".join(["w"] * n) for n in range(1, 41)]
        async with thread_pool(size=3) as pool:
            futures = [pool.submit(text, "gpt-4o") for text in texts]
            counts = await asyncio.gather(*futures)
            stats = pool.stats()

        assert counts == list(range(1, 41))
        assert stats["tasks_completed"] == 40
        assert stats["queue_depth"] == 0

    @pytest.mark.asyncio
    async def test_least_loaded_dispatch(self):
        loader = fake_tokenizer.CountingLoader()
        async with thread_pool(loader, size=2) as pool:
            futures = [pool.submit("a", "slow"), pool.submit("b", "slow")]
            assert [w["in_flight"] for w in pool.stats()["workers"]] == [1, 1]
            loader.release()
            await asyncio.gather(*futures)

    @pytest.mark.asyncio
    async def test_encoding_error(self):
        async with thread_pool() as pool:
            with pytest.raises(EncodingLoadError) as exc_info:
                await pool.count_tokens("hello", "unknown-model")
            assert exc_info.value.model == "unknown-model"
            # The worker survives
            assert await pool.count_tokens("hello", "gpt-4o") == 1

    @pytest.mark.asyncio
    async def test_unknown_result_id_discarded(self, caplog):
        async with thread_pool(size=1) as pool:
            with caplog.at_level(logging.WARNING, logger="completion_gateway.tokenizer_pool"):
                pool._workers[0].results.put({"id": 999999, "count": 5, "error": None})
                await wait_until(lambda: "unknown task id" in caplog.text)

            assert await pool.count_tokens("a b", "gpt-4o") == 2
            assert pool.stats()["tasks_completed"] == 1

    @pytest.mark.asyncio
    async def test_cancelled_task_result_dropped(self):
        loader = fake_tokenizer.CountingLoader()
        async with thread_pool(loader, size=1) as pool:
            future = pool.submit("a b", "slow")
            future.cancel()
            loader.release()

            await wait_until(lambda: pool.queue_depth == 0)
            assert await pool.count_tokens("a b c", "gpt-4o") == 3

    @pytest.mark.asyncio
    async def test_queue_depth(self):
        loader = fake_tokenizer.CountingLoader()
        async with thread_pool(loader, size=1) as pool:
            futures = [pool.submit("x", "slow") for _ in range(3)]
            assert pool.queue_depth == 3
            loader.release()
            await asyncio.gather(*futures)
            assert pool.queue_depth == 0

    @pytest.mark.asyncio
    async def test_task_timeout_restarts_worker(self):
        loader = fake_tokenizer.CountingLoader()
        async with thread_pool(loader, size=1, task_timeout=0.2) as pool:
            future = pool.submit("a", "slow")
            with pytest.raises(WorkerUnavailableError):
                await future
            assert pool.stats()["restarts"] == 1

            assert await pool.count_tokens("a b", "gpt-4o") == 2
            loader.release()

    @pytest.mark.asyncio
    async def test_exited_worker_replaced(self):
        async with thread_pool(size=2) as pool:
            first_worker = pool._workers[0]
            first_worker.tasks.put(None)

            await wait_until(lambda: pool.stats()["restarts"] == 1)
            assert first_worker not in pool._workers
            assert pool.stats()["live_workers"] == 2
            assert await pool.count_tokens("a b", "gpt-4o") == 2

    @pytest.mark.asyncio
    async def test_worker_recycled_after_max_tasks(self):
        async with thread_pool(size=1, max_tasks_per_worker=3) as pool:
            for _ in range(5):
                await pool.count_tokens("a", "gpt-4o")
            assert pool.stats()["workers"][0]["tasks_processed"] == 2
            assert pool.stats()["restarts"] == 0

    @pytest.mark.asyncio
    async def test_shutdown_fails_pending_and_rejects_new(self):
        loader = fake_tokenizer.CountingLoader()
        pool = thread_pool(loader, size=1)
        await pool.start()

        future = pool.submit("a", "slow")
        shutdown = asyncio.ensure_future(pool.shutdown(timeout=2))
        await asyncio.sleep(0)

        with pytest.raises(WorkerUnavailableError):
            await future
        with pytest.raises(WorkerUnavailableError):
            pool.submit("a", "gpt-4o")

        loader.release()
        await shutdown
        assert pool.is_closing
        assert pool.stats()["live_workers"] == 0

    @pytest.mark.asyncio
    async def test_count_tokens_after_shutdown(self):
        pool = thread_pool()
        await pool.start()
        await pool.shutdown()
        with pytest.raises(WorkerUnavailableError):
            await pool.count_tokens("a", "gpt-4o")


class TestProcessPool:
    @pytest.mark.asyncio
    async def test_counts_in_worker_process(self):
        config = TokenizerPoolConfig(size=1, mode="process")
        async with TokenizerPool(config, loader=fake_tokenizer.load) as pool:
            assert await pool.count_tokens("one two three four", "gpt-4o") == 4
            assert pool.stats()["workers"][0]["pid"] not in (None, os.getpid())
        assert pool.stats()["live_workers"] == 0

    @pytest.mark.asyncio
    async def test_killed_process_fails_only_its_tasks(self):
        config = TokenizerPoolConfig(size=1, mode="process", shutdown_timeout=1.0)
        async with TokenizerPool(config, loader=fake_tokenizer.load) as pool:
            pid = pool.stats()["workers"][0]["pid"]
            future = pool.submit("a", "sleepy")
            os.kill(pid, signal.SIGKILL)

            with pytest.raises(WorkerUnavailableError):
                await asyncio.wait_for(future, timeout=10)

            assert pool.stats()["restarts"] == 1
            assert await pool.count_tokens("a b", "gpt-4o") == 2
            assert pool.stats()["workers"][0]["pid"] != pid
