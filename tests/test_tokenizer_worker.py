"""Tests for completion_gateway.tokenizer_worker module."""

import functools
import multiprocessing
import os
import queue
import signal
import threading
import time

import fake_tokenizer
from completion_gateway.tokenizer_worker import EncodingCache, count_task, run_worker


class TestEncodingCache:
    def test_loads_once_per_model(self):
        loader = fake_tokenizer.CountingLoader()
        cache = EncodingCache(loader)

        first = cache.get("gpt-4o")
        assert cache.get("gpt-4o") is first
        cache.get("gpt-4")

        assert loader.loads == {"gpt-4o": 1, "gpt-4": 1}
        assert cache.loads == 2
        assert len(cache) == 2

    def test_release_closes_encodings(self):
        cache = EncodingCache(fake_tokenizer.load)
        encoding = cache.get("gpt-4o")
        cache.release()
        assert encoding.closed is True
        assert len(cache) == 0


class TestCountTask:
    def test_counts(self):
        cache = EncodingCache(fake_tokenizer.load)
        result = count_task(cache, {"id": 7, "text": "one two three", "model": "gpt-4o"})
        assert result == {"id": 7, "count": 3, "error": None}

    def test_encoding_error_reported(self):
        cache = EncodingCache(fake_tokenizer.load)
        result = count_task(cache, {"id": 8, "text": "hi", "model": "unknown-model"})
        assert result["id"] == 8
        assert result["count"] is None
        assert "unknown-model" in result["error"]


class TestRunWorker:
    def test_processes_until_sentinel(self):
        tasks, results = queue.Queue(), queue.Queue()
        tasks.put({"id": 1, "text": "a b", "model": "gpt-4o"})
        tasks.put({"id": 2, "text": "a b c d", "model": "gpt-4o"})
        tasks.put(None)

        thread = threading.Thread(target=run_worker, args=(tasks, results, fake_tokenizer.load))
        thread.start()
        thread.join(5)
        assert not thread.is_alive()

        assert results.get_nowait() == {"id": 1, "count": 2, "error": None}
        assert results.get_nowait() == {"id": 2, "count": 4, "error": None}
        assert results.get_nowait() is None

    def test_sigterm_mid_task_releases_encodings(self, tmp_path):
        ctx = multiprocessing.get_context("spawn")
        tasks, results = ctx.Queue(), ctx.Queue()
        loader = functools.partial(fake_tokenizer.load_marking, str(tmp_path))
        worker = ctx.Process(target=run_worker, args=(tasks, results, loader), daemon=True)
        worker.start()
        try:
            tasks.put({"id": 1, "text": "a b", "model": "gpt-4o"})
            assert results.get(timeout=30) == {"id": 1, "count": 2, "error": None}

            tasks.put({"id": 2, "text": "a", "model": "sleepy"})
            time.sleep(0.5)
            os.kill(worker.pid, signal.SIGTERM)

            assert results.get(timeout=10) is None
            worker.join(10)
            assert worker.exitcode == 0
            assert (tmp_path / "gpt-4o.released").exists()
        finally:
            if worker.is_alive():
                worker.kill()
                worker.join()
