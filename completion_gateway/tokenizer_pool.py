"""
Tokenizer worker pool.

Counts tokens on a fixed set of worker processes so CPU-bound encoding
never blocks the event loop. Each worker keeps its own encoding cache;
results are matched back to callers by task id.
"""

import asyncio
import itertools
import logging
import multiprocessing
import queue
import threading
import time
from dataclasses import dataclass, field
from multiprocessing.process import BaseProcess
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import EncodingLoadError, WorkerUnavailableError
from .tokenizer_worker import run_worker

logger = logging.getLogger(__name__)

POOL_MODES = ("process", "thread")


@dataclass
class TokenizerPoolConfig:
    """Configuration for the tokenizer pool."""
    size: int = 4
    mode: str = "process"  # "process" or "thread"
    task_timeout: float = 30.0
    max_tasks_per_worker: int = 1000
    max_attempts: int = 3
    shutdown_timeout: float = 5.0
    poll_interval: float = 0.2

    def __post_init__(self):
        if self.size < 1:
            raise ValueError("size must be >= 1")
        if self.mode not in POOL_MODES:
            raise ValueError(f"mode must be one of {POOL_MODES}")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def to_dict(self) -> dict:
        return {
            "size": self.size,
            "mode": self.mode,
            "task_timeout": self.task_timeout,
            "max_tasks_per_worker": self.max_tasks_per_worker,
            "max_attempts": self.max_attempts,
            "shutdown_timeout": self.shutdown_timeout,
        }


class _Worker:
    """Parent-side handle of one worker and its task/result queue pair."""

    def __init__(self, slot: int, runner, tasks, results):
        self.slot = slot
        self.runner = runner
        self.tasks = tasks
        self.results = results
        self.in_flight: Set[int] = set()
        self.tasks_processed = 0
        self.created_at = time.time()
        self.stopping = False
        self.reader: Optional[threading.Thread] = None

    @property
    def is_process(self) -> bool:
        return isinstance(self.runner, BaseProcess)

    @property
    def pid(self) -> Optional[int]:
        return self.runner.pid if self.is_process else None

    def is_alive(self) -> bool:
        return self.runner.is_alive()

    def to_dict(self) -> dict:
        return {
            "slot": self.slot,
            "pid": self.pid,
            "in_flight": len(self.in_flight),
            "tasks_processed": self.tasks_processed,
            "uptime_s": round(time.time() - self.created_at, 3),
        }


@dataclass
class _PendingTask:
    id: int
    model: str
    future: asyncio.Future
    worker: _Worker
    started: float = field(default_factory=time.monotonic)
    timer: Optional[asyncio.TimerHandle] = None


class TokenizerPool:
    """
    Fixed-size pool of token-counting workers.

    Tasks go to the least-loaded live worker. A worker that dies is
    replaced and only its in-flight tasks fail. Pool bookkeeping is only
    touched on the event loop thread; reader threads hand results over with
    call_soon_threadsafe.

    Usage:
        async with TokenizerPool(TokenizerPoolConfig(size=2)) as pool:
            count = await pool.count_tokens("hello", "gpt-4o")
    """

    def __init__(
        self,
        config: Optional[TokenizerPoolConfig] = None,
        loader: Optional[Callable[[str], Any]] = None,
    ):
        self.config = config or TokenizerPoolConfig()
        self._loader = loader
        self._workers: List[_Worker] = []
        self._pending: Dict[int, _PendingTask] = {}
        self._ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ctx = None
        self._started = False
        self._closing = False
        self._restarts = 0
        self._completed = 0

    async def __aenter__(self) -> "TokenizerPool":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    @property
    def queue_depth(self) -> int:
        """Number of tasks sent to workers and not yet answered."""
        return len(self._pending)

    @property
    def is_closing(self) -> bool:
        return self._closing

    async def start(self) -> None:
        """Spawn the workers. Must be awaited on the loop that will submit."""
        if self._started:
            return
        if self._closing:
            raise WorkerUnavailableError("Tokenizer pool is shut down")
        self._loop = asyncio.get_running_loop()
        if self.config.mode == "process":
            self._ctx = multiprocessing.get_context("spawn")

        logger.info(
            "Initializing tokenizer pool with %d %s workers",
            self.config.size, self.config.mode,
        )
        for slot in range(self.config.size):
            self._workers.append(self._spawn(slot))
        self._started = True

    def submit(self, text: str, model: str) -> "asyncio.Future[int]":
        """
        Send one counting task to a worker.

        Must be called on the pool's event loop.

        Returns:
            Future resolving to the token count. It fails with
            EncodingLoadError if the worker cannot load or use the
            encoding, or WorkerUnavailableError if the worker dies or
            times out.

        Raises:
            WorkerUnavailableError: If the pool is not running or has no
                live workers
            ValueError: If text is not a non-empty string
        """
        if self._closing:
            raise WorkerUnavailableError("Tokenizer pool is shutting down")
        if not self._started:
            raise WorkerUnavailableError("Tokenizer pool has not been started")
        if not isinstance(text, str) or not text:
            raise ValueError("text must be a non-empty string")

        worker = self._select_worker()
        if worker is None:
            raise WorkerUnavailableError("No live tokenizer workers")

        task_id = next(self._ids)
        future = self._loop.create_future()
        pending = _PendingTask(id=task_id, model=model, future=future, worker=worker)
        pending.timer = self._loop.call_later(
            self.config.task_timeout, self._on_task_timeout, task_id,
        )
        self._pending[task_id] = pending
        worker.in_flight.add(task_id)

        try:
            worker.tasks.put({"id": task_id, "text": text, "model": model})
        except (OSError, ValueError) as e:
            logger.error("Error sending task %d to tokenizer worker %d: %s", task_id, worker.slot, e)
            self._restart(worker, f"Worker {worker.slot} rejected task: {e}")

        return future

    async def count_tokens(self, text: str, model: str) -> int:
        """
        Count tokens, retrying on another worker when one is unavailable.

        Raises:
            EncodingLoadError: If the model has no usable encoding
            WorkerUnavailableError: After max_attempts failed dispatches
        """
        last_error: Optional[WorkerUnavailableError] = None
        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return await self.submit(text, model)
            except WorkerUnavailableError as e:
                if self._closing:
                    raise
                last_error = e
                logger.warning(
                    "Tokenizer task failed (attempt %d/%d): %s",
                    attempt, self.config.max_attempts, e,
                )
        raise last_error

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the pool.

        Pending tasks fail with WorkerUnavailableError, no new submissions
        are accepted, and each worker is asked to release its encodings and
        exit. Processes that do not exit in time are terminated.
        """
        if self._closing:
            return
        self._closing = True
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        logger.info("Terminating tokenizer pool...")

        for pending in list(self._pending.values()):
            self._fail(pending, "Tokenizer pool is shutting down")
        self._pending.clear()

        workers = list(self._workers)
        self._workers.clear()
        for worker in workers:
            worker.stopping = True
            worker.in_flight.clear()
            try:
                worker.tasks.put(None)
            except (OSError, ValueError):
                logger.debug("Tokenizer worker %d task queue already closed", worker.slot)

        if self._loop is not None:
            await self._loop.run_in_executor(None, self._join_workers, workers, timeout)
        logger.info("Tokenizer pool terminated")

    def stats(self) -> dict:
        return {
            "pool_size": self.config.size,
            "mode": self.config.mode,
            "live_workers": sum(1 for w in self._workers if w.is_alive()),
            "busy_workers": sum(1 for w in self._workers if w.in_flight),
            "queue_depth": self.queue_depth,
            "tasks_completed": self._completed,
            "restarts": self._restarts,
            "workers": [w.to_dict() for w in self._workers],
        }

    def _spawn(self, slot: int) -> _Worker:
        if self.config.mode == "process":
            tasks = self._ctx.Queue()
            results = self._ctx.Queue()
            runner = self._ctx.Process(
                target=run_worker,
                args=(tasks, results, self._loader),
                name=f"tokenizer-worker-{slot}",
                daemon=True,
            )
        else:
            tasks = queue.Queue()
            results = queue.Queue()
            runner = threading.Thread(
                target=run_worker,
                args=(tasks, results, self._loader),
                name=f"tokenizer-worker-{slot}",
                daemon=True,
            )
        runner.start()

        worker = _Worker(slot, runner, tasks, results)
        worker.reader = threading.Thread(
            target=self._read_results,
            args=(worker,),
            name=f"tokenizer-reader-{slot}",
            daemon=True,
        )
        worker.reader.start()
        logger.debug("Started tokenizer worker %d (pid=%s)", slot, worker.pid)
        return worker

    def _read_results(self, worker: _Worker) -> None:
        """Reader thread: forward a worker's results to the event loop."""
        while True:
            try:
                message = worker.results.get(timeout=self.config.poll_interval)
            except queue.Empty:
                if worker.is_alive():
                    continue
                message = None
            except (EOFError, OSError, ValueError):
                message = None

            if message is None:
                worker.runner.join(self.config.shutdown_timeout)
                self._post(self._on_worker_exit, worker)
                return
            self._post(self._on_result, worker, message)

    def _post(self, callback, *args) -> None:
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError:
            logger.debug("Event loop closed; dropping tokenizer callback %s", callback.__name__)

    def _select_worker(self) -> Optional[_Worker]:
        live = [w for w in self._workers if not w.stopping and w.is_alive()]
        if not live:
            return None
        return min(live, key=lambda w: len(w.in_flight))

    def _on_result(self, worker: _Worker, message: Dict[str, Any]) -> None:
        task_id = message.get("id")
        worker.in_flight.discard(task_id)
        worker.tasks_processed += 1
        pending = self._pending.pop(task_id, None)

        if pending is None:
            logger.warning(
                "Discarding tokenizer result for unknown task id %r from worker %d",
                task_id, worker.slot,
            )
        else:
            if pending.timer is not None:
                pending.timer.cancel()
            self._completed += 1
            if pending.future.done():
                logger.debug("Dropping result for cancelled tokenizer task %d", task_id)
            elif message.get("error") is not None:
                pending.future.set_exception(EncodingLoadError(pending.model, message["error"]))
            elif message.get("count") is None:
                pending.future.set_exception(
                    WorkerUnavailableError(f"Invalid response from tokenizer worker {worker.slot}")
                )
            else:
                pending.future.set_result(int(message["count"]))

        if (
            not self._closing
            and not worker.stopping
            and worker.tasks_processed >= self.config.max_tasks_per_worker
            and not worker.in_flight
        ):
            self._recycle(worker)

    def _on_worker_exit(self, worker: _Worker) -> None:
        if worker not in self._workers:
            return
        logger.error(
            "Tokenizer worker %d exited unexpectedly; failing %d in-flight tasks and restarting",
            worker.slot, len(worker.in_flight),
        )
        self._restart(worker, f"Tokenizer worker {worker.slot} exited unexpectedly")

    def _on_task_timeout(self, task_id: int) -> None:
        pending = self._pending.get(task_id)
        if pending is None:
            return
        logger.warning(
            "Tokenizer task %d timed out after %.1fs on worker %d; restarting worker",
            task_id, self.config.task_timeout, pending.worker.slot,
        )
        self._restart(pending.worker, f"Token counting timeout for task {task_id}")

    def _fail(self, pending: _PendingTask, reason: str) -> None:
        if pending.timer is not None:
            pending.timer.cancel()
        if not pending.future.done():
            pending.future.set_exception(WorkerUnavailableError(reason))

    def _restart(self, worker: _Worker, reason: str) -> None:
        """Replace an unhealthy worker, failing only its in-flight tasks."""
        if worker not in self._workers:
            return
        self._workers.remove(worker)
        worker.stopping = True

        for task_id in list(worker.in_flight):
            pending = self._pending.pop(task_id, None)
            if pending is not None:
                self._fail(pending, reason)
        worker.in_flight.clear()

        if worker.is_process:
            worker.runner.terminate()
            worker.tasks.cancel_join_thread()
            self._loop.call_later(self.config.shutdown_timeout, self._kill_if_alive, worker)
        else:
            # Threads cannot be killed; a stuck thread exits after its current task
            worker.tasks.put(None)

        self._restarts += 1
        if not self._closing:
            self._add_worker(self._spawn(worker.slot))

    def _recycle(self, worker: _Worker) -> None:
        """Gracefully replace a worker that has processed many tasks."""
        logger.info(
            "Recycling tokenizer worker %d after %d tasks",
            worker.slot, worker.tasks_processed,
        )
        self._workers.remove(worker)
        worker.stopping = True
        worker.tasks.put(None)
        self._add_worker(self._spawn(worker.slot))

    def _add_worker(self, worker: _Worker) -> None:
        self._workers.append(worker)
        self._workers.sort(key=lambda w: w.slot)

    @staticmethod
    def _kill_if_alive(worker: _Worker) -> None:
        if worker.is_alive():
            logger.warning("Killing unresponsive tokenizer worker %d", worker.slot)
            worker.runner.kill()

    @staticmethod
    def _join_workers(workers: List[_Worker], timeout: float) -> None:
        """Blocking join of stopped workers; runs in an executor thread."""
        for worker in workers:
            worker.runner.join(timeout)
            if worker.is_alive() and worker.is_process:
                logger.warning("Tokenizer worker %d did not exit, terminating", worker.slot)
                worker.runner.terminate()
                worker.runner.join(timeout)
                if worker.is_alive():
                    worker.runner.kill()
                    worker.runner.join(timeout)
            if worker.reader is not None:
                worker.reader.join(timeout)
            if worker.is_process:
                for q in (worker.tasks, worker.results):
                    q.cancel_join_thread()
                    q.close()
