"""
Token-counting worker loop.

Runs inside a worker process (or thread) of the TokenizerPool. Reads
``{"id", "text", "model"}`` tasks from its task queue and answers each with
``{"id", "count", "error"}`` on its result queue. ``None`` on the task queue
stops the worker; the worker answers ``None`` as it exits.
"""

import logging
import os
import signal
import threading
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

Loader = Callable[[str], Any]


def load_encoding(model: str) -> Any:
    """
    Load the tiktoken encoding for a model.

    ``model`` may also be an encoding name such as "cl100k_base".

    Raises:
        KeyError: If tiktoken has no encoding for the model
    """
    import tiktoken

    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        if model in tiktoken.list_encoding_names():
            return tiktoken.get_encoding(model)
        raise KeyError(f"No tokenizer encoding for model {model!r}") from None


class _Shutdown(BaseException):
    pass


def _raise_shutdown(signum, frame):
    raise _Shutdown(signal.Signals(signum).name)


class EncodingCache:
    """Per-worker model -> encoding cache. Entries live as long as the worker."""

    def __init__(self, loader: Loader):
        self._loader = loader
        self._encodings: Dict[str, Any] = {}
        self.loads = 0

    def get(self, model: str) -> Any:
        encoding = self._encodings.get(model)
        if encoding is None:
            logger.debug("Worker %d loading encoding for model %s", os.getpid(), model)
            encoding = self._loader(model)
            self._encodings[model] = encoding
            self.loads += 1
        return encoding

    def release(self) -> None:
        """Release every loaded encoding."""
        for encoding in self._encodings.values():
            close = getattr(encoding, "close", None)
            if callable(close):
                close()
        self._encodings.clear()

    def __len__(self) -> int:
        return len(self._encodings)


def count_task(cache: EncodingCache, task: Dict[str, Any]) -> Dict[str, Any]:
    """Answer one task message. Never raises for encoding failures."""
    task_id = task.get("id")
    try:
        encoding = cache.get(task["model"])
        count = len(encoding.encode(task["text"], disallowed_special=()))
        return {"id": task_id, "count": count, "error": None}
    except Exception as e:
        logger.error("Token counting failed for task %s: %s", task_id, e)
        return {"id": task_id, "count": None, "error": str(e) or type(e).__name__}


def run_worker(tasks, results, loader: Optional[Loader] = None) -> None:
    """
    Worker main loop.

    Args:
        tasks: Queue of task dicts; None stops the worker
        results: Queue receiving result dicts, then None on exit
        loader: Callable loading the encoding for a model
    """
    cache = EncodingCache(loader or load_encoding)
    processed = 0

    in_process = threading.current_thread() is threading.main_thread()
    if in_process:
        signal.signal(signal.SIGTERM, _raise_shutdown)
        signal.signal(signal.SIGINT, _raise_shutdown)
        logger.info("Token counter process %d started", os.getpid())

    try:
        while True:
            task = tasks.get()
            if task is None:
                break
            results.put(count_task(cache, task))
            processed += 1
            if processed % 100 == 0:
                logger.debug("Worker %d: processed %d tasks", os.getpid(), processed)
    except _Shutdown as e:
        logger.info("Worker %d received %s, cleaning up", os.getpid(), e)
    finally:
        cache.release()
        results.put(None)
        if in_process:
            # Flush the result feeder before the process exits
            close = getattr(results, "close", None)
            if callable(close):
                close()
                results.join_thread()
