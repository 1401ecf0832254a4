"""Deterministic stand-ins for tiktoken encodings used by the tokenizer tests.

Kept at module level so spawned worker processes can unpickle ``load``.
"""

import os
import threading
import time
from collections import Counter


class WhitespaceEncoding:
    """Counts whitespace-separated words as tokens."""

    def __init__(self, name: str):
        self.name = name
        self.closed = False

    def encode(self, text, disallowed_special=()):
        return text.split()

    def close(self):
        self.closed = True


def load(model: str) -> WhitespaceEncoding:
    if model.startswith("unknown"):
        raise KeyError(f"No tokenizer encoding for model {model!r}")
    if model == "sleepy":
        time.sleep(30)
    return WhitespaceEncoding(model)


class CountingLoader:
    """Thread-mode loader recording how often each model is loaded.

    Loading ``slow`` blocks until ``release()``.
    """

    def __init__(self):
        self.loads = Counter()
        self.gate = threading.Event()
        self._lock = threading.Lock()

    def release(self):
        self.gate.set()

    def __call__(self, model: str) -> WhitespaceEncoding:
        with self._lock:
            self.loads[model] += 1
        if model == "slow":
            self.gate.wait(10)
            return WhitespaceEncoding(model)
        return load(model)


class MarkingEncoding(WhitespaceEncoding):
    """Touches ``<directory>/<name>.released`` when closed, visible across processes."""

    def __init__(self, name: str, directory: str):
        super().__init__(name)
        self.directory = directory

    def close(self):
        super().close()
        with open(os.path.join(self.directory, f"{self.name}.released"), "w"):
            pass


def load_marking(directory: str, model: str) -> WhitespaceEncoding:
    if model == "sleepy":
        time.sleep(30)
    return MarkingEncoding(model, directory)
