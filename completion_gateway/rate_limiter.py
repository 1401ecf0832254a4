"""
Provider rate-limit tracking.

Keeps one RateLimit per model for a provider, overwritten from the
provider's response headers and consulted before a request is dispatched.
"""

import copy
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Callable, Dict, Mapping, Optional

from .errors import RateLimitExceeded

logger = logging.getLogger(__name__)

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"h": 3600.0, "m": 60.0, "s": 1.0, "ms": 0.001}


class RateLimitState(Enum):
    """Tracking state of a (provider, model) pair."""
    UNKNOWN = "unknown"
    TRACKED = "tracked"


@dataclass
class RateLimit:
    """
    Rate-limit budget for one (provider, model) pair.

    ``max_tokens`` caps the output tokens a request may ask for. Counters
    are None until the provider reports them. ``reset_requests``
    and ``reset_tokens`` are readings of the tracker's clock at which the
    respective budget is restored.
    """
    max_tokens: int = 4096
    limit_requests: Optional[int] = None
    limit_tokens: Optional[int] = None
    remaining_requests: Optional[int] = None
    remaining_tokens: Optional[int] = None
    reset_requests: Optional[float] = None
    reset_tokens: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "max_tokens": self.max_tokens,
            "limit_requests": self.limit_requests,
            "limit_tokens": self.limit_tokens,
            "remaining_requests": self.remaining_requests,
            "remaining_tokens": self.remaining_tokens,
            "reset_requests": self.reset_requests,
            "reset_tokens": self.reset_tokens,
        }


def parse_duration(value: str) -> Optional[float]:
    """
    Parse a reset duration into seconds.

    Accepts Go-style durations as sent by OpenAI ("1s", "6m0s", "20ms"),
    bare numbers (seconds) and RFC 3339 timestamps. Returns None when the
    value cannot be parsed.
    """
    value = value.strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    parts = _DURATION_PART.findall(value)
    if parts and "".join(n + u for n, u in parts) == value:
        return sum(float(n) * _UNIT_SECONDS[u] for n, u in parts)

    try:
        normalized = value[:-1] + "+00:00" if value.endswith("Z") else value
        reset_at = datetime.fromisoformat(normalized)
    except ValueError:
        logger.debug("Unparseable rate limit reset value: %r", value)
        return None
    if reset_at.tzinfo is None:
        reset_at = reset_at.replace(tzinfo=timezone.utc)
    return max(0.0, (reset_at - datetime.now(timezone.utc)).total_seconds())


def parse_rate_limit_headers(headers: Mapping[str, str]) -> Dict[str, float]:
    """
    Extract rate-limit metadata from OpenAI-style response headers.

    Returns a dict with any of limit_requests, limit_tokens,
    remaining_requests, remaining_tokens (ints) and reset_requests,
    reset_tokens (seconds from now).
    """
    lowered = {k.lower(): v for k, v in headers.items()}
    parsed: Dict[str, float] = {}

    for kind in ("requests", "tokens"):
        for field_name in ("limit", "remaining"):
            raw = lowered.get(f"x-ratelimit-{field_name}-{kind}")
            if raw is None:
                continue
            try:
                parsed[f"{field_name}_{kind}"] = int(float(raw))
            except ValueError:
                logger.debug("Ignoring invalid rate limit header %s=%r", field_name, raw)

        raw = lowered.get(f"x-ratelimit-reset-{kind}")
        if raw is not None:
            seconds = parse_duration(raw)
            if seconds is not None:
                parsed[f"reset_{kind}"] = seconds

    return parsed


class RateLimitTracker:
    """
    Tracks rate-limit budgets per model for a single provider.

    Provider-reported values are authoritative and overwrite local state.
    When a response carries no metadata the budget decays toward its reset:
    once a reset time has passed, remaining is restored to the limit.

    Thread-safe via threading.Lock.
    """

    def __init__(
        self,
        provider: str,
        max_tokens: int = 4096,
        default_reset_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.max_tokens = max_tokens
        self.default_reset_seconds = default_reset_seconds
        self._clock = clock
        self._limits: Dict[str, RateLimit] = {}
        self._lock = Lock()

    def state(self, model: str) -> RateLimitState:
        with self._lock:
            if model in self._limits:
                return RateLimitState.TRACKED
            return RateLimitState.UNKNOWN

    def get(self, model: str) -> Optional[RateLimit]:
        """Return a copy of the current budget, or None while UNKNOWN."""
        with self._lock:
            limit = self._limits.get(model)
            if limit is None:
                return None
            self._decay(limit, self._clock())
            return copy.copy(limit)

    def update(
        self,
        model: str,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[RateLimit]:
        """
        Apply a provider response's rate-limit headers.

        Args:
            model: Model the response was for
            headers: Response headers, or None when the response had none

        Returns:
            Copy of the updated budget, or None while still UNKNOWN
        """
        parsed = parse_rate_limit_headers(headers) if headers else {}

        with self._lock:
            now = self._clock()
            limit = self._limits.get(model)

            if not parsed:
                if limit is None:
                    return None
                self._decay(limit, now)
                return copy.copy(limit)

            if limit is None:
                limit = RateLimit(max_tokens=self.max_tokens)
                self._limits[model] = limit
                logger.info("Tracking rate limits for %s/%s", self.provider, model)
            else:
                self._decay(limit, now)

            for kind in ("requests", "tokens"):
                if f"limit_{kind}" in parsed:
                    setattr(limit, f"limit_{kind}", int(parsed[f"limit_{kind}"]))
                if f"remaining_{kind}" in parsed:
                    setattr(limit, f"remaining_{kind}", int(parsed[f"remaining_{kind}"]))
                if f"reset_{kind}" in parsed:
                    setattr(limit, f"reset_{kind}", now + parsed[f"reset_{kind}"])
                elif getattr(limit, f"remaining_{kind}") == 0 and getattr(limit, f"reset_{kind}") is None:
                    setattr(limit, f"reset_{kind}", now + self.default_reset_seconds)

            self._clamp(limit)
            return copy.copy(limit)

    def check(self, model: str, estimated_tokens: int = 0) -> None:
        """
        Admission check before dispatch.

        Raises:
            RateLimitExceeded: If the request budget is exhausted, or the
                estimated tokens exceed the remaining token budget, and the
                relevant reset time has not elapsed
        """
        with self._lock:
            limit = self._limits.get(model)
            if limit is None:
                return

            now = self._clock()
            self._decay(limit, now)

            if limit.remaining_requests is not None and limit.remaining_requests <= 0:
                retry_after = self._wait(limit.reset_requests, now)
                logger.warning(
                    "Rejecting request to %s/%s: no requests remaining (reset in %.1fs)",
                    self.provider, model, retry_after,
                )
                raise RateLimitExceeded(self.provider, model, retry_after)

            if (
                estimated_tokens > 0
                and limit.remaining_tokens is not None
                and estimated_tokens > limit.remaining_tokens
            ):
                retry_after = self._wait(limit.reset_tokens, now)
                logger.warning(
                    "Rejecting request to %s/%s: %d estimated tokens exceed %d remaining (reset in %.1fs)",
                    self.provider, model, estimated_tokens, limit.remaining_tokens, retry_after,
                )
                raise RateLimitExceeded(self.provider, model, retry_after)

    def time_until_reset(self, model: str) -> float:
        """Seconds until the earliest pending reset (0 if none)."""
        with self._lock:
            limit = self._limits.get(model)
            if limit is None:
                return 0.0
            now = self._clock()
            pending = [r for r in (limit.reset_requests, limit.reset_tokens) if r is not None]
            if not pending:
                return 0.0
            return max(0.0, min(pending) - now)

    def reset(self, model: Optional[str] = None) -> None:
        """Forget tracked state for one model, or all models."""
        with self._lock:
            if model is None:
                self._limits.clear()
            else:
                self._limits.pop(model, None)

    def snapshot(self) -> Dict[str, dict]:
        with self._lock:
            now = self._clock()
            result = {}
            for model, limit in self._limits.items():
                self._decay(limit, now)
                result[model] = limit.to_dict()
            return result

    def _wait(self, reset_at: Optional[float], now: float) -> float:
        if reset_at is None:
            return self.default_reset_seconds
        return max(0.0, reset_at - now)

    @staticmethod
    def _decay(limit: RateLimit, now: float) -> None:
        """Restore budgets whose reset time has passed. Caller must hold _lock."""
        for kind in ("requests", "tokens"):
            reset_at = getattr(limit, f"reset_{kind}")
            if reset_at is None or now < reset_at:
                continue
            # Without a known limit the budget falls back to "not reported"
            setattr(limit, f"remaining_{kind}", getattr(limit, f"limit_{kind}"))
            setattr(limit, f"reset_{kind}", None)

    @staticmethod
    def _clamp(limit: RateLimit) -> None:
        """Keep remaining counters within [0, limit]. Caller must hold _lock."""
        for kind in ("requests", "tokens"):
            remaining = getattr(limit, f"remaining_{kind}")
            if remaining is None:
                continue
            remaining = max(0, remaining)
            cap = getattr(limit, f"limit_{kind}")
            if cap is not None:
                remaining = min(remaining, cap)
            setattr(limit, f"remaining_{kind}", remaining)
