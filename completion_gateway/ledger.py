"""
Cost ledger.

Append-only record of billable usage per request, aggregated on demand.
"""

import logging
import time
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, List, Optional

from .types import TokenUsage

logger = logging.getLogger(__name__)

GROUP_BY_FIELDS = ("attribution_key", "provider", "model")


@dataclass(frozen=True)
class CostEntry:
    """Billable usage of one request."""
    attribution_key: str
    provider: str
    model: str
    usage: TokenUsage
    cost: float
    timestamp: float = field(default_factory=time.time)
    partial: bool = False

    def to_dict(self) -> dict:
        return {
            "attribution_key": self.attribution_key,
            "provider": self.provider,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "cost": round(self.cost, 6),
            "timestamp": self.timestamp,
            "partial": self.partial,
        }


@dataclass
class CostTotals:
    """Aggregated cost and usage for one group."""
    total_cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    requests: int = 0

    def add(self, entry: CostEntry) -> None:
        self.total_cost += entry.cost
        self.prompt_tokens += entry.usage.prompt_tokens
        self.completion_tokens += entry.usage.completion_tokens
        self.total_tokens += entry.usage.total_tokens
        self.requests += 1

    def to_dict(self) -> dict:
        return {
            "total_cost": round(self.total_cost, 6),
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
            "requests": self.requests,
        }


class CostLedger:
    """
    Append-only ledger of CostEntry records.

    Appends are serialised by a lock; aggregation reads work on a snapshot
    copied under the same lock, so concurrent appends are neither lost nor
    double-counted.

    Args:
        sink: Optional callable receiving every appended entry, e.g. to
            persist it. The ledger stays the source of truth; sink failures
            are logged.
    """

    def __init__(self, sink: Optional[Callable[[CostEntry], None]] = None):
        self._entries: List[CostEntry] = []
        self._lock = Lock()
        self.sink = sink

    def append(self, entry: CostEntry) -> None:
        with self._lock:
            self._entries.append(entry)

        logger.info(
            "Recorded cost %s/%s for %s: %d prompt + %d completion tokens, $%.4f%s",
            entry.provider, entry.model, entry.attribution_key,
            entry.usage.prompt_tokens, entry.usage.completion_tokens, entry.cost,
            " (partial)" if entry.partial else "",
        )

        if self.sink is not None:
            try:
                self.sink(entry)
            except Exception:
                logger.exception("Cost ledger sink failed for %s", entry.attribution_key)

    def record(
        self,
        attribution_key: str,
        provider: str,
        model: str,
        usage: TokenUsage,
        cost: float,
        partial: bool = False,
    ) -> CostEntry:
        """Create and append an entry."""
        entry = CostEntry(
            attribution_key=attribution_key,
            provider=provider,
            model=model,
            usage=usage,
            cost=cost,
            partial=partial,
        )
        self.append(entry)
        return entry

    def entries(self) -> List[CostEntry]:
        """Snapshot of all entries."""
        with self._lock:
            return list(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def totals(self, group_by: str = "attribution_key") -> Dict[str, CostTotals]:
        """
        Aggregate cost and usage.

        Args:
            group_by: "attribution_key", "provider" or "model"

        Returns:
            Mapping of group key to CostTotals
        """
        if group_by not in GROUP_BY_FIELDS:
            raise ValueError(f"group_by must be one of {GROUP_BY_FIELDS}")

        totals: Dict[str, CostTotals] = {}
        for entry in self.entries():
            key = getattr(entry, group_by)
            totals.setdefault(key, CostTotals()).add(entry)
        return totals

    def total_cost(self) -> float:
        return sum(entry.cost for entry in self.entries())

    def reset(self) -> List[CostEntry]:
        """Start a fresh accounting period; returns the cleared entries."""
        with self._lock:
            cleared = self._entries
            self._entries = []
        logger.info("Cost ledger reset (%d entries cleared)", len(cleared))
        return cleared
