"""Tests for completion_gateway.ledger module."""

import threading

import pytest

from completion_gateway.ledger import CostEntry, CostLedger
from completion_gateway.types import TokenUsage


def usage(prompt=10, completion=5):
    return TokenUsage.from_counts(prompt, completion)


@pytest.fixture
def ledger():
    ledger = CostLedger()
    ledger.record("team-a", "openai", "gpt-4o", usage(), 0.01)
    ledger.record("team-a", "vertex", "gemini-1.5-pro", usage(20, 10), 0.02)
    ledger.record("team-b", "openai", "gpt-4o", usage(), 0.03, partial=True)
    return ledger


class TestCostEntry:
    def test_to_dict(self):
        entry = CostEntry("team-a", "openai", "gpt-4o", usage(), 0.0123456789)
        d = entry.to_dict()
        assert d["cost"] == 0.012346
        assert d["usage"]["total_tokens"] == 15
        assert d["partial"] is False

    def test_immutable(self):
        entry = CostEntry("team-a", "openai", "gpt-4o", usage(), 0.01)
        with pytest.raises(AttributeError):
            entry.cost = 0.0


class TestCostLedger:
    def test_record(self, ledger):
        assert len(ledger) == 3
        assert ledger.entries()[2].partial is True

    def test_totals_by_attribution_key(self, ledger):
        totals = ledger.totals()
        assert set(totals) == {"team-a", "team-b"}
        assert totals["team-a"].total_cost == pytest.approx(0.03)
        assert totals["team-a"].prompt_tokens == 30
        assert totals["team-a"].requests == 2

    def test_totals_by_provider_and_model(self, ledger):
        assert ledger.totals("provider")["openai"].total_cost == pytest.approx(0.04)
        assert ledger.totals("model")["gemini-1.5-pro"].completion_tokens == 10

    def test_totals_invalid_group(self, ledger):
        with pytest.raises(ValueError):
            ledger.totals("timestamp")

    def test_totals_idempotent(self, ledger):
        first = {k: v.to_dict() for k, v in ledger.totals().items()}
        second = {k: v.to_dict() for k, v in ledger.totals().items()}
        assert first == second

    def test_total_cost(self, ledger):
        assert ledger.total_cost() == pytest.approx(0.06)

    def test_entries_snapshot(self, ledger):
        snapshot = ledger.entries()
        ledger.record("team-c", "openai", "gpt-4o", usage(), 0.01)
        assert len(snapshot) == 3
        assert len(ledger) == 4

    def test_reset(self, ledger):
        cleared = ledger.reset()
        assert len(cleared) == 3
        assert len(ledger) == 0
        assert ledger.totals() == {}

    def test_sink(self):
        seen = []
        ledger = CostLedger(sink=seen.append)
        entry = ledger.record("team-a", "openai", "gpt-4o", usage(), 0.01)
        assert seen == [entry]

    def test_sink_failure_keeps_entry(self, caplog):
        def broken_sink(entry):
            raise IOError("disk full")

        ledger = CostLedger(sink=broken_sink)
        ledger.record("team-a", "openai", "gpt-4o", usage(), 0.01)
        assert len(ledger) == 1
        assert "sink failed" in caplog.text

    def test_concurrent_appends(self):
        ledger = CostLedger()

        def append_many(key):
            for _ in range(500):
                ledger.record(key, "openai", "gpt-4o", usage(1, 1), 0.001)

        threads = [threading.Thread(target=append_many, args=(f"team-{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        totals = ledger.totals()
        assert len(ledger) == 4000
        assert all(t.requests == 500 for t in totals.values())
        assert sum(t.total_tokens for t in totals.values()) == 8000
