"""Tests for the opportunity idempotency window."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

from arbiter.framework.dedupe import DedupeConfig, IdempotencyWindow, cross_venue_key
from arbiter.models import Opportunity, OpportunityType, TriangularDetails

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _opportunity(ts: datetime = NOW, symbol: str = "USDT->BTC->ETH->USDT") -> Opportunity:
    return Opportunity(
        ts=ts,
        venue_key="okx",
        symbol=symbol,
        type=OpportunityType.TRIANGULAR,
        net_edge_bps=2.0,
        expected_daily_bps=None,
        confidence=0.52,
        details=TriangularDetails(path=symbol, legs=(), gross_bps=6.0, costs_bps=4.0),
    )


# ---------------------------------------------------------------------------
# Keys and config
# ---------------------------------------------------------------------------


class TestCrossVenueKey:
    def test_order_invariant(self) -> None:
        assert cross_venue_key("okx", "bybit") == cross_venue_key("bybit", "okx") == "bybit_okx"

    def test_case_folded(self) -> None:
        assert cross_venue_key("OKX", "Bybit") == "bybit_okx"


class TestDedupeConfig:
    def test_defaults(self) -> None:
        cfg = DedupeConfig()
        assert cfg.cooldown_seconds == 300.0
        assert cfg.enabled is True


# ---------------------------------------------------------------------------
# Window
# ---------------------------------------------------------------------------


class TestIdempotencyWindow:
    def test_first_insert_persists(self, store) -> None:
        window = IdempotencyWindow(store)
        stored = window.insert(_opportunity())
        assert stored is not None
        assert stored.id is not None

    def test_repeat_inside_window_suppressed(self, store) -> None:
        window = IdempotencyWindow(store)
        window.insert(_opportunity())
        assert window.insert(_opportunity(NOW + timedelta(seconds=60))) is None
        assert window.is_duplicate("okx", "USDT->BTC->ETH->USDT", OpportunityType.TRIANGULAR, NOW + timedelta(seconds=60))

    def test_repeat_after_window_persists(self, store) -> None:
        window = IdempotencyWindow(store, DedupeConfig(cooldown_seconds=300))
        window.insert(_opportunity())
        later = NOW + timedelta(seconds=301)
        assert not window.is_duplicate("okx", "USDT->BTC->ETH->USDT", OpportunityType.TRIANGULAR, later)
        assert window.insert(_opportunity(later)) is not None

    def test_different_key_not_duplicate(self, store) -> None:
        window = IdempotencyWindow(store)
        window.insert(_opportunity())
        assert window.insert(_opportunity(symbol="USDT->BTC->SOL->USDT")) is not None
        assert not window.is_duplicate("okx", "LOOP", OpportunityType.CARRY, NOW)

    def test_disabled_allows_duplicates(self, store) -> None:
        window = IdempotencyWindow(store, DedupeConfig(enabled=False))
        assert window.insert(_opportunity()) is not None
        assert window.insert(_opportunity()) is not None
        assert not window.is_duplicate("okx", "USDT->BTC->ETH->USDT", OpportunityType.TRIANGULAR, NOW)

    def test_window_start(self, store) -> None:
        window = IdempotencyWindow(store, DedupeConfig(cooldown_seconds=120))
        assert window.window_start(NOW) == NOW - timedelta(seconds=120)
