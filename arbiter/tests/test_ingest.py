"""Tests for carry snapshot ingestion."""

from __future__ import annotations

import asyncio
from datetime import timedelta

from arbiter.config import CarrySettings
from arbiter.errors import InvalidQuote
from arbiter.ingest import SnapshotIngestor
from arbiter.models import utc_now


def _ingestor(store, market, **kw) -> SnapshotIngestor:
    settings = CarrySettings(venues=("okx", "bybit"), symbols=("BTCUSDT",), **kw)
    return SnapshotIngestor(store, market, settings, quote_timeout_seconds=1.0)


class TestUniverse:
    def test_venue_symbol_product(self, store, market) -> None:
        settings = CarrySettings(venues=("okx", "bybit"), symbols=("BTCUSDT", "ETHUSDT"))
        ingestor = SnapshotIngestor(store, market, settings)
        assert ingestor.universe() == [
            ("okx", "BTCUSDT"),
            ("okx", "ETHUSDT"),
            ("bybit", "BTCUSDT"),
            ("bybit", "ETHUSDT"),
        ]


class TestRun:
    def test_inserts_one_snapshot_per_pair(self, store, market) -> None:
        market.set_carry("okx", "BTCUSDT", 100.0, 100.1, 100.4, 100.5, 0.0001)
        market.set_carry("bybit", "BTCUSDT", 100.0, 100.1, 100.3, 100.4, 0.0002)

        result = asyncio.run(_ingestor(store, market).run())

        assert result.inserted == 2
        assert result.errors == []
        snapshots = store.snapshots_since(utc_now() - timedelta(minutes=1))
        assert {(s.venue, s.funding_rate) for s in snapshots} == {("okx", 0.0001), ("bybit", 0.0002)}

    def test_unavailable_pair_recorded_not_raised(self, store, market) -> None:
        market.set_carry("okx", "BTCUSDT", 100.0, 100.1, 100.4, 100.5, 0.0001)
        market.fail("bybit", "BTCUSDT", InvalidQuote("bybit BTCUSDT: crossed book"))

        result = asyncio.run(_ingestor(store, market).run())

        assert result.inserted == 1
        assert result.errors == [
            {"venue": "bybit", "symbol": "BTCUSDT", "error": "bybit BTCUSDT: crossed book"}
        ]
        assert result.to_dict()["inserted"] == 1

    def test_missing_funding_still_stored(self, store, market) -> None:
        market.set_carry("okx", "BTCUSDT", 100.0, 100.1, 100.4, 100.5, None)

        result = asyncio.run(_ingestor(store, market).run([("okx", "BTCUSDT")]))

        assert result.inserted == 1
        assert store.latest_valid_snapshot("okx", "BTCUSDT").funding_rate is None

    def test_unexpected_error_recorded_per_pair(self, store, market) -> None:
        market.fail("okx", "BTCUSDT", RuntimeError("boom"))
        market.set_carry("bybit", "BTCUSDT", 100.0, 100.1, 100.3, 100.4, 0.0002)

        result = asyncio.run(_ingestor(store, market).run())

        assert result.inserted == 1
        assert result.errors == [
            {"venue": "okx", "symbol": "BTCUSDT", "error": "okx BTCUSDT: RuntimeError: boom"}
        ]
