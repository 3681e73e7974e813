"""Tests for single-venue triangular detection."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from arbiter.config import TriangularPath, TriangularSettings, TriangularStep
from arbiter.detectors.triangular import TriangularDetector, confidence_for_triangular, walk_path
from arbiter.framework.dedupe import IdempotencyWindow
from arbiter.models import OpportunityType, Side, TriangularDetails, TriangularLeg

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

ETH_LOOP = TriangularPath(
    name="USDT->BTC->ETH->USDT",
    steps=(
        TriangularStep("BTC-USDT", Side.BUY),
        TriangularStep("ETH-BTC", Side.BUY),
        TriangularStep("ETH-USDT", Side.SELL),
    ),
)


def _detector(store, market, **kw) -> TriangularDetector:
    settings = TriangularSettings(paths=(ETH_LOOP,), **kw)
    return TriangularDetector(market, IdempotencyWindow(store), settings, quote_timeout_seconds=1.0)


def _quote_loop(market, eth_usdt_bid: float = 3010.0) -> None:
    market.set_quote("okx", "BTC-USDT", 60000.0, 60001.0)
    market.set_quote("okx", "ETH-BTC", 0.05, 0.05001)
    market.set_quote("okx", "ETH-USDT", eth_usdt_bid, eth_usdt_bid + 1.0)


class TestConfidence:
    def test_tiers(self) -> None:
        assert confidence_for_triangular(25.0) == 0.64
        assert confidence_for_triangular(20.0) == 0.64
        assert confidence_for_triangular(12.0) == 0.60
        assert confidence_for_triangular(11.9) == 0.56
        assert confidence_for_triangular(-1.0) == 0.56


class TestWalkPath:
    def test_buy_divides_by_ask_and_sell_multiplies_by_bid(self) -> None:
        legs = [
            TriangularLeg("A-USDT", Side.BUY, 1.9, 2.0),
            TriangularLeg("A-B", Side.SELL, 4.0, 4.1),
            TriangularLeg("B-USDT", Side.SELL, 0.5, 0.51),
        ]
        assert walk_path(legs) == pytest.approx(1.0 / 2.0 * 4.0 * 0.5)

    def test_start_amount(self) -> None:
        legs = [TriangularLeg("A-USDT", Side.BUY, 1.9, 2.0)]
        assert walk_path(legs, start=10.0) == pytest.approx(5.0)


class TestTriangularDetector:
    def test_profitable_loop_inserted(self, store, market) -> None:
        _quote_loop(market)

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.inserted == 1
        evaluation = report.evaluated[0]
        expected_gross = (3010.0 / (60001.0 * 0.05001) - 1) * 10000
        assert evaluation.gross_edge_bps == pytest.approx(expected_gross, abs=1e-3)
        assert evaluation.net_edge_bps == pytest.approx(expected_gross - 4.0, abs=1e-3)

        opportunity = store.get_opportunity(evaluation.opportunity_id)
        assert opportunity.type is OpportunityType.TRIANGULAR
        assert opportunity.venue_key == "okx"
        assert opportunity.symbol == ETH_LOOP.name
        assert opportunity.confidence == 0.64
        assert isinstance(opportunity.details, TriangularDetails)
        assert [leg.symbol for leg in opportunity.details.legs] == ["BTC-USDT", "ETH-BTC", "ETH-USDT"]
        assert opportunity.details.legs[2].side is Side.SELL

    def test_failed_leg_skips_path(self, store, market) -> None:
        _quote_loop(market)
        market.fail("okx", "ETH-BTC")

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.inserted == 0
        assert report.skipped == 1
        assert "ETH-BTC" in report.evaluated[0].reason

    def test_crossed_leg_skips_path(self, store, market) -> None:
        _quote_loop(market)
        market.set_quote("okx", "ETH-BTC", 0.06, 0.05)

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.skipped == 1
        assert "crossed" in report.evaluated[0].reason

    def test_unexpected_leg_error_skips_path(self, store, market) -> None:
        _quote_loop(market)
        market.fail("okx", "ETH-BTC", ValueError("bad payload"))

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.skipped == 1
        assert "ValueError: bad payload" in report.evaluated[0].reason
        assert "ETH-BTC" in report.evaluated[0].reason

    def test_losing_loop_below_threshold(self, store, market) -> None:
        _quote_loop(market, eth_usdt_bid=2990.0)

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.reasons() == ["below threshold"]

    def test_slightly_negative_loop_is_recorded(self, store, market) -> None:
        # Pick the sell price so that the gross edge is about +3.5 bps: net is -0.5.
        bid = 60001.0 * 0.05001 * 1.00035
        _quote_loop(market, eth_usdt_bid=bid)

        report = asyncio.run(_detector(store, market).run(NOW))

        assert report.inserted == 1
        assert report.evaluated[0].net_edge_bps == pytest.approx(-0.5, abs=1e-3)
