"""Tests for daily PnL roll-up, bucket expectancy and the A/B report."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from arbiter.config import AppSettings
from arbiter.models import (
    Execution,
    FeatureVector,
    OpenBucket,
    Opportunity,
    OpportunityDecision,
    OpportunityType,
    Position,
    PositionLeg,
    PositionMeta,
    PositionStatus,
    Side,
    TriangularDetails,
    Variant,
)
from arbiter.pnl import PnlAggregator, day_start, summarize

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _meta(bucket: OpenBucket = OpenBucket.NORMAL, auto: bool = True) -> PositionMeta:
    return PositionMeta(
        notional_usd=500.0,
        notional_reason="break_even_fast",
        fee_bps=4.0,
        slippage_bps=2.0,
        auto_execute=auto,
        open_bucket=bucket,
    )


def _open_carry(store) -> Position:
    position = Position(
        id="carry-1",
        account_id="paper",
        opportunity_id=1,
        opportunity_type=OpportunityType.CARRY,
        venue_key="okx",
        symbol="BTCUSDT",
        status=PositionStatus.OPEN,
        entry_ts=NOW - timedelta(hours=2),
        entry_legs=(
            PositionLeg("spot", "okx", "BTCUSDT", Side.BUY, 5.0, 100.0),
            PositionLeg("perp", "okx", "BTCUSDT", Side.SELL, -5.0, 100.5),
        ),
        meta=_meta(),
    )
    store.insert_position(
        position,
        [
            Execution(position.id, "spot_buy", 5.0, 100.0, 0.2, NOW),
            Execution(position.id, "perp_sell", -5.0, 100.5, 0.2, NOW),
        ],
    )
    return position


def _closed(
    store,
    position_id: str,
    realized: float,
    exit_ts: datetime,
    opportunity_type: OpportunityType = OpportunityType.TRIANGULAR,
    bucket: OpenBucket = OpenBucket.NORMAL,
    auto: bool = True,
) -> Position:
    position = Position(
        id=position_id,
        account_id="paper",
        opportunity_id=100,
        opportunity_type=opportunity_type,
        venue_key="okx",
        symbol="LOOP",
        status=PositionStatus.CLOSED,
        entry_ts=exit_ts - timedelta(minutes=5),
        exit_ts=exit_ts,
        entry_legs=(),
        realized_pnl_usd=realized,
        meta=_meta(bucket, auto),
    )
    store.insert_position(position, [])
    return position


def _opportunity_id(store) -> int:
    stored = store.insert_opportunity(
        Opportunity(
            ts=NOW - timedelta(days=1),
            venue_key="okx",
            symbol="LOOP",
            type=OpportunityType.TRIANGULAR,
            net_edge_bps=5.0,
            expected_daily_bps=None,
            confidence=0.56,
            details=TriangularDetails(path="LOOP", legs=(), gross_bps=9.0, costs_bps=4.0),
        )
    )
    return stored.id


def _aggregator(store, market) -> PnlAggregator:
    return PnlAggregator(store, market, AppSettings())


class TestSummarize:
    def test_stats(self) -> None:
        stats = summarize([1.0, -1.0, 2.0])
        assert stats.closed == 3
        assert stats.pnl_usd == pytest.approx(2.0)
        assert stats.expectancy_usd == pytest.approx(0.6667)
        assert stats.win_rate == pytest.approx(0.6667)

    def test_empty(self) -> None:
        stats = summarize([])
        assert (stats.closed, stats.pnl_usd, stats.expectancy_usd, stats.win_rate) == (0, 0.0, 0.0, 0.0)


class TestDayStart:
    def test_midnight_utc(self) -> None:
        assert day_start(NOW) == datetime(2024, 5, 1, tzinfo=timezone.utc)


class TestComputeDaily:
    def test_marks_open_and_adds_closed_today(self, store, market) -> None:
        _open_carry(store)
        _closed(store, "tri-1", 1.25, NOW - timedelta(hours=1))
        _closed(store, "tri-old", 9.0, NOW - timedelta(days=1))
        market.set_carry("okx", "BTCUSDT", 100.9, 101.1, 100.4, 100.6, 0.0004)

        result = asyncio.run(_aggregator(store, market).compute_daily(NOW))

        assert result.day == "2024-05-01"
        assert result.open_marked == 1
        assert result.closed_today == 1
        by_key = {(r.strategy_key, r.exchange_key): r.pnl_usd for r in result.rows}
        assert by_key == {
            ("carry_spot_perp", "okx"): pytest.approx(4.6),
            ("tri_arb", "okx"): pytest.approx(1.25),
        }
        assert result.total_usd == pytest.approx(5.85)

    def test_recompute_replaces_rows(self, store, market) -> None:
        _open_carry(store)
        market.set_carry("okx", "BTCUSDT", 100.9, 101.1, 100.4, 100.6, 0.0004)
        aggregator = _aggregator(store, market)

        asyncio.run(aggregator.compute_daily(NOW))
        market.set_carry("okx", "BTCUSDT", 101.9, 102.1, 100.4, 100.6, 0.0004)
        asyncio.run(aggregator.compute_daily(NOW + timedelta(minutes=5)))

        rows = store.daily_pnl("2024-05-01")
        assert len(rows) == 1
        assert rows[0].pnl_usd == pytest.approx(9.6)

    def test_unpriced_position_reported(self, store, market) -> None:
        _open_carry(store)
        market.fail("okx", "BTCUSDT")

        result = asyncio.run(_aggregator(store, market).compute_daily(NOW))

        assert result.open_marked == 0
        assert result.rows == []
        assert result.unpriced[0]["position_id"] == "carry-1"


class TestAutoExpectancy:
    def test_grouped_by_bucket(self, store, market) -> None:
        _closed(store, "n1", 2.0, NOW - timedelta(hours=1))
        _closed(store, "n2", -1.0, NOW - timedelta(hours=2))
        _closed(store, "r1", 3.0, NOW - timedelta(hours=3), bucket=OpenBucket.REENTRY)
        _closed(store, "manual", 50.0, NOW - timedelta(hours=1), auto=False)
        _closed(store, "old", 50.0, NOW - timedelta(hours=30))

        stats = _aggregator(store, market).auto_expectancy(24.0, NOW)

        assert stats["normal"].closed == 2
        assert stats["normal"].expectancy_usd == pytest.approx(0.5)
        assert stats["normal"].win_rate == pytest.approx(0.5)
        assert stats["reentry"].closed == 1
        assert stats["reentry"].pnl_usd == pytest.approx(3.0)


class TestVariantReport:
    def test_realized_pnl_by_variant(self, store, market) -> None:
        outcomes = [("a1", Variant.A, 1.0), ("a2", Variant.A, 3.0), ("b1", Variant.B, -2.0)]
        decisions = []
        for position_id, variant, pnl in outcomes:
            _closed(store, position_id, pnl, NOW - timedelta(days=1))
            decisions.append(
                OpportunityDecision(
                    account_id="paper",
                    opportunity_id=_opportunity_id(store),
                    variant=variant,
                    score_rule=0.0,
                    score_ai=None,
                    score_effective=0.0,
                    features=FeatureVector(("bias",), (1.0,)),
                    chosen=True,
                    position_id=position_id,
                    ts=NOW - timedelta(days=1),
                )
            )
        store.insert_decisions(decisions)

        report = _aggregator(store, market).variant_report(30, NOW)

        assert report["A"].closed == 2
        assert report["A"].expectancy_usd == pytest.approx(2.0)
        assert report["A"].win_rate == 1.0
        assert report["B"].closed == 1
        assert report["B"].pnl_usd == pytest.approx(-2.0)
