"""Tests for the paper capital ledger."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from arbiter.ledger import CapitalLedger
from arbiter.models import (
    Execution,
    OpportunityType,
    Position,
    PositionLeg,
    PositionMeta,
    PositionStatus,
    Side,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _ledger(store, balance: float = 10000.0) -> CapitalLedger:
    ledger = CapitalLedger(store)
    ledger.ensure("paper", balance, 100.0, 500.0)
    return ledger


def _position(position_id: str = "carry-1", account_id: str = "paper", notional: float = 300.0) -> Position:
    return Position(
        id=position_id,
        account_id=account_id,
        opportunity_id=1,
        opportunity_type=OpportunityType.CARRY,
        venue_key="okx",
        symbol="BTCUSDT",
        status=PositionStatus.OPEN,
        entry_ts=NOW,
        entry_legs=(
            PositionLeg("spot", "okx", "BTCUSDT", Side.BUY, 3.0, 100.0),
            PositionLeg("perp", "okx", "BTCUSDT", Side.SELL, -3.0, 100.5),
        ),
        meta=PositionMeta(
            notional_usd=notional,
            notional_reason="break_even_fast",
            fee_bps=4.0,
            slippage_bps=2.0,
        ),
    )


def _entries(position: Position) -> list[Execution]:
    return [
        Execution(position.id, "spot_buy", 3.0, 100.0, 0.12, NOW),
        Execution(position.id, "perp_sell", -3.0, 100.5, 0.12, NOW),
    ]


def _open(ledger: CapitalLedger, position: Position, reserve: float | None = None) -> bool:
    amount = position.meta.notional_usd if reserve is None else reserve
    return asyncio.run(ledger.open_position(position, _entries(position), reserve_usd=amount))


def _close(ledger: CapitalLedger, position: Position, release: float | None = None) -> bool:
    amount = position.meta.notional_usd if release is None else release
    exit_legs = (
        PositionLeg("spot", "okx", "BTCUSDT", Side.SELL, -3.0, 100.4),
        PositionLeg("perp", "okx", "BTCUSDT", Side.BUY, 3.0, 100.3),
    )
    exits = [
        Execution(position.id, "spot_sell", -3.0, 100.4, 0.12, NOW + timedelta(hours=1)),
        Execution(position.id, "perp_buy", 3.0, 100.3, 0.12, NOW + timedelta(hours=1)),
    ]
    return asyncio.run(
        ledger.close_position(
            position,
            exit_legs,
            NOW + timedelta(hours=1),
            1.32,
            replace(position.meta, close_reason="manual"),
            exits,
            release_usd=amount,
        )
    )


class TestCapitalLedger:
    def test_open_then_close_returns_to_zero(self, store) -> None:
        ledger = _ledger(store)
        position = _position()

        assert _open(ledger, position) is True
        account = ledger.snapshot("paper")
        assert account.reserved_usd == pytest.approx(300.0)
        assert account.available_usd == pytest.approx(9700.0)
        assert store.get_position(position.id).status is PositionStatus.OPEN

        assert _close(ledger, position) is True
        account = ledger.snapshot("paper")
        assert account.reserved_usd == 0.0
        assert account.available_usd == pytest.approx(10000.0)
        assert store.get_position(position.id).status is PositionStatus.CLOSED

    def test_open_over_balance_rolls_back_position(self, store) -> None:
        ledger = _ledger(store, balance=200.0)
        position = _position()

        assert _open(ledger, position) is False
        assert ledger.snapshot("paper").reserved_usd == 0.0
        assert store.get_position(position.id) is None
        assert store.executions_for(position.id) == []

    def test_open_up_to_balance_exactly(self, store) -> None:
        ledger = _ledger(store, balance=500.0)
        assert _open(ledger, _position(notional=500.0)) is True
        assert ledger.snapshot("paper").available_usd == 0.0

    def test_open_without_reserve_leaves_capital_alone(self, store) -> None:
        ledger = _ledger(store)
        position = _position()

        stored = asyncio.run(ledger.open_position(position, _entries(position), reserve_usd=None))

        assert stored is True
        assert ledger.snapshot("paper").reserved_usd == 0.0

    def test_release_floors_at_zero(self, store) -> None:
        ledger = _ledger(store)
        position = _position(notional=100.0)
        _open(ledger, position)

        _close(ledger, position, release=250.0)

        assert ledger.snapshot("paper").reserved_usd == 0.0

    def test_second_close_releases_nothing(self, store) -> None:
        ledger = _ledger(store)
        first, second = _position("carry-1"), _position("carry-2")
        _open(ledger, first)
        _open(ledger, second)

        assert _close(ledger, first) is True
        assert _close(ledger, first) is False

        assert ledger.snapshot("paper").reserved_usd == pytest.approx(300.0)

    def test_ensure_keeps_existing_account(self, store) -> None:
        ledger = _ledger(store)
        _open(ledger, _position(notional=100.0))
        account = ledger.ensure("paper", 99999.0, 1.0, 2.0)
        assert account.balance_usd == 10000.0
        assert account.reserved_usd == pytest.approx(100.0)

    def test_unknown_account(self, store) -> None:
        with pytest.raises(KeyError):
            CapitalLedger(store).snapshot("nobody")

    def test_negative_amounts_rejected(self, store) -> None:
        ledger = _ledger(store)
        position = _position()
        with pytest.raises(ValueError):
            _open(ledger, position, reserve=-1.0)
        assert store.get_position(position.id) is None

        _open(ledger, position)
        with pytest.raises(ValueError):
            _close(ledger, position, release=-1.0)
        assert store.get_position(position.id).status is PositionStatus.OPEN


class TestLedgerConcurrency:
    def test_concurrent_opens_never_exceed_balance(self, store) -> None:
        ledger = _ledger(store, balance=1000.0)
        positions = [_position(f"carry-{i}") for i in range(10)]

        async def _run() -> list[bool]:
            return await asyncio.gather(
                *(ledger.open_position(p, _entries(p), reserve_usd=300.0) for p in positions)
            )

        results = asyncio.run(_run())

        assert results.count(True) == 3
        account = ledger.snapshot("paper")
        assert account.reserved_usd == pytest.approx(900.0)
        assert 0.0 <= account.reserved_usd <= account.balance_usd
        assert len(store.open_positions("paper")) == 3

    def test_lock_is_per_account(self, store) -> None:
        ledger = CapitalLedger(store)
        assert ledger.lock_for("a") is ledger.lock_for("a")
        assert ledger.lock_for("a") is not ledger.lock_for("b")
