"""Deterministic paper fills.

A simulated fill pays slippage against the reference price in the
direction of the trade and a flat fee on the notional::

    fill = simulate_fill(Side.BUY, price=100.0, notional_usd=300.0,
                         slippage_bps=2.0, fee_bps=4.0)
    fill.fill_price  # 100.02
"""

from __future__ import annotations

from dataclasses import dataclass

from arbiter.models import Side

BPS = 10000.0


@dataclass(frozen=True)
class SimulatedFill:
    side: Side
    reference_price: float
    fill_price: float
    qty: float
    fee_usd: float
    notional_usd: float


def simulate_fill(
    side: Side,
    price: float,
    notional_usd: float,
    slippage_bps: float,
    fee_bps: float,
) -> SimulatedFill:
    """Simulate a taker fill of ``notional_usd`` at ``price``.

    Buys fill at ``price * (1 + slip)`` and sells at ``price * (1 - slip)``,
    so for any non-negative slippage a buy never fills below the reference
    and a sell never fills above it.
    """
    if price <= 0:
        raise ValueError(f"reference price must be positive, got {price}")
    if notional_usd <= 0:
        raise ValueError(f"notional must be positive, got {notional_usd}")
    slip = max(0.0, slippage_bps) / BPS
    if slip >= 1.0:
        raise ValueError(f"slippage must be below 10000 bps, got {slippage_bps}")
    fee_rate = max(0.0, fee_bps) / BPS

    if side is Side.BUY:
        fill_price = price * (1.0 + slip)
    else:
        fill_price = price * (1.0 - slip)

    return SimulatedFill(
        side=side,
        reference_price=price,
        fill_price=fill_price,
        qty=notional_usd / fill_price,
        fee_usd=notional_usd * fee_rate,
        notional_usd=notional_usd,
    )
