"""Live marks for open positions, shared by the close monitor and daily PnL."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from arbiter.config import AppSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider, validate_book, with_timeout
from arbiter.models import OpportunityType, Position

BPS = 10000.0

CARRY_SPOT_LEG = "spot"
CARRY_PERP_LEG = "perp"
CROSS_LONG_LEG = "long"
CROSS_SHORT_LEG = "short"


@dataclass(frozen=True)
class LegMark:
    bid: float
    ask: float

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class PositionMarks:
    legs: Dict[str, LegMark]
    funding_rate: Optional[float] = None


async def fetch_marks(provider: MarketDataProvider, position: Position, timeout_seconds: float) -> PositionMarks:
    """Re-quote every leg of ``position``; raises DataUnavailable when any is missing."""
    if position.opportunity_type is OpportunityType.CARRY:
        quote = await with_timeout(
            provider.get_carry_quote(position.venue_key, position.symbol),
            timeout_seconds,
            f"{position.venue_key} {position.symbol}",
        )
        spot = validate_book(quote.venue, quote.symbol, quote.spot_bid, quote.spot_ask)
        perp = validate_book(quote.venue, quote.symbol, quote.perp_bid, quote.perp_ask)
        return PositionMarks(
            legs={CARRY_SPOT_LEG: LegMark(*spot), CARRY_PERP_LEG: LegMark(*perp)},
            funding_rate=quote.funding_rate,
        )

    if position.opportunity_type is OpportunityType.CROSS_EXCHANGE:
        quotes = await asyncio.gather(
            *(
                with_timeout(provider.get_quote(leg.venue, leg.symbol), timeout_seconds, f"{leg.venue} {leg.symbol}")
                for leg in position.entry_legs
            )
        )
        legs: Dict[str, LegMark] = {}
        for leg, quote in zip(position.entry_legs, quotes):
            legs[leg.leg] = LegMark(*validate_book(quote.venue, quote.symbol, quote.bid, quote.ask))
        return PositionMarks(legs=legs)

    raise DataUnavailable(f"no live marks for {position.opportunity_type.value} positions")


def mark_to_mid(position: Position, marks: PositionMarks) -> float:
    """Σ signed qty × (mid − entry price) over the entry legs."""
    total = 0.0
    for leg in position.entry_legs:
        mark = marks.legs.get(leg.leg)
        if mark is None:
            raise DataUnavailable(f"missing mark for leg {leg.leg} of {position.id}")
        total += leg.qty * (mark.mid - leg.price)
    return total


def live_net_edge_bps(position: Position, marks: PositionMarks, settings: AppSettings) -> Optional[float]:
    if position.opportunity_type is OpportunityType.CARRY:
        spot = marks.legs[CARRY_SPOT_LEG]
        perp = marks.legs[CARRY_PERP_LEG]
        basis = (perp.mid - spot.mid) / spot.mid * BPS
        holding = funding_daily_bps(marks, settings) * settings.close.holding_hours / 24
        return basis + holding - settings.close.carry_costs_bps
    if position.opportunity_type is OpportunityType.CROSS_EXCHANGE:
        long = marks.legs[CROSS_LONG_LEG]
        short = marks.legs[CROSS_SHORT_LEG]
        return (short.bid - long.ask) / long.ask * BPS - settings.cross_exchange.costs_bps
    return None


def funding_daily_bps(marks: PositionMarks, settings: AppSettings) -> float:
    return (marks.funding_rate or 0.0) * settings.carry.funding_periods_per_day * BPS
