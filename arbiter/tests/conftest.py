from __future__ import annotations

from typing import Dict, List, Tuple

import pytest

from arbiter.errors import QuoteFetchError
from arbiter.exchanges.base import MarketDataProvider, validate_book
from arbiter.models import CarryQuote, Quote, utc_now
from arbiter.store import ArbStore


class FakeMarketData(MarketDataProvider):
    """In-memory provider: quotes are set per (venue, symbol)."""

    def __init__(self) -> None:
        self.quotes: Dict[Tuple[str, str], Tuple[float, float]] = {}
        self.carry: Dict[Tuple[str, str], CarryQuote] = {}
        self.failures: Dict[Tuple[str, str], Exception] = {}
        self.calls: List[Tuple[str, str]] = []
        self.closed = False

    def set_quote(self, venue: str, symbol: str, bid: float, ask: float) -> None:
        self.quotes[(venue, symbol)] = (bid, ask)
        self.failures.pop((venue, symbol), None)

    def set_carry(
        self,
        venue: str,
        symbol: str,
        spot_bid: float,
        spot_ask: float,
        perp_bid: float,
        perp_ask: float,
        funding_rate: float | None,
    ) -> None:
        self.carry[(venue, symbol)] = CarryQuote(
            venue=venue,
            symbol=symbol,
            spot_bid=spot_bid,
            spot_ask=spot_ask,
            perp_bid=perp_bid,
            perp_ask=perp_ask,
            funding_rate=funding_rate,
            ts=utc_now(),
        )
        self.failures.pop((venue, symbol), None)

    def fail(self, venue: str, symbol: str, exc: Exception | None = None) -> None:
        self.failures[(venue, symbol)] = exc or QuoteFetchError(f"{venue} {symbol}: unavailable")

    async def get_quote(self, venue: str, symbol: str) -> Quote:
        self.calls.append((venue, symbol))
        if (venue, symbol) in self.failures:
            raise self.failures[(venue, symbol)]
        if (venue, symbol) not in self.quotes:
            raise QuoteFetchError(f"{venue} {symbol}: no quote")
        bid, ask = validate_book(venue, symbol, *self.quotes[(venue, symbol)])
        return Quote(venue=venue, symbol=symbol, bid=bid, ask=ask, ts=utc_now())

    async def get_carry_quote(self, venue: str, symbol: str) -> CarryQuote:
        self.calls.append((venue, symbol))
        if (venue, symbol) in self.failures:
            raise self.failures[(venue, symbol)]
        if (venue, symbol) not in self.carry:
            raise QuoteFetchError(f"{venue} {symbol}: no carry quote")
        return self.carry[(venue, symbol)]

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def store(tmp_path):
    db = ArbStore(tmp_path / "arbiter.db")
    yield db
    db.close()


@pytest.fixture
def market() -> FakeMarketData:
    return FakeMarketData()

