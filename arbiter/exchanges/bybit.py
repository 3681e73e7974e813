from __future__ import annotations

from typing import Any

import httpx

from arbiter.errors import QuoteFetchError
from arbiter.models import CarryQuote, Quote

from ._http import get_json, to_float
from .base import MarketDataProvider, validate_book


class BybitMarketData(MarketDataProvider):
    venue = "bybit"

    def __init__(
        self,
        base_url: str = "https://api.bybit.com",
        timeout_seconds: float = 9.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)

    async def _ticker(self, category: str, symbol: str) -> dict[str, Any]:
        payload = await get_json(
            self._client,
            self.venue,
            "/v5/market/tickers",
            {"category": category, "symbol": symbol.upper()},
        )
        if not isinstance(payload, dict):
            raise QuoteFetchError(f"bybit {category} {symbol}: unexpected payload")
        if payload.get("retCode") != 0:
            raise QuoteFetchError(f"bybit {category} {symbol}: {payload.get('retMsg')}")
        items = (payload.get("result") or {}).get("list") or []
        if not items:
            raise QuoteFetchError(f"bybit {category} {symbol}: empty ticker")
        return items[0]

    async def get_quote(self, venue: str, symbol: str) -> Quote:
        ticker = await self._ticker("spot", symbol)
        bid, ask = validate_book(self.venue, symbol, to_float(ticker.get("bid1Price")), to_float(ticker.get("ask1Price")))
        return Quote(venue=self.venue, symbol=symbol, bid=bid, ask=ask)

    async def get_carry_quote(self, venue: str, symbol: str) -> CarryQuote:
        spot = await self._ticker("spot", symbol)
        perp = await self._ticker("linear", symbol)
        spot_bid, spot_ask = validate_book(self.venue, symbol, to_float(spot.get("bid1Price")), to_float(spot.get("ask1Price")))
        perp_bid, perp_ask = validate_book(self.venue, symbol, to_float(perp.get("bid1Price")), to_float(perp.get("ask1Price")))
        return CarryQuote(
            venue=self.venue,
            symbol=symbol,
            spot_bid=spot_bid,
            spot_ask=spot_ask,
            perp_bid=perp_bid,
            perp_ask=perp_ask,
            funding_rate=to_float(perp.get("fundingRate")),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
