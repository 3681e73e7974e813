from __future__ import annotations

import logging
from typing import Any

import httpx

from arbiter.errors import QuoteFetchError
from arbiter.models import CarryQuote, Quote

from ._http import get_json, to_float
from .base import MarketDataProvider, validate_book

LOGGER = logging.getLogger(__name__)


def okx_spot_inst_id(symbol: str) -> str:
    """``BTCUSDT`` -> ``BTC-USDT``; already dashed ids pass through."""
    if "-" in symbol:
        return symbol.upper()
    base = symbol.upper().replace("USDT", "")
    return f"{base}-USDT"


def okx_swap_inst_id(symbol: str) -> str:
    return f"{okx_spot_inst_id(symbol)}-SWAP"


class OkxMarketData(MarketDataProvider):
    venue = "okx"

    def __init__(
        self,
        base_url: str = "https://www.okx.com",
        timeout_seconds: float = 9.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)

    async def _ticker(self, inst_id: str) -> dict[str, Any]:
        payload = await get_json(self._client, self.venue, "/api/v5/market/ticker", {"instId": inst_id})
        if not isinstance(payload, dict):
            raise QuoteFetchError(f"okx {inst_id}: unexpected payload")
        if str(payload.get("code")) != "0" or not payload.get("data"):
            raise QuoteFetchError(f"okx {inst_id}: {payload.get('msg') or 'empty ticker'}")
        return payload["data"][0]

    async def _funding_rate(self, inst_id: str) -> float | None:
        try:
            payload = await get_json(self._client, self.venue, "/api/v5/public/funding-rate", {"instId": inst_id})
        except QuoteFetchError as exc:
            LOGGER.debug("okx funding unavailable for %s: %s", inst_id, exc)
            return None
        if not isinstance(payload, dict) or str(payload.get("code")) != "0" or not payload.get("data"):
            return None
        return to_float(payload["data"][0].get("fundingRate"))

    async def get_quote(self, venue: str, symbol: str) -> Quote:
        inst_id = okx_spot_inst_id(symbol)
        ticker = await self._ticker(inst_id)
        bid, ask = validate_book(self.venue, inst_id, to_float(ticker.get("bidPx")), to_float(ticker.get("askPx")))
        return Quote(venue=self.venue, symbol=symbol, bid=bid, ask=ask)

    async def get_carry_quote(self, venue: str, symbol: str) -> CarryQuote:
        spot = await self._ticker(okx_spot_inst_id(symbol))
        swap_id = okx_swap_inst_id(symbol)
        swap = await self._ticker(swap_id)
        spot_bid, spot_ask = validate_book(self.venue, symbol, to_float(spot.get("bidPx")), to_float(spot.get("askPx")))
        perp_bid, perp_ask = validate_book(self.venue, swap_id, to_float(swap.get("bidPx")), to_float(swap.get("askPx")))
        return CarryQuote(
            venue=self.venue,
            symbol=symbol,
            spot_bid=spot_bid,
            spot_ask=spot_ask,
            perp_bid=perp_bid,
            perp_ask=perp_ask,
            funding_rate=await self._funding_rate(swap_id),
        )

    async def aclose(self) -> None:
        await self._client.aclose()
