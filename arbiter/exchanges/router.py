from __future__ import annotations

from typing import Mapping

from arbiter.errors import QuoteFetchError
from arbiter.models import CarryQuote, Quote

from .base import MarketDataProvider


class VenueRouter(MarketDataProvider):
    """Dispatches each call to the provider registered for its venue."""

    def __init__(self, providers: Mapping[str, MarketDataProvider]) -> None:
        self._providers = {venue.lower(): provider for venue, provider in providers.items()}

    def _provider(self, venue: str) -> MarketDataProvider:
        provider = self._providers.get(venue.lower())
        if provider is None:
            raise QuoteFetchError(f"unsupported venue: {venue}")
        return provider

    async def get_quote(self, venue: str, symbol: str) -> Quote:
        return await self._provider(venue).get_quote(venue, symbol)

    async def get_carry_quote(self, venue: str, symbol: str) -> CarryQuote:
        return await self._provider(venue).get_carry_quote(venue, symbol)

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()


def default_router(timeout_seconds: float = 9.0) -> VenueRouter:
    from .bybit import BybitMarketData
    from .okx import OkxMarketData

    return VenueRouter(
        {
            "bybit": BybitMarketData(timeout_seconds=timeout_seconds),
            "okx": OkxMarketData(timeout_seconds=timeout_seconds),
        }
    )
