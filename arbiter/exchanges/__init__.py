from .base import MarketDataProvider, validate_book, with_timeout
from .bybit import BybitMarketData
from .okx import OkxMarketData
from .router import VenueRouter, default_router

__all__ = [
    "BybitMarketData",
    "MarketDataProvider",
    "OkxMarketData",
    "VenueRouter",
    "default_router",
    "validate_book",
    "with_timeout",
]
