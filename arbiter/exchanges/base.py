from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, TypeVar

from arbiter.errors import DataUnavailable, InvalidQuote, QuoteFetchError
from arbiter.models import CarryQuote, Quote

T = TypeVar("T")


def validate_book(venue: str, symbol: str, bid: float | None, ask: float | None) -> tuple[float, float]:
    """Return ``(bid, ask)`` or raise InvalidQuote for a non-positive or crossed book."""
    if bid is None or ask is None or bid <= 0 or ask <= 0:
        raise InvalidQuote(f"{venue} {symbol}: non-positive bid/ask")
    if ask <= bid:
        raise InvalidQuote(f"{venue} {symbol}: crossed book (bid={bid} ask={ask})")
    return bid, ask


class MarketDataProvider(ABC):
    """Best bid/ask (and funding, for perpetuals) for a venue/symbol pair.

    Implementations raise ``InvalidQuote`` when the venue answers with an
    unusable book and ``QuoteFetchError`` when the call itself fails.
    """

    @abstractmethod
    async def get_quote(self, venue: str, symbol: str) -> Quote:
        raise NotImplementedError

    @abstractmethod
    async def get_carry_quote(self, venue: str, symbol: str) -> CarryQuote:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None


async def with_timeout(awaitable: Awaitable[T], timeout_seconds: float, label: str) -> T:
    """Await one venue call with a deadline.

    Expiry and any error other than DataUnavailable surface as QuoteFetchError.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout_seconds)
    except asyncio.TimeoutError as exc:
        raise QuoteFetchError(f"{label}: timed out after {timeout_seconds:.1f}s") from exc
    except DataUnavailable:
        raise
    except Exception as exc:
        raise QuoteFetchError(f"{label}: {type(exc).__name__}: {exc}") from exc
