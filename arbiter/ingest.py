from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from arbiter.config import CarrySettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider, with_timeout
from arbiter.models import CarryQuote, MarketSnapshot
from arbiter.store import ArbStore

LOGGER = logging.getLogger(__name__)


@dataclass
class IngestResult:
    inserted: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"inserted": self.inserted, "errors": list(self.errors)}


class SnapshotIngestor:
    """Pulls spot/perp books and funding for the carry universe into the store."""

    def __init__(
        self,
        store: ArbStore,
        provider: MarketDataProvider,
        settings: CarrySettings,
        quote_timeout_seconds: float = 9.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings
        self._timeout = quote_timeout_seconds

    def universe(self) -> List[Tuple[str, str]]:
        return [(venue, symbol) for venue in self._settings.venues for symbol in self._settings.symbols]

    async def _fetch(self, venue: str, symbol: str) -> CarryQuote:
        return await with_timeout(self._provider.get_carry_quote(venue, symbol), self._timeout, f"{venue} {symbol}")

    async def run(self, pairs: Optional[List[Tuple[str, str]]] = None) -> IngestResult:
        pairs = pairs if pairs is not None else self.universe()
        result = IngestResult()
        outcomes = await asyncio.gather(*(self._fetch(v, s) for v, s in pairs), return_exceptions=True)
        for (venue, symbol), outcome in zip(pairs, outcomes):
            if isinstance(outcome, DataUnavailable):
                result.errors.append({"venue": venue, "symbol": symbol, "error": str(outcome)})
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            self._store.insert_snapshot(MarketSnapshot.from_carry_quote(outcome))
            result.inserted += 1
        if result.errors:
            LOGGER.warning("ingest: %d of %d pairs failed", len(result.errors), len(pairs))
        LOGGER.info("ingest: inserted=%d", result.inserted)
        return result
