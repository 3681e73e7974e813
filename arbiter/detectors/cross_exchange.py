from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from arbiter.config import CanonicalSymbol, CrossExchangeSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider, with_timeout
from arbiter.framework.dedupe import DUPLICATE_REASON, IdempotencyWindow, cross_venue_key
from arbiter.models import CrossExchangeDetails, Opportunity, OpportunityType, Quote, utc_now

from .base import BPS, DetectionReport, Evaluation, Outcome, round_bps

LOGGER = logging.getLogger(__name__)


class CrossExchangeDetector:
    """Buy on the venue with the lowest ask, sell on the one with the highest bid."""

    def __init__(
        self,
        provider: MarketDataProvider,
        window: IdempotencyWindow,
        settings: CrossExchangeSettings,
        quote_timeout_seconds: float = 9.0,
    ) -> None:
        self._provider = provider
        self._window = window
        self._settings = settings
        self._timeout = quote_timeout_seconds

    async def run(self, now: Optional[datetime] = None) -> DetectionReport:
        now = now or utc_now()
        report = DetectionReport(detector="cross_exchange")
        evaluations = await asyncio.gather(
            *(self._evaluate(symbol, now) for symbol in self._settings.symbols)
        )
        for evaluation in evaluations:
            report.record(evaluation)
        LOGGER.info("cross_exchange: inserted=%d skipped=%d", report.inserted, report.skipped)
        return report

    async def _quote(self, venue: str, venue_symbol: str) -> Optional[Quote]:
        try:
            return await with_timeout(
                self._provider.get_quote(venue, venue_symbol),
                self._timeout,
                f"{venue} {venue_symbol}",
            )
        except DataUnavailable as exc:
            LOGGER.debug("cross_exchange quote unavailable: %s", exc)
            return None

    async def _evaluate(self, canonical: CanonicalSymbol, now: datetime) -> Evaluation:
        settings = self._settings
        symbol = canonical.canonical
        if len(canonical.venue_symbols) < 2:
            return Evaluation("", symbol, Outcome.SKIPPED, "missing snapshots")

        fetched = await asyncio.gather(
            *(self._quote(venue, venue_symbol) for venue, venue_symbol in canonical.venue_symbols.items())
        )
        quotes: List[Quote] = [q for q in fetched if q is not None and q.bid > 0 and q.ask > q.bid]
        if len(quotes) < 2:
            return Evaluation("", symbol, Outcome.SKIPPED, "invalid quotes")

        buy = min(quotes, key=lambda q: q.ask)
        sell = max(quotes, key=lambda q: q.bid)
        if buy.venue == sell.venue:
            return Evaluation(buy.venue, symbol, Outcome.SKIPPED, "no cross-exchange edge")

        venue_key = cross_venue_key(buy.venue, sell.venue)
        gross = (sell.bid - buy.ask) / buy.ask * BPS
        net = round_bps(gross - settings.costs_bps)
        base = dict(venue_key=venue_key, symbol=symbol, gross_edge_bps=round_bps(gross), net_edge_bps=net)
        if net < settings.min_net_edge_bps:
            return Evaluation(outcome=Outcome.SKIPPED, reason="below threshold", **base)

        opportunity = Opportunity(
            ts=now,
            venue_key=venue_key,
            symbol=symbol,
            type=OpportunityType.CROSS_EXCHANGE,
            net_edge_bps=net,
            expected_daily_bps=None,
            confidence=settings.confidence,
            details=CrossExchangeDetails(
                buy_venue=buy.venue,
                sell_venue=sell.venue,
                buy_symbol=canonical.venue_symbols[buy.venue],
                sell_symbol=canonical.venue_symbols[sell.venue],
                buy_ask=buy.ask,
                sell_bid=sell.bid,
                gross_bps=round_bps(gross),
                costs_bps=settings.costs_bps,
                canonical_symbol=symbol,
            ),
        )
        stored = self._window.insert(opportunity)
        if stored is None:
            return Evaluation(outcome=Outcome.SKIPPED, reason=DUPLICATE_REASON, **base)
        LOGGER.info("cross_exchange opportunity %d: %s buy=%s sell=%s net=%.2fbps",
                    stored.id, symbol, buy.venue, sell.venue, net)
        return Evaluation(outcome=Outcome.INSERTED, opportunity_id=stored.id, **base)
