from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import List, Optional

from arbiter.config import TriangularPath, TriangularSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider, with_timeout
from arbiter.framework.dedupe import DUPLICATE_REASON, IdempotencyWindow
from arbiter.models import Opportunity, OpportunityType, Side, TriangularDetails, TriangularLeg, utc_now

from .base import BPS, DetectionReport, Evaluation, Outcome, round_bps

LOGGER = logging.getLogger(__name__)


def confidence_for_triangular(net_edge_bps: float) -> float:
    if net_edge_bps >= 20:
        return 0.64
    if net_edge_bps >= 12:
        return 0.60
    return 0.56


def walk_path(legs: List[TriangularLeg], start: float = 1.0) -> float:
    """Amount after converting ``start`` through each leg at top of book."""
    amount = start
    for leg in legs:
        if leg.side is Side.BUY:
            amount /= leg.ask
        else:
            amount *= leg.bid
    return amount


class TriangularDetector:
    """Single-venue three-leg loops that start and end in the quote currency."""

    def __init__(
        self,
        provider: MarketDataProvider,
        window: IdempotencyWindow,
        settings: TriangularSettings,
        quote_timeout_seconds: float = 9.0,
    ) -> None:
        self._provider = provider
        self._window = window
        self._settings = settings
        self._timeout = quote_timeout_seconds

    async def run(self, now: Optional[datetime] = None) -> DetectionReport:
        now = now or utc_now()
        report = DetectionReport(detector="triangular")
        evaluations = await asyncio.gather(*(self._evaluate(path, now) for path in self._settings.paths))
        for evaluation in evaluations:
            report.record(evaluation)
        LOGGER.info("triangular: inserted=%d skipped=%d", report.inserted, report.skipped)
        return report

    async def fetch_legs(self, path: TriangularPath) -> List[TriangularLeg]:
        """Quote every leg concurrently; any failure fails the whole path."""
        venue = self._settings.venue
        quotes = await asyncio.gather(
            *(
                with_timeout(self._provider.get_quote(venue, step.symbol), self._timeout, f"{venue} {step.symbol}")
                for step in path.steps
            ),
            return_exceptions=True,
        )
        for result in quotes:
            if isinstance(result, BaseException):
                raise result
        return [
            TriangularLeg(symbol=step.symbol, side=step.side, bid=quote.bid, ask=quote.ask)
            for step, quote in zip(path.steps, quotes)
        ]

    async def _evaluate(self, path: TriangularPath, now: datetime) -> Evaluation:
        settings = self._settings
        try:
            legs = await self.fetch_legs(path)
        except DataUnavailable as exc:
            LOGGER.debug("triangular %s skipped: %s", path.name, exc)
            return Evaluation(settings.venue, path.name, Outcome.SKIPPED, str(exc))

        gross = (walk_path(legs) - 1) * BPS
        net = round_bps(gross - settings.costs_bps)
        base = dict(venue_key=settings.venue, symbol=path.name, gross_edge_bps=round_bps(gross), net_edge_bps=net)
        if net < settings.min_net_edge_bps:
            return Evaluation(outcome=Outcome.SKIPPED, reason="below threshold", **base)

        opportunity = Opportunity(
            ts=now,
            venue_key=settings.venue,
            symbol=path.name,
            type=OpportunityType.TRIANGULAR,
            net_edge_bps=net,
            expected_daily_bps=None,
            confidence=confidence_for_triangular(net),
            details=TriangularDetails(
                path=path.name,
                legs=tuple(legs),
                gross_bps=round_bps(gross),
                costs_bps=settings.costs_bps,
            ),
        )
        stored = self._window.insert(opportunity)
        if stored is None:
            return Evaluation(outcome=Outcome.SKIPPED, reason=DUPLICATE_REASON, **base)
        LOGGER.info("triangular opportunity %d: %s net=%.2fbps", stored.id, path.name, net)
        return Evaluation(outcome=Outcome.INSERTED, opportunity_id=stored.id, **base)
