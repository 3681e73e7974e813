"""Spot/perpetual carry detection over recently ingested snapshots.

For each ``(venue, symbol)`` the freshest snapshot with two uncrossed books is
evaluated. The basis is taken between the spot and perpetual mids; the
executable entry basis (spot ask against perp bid) is kept alongside it for
reference. The funding leg accrues over the requested holding period.
Candidates are inserted only when the funding covers the round-trip cost
within ``max_break_even_hours`` *and* the net edge clears the minimum; slower
break-evens up to ``watchlist_break_even_hours`` are reported but not persisted.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from arbiter.config import CarrySettings
from arbiter.framework.dedupe import DUPLICATE_REASON, IdempotencyWindow
from arbiter.models import CarryDetails, MarketSnapshot, Opportunity, OpportunityType, utc_now
from arbiter.store import ArbStore

from .base import BPS, DetectionReport, Evaluation, Outcome, round_bps

LOGGER = logging.getLogger(__name__)

MIN_HOLDING_HOURS = 1.0


def clamp_holding_hours(value: Optional[float], default: float = 24.0, maximum: float = 168.0) -> float:
    if value is None:
        return default
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return default
    if hours != hours:
        return default
    return min(max(hours, MIN_HOLDING_HOURS), maximum)


def carry_metrics(snapshot: MarketSnapshot, holding_hours: float, settings: CarrySettings) -> CarryDetails:
    """Basis, funding and break-even numbers for a snapshot with valid books."""
    spot_bid = float(snapshot.spot_bid)  # type: ignore[arg-type]
    spot_ask = float(snapshot.spot_ask)  # type: ignore[arg-type]
    perp_bid = float(snapshot.perp_bid)  # type: ignore[arg-type]
    perp_ask = float(snapshot.perp_ask)  # type: ignore[arg-type]
    spot_mid = (spot_bid + spot_ask) / 2
    perp_mid = (perp_bid + perp_ask) / 2

    basis_bps = (perp_mid - spot_mid) / spot_mid * BPS
    entry_basis_bps = (perp_bid - spot_ask) / spot_ask * BPS
    funding_rate = snapshot.funding_rate or 0.0
    funding_daily_bps = funding_rate * settings.funding_periods_per_day * BPS
    expected_holding_bps = funding_daily_bps * holding_hours / 24
    total_costs = settings.total_costs_bps

    break_even: Optional[float] = None
    if funding_daily_bps > 0:
        break_even = max(0.0, round(24 * (total_costs - basis_bps) / funding_daily_bps, 2))

    return CarryDetails(
        basis_bps=round_bps(basis_bps),
        entry_basis_bps=round_bps(entry_basis_bps),
        funding_rate=funding_rate,
        funding_daily_bps=round_bps(funding_daily_bps),
        expected_holding_bps=round_bps(expected_holding_bps),
        total_costs_bps=total_costs,
        break_even_hours=break_even,
        holding_hours=holding_hours,
        spot_bid=spot_bid,
        spot_ask=spot_ask,
        perp_bid=perp_bid,
        perp_ask=perp_ask,
    )


class CarryDetector:
    def __init__(self, store: ArbStore, window: IdempotencyWindow, settings: CarrySettings) -> None:
        self._store = store
        self._window = window
        self._settings = settings

    def run(self, holding_hours: Optional[float] = None, now: Optional[datetime] = None) -> DetectionReport:
        settings = self._settings
        now = now or utc_now()
        hours = clamp_holding_hours(holding_hours, settings.default_holding_hours, settings.max_holding_hours)
        report = DetectionReport(detector="carry")

        since = now - timedelta(seconds=settings.lookback_seconds)
        snapshots = self._store.snapshots_since(since, venues=list(settings.venues))

        # Snapshots arrive freshest first; keep the first valid one per key.
        seen: Dict[Tuple[str, str], None] = {}
        freshest: Dict[Tuple[str, str], MarketSnapshot] = {}
        for snapshot in snapshots:
            key = (snapshot.venue, snapshot.symbol)
            seen.setdefault(key, None)
            if key not in freshest and snapshot.has_valid_books:
                freshest[key] = snapshot

        for key in seen:
            venue, symbol = key
            snapshot = freshest.get(key)
            if snapshot is None:
                LOGGER.debug("carry %s %s: no valid snapshot", venue, symbol)
                report.record(Evaluation(venue, symbol, Outcome.SKIPPED, "no valid snapshot"))
                continue
            report.record(self._evaluate(snapshot, hours, now))

        LOGGER.info(
            "carry: inserted=%d watchlist=%d skipped=%d (holding %.1fh)",
            report.inserted, report.watchlist, report.skipped, hours,
        )
        return report

    def _evaluate(self, snapshot: MarketSnapshot, hours: float, now: datetime) -> Evaluation:
        settings = self._settings
        details = carry_metrics(snapshot, hours, settings)
        gross = details.basis_bps + details.expected_holding_bps
        net = round_bps(gross - details.total_costs_bps)
        base = dict(
            venue_key=snapshot.venue,
            symbol=snapshot.symbol,
            gross_edge_bps=round_bps(gross),
            net_edge_bps=net,
            break_even_hours=details.break_even_hours,
        )

        if details.funding_daily_bps <= 0:
            return Evaluation(outcome=Outcome.SKIPPED, reason="non-positive funding", **base)

        break_even = details.break_even_hours
        if break_even is not None and break_even <= settings.max_break_even_hours and net >= settings.min_net_edge_bps:
            opportunity = Opportunity(
                ts=now,
                venue_key=snapshot.venue,
                symbol=snapshot.symbol,
                type=OpportunityType.CARRY,
                net_edge_bps=net,
                expected_daily_bps=details.funding_daily_bps,
                confidence=settings.confidence,
                details=details,
            )
            stored = self._window.insert(opportunity)
            if stored is None:
                return Evaluation(outcome=Outcome.SKIPPED, reason=DUPLICATE_REASON, **base)
            LOGGER.info("carry opportunity %d: %s %s net=%.2fbps", stored.id, snapshot.venue, snapshot.symbol, net)
            return Evaluation(outcome=Outcome.INSERTED, opportunity_id=stored.id, **base)

        if break_even is not None and break_even <= settings.watchlist_break_even_hours:
            return Evaluation(outcome=Outcome.WATCHLIST, **base)

        return Evaluation(outcome=Outcome.SKIPPED, reason="below threshold", **base)
