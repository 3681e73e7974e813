from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from arbiter.config import AppSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider
from arbiter.models import DailyStrategyPnl, OpenBucket, Variant, utc_now
from arbiter.store import ArbStore
from arbiter.valuation import fetch_marks, mark_to_mid

LOGGER = logging.getLogger(__name__)


def day_start(now: datetime) -> datetime:
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


@dataclass
class DailyPnlResult:
    day: str
    rows: List[DailyStrategyPnl] = field(default_factory=list)
    open_marked: int = 0
    closed_today: int = 0
    unpriced: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total_usd(self) -> float:
        return sum(row.pnl_usd for row in self.rows)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "day": self.day,
            "total_usd": round(self.total_usd, 4),
            "open_marked": self.open_marked,
            "closed_today": self.closed_today,
            "unpriced": list(self.unpriced),
            "rows": [
                {"strategy_key": r.strategy_key, "exchange_key": r.exchange_key, "pnl_usd": r.pnl_usd}
                for r in self.rows
            ],
        }


@dataclass(frozen=True)
class BucketStats:
    closed: int
    pnl_usd: float
    expectancy_usd: float
    win_rate: float


def summarize(pnls: List[float]) -> BucketStats:
    count = len(pnls)
    total = sum(pnls)
    wins = sum(1 for p in pnls if p > 0)
    return BucketStats(
        closed=count,
        pnl_usd=round(total, 4),
        expectancy_usd=round(total / count, 4) if count else 0.0,
        win_rate=round(wins / count, 4) if count else 0.0,
    )


class PnlAggregator:
    def __init__(self, store: ArbStore, provider: MarketDataProvider, settings: AppSettings) -> None:
        self._store = store
        self._provider = provider
        self._settings = settings

    @property
    def account_id(self) -> str:
        return self._settings.execution.account_id

    async def compute_daily(self, now: Optional[datetime] = None) -> DailyPnlResult:
        """Recompute today's rows from scratch and replace them."""
        now = now or utc_now()
        start = day_start(now)
        result = DailyPnlResult(day=start.date().isoformat())
        totals: Dict[Tuple[str, str], float] = defaultdict(float)

        for position in self._store.open_positions(self.account_id):
            try:
                marks = await fetch_marks(self._provider, position, self._settings.quote_timeout_seconds)
                value = mark_to_mid(position, marks)
            except DataUnavailable as exc:
                result.unpriced.append({"position_id": position.id, "error": str(exc)})
                continue
            fees = sum(e.fee for e in self._store.executions_for(position.id))
            totals[(position.strategy_key, position.venue_key)] += value - fees
            result.open_marked += 1

        for position in self._store.closed_positions_since(self.account_id, start):
            totals[(position.strategy_key, position.venue_key)] += position.realized_pnl_usd or 0.0
            result.closed_today += 1

        result.rows = [
            DailyStrategyPnl(day=result.day, strategy_key=strategy, exchange_key=exchange, pnl_usd=round(pnl, 4))
            for (strategy, exchange), pnl in sorted(totals.items())
        ]
        self._store.replace_daily_pnl(result.day, result.rows)
        LOGGER.info("daily_pnl %s: %d rows total=%.4f", result.day, len(result.rows), result.total_usd)
        return result

    def auto_expectancy(self, window_hours: float = 24.0, now: Optional[datetime] = None) -> Dict[str, BucketStats]:
        """Closed-position stats per open bucket over the trailing window."""
        now = now or utc_now()
        grouped: Dict[str, List[float]] = {bucket.value: [] for bucket in OpenBucket}
        for position in self._store.closed_positions_since(self.account_id, now - timedelta(hours=window_hours)):
            if not position.meta.auto_execute or position.realized_pnl_usd is None:
                continue
            grouped[position.meta.open_bucket.value].append(position.realized_pnl_usd)
        return {bucket: summarize(pnls) for bucket, pnls in grouped.items()}

    def variant_report(self, days: float = 30.0, now: Optional[datetime] = None) -> Dict[str, BucketStats]:
        """A/B comparison of realized PnL by scoring variant."""
        now = now or utc_now()
        grouped: Dict[str, List[float]] = {variant.value: [] for variant in Variant}
        for variant, pnl in self._store.variant_outcomes(self.account_id, now - timedelta(days=days)):
            grouped[variant.value].append(pnl)
        return {variant: summarize(pnls) for variant, pnls in grouped.items()}
