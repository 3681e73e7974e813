from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

from arbiter.config import AppSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider
from arbiter.fill_model import simulate_fill
from arbiter.framework.exit_engine import ExitAction, ExitEngine, ExitEngineConfig, ExitEvaluation
from arbiter.ledger import CapitalLedger
from arbiter.models import Execution, OpportunityType, Position, PositionLeg, PositionStatus, Side, utc_now
from arbiter.store import ArbStore
from arbiter.valuation import (
    PositionMarks,
    fetch_marks,
    funding_daily_bps,
    live_net_edge_bps,
    mark_to_mid,
)

LOGGER = logging.getLogger(__name__)


@dataclass
class CloseResult:
    attempted: int = 0
    closed: int = 0
    skipped: int = 0
    reasons: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "closed": self.closed,
            "skipped": self.skipped,
            "reasons": list(self.reasons),
        }


@dataclass(frozen=True)
class CloseOutcome:
    closed: bool
    reason: str
    realized_pnl_usd: Optional[float] = None


class CloseMonitor:
    """Re-quotes open positions and closes those whose exit rules trip."""

    def __init__(
        self,
        store: ArbStore,
        provider: MarketDataProvider,
        ledger: CapitalLedger,
        settings: AppSettings,
        exit_engine: Optional[ExitEngine] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._ledger = ledger
        self._settings = settings
        self._exit_engine = exit_engine or ExitEngine(
            ExitEngineConfig(
                take_profit_pct=settings.close.take_profit_pct,
                stop_loss_pct=settings.close.stop_loss_pct,
            )
        )

    @property
    def account_id(self) -> str:
        return self._settings.execution.account_id

    def entry_fees(self, position: Position) -> float:
        return sum(e.fee for e in self._store.executions_for(position.id))

    async def marks_for(self, position: Position) -> PositionMarks:
        return await fetch_marks(self._provider, position, self._settings.quote_timeout_seconds)

    async def auto_close(self, now: Optional[datetime] = None) -> CloseResult:
        now = now or utc_now()
        result = CloseResult()
        for position in self._store.open_positions(self.account_id):
            result.attempted += 1
            outcome = await self.evaluate_and_close(position, now)
            if outcome.closed:
                result.closed += 1
            else:
                result.skipped += 1
                result.reasons.append({"position_id": position.id, "reason": outcome.reason})
        LOGGER.info("auto_close: attempted=%d closed=%d skipped=%d", result.attempted, result.closed, result.skipped)
        return result

    async def evaluate_and_close(self, position: Position, now: Optional[datetime] = None) -> CloseOutcome:
        if position.opportunity_type not in (OpportunityType.CARRY, OpportunityType.CROSS_EXCHANGE):
            return CloseOutcome(False, "unsupported_type")
        try:
            marks = await self.marks_for(position)
        except DataUnavailable as exc:
            LOGGER.debug("close check for %s skipped: %s", position.id, exc)
            return CloseOutcome(False, "live_price_error")

        unrealized = mark_to_mid(position, marks) - self.entry_fees(position)
        evaluation = self._exit_engine.evaluate(
            position.opportunity_type,
            unrealized_usd=unrealized,
            notional_usd=position.notional_usd,
            funding_daily_bps=funding_daily_bps(marks, self._settings),
            live_net_edge_bps=live_net_edge_bps(position, marks, self._settings),
        )
        if not evaluation.should_exit:
            return CloseOutcome(False, "hold")
        return await self._close(position, marks, unrealized, evaluation, now or utc_now())

    async def close_position(self, position_id: str, reason: str = "manual", now: Optional[datetime] = None) -> CloseOutcome:
        """Close one position on request, regardless of exit rules."""
        position = self._store.get_position(position_id)
        if position is None:
            return CloseOutcome(False, "not_found")
        if position.status is not PositionStatus.OPEN:
            return CloseOutcome(False, "already_closed")
        try:
            marks = await self.marks_for(position)
        except DataUnavailable as exc:
            LOGGER.warning("manual close of %s failed: %s", position_id, exc)
            return CloseOutcome(False, "live_price_error")
        unrealized = mark_to_mid(position, marks) - self.entry_fees(position)
        evaluation = ExitEvaluation(
            action=ExitAction.MANUAL,
            pnl_pct=unrealized / position.notional_usd if position.notional_usd > 0 else 0.0,
            reason=reason,
        )
        return await self._close(position, marks, unrealized, evaluation, now or utc_now())

    async def _close(
        self,
        position: Position,
        marks: PositionMarks,
        unrealized: float,
        evaluation: ExitEvaluation,
        now: datetime,
    ) -> CloseOutcome:
        meta = position.meta
        exit_legs: List[PositionLeg] = []
        executions: List[Execution] = []
        for leg in position.entry_legs:
            mark = marks.legs[leg.leg]
            side = leg.side.opposite
            fill = simulate_fill(
                side,
                mark.bid if side is Side.SELL else mark.ask,
                meta.notional_usd,
                meta.slippage_bps,
                meta.fee_bps,
            )
            exit_leg = PositionLeg(leg.leg, leg.venue, leg.symbol, side, -leg.qty, fill.fill_price)
            exit_legs.append(exit_leg)
            executions.append(
                Execution(
                    position_id=position.id,
                    leg=f"{leg.leg}_{side.value}",
                    qty=exit_leg.qty,
                    avg_price=fill.fill_price,
                    fee=fill.fee_usd,
                    ts=now,
                )
            )

        realized = round(unrealized - sum(e.fee for e in executions), 4)
        release = meta.notional_usd if meta.auto_execute else None
        closed = await self._ledger.close_position(
            position,
            exit_legs,
            now,
            realized,
            replace(meta, close_reason=evaluation.reason),
            executions,
            release_usd=release,
        )
        if not closed:
            return CloseOutcome(False, "already_closed")
        LOGGER.info(
            "Closed %s position %s (%s) realized=%.4f",
            position.opportunity_type.value, position.id, evaluation.action.value, realized,
        )
        return CloseOutcome(True, evaluation.reason, realized)
