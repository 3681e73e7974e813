"""Paper execution of scored opportunities.

Pipeline per tick: precheck -> load fresh opportunities -> score -> persist one
decision per candidate -> optional re-rank -> risk gate -> simulated fills.

Carry and cross-exchange trades open a two-leg position and reserve its
notional in the same store transaction. Triangular loops settle immediately
and are stored already closed, without touching the ledger.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from arbiter.config import AppSettings
from arbiter.errors import DataUnavailable
from arbiter.exchanges.base import MarketDataProvider, validate_book, with_timeout
from arbiter.fill_model import BPS, SimulatedFill, simulate_fill
from arbiter.ledger import CapitalLedger
from arbiter.models import (
    CarryDetails,
    CrossExchangeDetails,
    Execution,
    OpenBucket,
    Opportunity,
    OpportunityDecision,
    Position,
    PositionLeg,
    PositionMeta,
    PositionStatus,
    Side,
    TriangularDetails,
    utc_now,
)
from arbiter.risk import RiskGate
from arbiter.scoring.ranker import LlmRanker
from arbiter.scoring.scorer import ModelTrainer, OpportunityScorer, ScoredCandidate
from arbiter.store import ArbStore
from arbiter.valuation import CARRY_PERP_LEG, CARRY_SPOT_LEG, CROSS_LONG_LEG, CROSS_SHORT_LEG

LOGGER = logging.getLogger(__name__)


@dataclass
class AutoExecuteResult:
    attempted: int = 0
    created: int = 0
    skipped: int = 0
    reasons: List[Dict[str, Any]] = field(default_factory=list)
    llm_used: int = 0
    llm_remaining: int = 0
    model_trained: bool = False
    position_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "created": self.created,
            "skipped": self.skipped,
            "reasons": list(self.reasons),
            "llm_used": self.llm_used,
            "llm_remaining": self.llm_remaining,
            "model_trained": self.model_trained,
            "position_ids": list(self.position_ids),
        }


@dataclass(frozen=True)
class ExecutionOutcome:
    ok: bool
    reason: str
    position: Optional[Position] = None


def execution_leg_name(leg: PositionLeg, side: Side) -> str:
    return f"{leg.leg}_{side.value}"


class ExecutionEngine:
    def __init__(
        self,
        store: ArbStore,
        provider: MarketDataProvider,
        ledger: CapitalLedger,
        risk_gate: RiskGate,
        settings: AppSettings,
        scorer: Optional[OpportunityScorer] = None,
        trainer: Optional[ModelTrainer] = None,
        ranker: Optional[LlmRanker] = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._ledger = ledger
        self._risk = risk_gate
        self._settings = settings
        self._scorer = scorer or OpportunityScorer(settings.scoring.max_candidates)
        self._trainer = trainer or ModelTrainer(
            store,
            ridge_lambda=settings.scoring.ridge_lambda,
            min_samples=settings.scoring.min_training_samples,
        )
        self._ranker = ranker

    @property
    def account_id(self) -> str:
        return self._settings.execution.account_id

    def ensure_account(self) -> None:
        execution = self._settings.execution
        self._ledger.ensure(
            execution.account_id,
            execution.starting_balance_usd,
            execution.min_notional_usd,
            execution.max_notional_usd,
        )

    # ------------------------------------------------------------------
    # Auto-execute pipeline
    # ------------------------------------------------------------------

    async def auto_execute(self, now: Optional[datetime] = None) -> AutoExecuteResult:
        now = now or utc_now()
        settings = self._settings
        account_id = self.account_id
        self.ensure_account()
        result = AutoExecuteResult()

        ok, reason = self._risk.tick_precheck(account_id, now)
        if not ok:
            LOGGER.info("auto_execute skipped for %s: %s", account_id, reason)
            result.reasons.append({"opportunity_id": None, "reason": reason})
            return result

        since = now - timedelta(hours=settings.scoring.opportunity_lookback_hours)
        opportunities = self._store.new_opportunities(since, settings.scoring.opportunity_fetch_limit)
        if not opportunities:
            return result

        model = self._trainer.train(account_id, settings.scoring.training_window_days, now)
        result.model_trained = model is not None
        candidates = self._scorer.score(opportunities, model)

        decisions = [self._decision_for(candidate, account_id, now) for candidate in candidates]
        self._store.insert_decisions(decisions)
        by_opportunity = {d.opportunity_id: d for d in decisions}

        if self._ranker is not None:
            outcome = await self._ranker.rerank(candidates, account_id, now)
            result.llm_used = outcome.consulted
            result.llm_remaining = outcome.remaining
            for candidate in candidates:
                if candidate.score_llm is not None:
                    decision = by_opportunity[candidate.opportunity.id]  # type: ignore[index]
                    decision.score_llm = candidate.score_llm
                    decision.score_effective = candidate.score_effective
                    self._store.update_decision(decision)
            candidates.sort(key=lambda c: c.score_effective)

        for candidate in candidates[: settings.risk.max_execute_per_tick]:
            opportunity = candidate.opportunity
            result.attempted += 1
            outcome = await self.execute(candidate, now)
            if not outcome.ok or outcome.position is None:
                result.skipped += 1
                result.reasons.append({"opportunity_id": opportunity.id, "reason": outcome.reason})
                continue
            decision = by_opportunity[opportunity.id]  # type: ignore[index]
            decision.chosen = True
            decision.position_id = outcome.position.id
            self._store.update_decision(decision)
            result.created += 1
            result.position_ids.append(outcome.position.id)

        LOGGER.info(
            "auto_execute: attempted=%d created=%d skipped=%d llm_used=%d model=%s",
            result.attempted, result.created, result.skipped, result.llm_used, result.model_trained,
        )
        return result

    @staticmethod
    def _decision_for(candidate: ScoredCandidate, account_id: str, now: datetime) -> OpportunityDecision:
        return OpportunityDecision(
            account_id=account_id,
            opportunity_id=int(candidate.opportunity.id),  # type: ignore[arg-type]
            variant=candidate.variant,
            score_rule=candidate.score_rule,
            score_ai=candidate.score_ai,
            score_effective=candidate.score_effective,
            features=candidate.features,
            score_llm=candidate.score_llm,
            ts=now,
        )

    # ------------------------------------------------------------------
    # Single candidate
    # ------------------------------------------------------------------

    async def execute(self, candidate: ScoredCandidate, now: Optional[datetime] = None) -> ExecutionOutcome:
        """Gate and paper-execute one scored candidate."""
        now = now or utc_now()
        opportunity = candidate.opportunity
        account = self._ledger.snapshot(self.account_id)
        gate = self._risk.evaluate(opportunity, account, now)
        if not gate.ok:
            return ExecutionOutcome(False, gate.reason)

        meta = PositionMeta(
            notional_usd=gate.notional_usd,
            notional_reason=gate.notional_reason,
            fee_bps=self._settings.execution.fee_bps,
            slippage_bps=self._settings.execution.slippage_bps,
            open_bucket=self._open_bucket(opportunity.symbol, now),
            variant=candidate.variant,
        )

        details = opportunity.details
        try:
            if isinstance(details, CarryDetails):
                return await self._open_two_leg(opportunity, meta, self._carry_legs(opportunity, meta), now)
            if isinstance(details, CrossExchangeDetails):
                legs = await self._cross_exchange_legs(details, meta)
                return await self._open_two_leg(opportunity, meta, legs, now)
            if isinstance(details, TriangularDetails):
                return await self._settle_triangular(opportunity, details, meta, now)
        except DataUnavailable as exc:
            LOGGER.info("execution of opportunity %s skipped: %s", opportunity.id, exc)
            return ExecutionOutcome(False, "live_price_error")
        return ExecutionOutcome(False, "unsupported_type")

    def _open_bucket(self, symbol: str, now: datetime) -> OpenBucket:
        since = now - timedelta(seconds=self._settings.risk.reentry_window_seconds)
        if self._store.symbol_closed_since(self.account_id, symbol, since):
            return OpenBucket.REENTRY
        return OpenBucket.NORMAL

    def _fill(self, side: Side, price: float, meta: PositionMeta) -> SimulatedFill:
        return simulate_fill(side, price, meta.notional_usd, meta.slippage_bps, meta.fee_bps)

    def _carry_legs(self, opportunity: Opportunity, meta: PositionMeta) -> List[Tuple[PositionLeg, SimulatedFill]]:
        snapshot = self._store.latest_valid_snapshot(opportunity.venue_key, opportunity.symbol)
        if snapshot is None:
            raise DataUnavailable(f"no valid snapshot for {opportunity.venue_key} {opportunity.symbol}")
        spot = self._fill(Side.BUY, float(snapshot.spot_ask), meta)  # type: ignore[arg-type]
        perp = self._fill(Side.SELL, float(snapshot.perp_bid), meta)  # type: ignore[arg-type]
        venue = opportunity.venue_key
        return [
            (PositionLeg(CARRY_SPOT_LEG, venue, opportunity.symbol, Side.BUY, spot.qty, spot.fill_price), spot),
            (PositionLeg(CARRY_PERP_LEG, venue, opportunity.symbol, Side.SELL, -perp.qty, perp.fill_price), perp),
        ]

    async def _cross_exchange_legs(
        self, details: CrossExchangeDetails, meta: PositionMeta
    ) -> List[Tuple[PositionLeg, SimulatedFill]]:
        timeout = self._settings.quote_timeout_seconds
        buy_quote, sell_quote = await asyncio.gather(
            with_timeout(self._provider.get_quote(details.buy_venue, details.buy_symbol), timeout, details.buy_venue),
            with_timeout(self._provider.get_quote(details.sell_venue, details.sell_symbol), timeout, details.sell_venue),
        )
        _, buy_ask = validate_book(details.buy_venue, details.buy_symbol, buy_quote.bid, buy_quote.ask)
        sell_bid, _ = validate_book(details.sell_venue, details.sell_symbol, sell_quote.bid, sell_quote.ask)
        buy = self._fill(Side.BUY, buy_ask, meta)
        sell = self._fill(Side.SELL, sell_bid, meta)
        return [
            (PositionLeg(CROSS_LONG_LEG, details.buy_venue, details.buy_symbol, Side.BUY, buy.qty, buy.fill_price), buy),
            (
                PositionLeg(CROSS_SHORT_LEG, details.sell_venue, details.sell_symbol, Side.SELL, -sell.qty, sell.fill_price),
                sell,
            ),
        ]

    async def _open_two_leg(
        self,
        opportunity: Opportunity,
        meta: PositionMeta,
        legs: List[Tuple[PositionLeg, SimulatedFill]],
        now: datetime,
    ) -> ExecutionOutcome:
        position = Position(
            id=uuid.uuid4().hex,
            account_id=self.account_id,
            opportunity_id=int(opportunity.id),  # type: ignore[arg-type]
            opportunity_type=opportunity.type,
            venue_key=opportunity.venue_key,
            symbol=opportunity.symbol,
            status=PositionStatus.OPEN,
            entry_ts=now,
            entry_legs=tuple(leg for leg, _ in legs),
            meta=meta,
        )
        executions = [
            Execution(
                position_id=position.id,
                leg=execution_leg_name(leg, leg.side),
                qty=leg.qty,
                avg_price=fill.fill_price,
                fee=fill.fee_usd,
                ts=now,
            )
            for leg, fill in legs
        ]
        stored = await self._ledger.open_position(position, executions, reserve_usd=meta.notional_usd)
        if not stored:
            return ExecutionOutcome(False, "insufficient_balance")
        LOGGER.info(
            "Opened %s position %s on %s %s notional=%.2f (%s)",
            opportunity.type.value, position.id, position.venue_key, position.symbol,
            meta.notional_usd, meta.notional_reason,
        )
        return ExecutionOutcome(True, "ok", position)

    async def _settle_triangular(
        self,
        opportunity: Opportunity,
        details: TriangularDetails,
        meta: PositionMeta,
        now: datetime,
    ) -> ExecutionOutcome:
        venue = opportunity.venue_key
        timeout = self._settings.quote_timeout_seconds
        quotes = await asyncio.gather(
            *(
                with_timeout(self._provider.get_quote(venue, leg.symbol), timeout, f"{venue} {leg.symbol}")
                for leg in details.legs
            )
        )

        notional = meta.notional_usd
        fee_rate = meta.fee_bps / BPS
        amount = notional
        legs: List[PositionLeg] = []
        executions: List[Execution] = []
        position_id = uuid.uuid4().hex
        for index, (leg, quote) in enumerate(zip(details.legs, quotes), start=1):
            bid, ask = validate_book(venue, leg.symbol, quote.bid, quote.ask)
            fill = simulate_fill(leg.side, ask if leg.side is Side.BUY else bid, notional, meta.slippage_bps, meta.fee_bps)
            if leg.side is Side.BUY:
                amount /= fill.fill_price
                qty = amount
            else:
                qty = -amount
                amount *= fill.fill_price
            position_leg = PositionLeg(f"leg{index}", venue, leg.symbol, leg.side, qty, fill.fill_price)
            legs.append(position_leg)
            executions.append(
                Execution(
                    position_id=position_id,
                    leg=execution_leg_name(position_leg, leg.side),
                    qty=qty,
                    avg_price=fill.fill_price,
                    fee=notional * fee_rate,
                    ts=now,
                )
            )

        final = amount / notional
        realized = notional * (final - 1) - sum(e.fee for e in executions)
        position = Position(
            id=position_id,
            account_id=self.account_id,
            opportunity_id=int(opportunity.id),  # type: ignore[arg-type]
            opportunity_type=opportunity.type,
            venue_key=venue,
            symbol=opportunity.symbol,
            status=PositionStatus.CLOSED,
            entry_ts=now,
            entry_legs=tuple(legs[:-1]),
            exit_legs=tuple(legs[-1:]),
            exit_ts=now,
            realized_pnl_usd=round(realized, 4),
            meta=replace(meta, close_reason="settled"),
        )
        await self._ledger.open_position(position, executions, reserve_usd=None)
        LOGGER.info("Settled triangular %s notional=%.2f realized=%.4f", opportunity.symbol, notional, realized)
        return ExecutionOutcome(True, "ok", position)
