"""Exit discipline for open paper positions.

Pure evaluation: given live PnL and a recomputed edge, decide whether a
position should be held or closed and why. The close monitor owns quoting and
persistence.

Usage::

    engine = ExitEngine(ExitEngineConfig(take_profit_pct=0.003, stop_loss_pct=0.002))
    evaluation = engine.evaluate(
        OpportunityType.CARRY,
        unrealized_usd=1.8,
        notional_usd=500.0,
        funding_daily_bps=9.0,
        live_net_edge_bps=12.0,
    )
    if evaluation.should_exit:
        # close with evaluation.action
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from arbiter.models import OpportunityType


# ---------------------------------------------------------------------------
# Exit action types
# ---------------------------------------------------------------------------


class ExitAction(str, Enum):
    """Type of exit action."""

    HOLD = "hold"  # Continue holding.
    TAKE_PROFIT = "take_profit"  # PnL reached the profit target.
    STOP_LOSS = "stop_loss"  # PnL breached the loss limit.
    FUNDING_FLIP = "funding_flip"  # Carry funding turned non-positive.
    EDGE_DECAY = "edge_decay"  # Live net edge went negative.
    MANUAL = "manual"  # Operator request.


# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitEngineConfig:
    """Configuration for exit discipline.

    Parameters
    ----------
    take_profit_pct:
        Close when unrealized / notional reaches this. Default 0.003.
    stop_loss_pct:
        Close when unrealized / notional falls to minus this. Default 0.002.
    min_live_edge_bps:
        Close when the recomputed net edge drops below this. Default 0.
    """

    take_profit_pct: float = 0.003
    stop_loss_pct: float = 0.002
    min_live_edge_bps: float = 0.0


# ---------------------------------------------------------------------------
# Evaluation result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitEvaluation:
    """Result of evaluating a position for exit."""

    action: ExitAction
    pnl_pct: float  # unrealized / notional.
    live_net_edge_bps: Optional[float] = None
    reason: str = ""

    @property
    def should_exit(self) -> bool:
        return self.action is not ExitAction.HOLD


# ---------------------------------------------------------------------------
# Exit engine
# ---------------------------------------------------------------------------


class ExitEngine:
    def __init__(self, config: ExitEngineConfig | None = None) -> None:
        self._config = config or ExitEngineConfig()

    @property
    def config(self) -> ExitEngineConfig:
        return self._config

    def evaluate(
        self,
        opportunity_type: OpportunityType,
        unrealized_usd: float,
        notional_usd: float,
        funding_daily_bps: Optional[float] = None,
        live_net_edge_bps: Optional[float] = None,
    ) -> ExitEvaluation:
        """Evaluate one position.

        Parameters
        ----------
        opportunity_type:
            Strategy of the position; funding only matters for carry.
        unrealized_usd:
            Mark-to-mid PnL net of entry fees.
        notional_usd:
            Position size used to normalize PnL.
        funding_daily_bps:
            Live funding for carry positions.
        live_net_edge_bps:
            Net edge recomputed from live quotes.
        """
        cfg = self._config
        pnl_pct = unrealized_usd / notional_usd if notional_usd > 0 else 0.0

        def _result(action: ExitAction, reason: str) -> ExitEvaluation:
            return ExitEvaluation(
                action=action,
                pnl_pct=pnl_pct,
                live_net_edge_bps=live_net_edge_bps,
                reason=reason,
            )

        # 1. PnL thresholds.
        if pnl_pct >= cfg.take_profit_pct:
            return _result(ExitAction.TAKE_PROFIT, "take_profit")
        if pnl_pct <= -cfg.stop_loss_pct:
            return _result(ExitAction.STOP_LOSS, "stop_loss")

        # 2. Funding flip, carry only.
        if opportunity_type is OpportunityType.CARRY and (funding_daily_bps is None or funding_daily_bps <= 0):
            return _result(ExitAction.FUNDING_FLIP, "funding_non_positive")

        # 3. Edge decay.
        if live_net_edge_bps is not None and live_net_edge_bps < cfg.min_live_edge_bps:
            return _result(ExitAction.EDGE_DECAY, "edge_negative")

        return _result(ExitAction.HOLD, "hold")
