"""Rule and learned scoring of opportunities.

Lower scores are more attractive everywhere in this module: the rule score
penalizes risk and slow break-evens, and the learned model is trained on the
negated realized PnL so its predictions sort the same way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from arbiter.models import FeatureVector, Opportunity, OpportunityType, Variant, utc_now
from arbiter.store import ArbStore

from .features import FEATURE_NAMES, build_features

LOGGER = logging.getLogger(__name__)

KNUTH_MULTIPLIER = 2654435761

RISK_WEIGHTS: Dict[OpportunityType, float] = {
    OpportunityType.CARRY: 0.0,
    OpportunityType.CROSS_EXCHANGE: 1.0,
    OpportunityType.TRIANGULAR: 2.0,
}
UNKNOWN_RISK_WEIGHT = 3.0
MISSING_BREAK_EVEN_PENALTY = 4.0


def risk_weight(opportunity_type: Optional[OpportunityType]) -> float:
    if opportunity_type is None:
        return UNKNOWN_RISK_WEIGHT
    return RISK_WEIGHTS.get(opportunity_type, UNKNOWN_RISK_WEIGHT)


def rule_score(opportunity: Opportunity) -> float:
    break_even = opportunity.break_even_hours
    penalty = break_even / 24 if break_even is not None else MISSING_BREAK_EVEN_PENALTY
    return risk_weight(opportunity.type) + penalty - opportunity.net_edge_bps / 10 - opportunity.confidence


def variant_for_opportunity(opportunity_id: int) -> Variant:
    """Deterministic A/B split: Knuth multiplicative hash, low bit."""
    hashed = (opportunity_id * KNUTH_MULTIPLIER) % (1 << 32)
    return Variant.A if hashed % 2 == 0 else Variant.B


# ---------------------------------------------------------------------------
# Ridge model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RidgeModel:
    weights: Tuple[float, ...]
    names: Tuple[str, ...] = FEATURE_NAMES
    samples: int = 0

    def predict(self, vector: FeatureVector) -> float:
        return float(np.dot(np.asarray(self.weights), np.asarray(vector.values, dtype=float)))


def train_ridge(
    rows: Sequence[Tuple[Sequence[float], float]],
    ridge_lambda: float = 1e-3,
    min_samples: int = 20,
) -> Optional[RidgeModel]:
    """Closed-form ridge fit ``(XᵀX + λI)⁻¹Xᵀy``; None below ``min_samples`` or when singular."""
    if len(rows) < min_samples:
        return None
    x = np.asarray([list(values) for values, _ in rows], dtype=float)
    y = np.asarray([label for _, label in rows], dtype=float)
    gram = x.T @ x + ridge_lambda * np.eye(x.shape[1])
    try:
        weights = np.linalg.solve(gram, x.T @ y)
    except np.linalg.LinAlgError:
        LOGGER.warning("ridge training skipped: singular design matrix (%d samples)", len(rows))
        return None
    if not np.all(np.isfinite(weights)):
        return None
    return RidgeModel(weights=tuple(float(w) for w in weights), samples=len(rows))


class ModelTrainer:
    def __init__(self, store: ArbStore, ridge_lambda: float = 1e-3, min_samples: int = 20) -> None:
        self._store = store
        self._ridge_lambda = ridge_lambda
        self._min_samples = min_samples

    def train(self, account_id: str, window_days: float = 30.0, now: Optional[datetime] = None) -> Optional[RidgeModel]:
        since = (now or utc_now()) - timedelta(days=window_days)
        rows = self._store.training_rows(account_id, since)
        # Negate PnL so that a lower prediction means a better trade.
        labelled = [(values, -pnl) for values, pnl in rows]
        model = train_ridge(labelled, self._ridge_lambda, self._min_samples)
        if model is None:
            LOGGER.debug("no model: %d training rows (min %d)", len(rows), self._min_samples)
        else:
            LOGGER.info("trained ridge model on %d rows", model.samples)
        return model


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


@dataclass
class ScoredCandidate:
    opportunity: Opportunity
    features: FeatureVector
    variant: Variant
    score_rule: float
    score_ai: Optional[float]
    score_effective: float
    score_llm: Optional[float] = None
    meta: Dict[str, object] = field(default_factory=dict)


class OpportunityScorer:
    def __init__(self, max_candidates: int = 20) -> None:
        self._max_candidates = max_candidates

    def score_one(self, opportunity: Opportunity, model: Optional[RidgeModel] = None) -> ScoredCandidate:
        if opportunity.id is None:
            raise ValueError("cannot score an unsaved opportunity")
        bundle = build_features(opportunity)
        variant = variant_for_opportunity(opportunity.id)
        score_rule = rule_score(opportunity)
        score_ai = model.predict(bundle.vector) if model is not None else None
        effective = score_ai if (variant is Variant.B and score_ai is not None) else score_rule
        return ScoredCandidate(
            opportunity=opportunity,
            features=bundle.vector,
            variant=variant,
            score_rule=score_rule,
            score_ai=score_ai,
            score_effective=effective,
            meta=bundle.meta,
        )

    def score(self, opportunities: Sequence[Opportunity], model: Optional[RidgeModel] = None) -> List[ScoredCandidate]:
        """Scored candidates, best (lowest) first, truncated to ``max_candidates``."""
        scored = [self.score_one(opp, model) for opp in opportunities]
        scored.sort(key=lambda c: c.score_effective)
        return scored[: self._max_candidates]
