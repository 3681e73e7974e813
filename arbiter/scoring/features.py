from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from arbiter.models import (
    CarryDetails,
    FeatureVector,
    Opportunity,
    OpportunityType,
)

FEATURE_NAMES = (
    "bias",
    "net_edge_bps",
    "confidence",
    "break_even_hours",
    "funding_daily_bps",
    "basis_bps",
    "is_carry",
    "is_cross_exchange",
    "is_triangular",
)


@dataclass(frozen=True)
class FeatureBundle:
    vector: FeatureVector
    meta: Dict[str, Any] = field(default_factory=dict)


def _finite(value: Optional[float], default: float = 0.0) -> float:
    if value is None:
        return default
    number = float(value)
    return number if math.isfinite(number) else default


def build_features(opportunity: Opportunity) -> FeatureBundle:
    """Fixed-order feature vector; fields a type does not carry are 0."""
    details = opportunity.details
    break_even = funding_daily = basis = None
    if isinstance(details, CarryDetails):
        break_even = details.break_even_hours
        funding_daily = details.funding_daily_bps
        basis = details.basis_bps

    net_edge = _finite(opportunity.net_edge_bps)
    confidence = _finite(opportunity.confidence, 0.5)
    values = (
        1.0,
        net_edge,
        confidence,
        _finite(break_even),
        _finite(funding_daily),
        _finite(basis),
        1.0 if opportunity.type is OpportunityType.CARRY else 0.0,
        1.0 if opportunity.type is OpportunityType.CROSS_EXCHANGE else 0.0,
        1.0 if opportunity.type is OpportunityType.TRIANGULAR else 0.0,
    )
    meta = {
        "type": opportunity.type.value,
        "symbol": opportunity.symbol,
        "venue_key": opportunity.venue_key,
        "net_edge_bps": net_edge,
        "confidence": confidence,
        "break_even_hours": break_even,
        "funding_daily_bps": funding_daily,
        "basis_bps": basis,
    }
    return FeatureBundle(vector=FeatureVector(names=FEATURE_NAMES, values=values), meta=meta)
