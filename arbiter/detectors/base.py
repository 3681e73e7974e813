from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

BPS = 10000.0


class Outcome(str, Enum):
    INSERTED = "inserted"
    SKIPPED = "skipped"
    WATCHLIST = "watchlist"


@dataclass(frozen=True)
class Evaluation:
    """One evaluated unit (symbol, venue pair or path) and what happened to it."""

    venue_key: str
    symbol: str
    outcome: Outcome
    reason: str = ""
    gross_edge_bps: Optional[float] = None
    net_edge_bps: Optional[float] = None
    break_even_hours: Optional[float] = None
    opportunity_id: Optional[int] = None


@dataclass
class DetectionReport:
    detector: str
    inserted: int = 0
    skipped: int = 0
    watchlist: int = 0
    evaluated: List[Evaluation] = field(default_factory=list)

    def record(self, evaluation: Evaluation) -> None:
        if evaluation.outcome is Outcome.INSERTED:
            self.inserted += 1
        elif evaluation.outcome is Outcome.WATCHLIST:
            self.watchlist += 1
        else:
            self.skipped += 1
        self.evaluated.append(evaluation)

    def reasons(self) -> List[str]:
        return [e.reason for e in self.evaluated if e.reason]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detector": self.detector,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "watchlist": self.watchlist,
            "evaluated": [
                {**asdict(e), "outcome": e.outcome.value} for e in self.evaluated
            ],
        }


def round_bps(value: float) -> float:
    return round(value, 4)
