from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Side(str, Enum):
    BUY = "buy"
    SELL = "sell"

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OpportunityType(str, Enum):
    CARRY = "carry"
    CROSS_EXCHANGE = "cross_exchange"
    TRIANGULAR = "triangular"


class OpportunityStatus(str, Enum):
    NEW = "new"
    CONSUMED = "consumed"


class PositionStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class Variant(str, Enum):
    A = "A"
    B = "B"


class OpenBucket(str, Enum):
    NORMAL = "normal"
    REENTRY = "reentry"


# Daily PnL rows are keyed by these names rather than the enum values.
STRATEGY_KEYS: Dict[OpportunityType, str] = {
    OpportunityType.CARRY: "carry_spot_perp",
    OpportunityType.CROSS_EXCHANGE: "xarb_spot",
    OpportunityType.TRIANGULAR: "tri_arb",
}


@dataclass(frozen=True)
class Quote:
    venue: str
    symbol: str
    bid: float
    ask: float
    ts: datetime = field(default_factory=utc_now)

    @property
    def mid(self) -> float:
        return (self.bid + self.ask) / 2


@dataclass(frozen=True)
class CarryQuote:
    venue: str
    symbol: str
    spot_bid: float
    spot_ask: float
    perp_bid: float
    perp_ask: float
    funding_rate: float | None
    ts: datetime = field(default_factory=utc_now)

    @property
    def spot_mid(self) -> float:
        return (self.spot_bid + self.spot_ask) / 2

    @property
    def perp_mid(self) -> float:
        return (self.perp_bid + self.perp_ask) / 2


@dataclass(frozen=True)
class MarketSnapshot:
    venue: str
    symbol: str
    ts: datetime
    spot_bid: float | None
    spot_ask: float | None
    perp_bid: float | None
    perp_ask: float | None
    funding_rate: float | None
    id: int | None = None

    @classmethod
    def from_carry_quote(cls, quote: CarryQuote) -> "MarketSnapshot":
        return cls(
            venue=quote.venue,
            symbol=quote.symbol,
            ts=quote.ts,
            spot_bid=quote.spot_bid,
            spot_ask=quote.spot_ask,
            perp_bid=quote.perp_bid,
            perp_ask=quote.perp_ask,
            funding_rate=quote.funding_rate,
        )

    @property
    def has_valid_books(self) -> bool:
        prices = (self.spot_bid, self.spot_ask, self.perp_bid, self.perp_ask)
        if any(p is None or p <= 0 for p in prices):
            return False
        return self.spot_ask > self.spot_bid and self.perp_ask > self.perp_bid  # type: ignore[operator]


# ---------------------------------------------------------------------------
# Opportunity details: a closed set of per-type variants.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CarryDetails:
    basis_bps: float
    entry_basis_bps: float
    funding_rate: float
    funding_daily_bps: float
    expected_holding_bps: float
    total_costs_bps: float
    break_even_hours: float | None
    holding_hours: float
    spot_bid: float
    spot_ask: float
    perp_bid: float
    perp_ask: float
    kind: str = field(default=OpportunityType.CARRY.value, init=False)


@dataclass(frozen=True)
class CrossExchangeDetails:
    buy_venue: str
    sell_venue: str
    buy_symbol: str
    sell_symbol: str
    buy_ask: float
    sell_bid: float
    gross_bps: float
    costs_bps: float
    canonical_symbol: str
    kind: str = field(default=OpportunityType.CROSS_EXCHANGE.value, init=False)


@dataclass(frozen=True)
class TriangularLeg:
    symbol: str
    side: Side
    bid: float
    ask: float


@dataclass(frozen=True)
class TriangularDetails:
    path: str
    legs: tuple[TriangularLeg, ...]
    gross_bps: float
    costs_bps: float
    kind: str = field(default=OpportunityType.TRIANGULAR.value, init=False)


OpportunityDetails = Union[CarryDetails, CrossExchangeDetails, TriangularDetails]


def details_to_dict(details: OpportunityDetails) -> Dict[str, Any]:
    payload = asdict(details)
    if isinstance(details, TriangularDetails):
        payload["legs"] = [
            {"symbol": leg.symbol, "side": leg.side.value, "bid": leg.bid, "ask": leg.ask}
            for leg in details.legs
        ]
    return payload


def details_from_dict(payload: Dict[str, Any]) -> OpportunityDetails:
    data = dict(payload)
    kind = data.pop("kind", None)
    if kind == OpportunityType.CARRY.value:
        return CarryDetails(**data)
    if kind == OpportunityType.CROSS_EXCHANGE.value:
        return CrossExchangeDetails(**data)
    if kind == OpportunityType.TRIANGULAR.value:
        legs = tuple(
            TriangularLeg(
                symbol=str(leg["symbol"]),
                side=Side(leg["side"]),
                bid=float(leg["bid"]),
                ask=float(leg["ask"]),
            )
            for leg in data.pop("legs", [])
        )
        return TriangularDetails(legs=legs, **data)
    raise ValueError(f"unknown opportunity details kind: {kind!r}")


@dataclass(frozen=True)
class Opportunity:
    ts: datetime
    venue_key: str
    symbol: str
    type: OpportunityType
    net_edge_bps: float
    expected_daily_bps: float | None
    confidence: float
    details: OpportunityDetails
    status: OpportunityStatus = OpportunityStatus.NEW
    id: int | None = None

    @property
    def break_even_hours(self) -> float | None:
        if isinstance(self.details, CarryDetails):
            return self.details.break_even_hours
        return None


@dataclass(frozen=True)
class FeatureVector:
    names: tuple[str, ...]
    values: tuple[float, ...]


@dataclass
class OpportunityDecision:
    account_id: str
    opportunity_id: int
    variant: Variant
    score_rule: float
    score_ai: float | None
    score_effective: float
    features: FeatureVector
    score_llm: float | None = None
    chosen: bool = False
    position_id: str | None = None
    ts: datetime = field(default_factory=utc_now)
    id: int | None = None


# ---------------------------------------------------------------------------
# Positions and fills
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PositionLeg:
    leg: str
    venue: str
    symbol: str
    side: Side
    qty: float  # signed: negative for a short leg
    price: float


@dataclass(frozen=True)
class PositionMeta:
    notional_usd: float
    notional_reason: str
    fee_bps: float
    slippage_bps: float
    auto_execute: bool = True
    open_bucket: OpenBucket = OpenBucket.NORMAL
    variant: Variant | None = None
    close_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notional_usd": self.notional_usd,
            "notional_reason": self.notional_reason,
            "fee_bps": self.fee_bps,
            "slippage_bps": self.slippage_bps,
            "auto_execute": self.auto_execute,
            "open_bucket": self.open_bucket.value,
            "variant": self.variant.value if self.variant else None,
            "close_reason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PositionMeta":
        variant = payload.get("variant")
        return cls(
            notional_usd=float(payload.get("notional_usd") or 0.0),
            notional_reason=str(payload.get("notional_reason") or ""),
            fee_bps=float(payload.get("fee_bps") or 0.0),
            slippage_bps=float(payload.get("slippage_bps") or 0.0),
            auto_execute=bool(payload.get("auto_execute", True)),
            open_bucket=OpenBucket(payload.get("open_bucket") or OpenBucket.NORMAL.value),
            variant=Variant(variant) if variant else None,
            close_reason=str(payload.get("close_reason") or ""),
        )


@dataclass(frozen=True)
class Position:
    id: str
    account_id: str
    opportunity_id: int
    opportunity_type: OpportunityType
    venue_key: str
    symbol: str
    status: PositionStatus
    entry_ts: datetime
    entry_legs: tuple[PositionLeg, ...]
    meta: PositionMeta
    exit_legs: tuple[PositionLeg, ...] = ()
    exit_ts: Optional[datetime] = None
    realized_pnl_usd: float | None = None

    @property
    def notional_usd(self) -> float:
        return self.meta.notional_usd

    @property
    def strategy_key(self) -> str:
        return STRATEGY_KEYS[self.opportunity_type]


@dataclass(frozen=True)
class Execution:
    position_id: str
    leg: str
    qty: float
    avg_price: float
    fee: float
    ts: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class PaperAccount:
    account_id: str
    balance_usd: float
    reserved_usd: float
    min_notional_usd: float
    max_notional_usd: float

    @property
    def available_usd(self) -> float:
        return max(0.0, self.balance_usd - self.reserved_usd)


@dataclass(frozen=True)
class DailyStrategyPnl:
    day: str
    strategy_key: str
    exchange_key: str
    pnl_usd: float
