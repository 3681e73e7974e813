from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List

from dotenv import load_dotenv

from arbiter.models import Side


def _as_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _as_float(value: str | None, default: float) -> float:
    if value is None or not value.strip():
        return default
    return float(value)


def _as_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    return int(value)


def _as_csv(value: str | None) -> List[str]:
    if value is None or not value.strip():
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _as_optional_str(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass(frozen=True)
class CanonicalSymbol:
    """One spot asset quoted on several venues under venue-specific tickers."""

    canonical: str
    venue_symbols: Dict[str, str]


@dataclass(frozen=True)
class TriangularStep:
    symbol: str
    side: Side


@dataclass(frozen=True)
class TriangularPath:
    name: str
    steps: tuple[TriangularStep, ...]


def _default_canonical_symbols() -> tuple[CanonicalSymbol, ...]:
    usdt_bases = ["BTC", "ETH", "SOL", "XRP", "BNB", "ADA", "DOGE", "AVAX", "LINK", "LTC", "DOT", "BCH", "TRX"]
    return tuple(
        CanonicalSymbol(
            canonical=f"{base}USD",
            venue_symbols={"bybit": f"{base}USDT", "okx": f"{base}USDT"},
        )
        for base in usdt_bases
    )


def _default_triangular_paths() -> tuple[TriangularPath, ...]:
    paths = []
    for asset in ("ETH", "SOL", "XRP", "ADA"):
        paths.append(
            TriangularPath(
                name=f"USDT->BTC->{asset}->USDT",
                steps=(
                    TriangularStep("BTC-USDT", Side.BUY),
                    TriangularStep(f"{asset}-BTC", Side.BUY),
                    TriangularStep(f"{asset}-USDT", Side.SELL),
                ),
            )
        )
    return tuple(paths)


@dataclass(frozen=True)
class CarrySettings:
    enabled: bool = True
    venues: tuple[str, ...] = ("bybit", "okx")
    symbols: tuple[str, ...] = (
        "BTCUSDT", "ETHUSDT", "SOLUSDT", "XRPUSDT", "BNBUSDT", "ADAUSDT", "DOGEUSDT",
        "AVAXUSDT", "LINKUSDT", "LTCUSDT", "DOTUSDT", "BCHUSDT", "TRXUSDT",
    )
    lookback_seconds: float = 900.0
    entry_costs_bps: float = 8.0
    exit_costs_bps: float = 8.0
    min_net_edge_bps: float = 2.0
    funding_periods_per_day: int = 3
    default_holding_hours: float = 24.0
    max_holding_hours: float = 168.0
    max_break_even_hours: float = 48.0
    watchlist_break_even_hours: float = 72.0
    confidence: float = 0.7

    @property
    def total_costs_bps(self) -> float:
        return self.entry_costs_bps + self.exit_costs_bps


@dataclass(frozen=True)
class CrossExchangeSettings:
    enabled: bool = True
    symbols: tuple[CanonicalSymbol, ...] = field(default_factory=_default_canonical_symbols)
    fee_bps_total: float = 6.0
    slippage_bps_total: float = 4.0
    transfer_buffer_bps: float = 8.0
    min_net_edge_bps: float = 3.0
    confidence: float = 0.6

    @property
    def costs_bps(self) -> float:
        return self.fee_bps_total + self.slippage_bps_total + self.transfer_buffer_bps


@dataclass(frozen=True)
class TriangularSettings:
    enabled: bool = True
    venue: str = "okx"
    paths: tuple[TriangularPath, ...] = field(default_factory=_default_triangular_paths)
    costs_bps: float = 4.0
    # Slightly negative so marginal loops are still recorded.
    min_net_edge_bps: float = -1.0


@dataclass(frozen=True)
class ScoringSettings:
    max_candidates: int = 20
    opportunity_lookback_hours: float = 24.0
    opportunity_fetch_limit: int = 80
    ridge_lambda: float = 1e-3
    min_training_samples: int = 20
    training_window_days: float = 30.0


@dataclass(frozen=True)
class RerankerSettings:
    api_key: str | None = None
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4.1-mini"
    timeout_seconds: float = 8.0
    max_calls_per_tick: int = 2
    daily_budget: int = 200

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class RiskSettings:
    max_open_positions: int = 10
    max_new_per_hour: int = 3
    max_open_per_symbol: int = 1
    max_execute_per_tick: int = 3
    reentry_window_seconds: float = 3600.0


@dataclass(frozen=True)
class ExecutionSettings:
    account_id: str = "paper"
    starting_balance_usd: float = 10000.0
    min_notional_usd: float = 100.0
    max_notional_usd: float = 500.0
    default_notional_usd: float = 100.0
    slippage_bps: float = 2.0
    fee_bps: float = 4.0


@dataclass(frozen=True)
class CloseSettings:
    take_profit_pct: float = 0.003
    stop_loss_pct: float = 0.002
    holding_hours: float = 24.0
    # Round-trip costs charged against a carry position while it is open.
    carry_fee_bps_total: float = 6.0
    carry_slippage_bps_total: float = 4.0
    carry_latency_buffer_bps: float = 2.0

    @property
    def carry_costs_bps(self) -> float:
        return self.carry_fee_bps_total + self.carry_slippage_bps_total + self.carry_latency_buffer_bps


@dataclass(frozen=True)
class StoreSettings:
    db_path: str = "data/arbiter.db"


@dataclass(frozen=True)
class AppSettings:
    carry: CarrySettings = field(default_factory=CarrySettings)
    cross_exchange: CrossExchangeSettings = field(default_factory=CrossExchangeSettings)
    triangular: TriangularSettings = field(default_factory=TriangularSettings)
    scoring: ScoringSettings = field(default_factory=ScoringSettings)
    reranker: RerankerSettings = field(default_factory=RerankerSettings)
    risk: RiskSettings = field(default_factory=RiskSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    close: CloseSettings = field(default_factory=CloseSettings)
    store: StoreSettings = field(default_factory=StoreSettings)
    quote_timeout_seconds: float = 9.0
    idempotency_window_seconds: float = 300.0
    poll_interval_seconds: int = 60
    log_level: str = "INFO"
    log_file: str | None = None


def load_settings() -> AppSettings:
    load_dotenv(override=False)

    defaults = AppSettings()

    carry_venues = _as_csv(os.getenv("ARBITER_CARRY_VENUES"))
    carry_symbols = _as_csv(os.getenv("ARBITER_CARRY_SYMBOLS"))
    carry = CarrySettings(
        enabled=_as_bool(os.getenv("ARBITER_CARRY_ENABLED"), True),
        venues=tuple(v.lower() for v in carry_venues) or defaults.carry.venues,
        symbols=tuple(s.upper() for s in carry_symbols) or defaults.carry.symbols,
        lookback_seconds=_as_float(os.getenv("ARBITER_CARRY_LOOKBACK_SECONDS"), 900.0),
        entry_costs_bps=_as_float(os.getenv("ARBITER_CARRY_ENTRY_COSTS_BPS"), 8.0),
        exit_costs_bps=_as_float(os.getenv("ARBITER_CARRY_EXIT_COSTS_BPS"), 8.0),
        min_net_edge_bps=_as_float(os.getenv("ARBITER_CARRY_MIN_NET_EDGE_BPS"), 2.0),
        default_holding_hours=_as_float(os.getenv("ARBITER_CARRY_HOLDING_HOURS"), 24.0),
    )

    cross_exchange = CrossExchangeSettings(
        enabled=_as_bool(os.getenv("ARBITER_XARB_ENABLED"), True),
        transfer_buffer_bps=_as_float(os.getenv("ARBITER_XARB_TRANSFER_BUFFER_BPS"), 8.0),
        min_net_edge_bps=_as_float(os.getenv("ARBITER_XARB_MIN_NET_EDGE_BPS"), 3.0),
    )

    triangular = TriangularSettings(
        enabled=_as_bool(os.getenv("ARBITER_TRI_ENABLED"), True),
        venue=(os.getenv("ARBITER_TRI_VENUE") or "okx").strip().lower(),
        costs_bps=_as_float(os.getenv("ARBITER_TRI_COSTS_BPS"), 4.0),
        min_net_edge_bps=_as_float(os.getenv("ARBITER_TRI_MIN_NET_EDGE_BPS"), -1.0),
    )

    scoring = ScoringSettings(
        max_candidates=_as_int(os.getenv("ARBITER_MAX_CANDIDATES"), 20),
        ridge_lambda=_as_float(os.getenv("ARBITER_RIDGE_LAMBDA"), 1e-3),
        min_training_samples=_as_int(os.getenv("ARBITER_MIN_TRAINING_SAMPLES"), 20),
        training_window_days=_as_float(os.getenv("ARBITER_TRAINING_WINDOW_DAYS"), 30.0),
    )

    reranker = RerankerSettings(
        api_key=_as_optional_str(os.getenv("OPENAI_API_KEY")),
        base_url=(os.getenv("ARBITER_RERANKER_BASE_URL") or "https://api.openai.com/v1").rstrip("/"),
        model=os.getenv("ARBITER_RERANKER_MODEL") or "gpt-4.1-mini",
        timeout_seconds=_as_float(os.getenv("ARBITER_RERANKER_TIMEOUT_SECONDS"), 8.0),
        max_calls_per_tick=_as_int(os.getenv("ARBITER_RERANKER_MAX_CALLS_PER_TICK"), 2),
        daily_budget=_as_int(os.getenv("ARBITER_RERANKER_DAILY_BUDGET"), 200),
    )

    risk = RiskSettings(
        max_open_positions=_as_int(os.getenv("ARBITER_MAX_OPEN_POSITIONS"), 10),
        max_new_per_hour=_as_int(os.getenv("ARBITER_MAX_NEW_PER_HOUR"), 3),
        max_open_per_symbol=_as_int(os.getenv("ARBITER_MAX_OPEN_PER_SYMBOL"), 1),
        max_execute_per_tick=_as_int(os.getenv("ARBITER_MAX_EXECUTE_PER_TICK"), 3),
    )

    execution = ExecutionSettings(
        account_id=os.getenv("ARBITER_ACCOUNT_ID") or "paper",
        starting_balance_usd=_as_float(os.getenv("ARBITER_PAPER_BALANCE_USD"), 10000.0),
        min_notional_usd=_as_float(os.getenv("ARBITER_MIN_NOTIONAL_USD"), 100.0),
        max_notional_usd=_as_float(os.getenv("ARBITER_MAX_NOTIONAL_USD"), 500.0),
        slippage_bps=_as_float(os.getenv("ARBITER_SLIPPAGE_BPS"), 2.0),
        fee_bps=_as_float(os.getenv("ARBITER_FEE_BPS"), 4.0),
    )

    close = CloseSettings(
        take_profit_pct=_as_float(os.getenv("ARBITER_TAKE_PROFIT_PCT"), 0.003),
        stop_loss_pct=_as_float(os.getenv("ARBITER_STOP_LOSS_PCT"), 0.002),
        holding_hours=_as_float(os.getenv("ARBITER_CLOSE_HOLDING_HOURS"), 24.0),
        carry_fee_bps_total=_as_float(os.getenv("ARBITER_CLOSE_CARRY_FEE_BPS"), 6.0),
        carry_slippage_bps_total=_as_float(os.getenv("ARBITER_CLOSE_CARRY_SLIPPAGE_BPS"), 4.0),
        carry_latency_buffer_bps=_as_float(os.getenv("ARBITER_CLOSE_CARRY_LATENCY_BPS"), 2.0),
    )

    db_path = os.getenv("ARBITER_DB_PATH")
    store = StoreSettings(
        db_path=str(Path(db_path).expanduser()) if db_path else defaults.store.db_path,
    )

    return AppSettings(
        carry=carry,
        cross_exchange=cross_exchange,
        triangular=triangular,
        scoring=scoring,
        reranker=reranker,
        risk=risk,
        execution=execution,
        close=close,
        store=store,
        quote_timeout_seconds=_as_float(os.getenv("ARBITER_QUOTE_TIMEOUT_SECONDS"), 9.0),
        idempotency_window_seconds=_as_float(os.getenv("ARBITER_IDEMPOTENCY_WINDOW_SECONDS"), 300.0),
        poll_interval_seconds=_as_int(os.getenv("ARBITER_POLL_INTERVAL_SECONDS"), 60),
        log_level=os.getenv("ARBITER_LOG_LEVEL") or "INFO",
        log_file=_as_optional_str(os.getenv("ARBITER_LOG_FILE")),
    )
