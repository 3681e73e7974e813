from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from arbiter.config import ExecutionSettings, RiskSettings
from arbiter.models import Opportunity, PaperAccount, utc_now
from arbiter.store import ArbStore


@dataclass(frozen=True)
class RiskDecision:
    ok: bool
    reason: str
    notional_usd: float = 0.0
    notional_reason: str = ""


def derive_notional(
    opportunity: Opportunity,
    min_notional: float,
    max_notional: float,
    default_notional: float = 100.0,
) -> tuple[float, str]:
    notional = default_notional
    reason = "default"

    break_even = opportunity.break_even_hours
    if break_even is not None:
        if break_even <= 24:
            notional, reason = 500.0, "break_even_fast"
        elif break_even <= 48:
            notional, reason = 300.0, "break_even_ok"

    if reason == "default":
        if opportunity.net_edge_bps >= 20:
            notional, reason = 500.0, "net_edge_high"
        elif opportunity.net_edge_bps >= 12:
            notional, reason = 300.0, "net_edge_mid"

    return min(max(notional, min_notional), max_notional), reason


class RiskGate:
    def __init__(self, store: ArbStore, settings: RiskSettings, execution: ExecutionSettings) -> None:
        self._store = store
        self._settings = settings
        self._execution = execution

    def tick_precheck(self, account_id: str, now: Optional[datetime] = None) -> tuple[bool, str]:
        now = now or utc_now()
        if self._store.count_open_positions(account_id) >= self._settings.max_open_positions:
            return False, "max_open_positions"
        if self._opened_last_hour(account_id, now) >= self._settings.max_new_per_hour:
            return False, "hourly_cap"
        return True, "ok"

    def _opened_last_hour(self, account_id: str, now: datetime) -> int:
        return self._store.count_opened_since(account_id, now - timedelta(hours=1))

    def evaluate(
        self,
        opportunity: Opportunity,
        account: PaperAccount,
        now: Optional[datetime] = None,
    ) -> RiskDecision:
        now = now or utc_now()
        account_id = account.account_id
        if opportunity.id is not None and self._store.has_open_for_opportunity(account_id, opportunity.id):
            return RiskDecision(False, "already_open")

        open_for_symbol = self._store.count_open_for_symbol(account_id, opportunity.symbol)
        if open_for_symbol >= self._settings.max_open_per_symbol:
            return RiskDecision(False, "symbol_cap")

        # Positions opened earlier in this tick are already counted by the store.
        if self._opened_last_hour(account_id, now) >= self._settings.max_new_per_hour:
            return RiskDecision(False, "hourly_cap")

        notional, notional_reason = derive_notional(
            opportunity,
            account.min_notional_usd,
            account.max_notional_usd,
            self._execution.default_notional_usd,
        )
        if notional > account.available_usd:
            return RiskDecision(False, "insufficient_balance", notional, notional_reason)
        return RiskDecision(True, "ok", notional, notional_reason)
