from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Sequence

from arbiter.models import Execution, PaperAccount, Position, PositionLeg, PositionMeta
from arbiter.store import ArbStore

LOGGER = logging.getLogger(__name__)


class CapitalLedger:
    """Reserve/release of paper capital, one writer per account.

    Capital only moves together with a position: opening records the position
    and reserves its notional in one store transaction, closing records the
    exit and releases it in another. The per-account lock serializes writers
    inside this process; the store's conditional UPDATE keeps
    ``0 <= reserved <= balance`` across processes.
    """

    def __init__(self, store: ArbStore) -> None:
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def ensure(
        self,
        account_id: str,
        balance_usd: float,
        min_notional_usd: float,
        max_notional_usd: float,
    ) -> PaperAccount:
        return self._store.ensure_account(account_id, balance_usd, min_notional_usd, max_notional_usd)

    def snapshot(self, account_id: str) -> PaperAccount:
        account = self._store.get_account(account_id)
        if account is None:
            raise KeyError(f"unknown paper account: {account_id}")
        return account

    async def open_position(
        self,
        position: Position,
        executions: Sequence[Execution],
        reserve_usd: Optional[float],
    ) -> bool:
        """Record ``position`` and reserve ``reserve_usd``; False (nothing written) when it does not fit."""
        if reserve_usd is not None and reserve_usd < 0:
            raise ValueError("reserve amount must be non-negative")
        async with self.lock_for(position.account_id):
            ok = self._store.insert_position(position, executions, reserve_usd=reserve_usd)
        if not ok:
            LOGGER.info("Reserve of %.2f rejected for %s", reserve_usd, position.account_id)
        return ok

    async def close_position(
        self,
        position: Position,
        exit_legs: Sequence[PositionLeg],
        exit_ts: datetime,
        realized_pnl_usd: float,
        meta: PositionMeta,
        executions: Sequence[Execution],
        release_usd: Optional[float],
    ) -> bool:
        """Close ``position`` exactly once and release ``release_usd`` (floored at zero)."""
        if release_usd is not None and release_usd < 0:
            raise ValueError("release amount must be non-negative")
        async with self.lock_for(position.account_id):
            return self._store.close_position(
                position.id,
                exit_legs,
                exit_ts,
                realized_pnl_usd,
                meta,
                executions,
                release_usd=release_usd,
            )
