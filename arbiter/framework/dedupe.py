"""Idempotency window for detected opportunities.

An opportunity is keyed by ``(venue_key, symbol, type)``. Within the
configured window only the first detection of a key is persisted; later
detections are reported as duplicates, which is a skip and not an error.

The check and the insert happen in one store transaction, so two detectors
racing on the same key still persist at most one row.

Usage::

    window = IdempotencyWindow(store, DedupeConfig(cooldown_seconds=300))
    stored = window.insert(opportunity)
    if stored is None:
        # duplicate within the window
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from arbiter.models import Opportunity, OpportunityType, utc_now
from arbiter.store import ArbStore

LOGGER = logging.getLogger(__name__)

DUPLICATE_REASON = "recent opportunity exists"


def cross_venue_key(venue_a: str, venue_b: str) -> str:
    """Order-independent key for a venue pair: ``okx``/``bybit`` -> ``bybit_okx``."""
    return "_".join(sorted((venue_a.lower(), venue_b.lower())))


@dataclass(frozen=True)
class DedupeConfig:
    """Configuration for the idempotency window.

    Parameters
    ----------
    cooldown_seconds:
        How long a detected key suppresses repeats. Default 300 (5 minutes).
    enabled:
        Master enable/disable. Default True.
    """

    cooldown_seconds: float = 300.0
    enabled: bool = True


class IdempotencyWindow:
    """Store-backed dedupe of opportunity inserts."""

    def __init__(self, store: ArbStore, config: DedupeConfig | None = None) -> None:
        self._store = store
        self._config = config or DedupeConfig()

    @property
    def config(self) -> DedupeConfig:
        return self._config

    def window_start(self, now: datetime | None = None) -> datetime:
        now = now or utc_now()
        return now - timedelta(seconds=self._config.cooldown_seconds)

    def is_duplicate(
        self,
        venue_key: str,
        symbol: str,
        opportunity_type: OpportunityType,
        now: datetime | None = None,
    ) -> bool:
        if not self._config.enabled:
            return False
        hit = self._store.find_recent_opportunity(venue_key, symbol, opportunity_type, self.window_start(now))
        return hit is not None

    def insert(self, opportunity: Opportunity) -> Opportunity | None:
        """Persist ``opportunity`` unless its key was seen inside the window."""
        since = self.window_start(opportunity.ts) if self._config.enabled else None
        stored = self._store.insert_opportunity(opportunity, dedupe_since=since)
        if stored is None:
            LOGGER.debug(
                "Duplicate %s opportunity suppressed: %s %s",
                opportunity.type.value,
                opportunity.venue_key,
                opportunity.symbol,
            )
        return stored
