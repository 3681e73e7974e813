"""One tick of the paper-arbitrage pipeline.

Jobs run in a fixed order: ingest, detect_carry, detect_cross_exchange,
detect_triangular, auto_execute, auto_close, daily_pnl, auto_expectancy. Each
job is isolated by ``run_job``: an exception becomes a failed ``JobResult`` and
the remaining jobs still run. Ticks for the same account are single-flight;
an overlapping call returns at once with ``tick_in_progress``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import asdict, dataclass, field, is_dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from arbiter.close_monitor import CloseMonitor
from arbiter.config import AppSettings
from arbiter.detectors import CarryDetector, CrossExchangeDetector, TriangularDetector
from arbiter.exchanges.base import MarketDataProvider
from arbiter.execution import ExecutionEngine
from arbiter.framework.dedupe import DedupeConfig, IdempotencyWindow
from arbiter.ingest import SnapshotIngestor
from arbiter.ledger import CapitalLedger
from arbiter.models import utc_now
from arbiter.pnl import PnlAggregator
from arbiter.risk import RiskGate
from arbiter.scoring.ranker import LlmRanker
from arbiter.store import ArbStore

LOGGER = logging.getLogger(__name__)

TICK_IN_PROGRESS = "tick_in_progress"

JobFn = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass(frozen=True)
class TickParams:
    holding_hours: Optional[float] = None


@dataclass(frozen=True)
class JobResult:
    name: str
    ok: bool
    data: Any = None
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "ok": self.ok,
            "data": _plain(self.data),
            "error": self.error,
            "duration_ms": round(self.duration_ms, 2),
        }


@dataclass
class TickResult:
    ts: datetime
    jobs: Dict[str, JobResult] = field(default_factory=dict)
    job_errors: List[str] = field(default_factory=list)

    @property
    def partial_failures(self) -> bool:
        return bool(self.job_errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.ts.isoformat(),
            "partial_failures": self.partial_failures,
            "job_errors": list(self.job_errors),
            "jobs": {name: job.to_dict() for name, job in self.jobs.items()},
        }


def _plain(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


async def run_job(name: str, fn: JobFn) -> JobResult:
    """Run one job; any exception is captured as ``<name>_failed: <message>``."""
    started = time.perf_counter()
    try:
        data = fn()
        if inspect.isawaitable(data):
            data = await data
    except Exception as exc:
        elapsed = (time.perf_counter() - started) * 1000
        LOGGER.warning("job %s failed: %s", name, exc)
        return JobResult(name=name, ok=False, error=f"{name}_failed: {exc}", duration_ms=elapsed)
    elapsed = (time.perf_counter() - started) * 1000
    return JobResult(name=name, ok=True, data=data, duration_ms=elapsed)


class TickOrchestrator:
    def __init__(
        self,
        settings: AppSettings,
        store: ArbStore,
        provider: MarketDataProvider,
        ranker: Optional[LlmRanker] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._provider = provider
        self._ledger = CapitalLedger(store)
        self._running: set[str] = set()

        window = IdempotencyWindow(store, DedupeConfig(cooldown_seconds=settings.idempotency_window_seconds))
        timeout = settings.quote_timeout_seconds
        self.ingestor = SnapshotIngestor(store, provider, settings.carry, timeout)
        self.carry = CarryDetector(store, window, settings.carry)
        self.cross_exchange = CrossExchangeDetector(provider, window, settings.cross_exchange, timeout)
        self.triangular = TriangularDetector(provider, window, settings.triangular, timeout)
        self.execution = ExecutionEngine(
            store,
            provider,
            self._ledger,
            RiskGate(store, settings.risk, settings.execution),
            settings,
            ranker=ranker,
        )
        self.close_monitor = CloseMonitor(store, provider, self._ledger, settings)
        self.pnl = PnlAggregator(store, provider, settings)

    @property
    def ledger(self) -> CapitalLedger:
        return self._ledger

    @property
    def account_id(self) -> str:
        return self._settings.execution.account_id

    def _jobs(self, params: TickParams) -> List[tuple[str, JobFn]]:
        settings = self._settings
        jobs: List[tuple[str, JobFn]] = [("ingest", self.ingestor.run)]
        if settings.carry.enabled:
            jobs.append(("detect_carry", lambda: self.carry.run(params.holding_hours)))
        if settings.cross_exchange.enabled:
            jobs.append(("detect_cross_exchange", self.cross_exchange.run))
        if settings.triangular.enabled:
            jobs.append(("detect_triangular", self.triangular.run))
        jobs.extend(
            [
                ("auto_execute", self.execution.auto_execute),
                ("auto_close", self.close_monitor.auto_close),
                ("daily_pnl", self.pnl.compute_daily),
                ("auto_expectancy", self.pnl.auto_expectancy),
            ]
        )
        return jobs

    async def run_tick(self, params: Optional[TickParams] = None) -> TickResult:
        params = params or TickParams()
        account_id = self.account_id
        result = TickResult(ts=utc_now())
        if account_id in self._running:
            LOGGER.info("tick for %s already running; skipping", account_id)
            result.job_errors.append(TICK_IN_PROGRESS)
            return result

        self._running.add(account_id)
        started = time.perf_counter()
        try:
            for name, fn in self._jobs(params):
                job = await run_job(name, fn)
                result.jobs[name] = job
                if not job.ok and job.error:
                    result.job_errors.append(job.error)
        finally:
            self._running.discard(account_id)

        duration_ms = (time.perf_counter() - started) * 1000
        self._record_tick(result, duration_ms)
        LOGGER.info(
            "tick done in %.0fms jobs=%d errors=%d",
            duration_ms, len(result.jobs), len(result.job_errors),
        )
        return result

    def _record_tick(self, result: TickResult, duration_ms: float) -> None:
        try:
            self._store.insert_system_tick(
                result.ts,
                self.account_id,
                not result.partial_failures,
                duration_ms,
                result.to_dict(),
            )
        except Exception as exc:
            LOGGER.warning("could not record tick summary: %s", exc)

    async def run_forever(self, interval_seconds: float, params: Optional[TickParams] = None) -> None:
        while True:
            started = time.monotonic()
            await self.run_tick(params)
            elapsed = time.monotonic() - started
            await asyncio.sleep(max(0.0, interval_seconds - elapsed))
