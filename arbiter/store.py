"""SQLite repository for snapshots, opportunities, decisions, positions and the paper ledger.

Every write goes through ``_tx()``, which opens an ``IMMEDIATE`` transaction so
the capital-ledger conditional updates cannot interleave with another writer.
Timestamps are stored as UTC epoch seconds.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Sequence

from arbiter.errors import PersistenceFailure
from arbiter.models import (
    DailyStrategyPnl,
    Execution,
    FeatureVector,
    MarketSnapshot,
    Opportunity,
    OpportunityDecision,
    OpportunityStatus,
    OpportunityType,
    PaperAccount,
    Position,
    PositionLeg,
    PositionMeta,
    PositionStatus,
    Side,
    Variant,
    details_from_dict,
    details_to_dict,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

DB_FILENAME = "arbiter.db"

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS market_snapshots (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    venue           TEXT NOT NULL,
    symbol          TEXT NOT NULL,
    ts              REAL NOT NULL,
    spot_bid        REAL,
    spot_ask        REAL,
    perp_bid        REAL,
    perp_ask        REAL,
    funding_rate    REAL
);

CREATE TABLE IF NOT EXISTS opportunities (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    ts                  REAL NOT NULL,
    venue_key           TEXT NOT NULL,
    symbol              TEXT NOT NULL,
    type                TEXT NOT NULL,
    net_edge_bps        REAL NOT NULL,
    expected_daily_bps  REAL,
    confidence          REAL NOT NULL,
    status              TEXT NOT NULL DEFAULT 'new',
    details_json        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS opportunity_decisions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ts              REAL NOT NULL,
    account_id      TEXT NOT NULL,
    opportunity_id  INTEGER NOT NULL REFERENCES opportunities(id),
    variant         TEXT NOT NULL,
    score_rule      REAL NOT NULL,
    score_ai        REAL,
    score_llm       REAL,
    score_effective REAL NOT NULL,
    chosen          INTEGER NOT NULL DEFAULT 0,
    position_id     TEXT,
    features_json   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS positions (
    id                  TEXT PRIMARY KEY,
    account_id          TEXT NOT NULL,
    opportunity_id      INTEGER NOT NULL,
    opportunity_type    TEXT NOT NULL,
    venue_key           TEXT NOT NULL,
    symbol              TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'open',
    entry_ts            REAL NOT NULL,
    exit_ts             REAL,
    entry_legs_json     TEXT NOT NULL,
    exit_legs_json      TEXT NOT NULL DEFAULT '[]',
    realized_pnl_usd    REAL,
    meta_json           TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS executions (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    position_id     TEXT NOT NULL REFERENCES positions(id),
    leg             TEXT NOT NULL,
    qty             REAL NOT NULL,
    avg_price       REAL NOT NULL,
    fee             REAL NOT NULL,
    ts              REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS paper_accounts (
    account_id          TEXT PRIMARY KEY,
    balance_usd         REAL NOT NULL,
    reserved_usd        REAL NOT NULL DEFAULT 0,
    min_notional_usd    REAL NOT NULL,
    max_notional_usd    REAL NOT NULL,
    updated_at          REAL NOT NULL,
    CHECK (reserved_usd >= 0 AND reserved_usd <= balance_usd)
);

CREATE TABLE IF NOT EXISTS daily_strategy_pnl (
    day             TEXT NOT NULL,
    strategy_key    TEXT NOT NULL,
    exchange_key    TEXT NOT NULL,
    pnl_usd         REAL NOT NULL,
    updated_at      REAL NOT NULL,
    PRIMARY KEY (day, strategy_key, exchange_key)
);

CREATE TABLE IF NOT EXISTS ai_usage_daily (
    day             TEXT NOT NULL,
    account_id      TEXT NOT NULL,
    calls           INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (day, account_id)
);

CREATE TABLE IF NOT EXISTS system_ticks (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    ts              REAL NOT NULL,
    account_id      TEXT NOT NULL,
    ok              INTEGER NOT NULL,
    duration_ms     REAL NOT NULL,
    summary_json    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_snapshots_ts ON market_snapshots(ts);
CREATE INDEX IF NOT EXISTS idx_snapshots_venue_symbol ON market_snapshots(venue, symbol, ts);
CREATE INDEX IF NOT EXISTS idx_opportunities_key ON opportunities(venue_key, symbol, type, ts);
CREATE INDEX IF NOT EXISTS idx_opportunities_status ON opportunities(status, ts);
CREATE INDEX IF NOT EXISTS idx_decisions_opportunity ON opportunity_decisions(opportunity_id);
CREATE INDEX IF NOT EXISTS idx_decisions_position ON opportunity_decisions(position_id);
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(account_id, status);
CREATE INDEX IF NOT EXISTS idx_positions_symbol ON positions(account_id, symbol, status);
CREATE INDEX IF NOT EXISTS idx_executions_position ON executions(position_id);
"""


class _ReserveRejected(Exception):
    """Rolls back a position insert whose ledger reservation did not fit."""


def to_epoch(ts: datetime) -> float:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.timestamp()


def from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _legs_to_json(legs: Iterable[PositionLeg]) -> str:
    return json.dumps(
        [
            {
                "leg": leg.leg,
                "venue": leg.venue,
                "symbol": leg.symbol,
                "side": leg.side.value,
                "qty": leg.qty,
                "price": leg.price,
            }
            for leg in legs
        ]
    )


def _legs_from_json(raw: str | None) -> tuple[PositionLeg, ...]:
    if not raw:
        return ()
    return tuple(
        PositionLeg(
            leg=str(item["leg"]),
            venue=str(item["venue"]),
            symbol=str(item["symbol"]),
            side=Side(item["side"]),
            qty=float(item["qty"]),
            price=float(item["price"]),
        )
        for item in json.loads(raw)
    )


class ArbStore:
    """SQLite-backed repository shared by every job of a tick."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        if db_path is None:
            db_path = Path("data") / DB_FILENAME
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: sqlite3.Connection | None = None
        self._open()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _open(self) -> None:
        try:
            # Autocommit mode: _tx() issues BEGIN IMMEDIATE itself.
            self._conn = sqlite3.connect(
                str(self._db_path),
                isolation_level=None,
                check_same_thread=False,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=NORMAL")
            self._conn.execute("PRAGMA foreign_keys=ON")
            self._apply_schema()
        except sqlite3.Error as exc:
            raise PersistenceFailure(f"cannot open {self._db_path}: {exc}") from exc

    def _apply_schema(self) -> None:
        assert self._conn is not None
        self._conn.executescript(_SCHEMA_SQL)
        with self._tx() as cur:
            row = cur.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                cur.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        assert self._conn is not None
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise PersistenceFailure(str(exc)) from exc
            try:
                yield cur
                self._conn.commit()
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise PersistenceFailure(str(exc)) from exc
            except BaseException:
                self._conn.rollback()
                raise

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        assert self._conn is not None
        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as exc:
                raise PersistenceFailure(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None

    # ------------------------------------------------------------------
    # Market snapshots
    # ------------------------------------------------------------------

    def insert_snapshot(self, snapshot: MarketSnapshot) -> int:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO market_snapshots
                   (venue, symbol, ts, spot_bid, spot_ask, perp_bid, perp_ask, funding_rate)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    snapshot.venue,
                    snapshot.symbol,
                    to_epoch(snapshot.ts),
                    snapshot.spot_bid,
                    snapshot.spot_ask,
                    snapshot.perp_bid,
                    snapshot.perp_ask,
                    snapshot.funding_rate,
                ),
            )
            return int(cur.lastrowid)

    def snapshots_since(self, since: datetime, venues: Sequence[str] | None = None) -> list[MarketSnapshot]:
        """Snapshots newer than ``since``, freshest first."""
        sql = "SELECT * FROM market_snapshots WHERE ts >= ?"
        params: list[Any] = [to_epoch(since)]
        if venues:
            sql += f" AND venue IN ({','.join('?' for _ in venues)})"
            params.extend(venues)
        sql += " ORDER BY ts DESC, id DESC"
        return [_row_to_snapshot(r) for r in self._query(sql, params)]

    def latest_valid_snapshot(self, venue: str, symbol: str, limit: int = 20) -> MarketSnapshot | None:
        rows = self._query(
            """SELECT * FROM market_snapshots WHERE venue = ? AND symbol = ?
               ORDER BY ts DESC, id DESC LIMIT ?""",
            (venue, symbol, limit),
        )
        for row in rows:
            snapshot = _row_to_snapshot(row)
            if snapshot.has_valid_books:
                return snapshot
        return None

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    def find_recent_opportunity(
        self,
        venue_key: str,
        symbol: str,
        opportunity_type: OpportunityType,
        since: datetime,
    ) -> Opportunity | None:
        rows = self._query(
            """SELECT * FROM opportunities
               WHERE venue_key = ? AND symbol = ? AND type = ? AND ts >= ?
               ORDER BY ts DESC LIMIT 1""",
            (venue_key, symbol, opportunity_type.value, to_epoch(since)),
        )
        return _row_to_opportunity(rows[0]) if rows else None

    def insert_opportunity(self, opportunity: Opportunity, dedupe_since: datetime | None = None) -> Opportunity | None:
        """Insert ``opportunity``; with ``dedupe_since`` set, return None instead
        when a row with the same key already exists at or after that time.

        The lookup and the insert share one transaction.
        """
        with self._tx() as cur:
            if dedupe_since is not None:
                hit = cur.execute(
                    """SELECT id FROM opportunities
                       WHERE venue_key = ? AND symbol = ? AND type = ? AND ts >= ? LIMIT 1""",
                    (
                        opportunity.venue_key,
                        opportunity.symbol,
                        opportunity.type.value,
                        to_epoch(dedupe_since),
                    ),
                ).fetchone()
                if hit is not None:
                    return None
            cur.execute(
                """INSERT INTO opportunities
                   (ts, venue_key, symbol, type, net_edge_bps, expected_daily_bps,
                    confidence, status, details_json)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    to_epoch(opportunity.ts),
                    opportunity.venue_key,
                    opportunity.symbol,
                    opportunity.type.value,
                    opportunity.net_edge_bps,
                    opportunity.expected_daily_bps,
                    opportunity.confidence,
                    opportunity.status.value,
                    json.dumps(details_to_dict(opportunity.details)),
                ),
            )
            new_id = int(cur.lastrowid)
        LOGGER.debug("Inserted %s opportunity %d for %s", opportunity.type.value, new_id, opportunity.symbol)
        return _replace_id(opportunity, new_id)

    def get_opportunity(self, opportunity_id: int) -> Opportunity | None:
        rows = self._query("SELECT * FROM opportunities WHERE id = ?", (opportunity_id,))
        return _row_to_opportunity(rows[0]) if rows else None

    def new_opportunities(self, since: datetime, limit: int) -> list[Opportunity]:
        rows = self._query(
            """SELECT * FROM opportunities WHERE status = ? AND ts >= ?
               ORDER BY ts DESC, id DESC LIMIT ?""",
            (OpportunityStatus.NEW.value, to_epoch(since), limit),
        )
        return [_row_to_opportunity(r) for r in rows]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def insert_decisions(self, decisions: Sequence[OpportunityDecision]) -> None:
        """Persist decisions and fill in their ids."""
        with self._tx() as cur:
            for decision in decisions:
                cur.execute(
                    """INSERT INTO opportunity_decisions
                       (ts, account_id, opportunity_id, variant, score_rule, score_ai,
                        score_llm, score_effective, chosen, position_id, features_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        to_epoch(decision.ts),
                        decision.account_id,
                        decision.opportunity_id,
                        decision.variant.value,
                        decision.score_rule,
                        decision.score_ai,
                        decision.score_llm,
                        decision.score_effective,
                        int(decision.chosen),
                        decision.position_id,
                        json.dumps(
                            {"names": list(decision.features.names), "values": list(decision.features.values)}
                        ),
                    ),
                )
                decision.id = int(cur.lastrowid)

    def update_decision(self, decision: OpportunityDecision) -> None:
        if decision.id is None:
            raise ValueError("decision has not been inserted")
        with self._tx() as cur:
            cur.execute(
                """UPDATE opportunity_decisions
                   SET score_llm = ?, score_effective = ?, chosen = ?, position_id = ?
                   WHERE id = ?""",
                (
                    decision.score_llm,
                    decision.score_effective,
                    int(decision.chosen),
                    decision.position_id,
                    decision.id,
                ),
            )

    def decisions_for_opportunity(self, opportunity_id: int) -> list[OpportunityDecision]:
        rows = self._query(
            "SELECT * FROM opportunity_decisions WHERE opportunity_id = ? ORDER BY id",
            (opportunity_id,),
        )
        return [_row_to_decision(r) for r in rows]

    def training_rows(self, account_id: str, since: datetime) -> list[tuple[list[float], float]]:
        """(feature values, realized PnL) for chosen decisions whose position has closed."""
        rows = self._query(
            """SELECT d.features_json, p.realized_pnl_usd
               FROM opportunity_decisions d
               JOIN positions p ON p.id = d.position_id
               WHERE d.account_id = ? AND d.chosen = 1 AND d.ts >= ?
                 AND p.status = ? AND p.realized_pnl_usd IS NOT NULL
               ORDER BY d.id""",
            (account_id, to_epoch(since), PositionStatus.CLOSED.value),
        )
        out: list[tuple[list[float], float]] = []
        for row in rows:
            features = json.loads(row["features_json"])
            out.append(([float(v) for v in features["values"]], float(row["realized_pnl_usd"])))
        return out

    def variant_outcomes(self, account_id: str, since: datetime) -> list[tuple[Variant, float]]:
        rows = self._query(
            """SELECT d.variant, p.realized_pnl_usd
               FROM opportunity_decisions d
               JOIN positions p ON p.id = d.position_id
               WHERE d.account_id = ? AND d.chosen = 1 AND p.exit_ts >= ?
                 AND p.status = ? AND p.realized_pnl_usd IS NOT NULL""",
            (account_id, to_epoch(since), PositionStatus.CLOSED.value),
        )
        return [(Variant(r["variant"]), float(r["realized_pnl_usd"])) for r in rows]

    # ------------------------------------------------------------------
    # Paper accounts (capital ledger)
    # ------------------------------------------------------------------

    def ensure_account(
        self,
        account_id: str,
        balance_usd: float,
        min_notional_usd: float,
        max_notional_usd: float,
    ) -> PaperAccount:
        with self._tx() as cur:
            cur.execute(
                """INSERT OR IGNORE INTO paper_accounts
                   (account_id, balance_usd, reserved_usd, min_notional_usd, max_notional_usd, updated_at)
                   VALUES (?, ?, 0, ?, ?, ?)""",
                (account_id, balance_usd, min_notional_usd, max_notional_usd, to_epoch(utc_now())),
            )
        account = self.get_account(account_id)
        assert account is not None
        return account

    def get_account(self, account_id: str) -> PaperAccount | None:
        rows = self._query("SELECT * FROM paper_accounts WHERE account_id = ?", (account_id,))
        return _row_to_account(rows[0]) if rows else None

    @staticmethod
    def _reserve(cur: sqlite3.Cursor, account_id: str, amount_usd: float) -> bool:
        cur.execute(
            """UPDATE paper_accounts
               SET reserved_usd = reserved_usd + ?, updated_at = ?
               WHERE account_id = ? AND reserved_usd + ? <= balance_usd""",
            (amount_usd, to_epoch(utc_now()), account_id, amount_usd),
        )
        return cur.rowcount == 1

    @staticmethod
    def _release(cur: sqlite3.Cursor, account_id: str, amount_usd: float) -> None:
        cur.execute(
            """UPDATE paper_accounts
               SET reserved_usd = MAX(0, reserved_usd - ?), updated_at = ?
               WHERE account_id = ?""",
            (amount_usd, to_epoch(utc_now()), account_id),
        )

    # ------------------------------------------------------------------
    # Positions and executions
    # ------------------------------------------------------------------

    def insert_position(
        self,
        position: Position,
        executions: Sequence[Execution],
        reserve_usd: float | None = None,
    ) -> bool:
        """Insert a position with its executions and mark its opportunity consumed.

        When ``reserve_usd`` is given the ledger reservation runs last in the
        same transaction; if it does not fit, nothing is written and False is
        returned.
        """
        try:
            with self._tx() as cur:
                cur.execute(
                    """INSERT INTO positions
                       (id, account_id, opportunity_id, opportunity_type, venue_key, symbol,
                        status, entry_ts, exit_ts, entry_legs_json, exit_legs_json,
                        realized_pnl_usd, meta_json)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        position.id,
                        position.account_id,
                        position.opportunity_id,
                        position.opportunity_type.value,
                        position.venue_key,
                        position.symbol,
                        position.status.value,
                        to_epoch(position.entry_ts),
                        to_epoch(position.exit_ts) if position.exit_ts else None,
                        _legs_to_json(position.entry_legs),
                        _legs_to_json(position.exit_legs),
                        position.realized_pnl_usd,
                        json.dumps(position.meta.to_dict()),
                    ),
                )
                self._insert_executions(cur, executions)
                cur.execute(
                    "UPDATE opportunities SET status = ? WHERE id = ?",
                    (OpportunityStatus.CONSUMED.value, position.opportunity_id),
                )
                if reserve_usd is not None and not self._reserve(cur, position.account_id, reserve_usd):
                    raise _ReserveRejected(position.id)
        except _ReserveRejected:
            LOGGER.info("Reservation of %.2f rejected for %s; position %s rolled back",
                        reserve_usd, position.account_id, position.id)
            return False
        return True

    def close_position(
        self,
        position_id: str,
        exit_legs: Sequence[PositionLeg],
        exit_ts: datetime,
        realized_pnl_usd: float,
        meta: PositionMeta,
        executions: Sequence[Execution],
        release_usd: float | None = None,
    ) -> bool:
        """Close an open position exactly once. False when it was not open."""
        with self._tx() as cur:
            cur.execute(
                """UPDATE positions
                   SET status = ?, exit_ts = ?, exit_legs_json = ?, realized_pnl_usd = ?, meta_json = ?
                   WHERE id = ? AND status = ?""",
                (
                    PositionStatus.CLOSED.value,
                    to_epoch(exit_ts),
                    _legs_to_json(exit_legs),
                    realized_pnl_usd,
                    json.dumps(meta.to_dict()),
                    position_id,
                    PositionStatus.OPEN.value,
                ),
            )
            if cur.rowcount != 1:
                return False
            self._insert_executions(cur, executions)
            if release_usd:
                account_row = cur.execute(
                    "SELECT account_id FROM positions WHERE id = ?", (position_id,)
                ).fetchone()
                self._release(cur, account_row["account_id"], release_usd)
        return True

    @staticmethod
    def _insert_executions(cur: sqlite3.Cursor, executions: Sequence[Execution]) -> None:
        for execution in executions:
            cur.execute(
                """INSERT INTO executions (position_id, leg, qty, avg_price, fee, ts)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (
                    execution.position_id,
                    execution.leg,
                    execution.qty,
                    execution.avg_price,
                    execution.fee,
                    to_epoch(execution.ts),
                ),
            )

    def get_position(self, position_id: str) -> Position | None:
        rows = self._query("SELECT * FROM positions WHERE id = ?", (position_id,))
        return _row_to_position(rows[0]) if rows else None

    def open_positions(self, account_id: str) -> list[Position]:
        rows = self._query(
            "SELECT * FROM positions WHERE account_id = ? AND status = ? ORDER BY entry_ts",
            (account_id, PositionStatus.OPEN.value),
        )
        return [_row_to_position(r) for r in rows]

    def closed_positions_since(self, account_id: str, since: datetime) -> list[Position]:
        rows = self._query(
            """SELECT * FROM positions WHERE account_id = ? AND status = ? AND exit_ts >= ?
               ORDER BY exit_ts""",
            (account_id, PositionStatus.CLOSED.value, to_epoch(since)),
        )
        return [_row_to_position(r) for r in rows]

    def count_open_positions(self, account_id: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) FROM positions WHERE account_id = ? AND status = ?",
            (account_id, PositionStatus.OPEN.value),
        )
        return int(rows[0][0])

    def count_opened_since(self, account_id: str, since: datetime) -> int:
        rows = self._query(
            "SELECT COUNT(*) FROM positions WHERE account_id = ? AND entry_ts >= ?",
            (account_id, to_epoch(since)),
        )
        return int(rows[0][0])

    def count_open_for_symbol(self, account_id: str, symbol: str) -> int:
        rows = self._query(
            "SELECT COUNT(*) FROM positions WHERE account_id = ? AND symbol = ? AND status = ?",
            (account_id, symbol, PositionStatus.OPEN.value),
        )
        return int(rows[0][0])

    def has_open_for_opportunity(self, account_id: str, opportunity_id: int) -> bool:
        rows = self._query(
            """SELECT 1 FROM positions
               WHERE account_id = ? AND opportunity_id = ? AND status = ? LIMIT 1""",
            (account_id, opportunity_id, PositionStatus.OPEN.value),
        )
        return bool(rows)

    def symbol_closed_since(self, account_id: str, symbol: str, since: datetime) -> bool:
        rows = self._query(
            """SELECT 1 FROM positions
               WHERE account_id = ? AND symbol = ? AND status = ? AND exit_ts >= ? LIMIT 1""",
            (account_id, symbol, PositionStatus.CLOSED.value, to_epoch(since)),
        )
        return bool(rows)

    def executions_for(self, position_id: str) -> list[Execution]:
        rows = self._query(
            "SELECT * FROM executions WHERE position_id = ? ORDER BY id",
            (position_id,),
        )
        return [
            Execution(
                position_id=r["position_id"],
                leg=r["leg"],
                qty=float(r["qty"]),
                avg_price=float(r["avg_price"]),
                fee=float(r["fee"]),
                ts=from_epoch(r["ts"]),  # type: ignore[arg-type]
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Daily PnL
    # ------------------------------------------------------------------

    def replace_daily_pnl(self, day: str, rows: Sequence[DailyStrategyPnl]) -> None:
        """Replace every row for ``day`` in one transaction."""
        now = to_epoch(utc_now())
        with self._tx() as cur:
            cur.execute("DELETE FROM daily_strategy_pnl WHERE day = ?", (day,))
            for row in rows:
                cur.execute(
                    """INSERT INTO daily_strategy_pnl (day, strategy_key, exchange_key, pnl_usd, updated_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (day, row.strategy_key, row.exchange_key, row.pnl_usd, now),
                )

    def daily_pnl(self, day: str) -> list[DailyStrategyPnl]:
        rows = self._query(
            "SELECT * FROM daily_strategy_pnl WHERE day = ? ORDER BY strategy_key, exchange_key",
            (day,),
        )
        return [
            DailyStrategyPnl(
                day=r["day"],
                strategy_key=r["strategy_key"],
                exchange_key=r["exchange_key"],
                pnl_usd=float(r["pnl_usd"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Re-ranker usage
    # ------------------------------------------------------------------

    def try_consume_ai_call(self, day: str, account_id: str, daily_budget: int) -> bool:
        """Count one re-ranker call for the day if the budget allows it."""
        with self._tx() as cur:
            cur.execute(
                "INSERT OR IGNORE INTO ai_usage_daily (day, account_id, calls) VALUES (?, ?, 0)",
                (day, account_id),
            )
            cur.execute(
                """UPDATE ai_usage_daily SET calls = calls + 1
                   WHERE day = ? AND account_id = ? AND calls < ?""",
                (day, account_id, daily_budget),
            )
            return cur.rowcount == 1

    def ai_calls_used(self, day: str, account_id: str) -> int:
        rows = self._query(
            "SELECT calls FROM ai_usage_daily WHERE day = ? AND account_id = ?",
            (day, account_id),
        )
        return int(rows[0]["calls"]) if rows else 0

    # ------------------------------------------------------------------
    # System ticks
    # ------------------------------------------------------------------

    def insert_system_tick(
        self,
        ts: datetime,
        account_id: str,
        ok: bool,
        duration_ms: float,
        summary: dict[str, Any],
    ) -> int:
        with self._tx() as cur:
            cur.execute(
                """INSERT INTO system_ticks (ts, account_id, ok, duration_ms, summary_json)
                   VALUES (?, ?, ?, ?, ?)""",
                (to_epoch(ts), account_id, int(ok), duration_ms, json.dumps(summary, default=str)),
            )
            return int(cur.lastrowid)

    def recent_ticks(self, limit: int = 20) -> list[dict[str, Any]]:
        rows = self._query("SELECT * FROM system_ticks ORDER BY id DESC LIMIT ?", (limit,))
        return [
            {
                "id": r["id"],
                "ts": from_epoch(r["ts"]),
                "account_id": r["account_id"],
                "ok": bool(r["ok"]),
                "duration_ms": float(r["duration_ms"]),
                "summary": json.loads(r["summary_json"]),
            }
            for r in rows
        ]


# ----------------------------------------------------------------------
# Row converters
# ----------------------------------------------------------------------


def _opt_float(value: Any) -> float | None:
    return None if value is None else float(value)


def _replace_id(opportunity: Opportunity, new_id: int) -> Opportunity:
    return replace(opportunity, id=new_id)


def _row_to_snapshot(row: sqlite3.Row) -> MarketSnapshot:
    return MarketSnapshot(
        id=int(row["id"]),
        venue=row["venue"],
        symbol=row["symbol"],
        ts=from_epoch(row["ts"]),  # type: ignore[arg-type]
        spot_bid=_opt_float(row["spot_bid"]),
        spot_ask=_opt_float(row["spot_ask"]),
        perp_bid=_opt_float(row["perp_bid"]),
        perp_ask=_opt_float(row["perp_ask"]),
        funding_rate=_opt_float(row["funding_rate"]),
    )


def _row_to_opportunity(row: sqlite3.Row) -> Opportunity:
    return Opportunity(
        id=int(row["id"]),
        ts=from_epoch(row["ts"]),  # type: ignore[arg-type]
        venue_key=row["venue_key"],
        symbol=row["symbol"],
        type=OpportunityType(row["type"]),
        net_edge_bps=float(row["net_edge_bps"]),
        expected_daily_bps=_opt_float(row["expected_daily_bps"]),
        confidence=float(row["confidence"]),
        status=OpportunityStatus(row["status"]),
        details=details_from_dict(json.loads(row["details_json"])),
    )


def _row_to_decision(row: sqlite3.Row) -> OpportunityDecision:
    features = json.loads(row["features_json"])
    return OpportunityDecision(
        id=int(row["id"]),
        ts=from_epoch(row["ts"]),  # type: ignore[arg-type]
        account_id=row["account_id"],
        opportunity_id=int(row["opportunity_id"]),
        variant=Variant(row["variant"]),
        score_rule=float(row["score_rule"]),
        score_ai=_opt_float(row["score_ai"]),
        score_llm=_opt_float(row["score_llm"]),
        score_effective=float(row["score_effective"]),
        chosen=bool(row["chosen"]),
        position_id=row["position_id"],
        features=FeatureVector(
            names=tuple(features["names"]),
            values=tuple(float(v) for v in features["values"]),
        ),
    )


def _row_to_position(row: sqlite3.Row) -> Position:
    return Position(
        id=row["id"],
        account_id=row["account_id"],
        opportunity_id=int(row["opportunity_id"]),
        opportunity_type=OpportunityType(row["opportunity_type"]),
        venue_key=row["venue_key"],
        symbol=row["symbol"],
        status=PositionStatus(row["status"]),
        entry_ts=from_epoch(row["entry_ts"]),  # type: ignore[arg-type]
        exit_ts=from_epoch(row["exit_ts"]),
        entry_legs=_legs_from_json(row["entry_legs_json"]),
        exit_legs=_legs_from_json(row["exit_legs_json"]),
        realized_pnl_usd=_opt_float(row["realized_pnl_usd"]),
        meta=PositionMeta.from_dict(json.loads(row["meta_json"])),
    )


def _row_to_account(row: sqlite3.Row) -> PaperAccount:
    return PaperAccount(
        account_id=row["account_id"],
        balance_usd=float(row["balance_usd"]),
        reserved_usd=float(row["reserved_usd"]),
        min_notional_usd=float(row["min_notional_usd"]),
        max_notional_usd=float(row["max_notional_usd"]),
    )
