"""Database — SQLite persistence layer.

Manages connections, runs migrations, owns the transaction boundary and
provides row-level CRUD. Every write goes through ``run_in_transaction``:
``BEGIN IMMEDIATE`` … ``COMMIT``, full rollback on any error, bounded
tenacity retries when SQLite reports a transient fault.

Each ``Database`` instance owns one connection; concurrent handlers use
one instance each against the same file.
"""

from __future__ import annotations

import datetime as dt
import json
import sqlite3
from contextlib import contextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from predmarket.config import RetryConfig, StorageConfig
from predmarket.errors import TransientStorageError
from predmarket.money import from_units, to_units
from predmarket.observability.logger import get_logger
from predmarket.storage.migrations import run_migrations
from predmarket.storage.models import (
    BetRecord,
    LedgerTransactionRecord,
    MarketStatus,
    PoolBalanceRecord,
    PredictionRecord,
    SettlementRecord,
)

log = get_logger(__name__)

T = TypeVar("T")


def to_timestamp(value: dt.datetime) -> str:
    """UTC ISO-8601 with fixed precision, so stored strings sort chronologically."""
    if value.tzinfo is None:
        raise ValueError("timestamps must be timezone-aware")
    return value.astimezone(dt.timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> dt.datetime | None:
    return dt.datetime.fromisoformat(value) if value else None


class Database:
    """SQLite database for predictions, bets and the balance ledger."""

    def __init__(self, config: StorageConfig, retry: RetryConfig | None = None):
        self._config = config
        self._retry = retry or RetryConfig()
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None: transactions are opened explicitly below
        self._conn = sqlite3.connect(
            path,
            timeout=self._config.busy_timeout_secs,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    def __enter__(self) -> "Database":
        self.connect()
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ── Transactions ─────────────────────────────────────────────────

    @contextmanager
    def transaction(self, immediate: bool = True) -> Iterator[sqlite3.Connection]:
        """One atomic unit of work.

        ``immediate`` takes the write lock up front so two writers never
        interleave; read snapshots pass ``immediate=False``.
        """
        conn = self.conn
        try:
            conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        except sqlite3.OperationalError as e:
            raise TransientStorageError(f"could not begin transaction: {e}") from e
        try:
            yield conn
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            raise TransientStorageError(str(e)) from e
        except BaseException:
            self._rollback(conn)
            raise
        try:
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            self._rollback(conn)
            raise TransientStorageError(f"commit failed: {e}") from e

    @staticmethod
    def _rollback(conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def run_in_transaction(
        self,
        fn: Callable[[sqlite3.Connection], T],
        operation: str = "write",
    ) -> T:
        """Run ``fn`` inside a write transaction, retrying transient failures.

        ``fn`` may be invoked more than once; every invocation starts from
        the committed state because the failed attempt was rolled back.
        """

        def _before_sleep(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            log.warning(
                "storage.retry",
                operation=operation,
                attempt=state.attempt_number,
                error=str(exc),
            )

        retrying = Retrying(
            stop=stop_after_attempt(self._retry.max_attempts),
            wait=wait_exponential(
                multiplier=self._retry.backoff_multiplier,
                min=self._retry.backoff_min_secs,
                max=self._retry.backoff_max_secs,
            ),
            retry=retry_if_exception_type(TransientStorageError),
            before_sleep=_before_sleep,
            reraise=True,
        )
        result: T
        for attempt in retrying:
            with attempt:
                with self.transaction() as conn:
                    result = fn(conn)
        return result

    def _c(self, conn: sqlite3.Connection | None) -> sqlite3.Connection:
        return conn if conn is not None else self.conn

    # ── Predictions ──────────────────────────────────────────────────

    def insert_prediction(self, conn: sqlite3.Connection, p: PredictionRecord) -> None:
        conn.execute(
            """
            INSERT INTO predictions
                (id, title, options_json, entry_fee_units, fee_rate,
                 pot_units, resolved, winning_option, ends_at,
                 created_at, resolved_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                p.id, p.title, json.dumps(list(p.options)),
                to_units(p.entry_fee), str(p.fee_rate),
                to_units(p.pot), int(p.resolved), p.winning_option,
                to_timestamp(p.ends_at), to_timestamp(p.created_at),
                to_timestamp(p.resolved_at) if p.resolved_at else None,
            ),
        )

    def get_prediction(
        self, prediction_id: str, conn: sqlite3.Connection | None = None
    ) -> PredictionRecord | None:
        row = self._c(conn).execute(
            "SELECT * FROM predictions WHERE id = ?", (prediction_id,)
        ).fetchone()
        return _prediction_from_row(row) if row else None

    def list_predictions(
        self,
        now: dt.datetime,
        status: MarketStatus | None = None,
        limit: int = 50,
    ) -> list[PredictionRecord]:
        where = ""
        params: list[Any] = []
        if status == MarketStatus.ACTIVE:
            where = "WHERE resolved = 0 AND ends_at > ?"
            params.append(to_timestamp(now))
        elif status == MarketStatus.EXPIRED:
            where = "WHERE resolved = 0 AND ends_at <= ?"
            params.append(to_timestamp(now))
        elif status == MarketStatus.RESOLVED:
            where = "WHERE resolved = 1"
        params.append(limit)
        rows = self.conn.execute(
            f"SELECT * FROM predictions {where} ORDER BY created_at DESC, id LIMIT ?",
            params,
        ).fetchall()
        return [_prediction_from_row(r) for r in rows]

    def increment_pot(self, conn: sqlite3.Connection, prediction_id: str, units: int) -> None:
        """Atomic in-store increment; never read-modify-write."""
        cur = conn.execute(
            "UPDATE predictions SET pot_units = pot_units + ? WHERE id = ? AND resolved = 0",
            (units, prediction_id),
        )
        if cur.rowcount != 1:
            raise RuntimeError(f"pot increment matched {cur.rowcount} rows for {prediction_id}")

    def mark_resolved(
        self,
        conn: sqlite3.Connection,
        prediction_id: str,
        winning_option: str,
        resolved_at: dt.datetime,
    ) -> bool:
        """Flip resolved false→true. Returns False if another caller got there first."""
        cur = conn.execute(
            """
            UPDATE predictions
               SET resolved = 1, winning_option = ?, resolved_at = ?
             WHERE id = ? AND resolved = 0
            """,
            (winning_option, to_timestamp(resolved_at), prediction_id),
        )
        return cur.rowcount == 1

    # ── Bets ─────────────────────────────────────────────────────────

    def insert_bet(self, conn: sqlite3.Connection, bet: BetRecord) -> None:
        conn.execute(
            """
            INSERT INTO bets
                (id, user_id, prediction_id, option, option_index,
                 amount_units, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                bet.id, bet.user_id, bet.prediction_id, bet.option,
                bet.option_index, to_units(bet.amount),
                to_timestamp(bet.created_at),
            ),
        )

    def get_bet(self, bet_id: str) -> BetRecord | None:
        row = self.conn.execute("SELECT * FROM bets WHERE id = ?", (bet_id,)).fetchone()
        return _bet_from_row(row) if row else None

    def get_user_bet(
        self,
        user_id: str,
        prediction_id: str,
        conn: sqlite3.Connection | None = None,
    ) -> BetRecord | None:
        row = self._c(conn).execute(
            "SELECT * FROM bets WHERE user_id = ? AND prediction_id = ?",
            (user_id, prediction_id),
        ).fetchone()
        return _bet_from_row(row) if row else None

    def list_bets(
        self, prediction_id: str, conn: sqlite3.Connection | None = None
    ) -> list[BetRecord]:
        """Bets in placement order (created_at, then id)."""
        rows = self._c(conn).execute(
            "SELECT * FROM bets WHERE prediction_id = ? ORDER BY created_at, id",
            (prediction_id,),
        ).fetchall()
        return [_bet_from_row(r) for r in rows]

    def option_totals_units(
        self, prediction_id: str, conn: sqlite3.Connection | None = None
    ) -> dict[int, int]:
        rows = self._c(conn).execute(
            """
            SELECT option_index, SUM(amount_units) AS total, COUNT(*) AS n
              FROM bets WHERE prediction_id = ?
             GROUP BY option_index
            """,
            (prediction_id,),
        ).fetchall()
        return {int(r["option_index"]): int(r["total"]) for r in rows}

    def count_bets(self, prediction_id: str, conn: sqlite3.Connection | None = None) -> int:
        row = self._c(conn).execute(
            "SELECT COUNT(*) FROM bets WHERE prediction_id = ?", (prediction_id,)
        ).fetchone()
        return int(row[0])

    # ── Ledger ───────────────────────────────────────────────────────

    def insert_ledger_tx(self, conn: sqlite3.Connection, tx: LedgerTransactionRecord) -> int:
        cur = conn.execute(
            """
            INSERT INTO ledger_transactions
                (user_id, amount_units, type, meta_json, idempotency_key, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                tx.user_id, to_units(tx.amount), tx.type.value,
                json.dumps(tx.meta, sort_keys=True, default=str),
                tx.idempotency_key, to_timestamp(tx.created_at),
            ),
        )
        return int(cur.lastrowid)

    def get_ledger_tx_by_key(
        self, key: str, conn: sqlite3.Connection | None = None
    ) -> LedgerTransactionRecord | None:
        row = self._c(conn).execute(
            "SELECT * FROM ledger_transactions WHERE idempotency_key = ?", (key,)
        ).fetchone()
        return _ledger_tx_from_row(row) if row else None

    def get_balance_units(self, user_id: str, conn: sqlite3.Connection | None = None) -> int:
        row = self._c(conn).execute(
            "SELECT COALESCE(SUM(amount_units), 0) FROM ledger_transactions WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return int(row[0])

    def list_ledger_txs(self, user_id: str, limit: int = 50) -> list[LedgerTransactionRecord]:
        rows = self.conn.execute(
            "SELECT * FROM ledger_transactions WHERE user_id = ? ORDER BY id DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
        return [_ledger_tx_from_row(r) for r in rows]

    # ── Settlements ──────────────────────────────────────────────────

    def insert_settlement(self, conn: sqlite3.Connection, s: SettlementRecord) -> int:
        cur = conn.execute(
            """
            INSERT INTO settlements
                (prediction_id, winning_option, outcome, fee_rate,
                 total_pool_units, winning_pool_units, platform_fee_units,
                 payout_pool_units, total_payout_units, total_refund_units,
                 winners_count, refunds_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                s.prediction_id, s.winning_option, s.outcome.value, str(s.fee_rate),
                to_units(s.total_pool), to_units(s.winning_pool),
                to_units(s.platform_fee), to_units(s.payout_pool),
                to_units(s.total_payout), to_units(s.total_refund),
                s.winners_count, s.refunds_count, to_timestamp(s.created_at),
            ),
        )
        return int(cur.lastrowid)

    def get_settlement(self, prediction_id: str) -> SettlementRecord | None:
        row = self.conn.execute(
            "SELECT * FROM settlements WHERE prediction_id = ?", (prediction_id,)
        ).fetchone()
        if not row:
            return None
        return SettlementRecord(
            id=row["id"],
            prediction_id=row["prediction_id"],
            winning_option=row["winning_option"],
            outcome=row["outcome"],
            fee_rate=Decimal(row["fee_rate"]),
            total_pool=from_units(row["total_pool_units"]),
            winning_pool=from_units(row["winning_pool_units"]),
            platform_fee=from_units(row["platform_fee_units"]),
            payout_pool=from_units(row["payout_pool_units"]),
            total_payout=from_units(row["total_payout_units"]),
            total_refund=from_units(row["total_refund_units"]),
            winners_count=row["winners_count"],
            refunds_count=row["refunds_count"],
            created_at=_parse_ts(row["created_at"]),
        )

    # ── Fee pools ────────────────────────────────────────────────────

    def increment_pool(
        self, conn: sqlite3.Connection, pool_id: str, units: int, now: dt.datetime
    ) -> None:
        conn.execute(
            """
            INSERT INTO pool_balances (id, balance_units, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                balance_units = balance_units + excluded.balance_units,
                updated_at = excluded.updated_at
            """,
            (pool_id, units, to_timestamp(now)),
        )

    def get_pools(self) -> list[PoolBalanceRecord]:
        rows = self.conn.execute("SELECT * FROM pool_balances ORDER BY id").fetchall()
        return [
            PoolBalanceRecord(
                id=r["id"],
                balance=from_units(r["balance_units"]),
                updated_at=_parse_ts(r["updated_at"]),
            )
            for r in rows
        ]


# ── Row mappers ──────────────────────────────────────────────────────

def _prediction_from_row(row: sqlite3.Row) -> PredictionRecord:
    return PredictionRecord(
        id=row["id"],
        title=row["title"],
        options=tuple(json.loads(row["options_json"])),
        entry_fee=from_units(row["entry_fee_units"]),
        fee_rate=Decimal(row["fee_rate"]),
        pot=from_units(row["pot_units"]),
        resolved=bool(row["resolved"]),
        winning_option=row["winning_option"],
        ends_at=_parse_ts(row["ends_at"]),
        created_at=_parse_ts(row["created_at"]),
        resolved_at=_parse_ts(row["resolved_at"]),
    )


def _bet_from_row(row: sqlite3.Row) -> BetRecord:
    return BetRecord(
        id=row["id"],
        user_id=row["user_id"],
        prediction_id=row["prediction_id"],
        option=row["option"],
        option_index=row["option_index"],
        amount=from_units(row["amount_units"]),
        created_at=_parse_ts(row["created_at"]),
    )


def _ledger_tx_from_row(row: sqlite3.Row) -> LedgerTransactionRecord:
    return LedgerTransactionRecord(
        id=row["id"],
        user_id=row["user_id"],
        amount=from_units(row["amount_units"]),
        type=row["type"],
        meta=json.loads(row["meta_json"] or "{}"),
        idempotency_key=row["idempotency_key"],
        created_at=_parse_ts(row["created_at"]),
    )
