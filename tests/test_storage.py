"""Tests for the SQLite layer:
  - Migrations (schema version, re-running is a no-op)
  - UNIQUE(user_id, prediction_id) on bets
  - Immutability triggers on bets and ledger rows
  - Transaction rollback and transient-failure retry
  - Atomic pot increment and conditional resolve flag
  - Fee pool upsert and backups
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from decimal import Decimal
from pathlib import Path

import pytest

from conftest import START, fund, make_market
from predmarket.config import RetryConfig, StorageConfig
from predmarket.errors import TransientStorageError
from predmarket.storage.backup import backup_database
from predmarket.storage.database import Database, to_timestamp
from predmarket.storage.migrations import SCHEMA_VERSION
from predmarket.storage.models import BetRecord, LedgerTransactionRecord, TransactionType


def _bet(prediction_id: str, user: str = "alice", amount: str = "10") -> BetRecord:
    return BetRecord(
        user_id=user,
        prediction_id=prediction_id,
        option="Yes",
        option_index=0,
        amount=Decimal(amount),
        created_at=START,
    )


# ═══════════════════════════════════════════════════════════════════
#  Schema
# ═══════════════════════════════════════════════════════════════════

class TestMigrations:
    def test_schema_version(self, market) -> None:
        row = market.db.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        assert row[0] == SCHEMA_VERSION

    def test_reconnect_is_noop(self, config, market) -> None:
        db = Database(config.storage)
        db.connect()
        try:
            versions = db.conn.execute("SELECT version FROM schema_version").fetchall()
            assert [r[0] for r in versions] == list(range(1, SCHEMA_VERSION + 1))
        finally:
            db.close()

    def test_in_memory_database(self) -> None:
        with Database(StorageConfig(sqlite_path=":memory:")) as db:
            tables = {
                r[0] for r in db.conn.execute(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
        assert {"predictions", "bets", "ledger_transactions", "settlements", "pool_balances"} <= tables

    def test_not_connected(self) -> None:
        db = Database(StorageConfig(sqlite_path=":memory:"))
        with pytest.raises(RuntimeError, match="not connected"):
            _ = db.conn


class TestConstraints:
    def test_one_bet_per_user_per_prediction(self, market, clock) -> None:
        p = make_market(market, clock)
        with market.db.transaction() as conn:
            market.db.insert_bet(conn, _bet(p.id))
        with pytest.raises(sqlite3.IntegrityError):
            with market.db.transaction() as conn:
                market.db.insert_bet(conn, _bet(p.id, amount="20"))
        assert market.db.count_bets(p.id) == 1

    def test_bets_are_immutable(self, market, clock) -> None:
        p = make_market(market, clock)
        with market.db.transaction() as conn:
            market.db.insert_bet(conn, _bet(p.id))
        with pytest.raises(sqlite3.IntegrityError, match="immutable"):
            market.db.conn.execute("UPDATE bets SET amount_units = 1")

    def test_ledger_is_append_only(self, market) -> None:
        fund(market, "alice")
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            market.db.conn.execute("UPDATE ledger_transactions SET amount_units = 0")
        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            market.db.conn.execute("DELETE FROM ledger_transactions")

    def test_positive_bet_amount(self, market, clock) -> None:
        p = make_market(market, clock)
        with pytest.raises(sqlite3.IntegrityError):
            with market.db.transaction() as conn:
                market.db.insert_bet(conn, _bet(p.id, amount="0"))

    def test_duplicate_idempotency_key(self, market) -> None:
        tx = LedgerTransactionRecord(
            user_id="alice", amount=Decimal("1"), type=TransactionType.DEPOSIT,
            idempotency_key="k1",
        )
        with market.db.transaction() as conn:
            market.db.insert_ledger_tx(conn, tx)
        with pytest.raises(sqlite3.IntegrityError):
            with market.db.transaction() as conn:
                market.db.insert_ledger_tx(conn, tx)


# ═══════════════════════════════════════════════════════════════════
#  Transactions
# ═══════════════════════════════════════════════════════════════════

class TestTransactions:
    def test_rollback_on_error(self, market, clock) -> None:
        p = make_market(market, clock)
        with pytest.raises(ValueError):
            with market.db.transaction() as conn:
                market.db.insert_bet(conn, _bet(p.id))
                market.db.increment_pot(conn, p.id, 1000)
                raise ValueError("boom")
        assert market.db.count_bets(p.id) == 0
        assert market.db.get_prediction(p.id).pot == Decimal("0.00")
        assert not market.db.conn.in_transaction

    def test_operational_error_becomes_transient(self, market) -> None:
        with pytest.raises(TransientStorageError):
            with market.db.transaction() as conn:
                conn.execute("SELECT * FROM no_such_table")

    def test_retry_then_succeed(self, market) -> None:
        calls = []

        def _fn(conn: sqlite3.Connection) -> str:
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert market.db.run_in_transaction(_fn, operation="test") == "ok"
        assert len(calls) == 2

    def test_retry_gives_up(self, market) -> None:
        calls = []

        def _fn(conn: sqlite3.Connection) -> None:
            calls.append(1)
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(TransientStorageError):
            market.db.run_in_transaction(_fn, operation="test")
        assert len(calls) == 3

    def test_business_errors_not_retried(self, market) -> None:
        calls = []

        def _fn(conn: sqlite3.Connection) -> None:
            calls.append(1)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            market.db.run_in_transaction(_fn)
        assert len(calls) == 1

    def test_single_attempt_config(self, config) -> None:
        db = Database(config.storage, RetryConfig(max_attempts=1))
        db.connect()
        calls = []

        def _fn(conn: sqlite3.Connection) -> None:
            calls.append(1)
            raise sqlite3.OperationalError("disk I/O error")

        try:
            with pytest.raises(TransientStorageError):
                db.run_in_transaction(_fn)
        finally:
            db.close()
        assert len(calls) == 1


# ═══════════════════════════════════════════════════════════════════
#  Predictions and pools
# ═══════════════════════════════════════════════════════════════════

class TestPredictionRows:
    def test_round_trip(self, market, clock) -> None:
        p = make_market(market, clock, options=("Red", "Green", "Blue"))
        stored = market.db.get_prediction(p.id)
        assert stored.options == ("Red", "Green", "Blue")
        assert stored.fee_rate == Decimal("0.05")
        assert stored.entry_fee == Decimal("10.00")
        assert stored.ends_at == p.ends_at

    def test_increment_pot(self, market, clock) -> None:
        p = make_market(market, clock)
        with market.db.transaction() as conn:
            market.db.increment_pot(conn, p.id, 1050)
            market.db.increment_pot(conn, p.id, 25)
        assert market.db.get_prediction(p.id).pot == Decimal("10.75")

    def test_increment_pot_refuses_resolved(self, market, clock) -> None:
        p = make_market(market, clock)
        with market.db.transaction() as conn:
            assert market.db.mark_resolved(conn, p.id, "Yes", clock.now)
        with pytest.raises(RuntimeError):
            with market.db.transaction() as conn:
                market.db.increment_pot(conn, p.id, 100)

    def test_mark_resolved_only_once(self, market, clock) -> None:
        p = make_market(market, clock)
        with market.db.transaction() as conn:
            assert market.db.mark_resolved(conn, p.id, "Yes", clock.now)
            assert not market.db.mark_resolved(conn, p.id, "No", clock.now)
        stored = market.db.get_prediction(p.id)
        assert stored.resolved
        assert stored.winning_option == "Yes"

    def test_naive_timestamp_rejected(self) -> None:
        with pytest.raises(ValueError):
            to_timestamp(dt.datetime(2026, 1, 1))

    def test_timestamps_normalized_to_utc(self) -> None:
        plus2 = dt.timezone(dt.timedelta(hours=2))
        assert to_timestamp(dt.datetime(2026, 1, 1, 14, 0, tzinfo=plus2)) == (
            "2026-01-01T12:00:00.000000+00:00"
        )

    def test_pool_upsert(self, market, clock) -> None:
        with market.db.transaction() as conn:
            market.db.increment_pool(conn, "treasury", 700, clock.now)
            market.db.increment_pool(conn, "treasury", 55, clock.now)
        pools = market.db.get_pools()
        assert len(pools) == 1
        assert pools[0].balance == Decimal("7.55")


class TestBackup:
    def test_backup_creates_copy(self, market, config) -> None:
        fund(market, "alice", amount="42")
        path = backup_database(config.storage, tag="manual")
        assert path.exists()
        assert path.name.endswith("_manual.db")
        conn = sqlite3.connect(str(path))
        try:
            total = conn.execute("SELECT SUM(amount_units) FROM ledger_transactions").fetchone()[0]
        finally:
            conn.close()
        assert total == 4200

    def test_backup_prunes_old_files(self, market, config) -> None:
        for tag in ("a", "b", "c"):
            backup_database(config.storage, tag=tag)
        assert len(list(Path(config.storage.backup_dir).glob("predmarket_*.db"))) == 2

    def test_missing_source(self, tmp_path) -> None:
        cfg = StorageConfig(sqlite_path=str(tmp_path / "nope.db"), backup_dir=str(tmp_path))
        with pytest.raises(FileNotFoundError):
            backup_database(cfg)
