"""Schema migrations for the market store, applied in version order.

Money columns are INTEGER minor units (see predmarket.money).
"""

from __future__ import annotations

import sqlite3

from predmarket.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 2

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS predictions (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            options_json TEXT NOT NULL,
            entry_fee_units INTEGER NOT NULL DEFAULT 0 CHECK (entry_fee_units >= 0),
            fee_rate TEXT NOT NULL,
            pot_units INTEGER NOT NULL DEFAULT 0 CHECK (pot_units >= 0),
            resolved INTEGER NOT NULL DEFAULT 0,
            winning_option TEXT,
            ends_at TEXT NOT NULL,
            created_at TEXT NOT NULL,
            resolved_at TEXT,
            CHECK (resolved = 0 OR winning_option IS NOT NULL)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS bets (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            prediction_id TEXT NOT NULL,
            option TEXT NOT NULL,
            option_index INTEGER NOT NULL,
            amount_units INTEGER NOT NULL CHECK (amount_units > 0),
            created_at TEXT NOT NULL,
            UNIQUE (user_id, prediction_id),
            FOREIGN KEY (prediction_id) REFERENCES predictions(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS ledger_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            amount_units INTEGER NOT NULL,
            type TEXT NOT NULL,
            meta_json TEXT NOT NULL DEFAULT '{}',
            idempotency_key TEXT UNIQUE,
            created_at TEXT NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_bets_prediction ON bets(prediction_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_ledger_user ON ledger_transactions(user_id);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_predictions_ends_at ON predictions(resolved, ends_at);
        """,
        # Bets and ledger rows are immutable once written
        """
        CREATE TRIGGER IF NOT EXISTS trg_bets_immutable
        BEFORE UPDATE ON bets
        BEGIN
            SELECT RAISE(ABORT, 'bets are immutable');
        END;
        """,
        """
        CREATE TRIGGER IF NOT EXISTS trg_ledger_no_update
        BEFORE UPDATE ON ledger_transactions
        BEGIN
            SELECT RAISE(ABORT, 'ledger transactions are append-only');
        END;
        """,
        """
        CREATE TRIGGER IF NOT EXISTS trg_ledger_no_delete
        BEFORE DELETE ON ledger_transactions
        BEGIN
            SELECT RAISE(ABORT, 'ledger transactions are append-only');
        END;
        """,
    ],
    2: [
        """
        CREATE TABLE IF NOT EXISTS settlements (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            prediction_id TEXT NOT NULL UNIQUE,
            winning_option TEXT NOT NULL,
            outcome TEXT NOT NULL,
            fee_rate TEXT NOT NULL,
            total_pool_units INTEGER NOT NULL,
            winning_pool_units INTEGER NOT NULL,
            platform_fee_units INTEGER NOT NULL,
            payout_pool_units INTEGER NOT NULL,
            total_payout_units INTEGER NOT NULL,
            total_refund_units INTEGER NOT NULL,
            winners_count INTEGER NOT NULL,
            refunds_count INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            FOREIGN KEY (prediction_id) REFERENCES predictions(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS pool_balances (
            id TEXT PRIMARY KEY,
            balance_units INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL
        );
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations, one transaction per version."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        conn.execute("BEGIN IMMEDIATE")
        try:
            for sql in _MIGRATIONS[version]:
                conn.execute(sql)
            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
                (version,),
            )
        except sqlite3.Error:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        log.info("migrations.applied", version=version)

    final = _get_current_version(conn)
    log.debug("migrations.complete", version=final)


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
