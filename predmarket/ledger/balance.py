"""Balance ledger — append-only per-user currency log.

A user's balance is the sum of their transactions. ``debit`` and ``credit``
take the caller's open connection so they commit (or roll back) together
with the caller's own writes. Credits may carry an idempotency key: a
credit whose key already exists is a no-op, so a replayed settlement
never pays twice.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Any

from predmarket.errors import InsufficientFundsError
from predmarket.money import from_units, parse_amount, to_units
from predmarket.observability.logger import get_logger
from predmarket.storage.database import Database
from predmarket.storage.models import LedgerTransactionRecord, TransactionType

log = get_logger(__name__)


class BalanceLedger:
    """Debits, credits and balances over ``ledger_transactions``."""

    def __init__(self, db: Database):
        self._db = db

    def balance(self, user_id: str, conn: sqlite3.Connection | None = None) -> Decimal:
        return from_units(self._db.get_balance_units(user_id, conn))

    def history(self, user_id: str, limit: int = 50) -> list[LedgerTransactionRecord]:
        return self._db.list_ledger_txs(user_id, limit)

    def debit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: Decimal,
        reason: TransactionType,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransactionRecord:
        """Append a negative transaction. Raises InsufficientFundsError."""
        amount = parse_amount(amount)
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        available = self._db.get_balance_units(user_id, conn)
        if available < to_units(amount):
            raise InsufficientFundsError(
                f"Insufficient balance. Have: {from_units(available)}, Need: {amount}",
                user_id=user_id,
                prediction_id=(metadata or {}).get("prediction_id"),
            )
        tx = LedgerTransactionRecord(
            user_id=user_id,
            amount=-amount,
            type=reason,
            meta=metadata or {},
        )
        tx_id = self._db.insert_ledger_tx(conn, tx)
        return tx.model_copy(update={"id": tx_id})

    def credit(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        amount: Decimal,
        reason: TransactionType,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> LedgerTransactionRecord:
        """Append a positive transaction (no-op if ``idempotency_key`` was seen)."""
        amount = parse_amount(amount)
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if idempotency_key:
            existing = self._db.get_ledger_tx_by_key(idempotency_key, conn)
            if existing is not None:
                log.warning("ledger.duplicate_credit", key=idempotency_key, user_id=user_id)
                return existing
        tx = LedgerTransactionRecord(
            user_id=user_id,
            amount=amount,
            type=reason,
            meta=metadata or {},
            idempotency_key=idempotency_key,
        )
        tx_id = self._db.insert_ledger_tx(conn, tx)
        return tx.model_copy(update={"id": tx_id})

    def grant(
        self,
        user_id: str,
        amount: Decimal,
        reason: TransactionType = TransactionType.ADMIN_GRANT,
        metadata: dict[str, Any] | None = None,
    ) -> LedgerTransactionRecord:
        """Standalone credit in its own transaction (deposits, admin grants)."""
        tx = self._db.run_in_transaction(
            lambda conn: self.credit(conn, user_id, amount, reason, metadata),
            operation="ledger.grant",
        )
        log.info("ledger.granted", user_id=user_id, amount=tx.amount, type=reason.value)
        return tx
