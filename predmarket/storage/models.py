"""Storage records — pydantic models for markets, bets, ledger rows and settlements."""

from __future__ import annotations

import datetime as dt
import uuid
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from predmarket.money import ZERO


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class MarketStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"      # unresolved, past ends_at: no bets, awaiting resolution
    RESOLVED = "resolved"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    ADMIN_GRANT = "admin_grant"
    SPEND_BET = "spend_bet"
    PREDICTION_WIN = "prediction_win"
    PREDICTION_REFUND = "prediction_refund"


class SettlementOutcome(str, Enum):
    PAYOUT = "payout"        # someone backed the winner
    REFUND = "refund"        # nobody backed the winner, stakes refunded net of fee
    EMPTY = "empty"          # no stakes at all


class PredictionRecord(BaseModel):
    """A market. ``options`` is fixed at creation and never changes."""
    id: str = Field(default_factory=new_id)
    title: str
    options: tuple[str, ...]
    entry_fee: Decimal = ZERO
    fee_rate: Decimal
    pot: Decimal = ZERO
    resolved: bool = False
    winning_option: str | None = None
    ends_at: dt.datetime
    created_at: dt.datetime = Field(default_factory=utcnow)
    resolved_at: dt.datetime | None = None

    def status(self, now: dt.datetime) -> MarketStatus:
        if self.resolved:
            return MarketStatus.RESOLVED
        if now >= self.ends_at:
            return MarketStatus.EXPIRED
        return MarketStatus.ACTIVE

    def accepts_bets(self, now: dt.datetime) -> bool:
        return self.status(now) == MarketStatus.ACTIVE

    def has_option(self, index: Any) -> bool:
        """True only for a plain int inside ``options``; bools and floats are rejected."""
        return (
            isinstance(index, int)
            and not isinstance(index, bool)
            and 0 <= index < len(self.options)
        )


class BetRecord(BaseModel):
    """One user's stake on one option. Immutable."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    user_id: str
    prediction_id: str
    option: str
    option_index: int
    amount: Decimal
    created_at: dt.datetime = Field(default_factory=utcnow)


class LedgerTransactionRecord(BaseModel):
    """Append-only balance change. Positive = credit, negative = debit."""
    model_config = ConfigDict(frozen=True)

    id: int | None = None
    user_id: str
    amount: Decimal
    type: TransactionType
    meta: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = None
    created_at: dt.datetime = Field(default_factory=utcnow)


class SettlementRecord(BaseModel):
    """Audit row written once per resolved prediction."""
    id: int | None = None
    prediction_id: str
    winning_option: str
    outcome: SettlementOutcome
    fee_rate: Decimal
    total_pool: Decimal = ZERO
    winning_pool: Decimal = ZERO
    platform_fee: Decimal = ZERO
    payout_pool: Decimal = ZERO
    total_payout: Decimal = ZERO
    total_refund: Decimal = ZERO
    winners_count: int = 0
    refunds_count: int = 0
    created_at: dt.datetime = Field(default_factory=utcnow)


class PoolBalanceRecord(BaseModel):
    id: str
    balance: Decimal = ZERO
    updated_at: dt.datetime = Field(default_factory=utcnow)
