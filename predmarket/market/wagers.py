"""Wager ledger — accept one stake per user per market.

placeBet validation (first failure wins):
  1. Prediction exists                          → NotFoundError
  2. Not resolved and now < ends_at             → MarketClosedError
  3. Option index is an int in range            → InvalidOptionError
  4. amount > 0 and amount >= entry_fee         → BelowMinimumError
     (a malformed or sub-cent amount raises ValueError here)
  5. No existing bet for (user, prediction)     → AlreadyBetError
  6. Ledger balance covers amount               → InsufficientFundsError

Then, in the same transaction: debit the stake, insert the bet (the
UNIQUE(user_id, prediction_id) index is the real guard; a violation is
mapped to AlreadyBetError), and increment the pot in-store.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from predmarket.errors import (
    AlreadyBetError,
    BelowMinimumError,
    InvalidOptionError,
    MarketClosedError,
    NotFoundError,
)
from predmarket.ledger.balance import BalanceLedger
from predmarket.money import ZERO, from_units, parse_amount, to_units
from predmarket.observability.logger import get_logger, market_context
from predmarket.storage.database import Database
from predmarket.storage.models import BetRecord, MarketStatus, TransactionType, utcnow

log = get_logger(__name__)


@dataclass
class MarketState:
    """Snapshot of a market's pooled stakes."""
    prediction_id: str
    pot: Decimal
    per_option_totals: dict[str, Decimal] = field(default_factory=dict)
    resolved: bool = False
    winning_option: str | None = None
    status: MarketStatus = MarketStatus.ACTIVE
    bets_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "pot": str(self.pot),
            "per_option_totals": {k: str(v) for k, v in self.per_option_totals.items()},
            "resolved": self.resolved,
            "winning_option": self.winning_option,
            "status": self.status.value,
            "bets_count": self.bets_count,
        }


def _is_unique_violation(exc: sqlite3.IntegrityError) -> bool:
    return "UNIQUE" in str(exc).upper()


class WagerLedger:
    def __init__(
        self,
        db: Database,
        ledger: BalanceLedger,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._ledger = ledger
        self._clock = clock

    def place_bet(
        self,
        user_id: str,
        prediction_id: str,
        option_index: int,
        amount: Any,
    ) -> BetRecord:
        """Stake ``amount`` on ``options[option_index]``. Returns the persisted bet.

        A malformed or sub-cent ``amount`` raises ValueError at the stake
        check, after the market and option checks.
        """

        def _apply(conn: sqlite3.Connection) -> BetRecord:
            prediction = self._db.get_prediction(prediction_id, conn)
            if prediction is None:
                raise NotFoundError("Prediction not found", prediction_id)

            now = self._clock()
            if not prediction.accepts_bets(now):
                if prediction.resolved:
                    raise MarketClosedError("Prediction is already resolved", prediction_id)
                raise MarketClosedError("Prediction has ended", prediction_id)

            if not prediction.has_option(option_index):
                raise InvalidOptionError(
                    f"Option index {option_index!r} out of range "
                    f"(0..{len(prediction.options) - 1})",
                    prediction_id,
                )

            stake = parse_amount(amount)
            if stake <= ZERO or stake < prediction.entry_fee:
                raise BelowMinimumError(
                    f"Stake {stake} is below the entry fee {prediction.entry_fee}",
                    prediction_id,
                )

            if self._db.get_user_bet(user_id, prediction_id, conn) is not None:
                raise AlreadyBetError("You already placed a bet on this prediction", prediction_id)

            bet = BetRecord(
                user_id=user_id,
                prediction_id=prediction_id,
                option=prediction.options[option_index],
                option_index=option_index,
                amount=stake,
                created_at=now,
            )
            self._ledger.debit(
                conn,
                user_id,
                stake,
                TransactionType.SPEND_BET,
                {
                    "prediction_id": prediction_id,
                    "bet_id": bet.id,
                    "option": bet.option,
                },
            )
            try:
                self._db.insert_bet(conn, bet)
            except sqlite3.IntegrityError as e:
                if _is_unique_violation(e):
                    raise AlreadyBetError(
                        "You already placed a bet on this prediction", prediction_id
                    ) from e
                raise
            self._db.increment_pot(conn, prediction_id, to_units(stake))
            return bet

        with market_context(prediction_id=prediction_id, user_id=user_id, operation="place_bet"):
            bet = self._db.run_in_transaction(_apply, operation="place_bet")
            log.info(
                "wager.placed",
                bet_id=bet.id,
                option=bet.option,
                amount=bet.amount,
            )
        return bet

    def get_market_state(self, prediction_id: str) -> MarketState:
        """Pot and per-option totals, read from one consistent snapshot."""
        with self._db.transaction(immediate=False) as conn:
            prediction = self._db.get_prediction(prediction_id, conn)
            if prediction is None:
                raise NotFoundError("Prediction not found", prediction_id)
            totals = self._db.option_totals_units(prediction_id, conn)
            bets_count = self._db.count_bets(prediction_id, conn)

        return MarketState(
            prediction_id=prediction_id,
            pot=prediction.pot,
            per_option_totals={
                label: from_units(totals.get(i, 0))
                for i, label in enumerate(prediction.options)
            },
            resolved=prediction.resolved,
            winning_option=prediction.winning_option,
            status=prediction.status(self._clock()),
            bets_count=bets_count,
        )

    def get_bet(self, bet_id: str) -> BetRecord:
        bet = self._db.get_bet(bet_id)
        if bet is None:
            raise NotFoundError(f"Bet {bet_id} not found")
        return bet

    def get_user_bet(self, user_id: str, prediction_id: str) -> BetRecord | None:
        return self._db.get_user_bet(user_id, prediction_id)

    def list_bets(self, prediction_id: str) -> list[BetRecord]:
        return self._db.list_bets(prediction_id)
