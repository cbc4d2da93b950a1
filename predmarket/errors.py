"""Error taxonomy for wagering and settlement.

MarketError (base)
├── NotFoundError            - prediction (or bet) does not exist
├── MarketClosedError        - market resolved or past its end time
├── InvalidOptionError       - option index out of range
├── BelowMinimumError        - stake below the market's entry fee
├── AlreadyBetError          - user already holds a bet on this market
├── InsufficientFundsError   - ledger balance does not cover the stake
├── AlreadyResolvedError     - market was resolved before this call
└── TransientStorageError    - storage fault mid-transaction (retryable)

Business-rule errors are never retried; only TransientStorageError is.
"""

from __future__ import annotations


class MarketError(Exception):
    """Base class for all wagering/settlement errors.

    ``code`` is a stable identifier the boundary layer maps to a response.
    """

    code = "market_error"
    retryable = False

    def __init__(self, message: str, prediction_id: str | None = None):
        self.message = message
        self.prediction_id = prediction_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.prediction_id:
            return f"[{self.prediction_id}] {self.message}"
        return self.message


class NotFoundError(MarketError):
    code = "not_found"


class MarketClosedError(MarketError):
    code = "market_closed"


class InvalidOptionError(MarketError):
    code = "invalid_option"


class BelowMinimumError(MarketError):
    code = "below_minimum"


class AlreadyBetError(MarketError):
    code = "already_bet"


class InsufficientFundsError(MarketError):
    code = "insufficient_funds"

    def __init__(self, message: str, user_id: str = "", prediction_id: str | None = None):
        self.user_id = user_id
        super().__init__(message, prediction_id)


class AlreadyResolvedError(MarketError):
    code = "already_resolved"


class TransientStorageError(MarketError):
    """Infrastructure fault (lock timeout, I/O error) inside a transaction.

    The transaction that raised it has been rolled back in full.
    """

    code = "transient_storage_failure"
    retryable = True
