"""Settlement engine — resolve a market exactly once.

Inside a single write transaction:
  1. Conditional flip ``resolved 0 → 1`` (rowcount must be 1).
  2. Plan payouts from the pot and the bets (predmarket.market.payout).
  3. Credit winners (``prediction_win``) or refund everyone
     (``prediction_refund``), each credit keyed by prediction and bet.
  4. Split the retained fee into the fee pools.
  5. Write the settlement row.

Anything raised before COMMIT rolls every step back, so a crashed or
timed-out resolve leaves the market exactly as it was and can be retried.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

from predmarket.errors import AlreadyResolvedError, InvalidOptionError, NotFoundError
from predmarket.ledger.balance import BalanceLedger
from predmarket.market.payout import SettlementPlan, plan_settlement
from predmarket.market.pools import FeePools
from predmarket.money import from_units, parse_fee_rate, to_units
from predmarket.observability.logger import get_logger, market_context
from predmarket.storage.database import Database
from predmarket.storage.models import SettlementOutcome, SettlementRecord, utcnow

log = get_logger(__name__)


@dataclass
class ResolveResult:
    prediction_id: str
    winning_option: str
    outcome: SettlementOutcome
    fee_rate: Decimal
    winners_count: int
    total_payout: Decimal
    total_refund: Decimal
    refunds_count: int
    total_pool: Decimal
    platform_fee: Decimal
    payout_pool: Decimal
    pool_allocation: dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "prediction_id": self.prediction_id,
            "winning_option": self.winning_option,
            "outcome": self.outcome.value,
            "fee_rate": str(self.fee_rate),
            "winners_count": self.winners_count,
            "total_payout": str(self.total_payout),
            "total_refund": str(self.total_refund),
            "refunds_count": self.refunds_count,
            "total_pool": str(self.total_pool),
            "platform_fee": str(self.platform_fee),
            "payout_pool": str(self.payout_pool),
            "pool_allocation": {k: str(v) for k, v in self.pool_allocation.items()},
        }


def credit_key(plan_line_type: str, prediction_id: str, bet_id: str) -> str:
    return f"{plan_line_type}:{prediction_id}:{bet_id}"


class SettlementEngine:
    def __init__(
        self,
        db: Database,
        ledger: BalanceLedger,
        pools: FeePools,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._ledger = ledger
        self._pools = pools
        self._clock = clock

    def resolve(
        self,
        prediction_id: str,
        winning_option_index: int,
        fee_rate: Any = None,
    ) -> ResolveResult:
        """Settle the market in favour of ``options[winning_option_index]``.

        ``fee_rate`` defaults to the rate stored on the market.
        Raises NotFoundError, AlreadyResolvedError, InvalidOptionError.
        """
        override = parse_fee_rate(fee_rate) if fee_rate is not None else None

        def _apply(conn: sqlite3.Connection) -> ResolveResult:
            prediction = self._db.get_prediction(prediction_id, conn)
            if prediction is None:
                raise NotFoundError("Prediction not found", prediction_id)
            if prediction.resolved:
                raise AlreadyResolvedError("Prediction is already resolved", prediction_id)
            if not prediction.has_option(winning_option_index):
                raise InvalidOptionError("Invalid winning option", prediction_id)

            rate = override if override is not None else prediction.fee_rate
            winning_option = prediction.options[winning_option_index]
            now = self._clock()

            if not self._db.mark_resolved(conn, prediction_id, winning_option, now):
                raise AlreadyResolvedError("Prediction is already resolved", prediction_id)

            bets = self._db.list_bets(prediction_id, conn)
            plan = plan_settlement(bets, winning_option, to_units(prediction.pot), rate)

            self._issue_credits(conn, prediction_id, plan)
            allocation = self._pools.distribute(conn, plan.platform_fee_units, now)

            self._db.insert_settlement(
                conn,
                SettlementRecord(
                    prediction_id=prediction_id,
                    winning_option=winning_option,
                    outcome=plan.outcome,
                    fee_rate=rate,
                    total_pool=from_units(plan.total_pool_units),
                    winning_pool=from_units(plan.winning_pool_units),
                    platform_fee=from_units(plan.platform_fee_units),
                    payout_pool=from_units(plan.payout_pool_units),
                    total_payout=from_units(plan.total_payout_units),
                    total_refund=from_units(plan.total_refund_units),
                    winners_count=plan.winners_count,
                    refunds_count=plan.refunds_count,
                    created_at=now,
                ),
            )
            return _result(prediction_id, winning_option, plan, FeePools.to_amounts(allocation))

        with market_context(prediction_id=prediction_id, operation="resolve"):
            result = self._db.run_in_transaction(_apply, operation="resolve")
            log.info(
                "settlement.resolved",
                winning_option=result.winning_option,
                outcome=result.outcome.value,
                total_pool=result.total_pool,
                platform_fee=result.platform_fee,
                total_payout=result.total_payout,
                total_refund=result.total_refund,
                winners=result.winners_count,
            )
        return result

    def _issue_credits(
        self, conn: sqlite3.Connection, prediction_id: str, plan: SettlementPlan
    ) -> None:
        for line in plan.lines:
            if line.amount_units <= 0:
                # stake too small to survive the fee at cent precision
                continue
            self._ledger.credit(
                conn,
                line.user_id,
                line.amount,
                line.type,
                metadata={
                    "prediction_id": prediction_id,
                    "bet_id": line.bet_id,
                    "share": str(line.share),
                    "stake": str(from_units(line.stake_units)),
                },
                idempotency_key=credit_key(line.type.value, prediction_id, line.bet_id),
            )

    def preview(self, prediction_id: str, winning_option_index: int, fee_rate: Any = None) -> SettlementPlan:
        """Dry-run of ``resolve``: the plan it would apply, with no writes."""
        override = parse_fee_rate(fee_rate) if fee_rate is not None else None
        with self._db.transaction(immediate=False) as conn:
            prediction = self._db.get_prediction(prediction_id, conn)
            if prediction is None:
                raise NotFoundError("Prediction not found", prediction_id)
            if prediction.resolved:
                raise AlreadyResolvedError("Prediction is already resolved", prediction_id)
            if not prediction.has_option(winning_option_index):
                raise InvalidOptionError("Invalid winning option", prediction_id)
            bets = self._db.list_bets(prediction_id, conn)
        rate = override if override is not None else prediction.fee_rate
        return plan_settlement(
            bets, prediction.options[winning_option_index], to_units(prediction.pot), rate
        )

    def get_settlement(self, prediction_id: str) -> SettlementRecord | None:
        return self._db.get_settlement(prediction_id)


def _result(
    prediction_id: str,
    winning_option: str,
    plan: SettlementPlan,
    allocation: dict[str, Decimal],
) -> ResolveResult:
    return ResolveResult(
        prediction_id=prediction_id,
        winning_option=winning_option,
        outcome=plan.outcome,
        fee_rate=plan.fee_rate,
        winners_count=plan.winners_count,
        total_payout=from_units(plan.total_payout_units),
        total_refund=from_units(plan.total_refund_units),
        refunds_count=plan.refunds_count,
        total_pool=from_units(plan.total_pool_units),
        platform_fee=from_units(plan.platform_fee_units),
        payout_pool=from_units(plan.payout_pool_units),
        pool_allocation=allocation,
    )
