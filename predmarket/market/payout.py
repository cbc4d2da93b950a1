"""Pari-mutuel payout math — pure functions, no storage.

Pool math:
  - POOL        = pot (sum of every stake on the market)
  - FEE         = POOL * fee_rate (rounded up to the cent)
  - PAYOUT_POOL = POOL - FEE
  - payout_i    = PAYOUT_POOL * stake_i / WINNING_POOL   (largest remainder)

If nobody backed the winning option every bettor is refunded
``stake * (1 - fee_rate)`` (floored); the dust stays with the platform.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Sequence

from predmarket.money import (
    fee_units,
    from_units,
    net_of_fee_units,
    share_of,
    split_proportional,
    to_units,
)
from predmarket.storage.models import BetRecord, SettlementOutcome, TransactionType


@dataclass(frozen=True)
class PayoutLine:
    """One credit to issue at settlement."""
    bet_id: str
    user_id: str
    stake_units: int
    amount_units: int
    share: Decimal
    type: TransactionType

    @property
    def amount(self) -> Decimal:
        return from_units(self.amount_units)


@dataclass
class SettlementPlan:
    outcome: SettlementOutcome
    fee_rate: Decimal
    total_pool_units: int
    winning_pool_units: int
    platform_fee_units: int
    payout_pool_units: int
    lines: list[PayoutLine] = field(default_factory=list)

    @property
    def total_payout_units(self) -> int:
        return sum(
            l.amount_units for l in self.lines if l.type == TransactionType.PREDICTION_WIN
        )

    @property
    def total_refund_units(self) -> int:
        return sum(
            l.amount_units for l in self.lines if l.type == TransactionType.PREDICTION_REFUND
        )

    @property
    def issued_units(self) -> int:
        return sum(l.amount_units for l in self.lines)

    @property
    def winners_count(self) -> int:
        return sum(
            1 for l in self.lines
            if l.type == TransactionType.PREDICTION_WIN and l.stake_units > 0
        )

    @property
    def refunds_count(self) -> int:
        return sum(1 for l in self.lines if l.type == TransactionType.PREDICTION_REFUND)

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "fee_rate": str(self.fee_rate),
            "total_pool": str(from_units(self.total_pool_units)),
            "winning_pool": str(from_units(self.winning_pool_units)),
            "platform_fee": str(from_units(self.platform_fee_units)),
            "payout_pool": str(from_units(self.payout_pool_units)),
            "total_payout": str(from_units(self.total_payout_units)),
            "total_refund": str(from_units(self.total_refund_units)),
            "winners_count": self.winners_count,
            "refunds_count": self.refunds_count,
        }


def plan_settlement(
    bets: Sequence[BetRecord],
    winning_option: str,
    total_pool_units: int,
    fee_rate: Decimal,
) -> SettlementPlan:
    """Compute every credit for resolving a market in favour of ``winning_option``.

    ``bets`` must be in placement order; it decides ties in the remainder split.
    ``total_pool_units`` is the market's pot and must equal the sum of stakes.
    """
    stakes = [to_units(b.amount) for b in bets]
    if sum(stakes) != total_pool_units:
        raise ValueError(
            f"pot {total_pool_units} does not match sum of stakes {sum(stakes)}"
        )

    winners = [(b, s) for b, s in zip(bets, stakes) if b.option == winning_option]
    winning_pool = sum(s for _, s in winners)

    if total_pool_units == 0:
        return SettlementPlan(
            outcome=SettlementOutcome.EMPTY,
            fee_rate=fee_rate,
            total_pool_units=0,
            winning_pool_units=0,
            platform_fee_units=0,
            payout_pool_units=0,
        )

    if winning_pool > 0:
        platform_fee = fee_units(total_pool_units, fee_rate)
        payout_pool = total_pool_units - platform_fee
        payouts = split_proportional(payout_pool, [s for _, s in winners])
        lines = [
            PayoutLine(
                bet_id=b.id,
                user_id=b.user_id,
                stake_units=s,
                amount_units=p,
                share=share_of(s, winning_pool),
                type=TransactionType.PREDICTION_WIN,
            )
            for (b, s), p in zip(winners, payouts)
        ]
        return SettlementPlan(
            outcome=SettlementOutcome.PAYOUT,
            fee_rate=fee_rate,
            total_pool_units=total_pool_units,
            winning_pool_units=winning_pool,
            platform_fee_units=platform_fee,
            payout_pool_units=payout_pool,
            lines=lines,
        )

    # Nobody backed the winner: refund everyone net of fee
    lines = [
        PayoutLine(
            bet_id=b.id,
            user_id=b.user_id,
            stake_units=s,
            amount_units=net_of_fee_units(s, fee_rate),
            share=Decimal(1) - fee_rate,
            type=TransactionType.PREDICTION_REFUND,
        )
        for b, s in zip(bets, stakes)
    ]
    refunded = sum(l.amount_units for l in lines)
    return SettlementPlan(
        outcome=SettlementOutcome.REFUND,
        fee_rate=fee_rate,
        total_pool_units=total_pool_units,
        winning_pool_units=0,
        platform_fee_units=total_pool_units - refunded,
        payout_pool_units=refunded,
        lines=lines,
    )
