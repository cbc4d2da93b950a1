"""Tests for pari-mutuel settlement planning (pure, no storage):
  - Winner payouts proportional to stake, net of platform fee
  - Single winner takes the whole payout pool
  - Refund-all when nobody backed the winning option
  - Empty market
  - Conservation: payouts + fee == pot, always
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from predmarket.market.payout import plan_settlement
from predmarket.money import to_units
from predmarket.storage.models import BetRecord, SettlementOutcome, TransactionType

T0 = dt.datetime(2026, 1, 1, tzinfo=dt.timezone.utc)


def _bet(user: str, option: str, amount: str, seq: int = 0) -> BetRecord:
    return BetRecord(
        id=f"b{seq}",
        user_id=user,
        prediction_id="p1",
        option=option,
        option_index=0 if option == "Yes" else 1,
        amount=Decimal(amount),
        created_at=T0 + dt.timedelta(seconds=seq),
    )


def _pot(bets: list[BetRecord]) -> int:
    return sum(to_units(b.amount) for b in bets)


def _scenario_bets() -> list[BetRecord]:
    return [
        _bet("A", "Yes", "100", 0),
        _bet("B", "No", "50", 1),
        _bet("C", "Yes", "50", 2),
    ]


class TestWinnerPayouts:
    def test_proportional_split_scenario(self) -> None:
        bets = _scenario_bets()
        plan = plan_settlement(bets, "Yes", _pot(bets), Decimal("0.05"))

        assert plan.outcome == SettlementOutcome.PAYOUT
        assert plan.total_pool_units == 20000
        assert plan.platform_fee_units == 1000
        assert plan.payout_pool_units == 19000
        assert plan.winning_pool_units == 15000
        payouts = {l.user_id: l.amount for l in plan.lines}
        assert payouts == {"A": Decimal("126.67"), "C": Decimal("63.33")}
        assert plan.total_payout_units == plan.payout_pool_units
        assert plan.winners_count == 2
        assert all(l.type == TransactionType.PREDICTION_WIN for l in plan.lines)

    def test_single_winner_takes_payout_pool(self) -> None:
        bets = _scenario_bets()
        plan = plan_settlement(bets, "No", _pot(bets), Decimal("0.05"))

        assert len(plan.lines) == 1
        assert plan.lines[0].user_id == "B"
        assert plan.lines[0].amount == Decimal("190.00")
        assert plan.lines[0].share == Decimal(1)

    def test_zero_fee_returns_whole_pot(self) -> None:
        bets = _scenario_bets()
        plan = plan_settlement(bets, "Yes", _pot(bets), Decimal(0))
        assert plan.platform_fee_units == 0
        assert plan.total_payout_units == 20000

    def test_rounding_tie_goes_to_earlier_bet(self) -> None:
        bets = [
            _bet("A", "Yes", "1.00", 0),
            _bet("B", "Yes", "1.00", 1),
            _bet("C", "No", "1.01", 2),
        ]
        plan = plan_settlement(bets, "Yes", _pot(bets), Decimal(0))
        assert [l.amount_units for l in plan.lines] == [151, 150]

    def test_conservation_with_awkward_amounts(self) -> None:
        bets = [
            _bet("A", "Yes", "33.33", 0),
            _bet("B", "Yes", "33.33", 1),
            _bet("C", "Yes", "33.34", 2),
            _bet("D", "No", "10.00", 3),
        ]
        plan = plan_settlement(bets, "Yes", _pot(bets), Decimal("0.08"))
        # 110.00 * 8% = 8.80
        assert plan.platform_fee_units == 880
        assert plan.issued_units + plan.platform_fee_units == plan.total_pool_units


class TestRefunds:
    def test_nobody_backed_winner_refunds_everyone(self) -> None:
        bets = [_bet("A", "Yes", "100", 0), _bet("C", "Yes", "50", 1)]
        plan = plan_settlement(bets, "No", _pot(bets), Decimal("0.05"))

        assert plan.outcome == SettlementOutcome.REFUND
        refunds = {l.user_id: l.amount for l in plan.lines}
        assert refunds == {"A": Decimal("95.00"), "C": Decimal("47.50")}
        assert plan.platform_fee_units == 750
        assert plan.total_payout_units == 0
        assert plan.total_refund_units == 14250
        assert plan.refunds_count == 2
        assert plan.winners_count == 0

    def test_refund_dust_goes_to_fee(self) -> None:
        bets = [_bet("A", "Yes", "3.33", 0)]
        plan = plan_settlement(bets, "No", _pot(bets), Decimal("0.05"))
        assert plan.lines[0].amount_units == 316
        assert plan.platform_fee_units == 17

    def test_tiny_stake_refunds_nothing(self) -> None:
        bets = [_bet("A", "Yes", "0.01", 0)]
        plan = plan_settlement(bets, "No", _pot(bets), Decimal("0.5"))
        assert plan.lines[0].amount_units == 0
        assert plan.platform_fee_units == 1


class TestEdgeCases:
    def test_empty_market(self) -> None:
        plan = plan_settlement([], "Yes", 0, Decimal("0.05"))
        assert plan.outcome == SettlementOutcome.EMPTY
        assert plan.lines == []
        assert plan.platform_fee_units == 0

    def test_pot_mismatch_rejected(self) -> None:
        bets = _scenario_bets()
        with pytest.raises(ValueError, match="does not match"):
            plan_settlement(bets, "Yes", _pot(bets) + 1, Decimal("0.05"))

    def test_to_dict(self) -> None:
        bets = _scenario_bets()
        d = plan_settlement(bets, "Yes", _pot(bets), Decimal("0.05")).to_dict()
        assert d["outcome"] == "payout"
        assert d["platform_fee"] == "10.00"
        assert d["total_payout"] == "190.00"
        assert d["winners_count"] == 2
