"""Tests for the market registry: creation rules, defaults, lookup and listing."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from conftest import make_market
from predmarket.errors import NotFoundError
from predmarket.storage.models import MarketStatus


def _create(market, clock, **overrides):
    kwargs = dict(
        title="Who wins?",
        options=["Home", "Away"],
        entry_fee="5",
        ends_at=clock.now + dt.timedelta(hours=1),
        fee_rate="0.05",
    )
    kwargs.update(overrides)
    return market.registry.create(**kwargs)


class TestCreate:
    def test_creates_active_market(self, market, clock) -> None:
        p = _create(market, clock)
        assert p.status(clock.now) == MarketStatus.ACTIVE
        assert p.pot == Decimal("0.00")
        assert p.resolved is False
        assert p.winning_option is None
        assert market.registry.get(p.id).title == "Who wins?"

    def test_defaults_from_config(self, market, clock) -> None:
        p = _create(market, clock, entry_fee=None, fee_rate=None)
        assert p.fee_rate == Decimal("0.08")
        assert p.entry_fee == Decimal("2.00")

    def test_labels_are_stripped(self, market, clock) -> None:
        p = _create(market, clock, options=["  Yes ", "No"])
        assert p.options == ("Yes", "No")

    @pytest.mark.parametrize(
        "overrides, message",
        [
            ({"title": "   "}, "title"),
            ({"title": "x" * 201}, "title"),
            ({"options": ["Only"]}, "two options"),
            ({"options": [str(i) for i in range(11)]}, "at most"),
            ({"options": ["Yes", " "]}, "non-blank"),
            ({"options": ["Yes", "Yes "]}, "distinct"),
            ({"entry_fee": "-1"}, "non-negative"),
            ({"entry_fee": "0.001"}, "decimal places"),
            ({"fee_rate": "1"}, "Fee rate"),
            ({"ends_at": None}, "required"),
        ],
    )
    def test_rejects_bad_input(self, market, clock, overrides, message) -> None:
        with pytest.raises(ValueError, match=message):
            _create(market, clock, **overrides)

    def test_ends_at_must_be_aware(self, market, clock) -> None:
        with pytest.raises(ValueError, match="timezone-aware"):
            _create(market, clock, ends_at=dt.datetime(2030, 1, 1))

    def test_ends_at_must_be_future(self, market, clock) -> None:
        with pytest.raises(ValueError, match="future"):
            _create(market, clock, ends_at=clock.now)

    def test_zero_entry_fee_allowed(self, market, clock) -> None:
        assert _create(market, clock, entry_fee="0").entry_fee == Decimal("0.00")


class TestLookup:
    def test_get_missing(self, market) -> None:
        with pytest.raises(NotFoundError) as exc:
            market.registry.get("missing")
        assert exc.value.code == "not_found"

    def test_list_by_status(self, market, clock) -> None:
        short = make_market(market, clock, hours=1)
        long = make_market(market, clock, hours=48)
        clock.advance(hours=2)

        active = market.registry.list_markets(status="active")
        expired = market.registry.list_markets(status=MarketStatus.EXPIRED)
        assert [p.id for p in active] == [long.id]
        assert [p.id for p in expired] == [short.id]
        assert market.registry.list_markets(status="resolved") == []
        assert len(market.registry.list_markets()) == 2

    def test_list_limit(self, market, clock) -> None:
        for _ in range(3):
            make_market(market, clock)
        assert len(market.registry.list_markets(limit=2)) == 2


class TestRecordHelpers:
    def test_accepts_bets_follows_status(self, market, clock) -> None:
        p = make_market(market, clock, hours=1)
        assert p.accepts_bets(clock.now) is True
        assert p.accepts_bets(p.ends_at) is False

        market.resolve(p.id, 0)
        resolved = market.registry.get(p.id)
        assert resolved.accepts_bets(clock.now) is False

    @pytest.mark.parametrize(
        "index, expected",
        [(0, True), (2, True), (3, False), (-1, False), (1.0, False), (True, False), ("1", False)],
    )
    def test_has_option(self, market, clock, index, expected) -> None:
        p = make_market(market, clock, options=("A", "B", "C"))
        assert p.has_option(index) is expected
