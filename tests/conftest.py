"""Shared test fixtures."""

from __future__ import annotations

import datetime as dt
import sys
from pathlib import Path

import pytest

# Ensure predmarket is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from predmarket.config import EngineConfig, RetryConfig, StorageConfig  # noqa: E402
from predmarket.market.service import PredictionMarket  # noqa: E402
from predmarket.storage.models import PredictionRecord  # noqa: E402

START = dt.datetime(2026, 1, 1, 12, 0, tzinfo=dt.timezone.utc)


class FakeClock:
    """Deterministic clock; call it like ``utcnow``."""

    def __init__(self, start: dt.datetime = START):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, **kwargs: float) -> dt.datetime:
        self.now += dt.timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def config(tmp_path: Path) -> EngineConfig:
    """File-backed config so several connections can share one database."""
    return EngineConfig(
        storage=StorageConfig(
            sqlite_path=str(tmp_path / "market.db"),
            backup_dir=str(tmp_path / "backups"),
            max_backups=2,
        ),
        retry=RetryConfig(max_attempts=3, backoff_multiplier=0, backoff_max_secs=0),
    )


@pytest.fixture()
def market(config: EngineConfig, clock: FakeClock):
    m = PredictionMarket.open(config, clock)
    yield m
    m.close()


def make_market(
    market: PredictionMarket,
    clock: FakeClock,
    options: tuple[str, ...] = ("Yes", "No"),
    entry_fee: str = "10",
    fee_rate: str | None = "0.05",
    hours: float = 24,
) -> PredictionRecord:
    return market.registry.create(
        "Will it happen?",
        list(options),
        entry_fee=entry_fee,
        ends_at=clock.now + dt.timedelta(hours=hours),
        fee_rate=fee_rate,
    )


def fund(market: PredictionMarket, *users: str, amount: str = "1000") -> None:
    for user in users:
        market.ledger.grant(user, amount)


def ledger_rows(market: PredictionMarket) -> int:
    return market.db.conn.execute("SELECT COUNT(*) FROM ledger_transactions").fetchone()[0]
