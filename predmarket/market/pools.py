"""Fee pools — split the retained platform fee into named pool balances.

Splits come from FeeSplitConfig (leaderboard 15%, referral 10%, wheel 5%,
treasury 70% by default). Each non-treasury pool gets its share floored to
the cent; treasury takes whatever is left so the pools sum to the fee.
"""

from __future__ import annotations

import datetime as dt
import sqlite3
from decimal import ROUND_FLOOR, Decimal

from predmarket.config import FeeSplitConfig
from predmarket.money import ZERO, from_units
from predmarket.storage.database import Database

TREASURY = "treasury"


class FeePools:
    def __init__(self, db: Database, splits: FeeSplitConfig):
        self._db = db
        self._splits = splits

    @property
    def enabled(self) -> bool:
        return self._splits.enabled

    def allocate(self, fee_units: int) -> dict[str, int]:
        """Pure split of ``fee_units`` across pools."""
        if fee_units <= 0 or not self.enabled:
            return {}
        allocation: dict[str, int] = {}
        for pool_id, fraction in self._splits.as_dict().items():
            if pool_id == TREASURY:
                continue
            raw = Decimal(fee_units) * fraction
            allocation[pool_id] = int(raw.to_integral_value(rounding=ROUND_FLOOR))
        allocation[TREASURY] = fee_units - sum(allocation.values())
        return allocation

    def distribute(
        self, conn: sqlite3.Connection, fee_units: int, now: dt.datetime
    ) -> dict[str, int]:
        """Credit each pool inside the caller's transaction."""
        allocation = self.allocate(fee_units)
        for pool_id, units in allocation.items():
            if units > 0:
                self._db.increment_pool(conn, pool_id, units, now)
        return allocation

    def balances(self) -> dict[str, Decimal]:
        result = {pool_id: ZERO for pool_id in self._splits.as_dict()}
        for pool in self._db.get_pools():
            result[pool.id] = pool.balance
        return result

    @staticmethod
    def to_amounts(allocation: dict[str, int]) -> dict[str, Decimal]:
        return {k: from_units(v) for k, v in allocation.items()}
