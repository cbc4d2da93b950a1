"""PredictionMarket — wires registry, wager ledger, settlement and balances.

The boundary layer (bot handlers, HTTP routes, the CLI) talks to this
object only; it never touches storage directly.
"""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable

from predmarket.config import EngineConfig
from predmarket.ledger.balance import BalanceLedger
from predmarket.market.pools import FeePools
from predmarket.market.registry import MarketRegistry
from predmarket.market.settlement import ResolveResult, SettlementEngine
from predmarket.market.wagers import MarketState, WagerLedger
from predmarket.storage.database import Database
from predmarket.storage.models import BetRecord, utcnow


class PredictionMarket:
    def __init__(
        self,
        db: Database,
        config: EngineConfig | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self.config = config or EngineConfig()
        self.db = db
        self.ledger = BalanceLedger(db)
        self.pools = FeePools(db, self.config.fee_split)
        self.registry = MarketRegistry(db, self.config.market, clock)
        self.wagers = WagerLedger(db, self.ledger, clock)
        self.settlement = SettlementEngine(db, self.ledger, self.pools, clock)

    @classmethod
    def open(
        cls,
        config: EngineConfig,
        clock: Callable[[], dt.datetime] = utcnow,
    ) -> "PredictionMarket":
        """Connect a fresh Database (one per handler/thread) and wire it up."""
        db = Database(config.storage, config.retry)
        db.connect()
        return cls(db, config, clock)

    def close(self) -> None:
        self.db.close()

    def place_bet(
        self, user_id: str, prediction_id: str, option_index: int, amount: Any
    ) -> BetRecord:
        return self.wagers.place_bet(user_id, prediction_id, option_index, amount)

    def resolve(
        self, prediction_id: str, winning_option_index: int, fee_rate: Any = None
    ) -> ResolveResult:
        return self.settlement.resolve(prediction_id, winning_option_index, fee_rate)

    def get_market_state(self, prediction_id: str) -> MarketState:
        return self.wagers.get_market_state(prediction_id)
