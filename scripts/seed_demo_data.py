"""Seed the database with demo markets, funded users and a few bets."""

from __future__ import annotations

import datetime as dt
import random
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from predmarket.config import load_config
from predmarket.errors import MarketError
from predmarket.market.service import PredictionMarket


def seed() -> None:
    cfg = load_config()
    market = PredictionMarket.open(cfg)
    now = dt.datetime.now(dt.timezone.utc)

    try:
        # ── Users ──
        users = [f"user_{i}" for i in range(1, 9)]
        for user in users:
            market.ledger.grant(user, "500")

        # ── Markets ──
        markets = [
            ("Will BTC close above 100k this Friday?", ["Yes", "No"], "10"),
            ("Who wins the derby?", ["Home", "Draw", "Away"], "5"),
            ("Will it rain at the launch event?", ["Yes", "No"], "2"),
        ]
        created = []
        for title, options, entry_fee in markets:
            ends_at = now + dt.timedelta(days=random.randint(2, 14))
            created.append(market.registry.create(title, options, entry_fee=entry_fee, ends_at=ends_at))

        # ── Bets ──
        for prediction in created:
            for user in random.sample(users, k=5):
                option = random.randrange(len(prediction.options))
                amount = random.choice([10, 20, 25, 50, 75])
                try:
                    market.place_bet(user, prediction.id, option, amount)
                except MarketError as e:
                    print(f"  skipped {user}: {e.code}")

        # ── Resolve one market ──
        result = market.resolve(created[0].id, 0)
        print(f"Resolved '{created[0].title}': paid {result.total_payout} to {result.winners_count} winners")
    finally:
        market.close()

    print(f"\n✅ Seeded {len(created)} markets and {len(users)} users into {cfg.storage.sqlite_path}")


if __name__ == "__main__":
    seed()
