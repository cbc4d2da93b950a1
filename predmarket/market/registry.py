"""Market registry — create and look up predictions."""

from __future__ import annotations

import datetime as dt
from typing import Any, Callable, Sequence

from predmarket.config import MarketConfig
from predmarket.errors import NotFoundError
from predmarket.money import ZERO, parse_amount, parse_fee_rate
from predmarket.observability.logger import get_logger
from predmarket.storage.database import Database
from predmarket.storage.models import MarketStatus, PredictionRecord, utcnow

log = get_logger(__name__)


class MarketRegistry:
    def __init__(
        self,
        db: Database,
        config: MarketConfig | None = None,
        clock: Callable[[], dt.datetime] = utcnow,
    ):
        self._db = db
        self._config = config or MarketConfig()
        self._clock = clock

    def create(
        self,
        title: str,
        options: Sequence[str],
        entry_fee: Any = None,
        ends_at: dt.datetime | None = None,
        fee_rate: Any = None,
    ) -> PredictionRecord:
        """Register a new ACTIVE market. Raises ValueError on bad input."""
        title = (title or "").strip()
        if not title:
            raise ValueError("title is required")
        if len(title) > self._config.max_title_length:
            raise ValueError(f"title longer than {self._config.max_title_length} chars")

        labels = tuple(str(o).strip() for o in options)
        if len(labels) < 2:
            raise ValueError("a market needs at least two options")
        if len(labels) > self._config.max_options:
            raise ValueError(f"a market allows at most {self._config.max_options} options")
        if any(not label for label in labels):
            raise ValueError("option labels must be non-blank")
        if len(set(labels)) != len(labels):
            raise ValueError("option labels must be distinct")

        fee = parse_amount(self._config.default_entry_fee if entry_fee is None else entry_fee)
        if fee < ZERO:
            raise ValueError("entry_fee must be non-negative")
        rate = parse_fee_rate(self._config.default_fee_rate if fee_rate is None else fee_rate)

        if ends_at is None:
            raise ValueError("ends_at is required")
        if ends_at.tzinfo is None:
            raise ValueError("ends_at must be timezone-aware")
        now = self._clock()
        if ends_at <= now:
            raise ValueError("ends_at must be in the future")

        prediction = PredictionRecord(
            title=title,
            options=labels,
            entry_fee=fee,
            fee_rate=rate,
            ends_at=ends_at,
            created_at=now,
        )
        self._db.run_in_transaction(
            lambda conn: self._db.insert_prediction(conn, prediction),
            operation="registry.create",
        )
        log.info(
            "registry.created",
            prediction_id=prediction.id,
            options=list(labels),
            entry_fee=fee,
            fee_rate=rate,
            ends_at=ends_at.isoformat(),
        )
        return prediction

    def get(self, prediction_id: str) -> PredictionRecord:
        prediction = self._db.get_prediction(prediction_id)
        if prediction is None:
            raise NotFoundError("Prediction not found", prediction_id)
        return prediction

    def list_markets(
        self, status: MarketStatus | str | None = None, limit: int = 50
    ) -> list[PredictionRecord]:
        """Newest first, optionally filtered by derived status."""
        if isinstance(status, str):
            status = MarketStatus(status)
        return self._db.list_predictions(self._clock(), status=status, limit=limit)

