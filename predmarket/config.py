"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with defaults for every section
  - Subsystem configs: storage, market, fee split, retry, observability
"""

from __future__ import annotations

from decimal import Decimal
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


_PROJECT_ROOT = Path(__file__).resolve().parent.parent


class StorageConfig(BaseModel):
    sqlite_path: str = "data/predmarket.db"
    busy_timeout_secs: float = 5.0
    backup_dir: str = "data/backups"
    max_backups: int = 10


class MarketConfig(BaseModel):
    """Defaults applied by the market registry and settlement engine."""
    default_fee_rate: Decimal = Decimal("0.08")
    default_entry_fee: Decimal = Decimal("2")
    max_options: int = 10
    max_title_length: int = 200

    @field_validator("default_fee_rate")
    @classmethod
    def _fee_rate_range(cls, v: Decimal) -> Decimal:
        if not Decimal("0") <= v < Decimal("1"):
            raise ValueError("default_fee_rate must be in [0, 1)")
        return v


class FeeSplitConfig(BaseModel):
    """How the retained platform fee is split across pools (must sum to 1.0)."""
    enabled: bool = True
    leaderboard: Decimal = Decimal("0.15")
    referral: Decimal = Decimal("0.10")
    wheel: Decimal = Decimal("0.05")
    treasury: Decimal = Decimal("0.70")

    @model_validator(mode="after")
    def _splits_sum_to_one(self) -> "FeeSplitConfig":
        total = self.leaderboard + self.referral + self.wheel + self.treasury
        if total != Decimal("1"):
            raise ValueError(f"fee splits must sum to 1.0, got {total}")
        for name, value in self.as_dict().items():
            if value < 0:
                raise ValueError(f"fee split '{name}' must be non-negative")
        return self

    def as_dict(self) -> dict[str, Decimal]:
        # Treasury last: it absorbs rounding dust.
        return {
            "leaderboard": self.leaderboard,
            "referral": self.referral,
            "wheel": self.wheel,
            "treasury": self.treasury,
        }


class RetryConfig(BaseModel):
    """Bounded retry of transient storage failures at the transaction boundary."""
    max_attempts: int = 3
    backoff_multiplier: float = 0.1
    backoff_min_secs: float = 0.0
    backoff_max_secs: float = 2.0

    @field_validator("max_attempts")
    @classmethod
    def _at_least_one(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be >= 1")
        return v


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str | None = None


class EngineConfig(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    market: MarketConfig = Field(default_factory=MarketConfig)
    fee_split: FeeSplitConfig = Field(default_factory=FeeSplitConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> EngineConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return EngineConfig(**raw)
    return EngineConfig()
