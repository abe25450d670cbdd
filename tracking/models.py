"""
tracking/models.py — Typed entities shared by the store, engine and API.

Rows coming out of SQLite are validated into these models at the store
boundary, so the engine never touches a raw dict.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Chain(str, Enum):
    SOL = "SOL"
    BSC = "BSC"

    @property
    def dexscreener_id(self) -> str:
        return "solana" if self is Chain.SOL else "bsc"


class CallStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Caller(BaseModel):
    external_id: str
    display_name: Optional[str] = None

    @field_validator("external_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("caller id must not be empty")
        return value


class Call(BaseModel):
    id: Optional[int] = None
    chain: Chain
    address: str
    caller: Caller
    ticker: Optional[str] = None

    entry_value: Optional[float] = None
    last_value: Optional[float] = None
    peak_value: Optional[float] = None
    peak_locked: bool = False

    multipliers_hit: list[float] = Field(default_factory=list)
    dump_alerted: bool = False

    status: CallStatus = CallStatus.ACTIVE
    next_check_at: datetime
    created_at: datetime
    expires_at: datetime

    excluded_from_leaderboard: bool = False
    suspicious_score: float = 0.0
    version: int = 0

    @field_validator("address")
    @classmethod
    def _strip_address(cls, value: str) -> str:
        value = str(value).strip()
        if not value:
            raise ValueError("address must not be empty")
        return value

    @field_validator("next_check_at", "created_at", "expires_at")
    @classmethod
    def _utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @field_validator("multipliers_hit")
    @classmethod
    def _sorted_unique(cls, value: list[float]) -> list[float]:
        return sorted({float(m) for m in value})

    @property
    def has_entry(self) -> bool:
        return bool(self.entry_value) and self.entry_value > 0

    @property
    def current_multiple(self) -> Optional[float]:
        if not self.has_entry or not self.last_value or self.last_value <= 0:
            return None
        return self.last_value / self.entry_value


class MarketData(BaseModel):
    """One price snapshot. Every field is optional; partial data is valid."""

    price_usd: Optional[float] = None
    market_cap_usd: Optional[float] = None
    liquidity_usd: Optional[float] = None
    volume_24h_usd: Optional[float] = None
    ticker: Optional[str] = None
    pair_address: Optional[str] = None
    chart_url: Optional[str] = None
    image_url: Optional[str] = None
    source: str = "dexscreener"
    # True when market_cap_usd came from the assumed-supply heuristic.
    market_cap_estimated: bool = False


class PremiumEntitlement(BaseModel):
    caller_id: str
    calls_per_day: int = 4
    expires_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.expires_at is None or as_utc(self.expires_at) > now


class LeaderboardEntry(BaseModel):
    caller_id: str
    display_name: Optional[str] = None
    total_calls: int
    best_multiple: float
    avg_multiple: float


class TrackerSettings(BaseModel):
    poll_interval_minutes: float = 1.0
    low_milestone_ladder: list[float] = Field(default_factory=lambda: [2, 3, 4, 5, 6, 7, 8])
    high_milestone_ladder: list[float] = Field(default_factory=lambda: [float(x) for x in range(10, 5001, 10)])
    drawdown_fraction: float = 0.5
    base_track_days: float = 7.0
    cooldown_window_hours: float = 24.0
    batch_size: int = 200
    max_workers: int = 4
    privileged_caller_ids: set[str] = Field(default_factory=set)

    milestone_tolerance: float = 0.0
    min_liquidity_usd: float = 0.0
    coalesce_milestones: bool = False
    extend_at_multiple: float = 0.0
    extend_days: float = 7.0

    @field_validator("low_milestone_ladder")
    @classmethod
    def _low_ladder(cls, value: list[float]) -> list[float]:
        ladder = sorted({float(m) for m in value})
        bad = [m for m in ladder if not 1 < m < 10]
        if bad:
            raise ValueError(f"low ladder thresholds must be in (1, 10): {bad}")
        return ladder

    @field_validator("high_milestone_ladder")
    @classmethod
    def _high_ladder(cls, value: list[float]) -> list[float]:
        ladder = sorted({float(m) for m in value})
        bad = [m for m in ladder if m < 10]
        if bad:
            raise ValueError(f"high ladder thresholds must be >= 10: {bad}")
        return ladder

    @field_validator("privileged_caller_ids", mode="before")
    @classmethod
    def _ids_as_str(cls, value):
        return {str(v).strip() for v in (value or []) if str(v).strip()}

    @model_validator(mode="after")
    def _check_ranges(self) -> "TrackerSettings":
        if not 0 <= self.drawdown_fraction <= 1:
            raise ValueError("drawdown_fraction must be in [0, 1]")
        if not 0 <= self.milestone_tolerance < 1:
            raise ValueError("milestone_tolerance must be in [0, 1)")
        if self.poll_interval_minutes <= 0:
            raise ValueError("poll_interval_minutes must be positive")
        if self.batch_size < 1 or self.max_workers < 1:
            raise ValueError("batch_size and max_workers must be >= 1")
        if self.base_track_days <= 0 or self.cooldown_window_hours < 0:
            raise ValueError("base_track_days must be positive, cooldown window non-negative")
        return self

    @property
    def ladders(self) -> list[list[float]]:
        return [self.low_milestone_ladder, self.high_milestone_ladder]
