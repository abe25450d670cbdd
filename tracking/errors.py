"""
tracking/errors.py — Error taxonomy for the call tracking engine.

Oracle errors mean "skip this item this tick"; they never abort a batch.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional


class CallwatchError(Exception):
    """Base class for all engine errors."""


# ── Price oracle ──────────────────────────────────────────────────────────────

class PriceOracleError(CallwatchError):
    pass


class TransientFetchError(PriceOracleError):
    """Upstream timed out or throttled us. Retry next tick."""


class FetchTimeoutError(TransientFetchError):
    pass


class RateLimitedError(TransientFetchError):
    pass


class TokenNotFoundError(PriceOracleError):
    """No trading pair for the address (never listed or delisted)."""


# ── Persistence ──────────────────────────────────────────────────────────────

class PersistenceConflict(CallwatchError):
    """Conditional update lost against a concurrent writer."""

    def __init__(self, call_id: int, expected_version: Optional[int]):
        super().__init__(f"call {call_id} changed since version {expected_version}")
        self.call_id = call_id
        self.expected_version = expected_version


class CallNotFoundError(CallwatchError):
    pass


# ── Submission path ───────────────────────────────────────────────────────────

class InvalidAddressError(CallwatchError):
    pass


class CooldownActive(CallwatchError):
    """Caller already used their call allowance for the current window."""

    def __init__(self, reason: str, retry_after: Optional[datetime] = None):
        super().__init__(reason)
        self.reason = reason
        self.retry_after = retry_after
