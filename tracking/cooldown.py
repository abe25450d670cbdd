"""
tracking/cooldown.py — Per-caller submission rate guard.

  - admins (allow-list)        → unlimited
  - active premium entitlement → up to `calls_per_day` calls per window
  - everyone else              → one call per rolling window, whatever its status

`may_create_call` is the advisory pre-check used to answer the caller fast.
The binding check is repeated by `CallStore.insert_call` under the database
write lock using `decision.max_in_window`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from tracking.models import utcnow

log = logging.getLogger(__name__)


class CooldownDecision(BaseModel):
    allowed: bool
    reason: str = ""
    retry_after: Optional[datetime] = None
    window_start: Optional[datetime] = None
    # None = no cap (admin)
    max_in_window: Optional[int] = 1


class CooldownGuard:
    def __init__(
        self,
        store,
        window_hours: float = 24.0,
        admin_ids: Iterable[str] = (),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.window = timedelta(hours=window_hours)
        self.admin_ids = {str(x) for x in admin_ids}
        self.clock = clock

    def is_admin(self, caller_id: str) -> bool:
        return str(caller_id) in self.admin_ids

    def may_create_call(self, caller_id: str, is_privileged: Optional[bool] = None) -> CooldownDecision:
        caller_id = str(caller_id)
        now = self.clock()
        window_start = now - self.window

        admin = self.is_admin(caller_id) if is_privileged is None else bool(is_privileged)
        if admin:
            return CooldownDecision(allowed=True, reason="admin", window_start=window_start, max_in_window=None)

        allowance = 1
        reason = f"You already made a call in the last {self.window.total_seconds() / 3600:g}h. Try again later."
        premium = self.store.get_premium(caller_id)
        if premium and premium.is_active(now):
            allowance = max(1, premium.calls_per_day)
            reason = f"Premium limit of {allowance} calls per day reached. Try again later."

        used = self.store.count_calls_since(caller_id, window_start)
        if used < allowance:
            return CooldownDecision(allowed=True, window_start=window_start, max_in_window=allowance)

        oldest = self.store.oldest_call_since(caller_id, window_start)
        retry_after = oldest + self.window if oldest else None
        log.info("Cooldown: caller %s used %d/%d calls in window", caller_id, used, allowance)
        return CooldownDecision(
            allowed=False,
            reason=reason,
            retry_after=retry_after,
            window_start=window_start,
            max_in_window=allowance,
        )
