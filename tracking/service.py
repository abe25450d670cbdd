"""
tracking/service.py — Call submission and admin operations.

Every admin write goes through CallStore.update without an expected version,
which still bumps the row version, so a poll that read the call before the
admin action loses its conditional write and re-reads next tick.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime, timedelta
from typing import Callable, Optional

from tracking.cooldown import CooldownGuard
from tracking.errors import CooldownActive, InvalidAddressError, PriceOracleError
from tracking.models import (
    Call,
    Caller,
    CallStatus,
    Chain,
    MarketData,
    PremiumEntitlement,
    TrackerSettings,
    utcnow,
)
from utils.format import format_call_announcement

log = logging.getLogger(__name__)

_SOL_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
_BSC_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def detect_chain(address: str) -> Chain:
    address = str(address or "").strip()
    if _BSC_RE.match(address):
        return Chain.BSC
    if _SOL_RE.match(address):
        return Chain.SOL
    raise InvalidAddressError(f"not a Solana or BSC token address: {address[:64]!r}")


class CallService:
    def __init__(
        self,
        store,
        oracle,
        guard: CooldownGuard,
        settings: TrackerSettings,
        clock: Callable[[], datetime] = utcnow,
        notifier=None,
    ):
        self.store = store
        self.oracle = oracle
        self.guard = guard
        self.settings = settings
        self.clock = clock
        self.notifier = notifier

    async def _lookup(self, chain: Chain, address: str) -> Optional[MarketData]:
        """Best-effort entry pricing; None when no usable market cap is known."""
        try:
            market = await self.oracle.fetch(chain, address)
        except PriceOracleError as exc:
            log.warning("Entry lookup failed for %s: %s", address[:12], exc)
            return None
        if market.market_cap_usd and market.market_cap_usd > 0:
            return market
        return None

    async def submit(self, caller: Caller, address: str) -> Call:
        address = str(address or "").strip()
        chain = detect_chain(address)
        if chain is Chain.BSC:
            address = address.lower()

        decision = await asyncio.to_thread(self.guard.may_create_call, caller.external_id)
        if not decision.allowed:
            raise CooldownActive(decision.reason, decision.retry_after)

        now = self.clock()
        call = Call(
            chain=chain,
            address=address,
            caller=caller,
            next_check_at=now + timedelta(minutes=self.settings.poll_interval_minutes),
            created_at=now,
            expires_at=now + timedelta(days=self.settings.base_track_days),
        )

        market = await self._lookup(chain, address)
        if market is not None:
            call = call.model_copy(
                update={
                    "entry_value": market.market_cap_usd,
                    "last_value": market.market_cap_usd,
                    "peak_value": market.market_cap_usd,
                    "ticker": market.ticker,
                }
            )

        stored = await asyncio.to_thread(
            self.store.insert_call,
            call,
            window_start=decision.window_start,
            max_in_window=decision.max_in_window,
        )
        if stored is None:
            # Lost the race against a concurrent submission from the same caller.
            retry = self.guard.may_create_call(caller.external_id)
            raise CooldownActive(retry.reason or "Try again later.", retry.retry_after)

        log.info(
            "New call #%s %s %s by %s (entry %s)",
            stored.id, chain.value, address[:12], caller.external_id, stored.entry_value,
        )
        await self._announce(stored, market)
        return stored

    async def _announce(self, call: Call, market: Optional[MarketData]):
        """Post the new call to the channel. Delivery problems never fail the submission."""
        if self.notifier is None:
            return
        text = format_call_announcement(call, market)
        try:
            ok = await self.notifier.send(text, image_url=market.image_url if market else None)
        except Exception as exc:
            log.warning("Announcement for call %s raised: %s", call.id, exc)
            return
        if not ok:
            log.warning("Announcement for call %s was not delivered", call.id)

    def calls_for(self, caller_id: str, limit: Optional[int] = None) -> list[Call]:
        return self.store.find_by_caller(caller_id, limit)

    # ── Admin ─────────────────────────────────────────────────────────────────

    def cancel(self, call_id: int) -> Call:
        self.store.update(call_id, {"status": CallStatus.CANCELLED})
        log.info("Call %s cancelled", call_id)
        return self.store.get(call_id)

    def lock_peak(self, call_id: int, value: Optional[float] = None) -> Call:
        """Freeze the peak at `value` (or the current peak) and cap last_value to it."""
        call = self.store.get(call_id)
        peak = value if value is not None else (call.peak_value or call.last_value)
        if peak is None or peak <= 0:
            raise ValueError(f"call {call_id} has no peak to lock")
        fields = {"peak_locked": True, "peak_value": float(peak)}
        if call.last_value is not None and call.last_value > peak:
            fields["last_value"] = float(peak)
        self.store.update(call_id, fields)
        log.info("Call %s peak locked at %.0f", call_id, peak)
        return self.store.get(call_id)

    def set_excluded(self, call_id: int, excluded: bool = True) -> Call:
        self.store.update(call_id, {"excluded_from_leaderboard": bool(excluded)})
        return self.store.get(call_id)

    def grant_premium(self, caller_id: str, calls_per_day: int, days: Optional[float] = None) -> PremiumEntitlement:
        if calls_per_day < 1:
            raise ValueError("calls_per_day must be >= 1")
        expires = self.clock() + timedelta(days=days) if days else None
        entitlement = PremiumEntitlement(
            caller_id=str(caller_id),
            calls_per_day=int(calls_per_day),
            expires_at=expires,
        )
        self.store.set_premium(entitlement)
        log.info("Premium granted to %s: %d/day until %s", caller_id, calls_per_day, expires or "forever")
        return entitlement

    # ── Maintenance ───────────────────────────────────────────────────────────

    async def backfill_entries(self, limit: int = 2000) -> int:
        """Price active calls that were stored without an entry value."""
        updated = 0
        for call in self.store.find_missing_entry(limit):
            market = await self._lookup(call.chain, call.address)
            if market is None:
                continue
            value = market.market_cap_usd
            if self.store.set_entry_value_if_missing(call.id, value):
                updated += 1
                log.info("Backfilled entry for call %s: %.0f", call.id, value)
        return updated
