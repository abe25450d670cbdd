"""
tracking/scheduler.py — Periodic re-pricing of active calls.

Every tick:
  1. Pull up to `batch_size` active calls whose next_check_at is due,
     oldest-due first.
  2. Process them on a bounded worker pool. Per call:
       - past expires_at        → status=expired, no pricing
       - oracle failure         → only next_check_at advances
       - unexpected error       → logged, next_check_at still advances
       - price                  → last/peak values, new milestones, dump latch
     and persist everything as ONE conditional update keyed on the call's
     version. A lost race (PersistenceConflict) drops the item for this tick;
     the next tick re-derives the same deltas from the persisted state.
  3. Alerts go out only after the write succeeded, so a crash can lose an
     alert but never repeat one.

One failing call never stops the batch, and calls not selected this tick stay
due for the next one.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from pydantic import BaseModel

from tracking.drawdown import drawdown_from_peak, dump_fires
from tracking.errors import PersistenceConflict, PriceOracleError, TokenNotFoundError
from tracking.milestones import evaluate_ladders
from tracking.models import Call, CallStatus, MarketData, TrackerSettings, utcnow
from utils.format import format_dump_alert, format_milestone_alert

log = logging.getLogger(__name__)


class CallOutcome(BaseModel):
    result: str  # priced | skipped | expired | conflict | error
    milestones: list[float] = []
    dumped: bool = False
    alerts_sent: int = 0
    alerts_failed: int = 0


class TickReport(BaseModel):
    selected: int = 0
    priced: int = 0
    skipped: int = 0
    expired: int = 0
    conflicts: int = 0
    errors: int = 0
    alerts_sent: int = 0
    alerts_failed: int = 0
    paused: bool = False

    def add(self, outcome: CallOutcome):
        if outcome.result == "priced":
            self.priced += 1
        elif outcome.result == "skipped":
            self.skipped += 1
        elif outcome.result == "expired":
            self.expired += 1
        elif outcome.result == "conflict":
            self.conflicts += 1
        else:
            self.errors += 1
        self.alerts_sent += outcome.alerts_sent
        self.alerts_failed += outcome.alerts_failed


class CallScheduler:
    def __init__(
        self,
        store,
        oracle,
        notifier,
        settings: TrackerSettings,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.oracle = oracle
        self.notifier = notifier
        self.settings = settings
        self.clock = clock

    def effective_settings(self) -> TrackerSettings:
        """
        Env settings with the operator overrides stored in the database laid
        over them. An override ladder replaces the low ladder; thresholds of
        10x and up in it replace the high ladder too.
        """
        overrides = self.store.get_overrides()
        if not overrides:
            return self.settings
        update: dict = {}
        milestones = overrides.get("milestones") or []
        low = [m for m in milestones if 1 < m < 10]
        high = [m for m in milestones if m >= 10]
        if low:
            update["low_milestone_ladder"] = low
        if high:
            update["high_milestone_ladder"] = high
        if overrides.get("check_interval_minutes"):
            update["poll_interval_minutes"] = overrides["check_interval_minutes"]
        # model_copy would skip the ladder validators.
        return TrackerSettings.model_validate({**self.settings.model_dump(), **update})

    # ── Tick ──────────────────────────────────────────────────────────────────

    async def run_tick(self, now: Optional[datetime] = None) -> TickReport:
        now = now or self.clock()
        report = TickReport()

        if self.store.is_paused():
            log.info("Tracking paused; skipping tick")
            report.paused = True
            return report

        settings = self.effective_settings()
        calls = self.store.find_due(now, settings.batch_size)
        report.selected = len(calls)
        if not calls:
            return report

        log.info("Checking %d due calls…", len(calls))
        pool = asyncio.Semaphore(settings.max_workers)
        next_check = now + timedelta(minutes=settings.poll_interval_minutes)

        async def _worker(call: Call):
            async with pool:
                try:
                    outcome = await self.process_call(call, now, settings)
                except Exception as exc:
                    log.error("Call %s processing failed: %s", call.id, exc, exc_info=True)
                    # Push it back so a poisoned call cannot hog every batch.
                    try:
                        self._persist(call, {"next_check_at": next_check})
                    except Exception as persist_exc:
                        log.error("Call %s reschedule failed: %s", call.id, persist_exc)
                    outcome = CallOutcome(result="error")
                report.add(outcome)

        await asyncio.gather(*(_worker(c) for c in calls))

        log.info(
            "Tick done: selected=%d priced=%d skipped=%d expired=%d conflicts=%d errors=%d alerts=%d/%d",
            report.selected, report.priced, report.skipped, report.expired,
            report.conflicts, report.errors, report.alerts_sent,
            report.alerts_sent + report.alerts_failed,
        )
        return report

    # ── Per call ──────────────────────────────────────────────────────────────

    def _persist(self, call: Call, fields: dict) -> bool:
        try:
            self.store.update(call.id, fields, expected_version=call.version)
            return True
        except PersistenceConflict as exc:
            log.info("Call %s skipped this tick: %s", call.id, exc)
            return False

    def _passes_quality(self, market: MarketData, settings: TrackerSettings) -> bool:
        floor = settings.min_liquidity_usd
        if floor <= 0 or market.liquidity_usd is None:
            return True
        return market.liquidity_usd >= floor

    async def process_call(
        self, call: Call, now: datetime, settings: Optional[TrackerSettings] = None
    ) -> CallOutcome:
        settings = settings or self.settings
        fields: dict = {"next_check_at": now + timedelta(minutes=settings.poll_interval_minutes)}

        if now > call.expires_at:
            fields["status"] = CallStatus.EXPIRED
            if not self._persist(call, fields):
                return CallOutcome(result="conflict")
            log.info("Call %s (%s) expired", call.id, call.address[:12])
            return CallOutcome(result="expired")

        try:
            market = await self.oracle.fetch(call.chain, call.address)
        except TokenNotFoundError as exc:
            log.info("No pair for call %s: %s", call.id, exc)
            market = None
        except PriceOracleError as exc:
            log.warning("Price fetch failed for call %s (%s): %s", call.id, call.address[:12], exc)
            market = None

        value = market.market_cap_usd if market else None
        if not value or value <= 0:
            if not self._persist(call, fields):
                return CallOutcome(result="conflict")
            return CallOutcome(result="skipped")

        prev_peak = call.peak_value or 0.0
        if call.peak_locked:
            # Locked peak is an admin cap; never re-inflate above it.
            peak = prev_peak
            last = min(value, peak) if peak > 0 else value
        else:
            peak = max(prev_peak, value)
            last = value
            fields["peak_value"] = peak
        fields["last_value"] = last
        if market.ticker and not call.ticker:
            fields["ticker"] = market.ticker

        new_hits: list[float] = []
        if call.has_entry:
            new_hits = evaluate_ladders(
                call.entry_value,
                last,
                settings.ladders,
                call.multipliers_hit,
                tolerance=settings.milestone_tolerance,
            )
            if new_hits and not self._passes_quality(market, settings):
                log.info(
                    "Call %s: deferring %s (liquidity %.0f below floor)",
                    call.id, new_hits, market.liquidity_usd,
                )
                new_hits = []
            if new_hits:
                fields["multipliers_hit"] = sorted(set(call.multipliers_hit) | set(new_hits))
                extend_at = settings.extend_at_multiple
                if extend_at > 0 and new_hits[-1] >= extend_at:
                    extended = now + timedelta(days=settings.extend_days)
                    if extended > call.expires_at:
                        fields["expires_at"] = extended

        dumped = dump_fires(peak, last, settings.drawdown_fraction, call.dump_alerted)
        if dumped:
            fields["dump_alerted"] = True

        if not self._persist(call, fields):
            return CallOutcome(result="conflict")

        updated = call.model_copy(update={**fields, "peak_value": peak})
        sent, failed = await self._send_alerts(updated, new_hits, dumped, last, now)
        return CallOutcome(
            result="priced",
            milestones=new_hits,
            dumped=dumped,
            alerts_sent=sent,
            alerts_failed=failed,
        )

    async def _send_alerts(self, call: Call, hits: list[float], dumped: bool, value: float, now: datetime):
        messages = []
        if hits:
            multiple = value / call.entry_value
            targets = hits[-1:] if self.settings.coalesce_milestones else hits
            for threshold in targets:
                log.info("Call %s hit %gx (x%.2f)", call.id, threshold, multiple)
                messages.append(format_milestone_alert(call, threshold, multiple, value, now))
        if dumped:
            drawdown = drawdown_from_peak(call.peak_value, value)
            log.info("Call %s dumped %.0f%% from peak", call.id, drawdown * 100)
            messages.append(format_dump_alert(call, drawdown, value))

        sent = failed = 0
        for text in messages:
            try:
                ok = await self.notifier.send(text)
            except Exception as exc:
                log.warning("Notifier raised for call %s: %s", call.id, exc)
                ok = False
            if ok:
                sent += 1
            else:
                failed += 1
        return sent, failed

    # ── Loop ──────────────────────────────────────────────────────────────────

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """
        Tick every poll interval until `stop_event` is set. The event is only
        checked between ticks, so a tick in flight always completes.
        """
        stop_event = stop_event or asyncio.Event()
        log.info(
            "Call scheduler started (poll every %.0fs, batch %d, workers %d)",
            self.settings.poll_interval_minutes * 60, self.settings.batch_size, self.settings.max_workers,
        )

        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_tick()
            except Exception as exc:
                log.error("Scheduler tick failed: %s", exc, exc_info=True)

            try:
                interval = self.effective_settings().poll_interval_minutes * 60
            except Exception as exc:
                log.warning("Bad runtime overrides, using env interval: %s", exc)
                interval = self.settings.poll_interval_minutes * 60
            wait = max(1.0, interval - (time.monotonic() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=wait)
            except asyncio.TimeoutError:
                pass

        log.info("Call scheduler stopped")
