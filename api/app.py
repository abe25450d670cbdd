"""
api/app.py — HTTP surface for call submission, leaderboard and admin actions.

Run with:  uvicorn api.app:create_app --factory
Components are injectable so tests can swap in fakes.
"""

from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
from api.auth import require_internal
from tracking.cooldown import CooldownGuard
from tracking.errors import (
    CallNotFoundError,
    CooldownActive,
    InvalidAddressError,
    PersistenceConflict,
)
from tracking.leaderboard import LeaderboardRanker
from tracking.models import Caller, TrackerSettings, utcnow
from tracking.scheduler import CallScheduler
from tracking.service import CallService
from utils.db import CallStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class CallRequest(BaseModel):
    caller_id: str
    display_name: str | None = None
    address: str


class PeakLockRequest(BaseModel):
    value: float | None = None   # None = lock the current peak


class ExcludeRequest(BaseModel):
    excluded: bool = True


class PremiumRequest(BaseModel):
    calls_per_day: int = config.PREMIUM_DEFAULT_CALLS_PER_DAY
    days: float | None = None    # None = no expiry


def _call_json(call) -> dict:
    return call.model_dump(mode="json")


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def create_app(
    store: CallStore | None = None,
    oracle=None,
    notifier=None,
    settings: TrackerSettings | None = None,
    secret: str | None = None,
    run_scheduler: bool | None = None,
    clock=utcnow,
) -> FastAPI:
    settings = settings or config.tracker_settings()
    store = store or CallStore(config.DB_PATH)
    store.init_db()
    if oracle is None:
        from data.market_data import PriceOracle
        oracle = PriceOracle()
    if notifier is None:
        from utils.notifier import TelegramNotifier
        notifier = TelegramNotifier(
            config.TELEGRAM_TOKEN, config.TELEGRAM_CHAT_ID, config.TELEGRAM_TIMEOUT_SECONDS
        )
    run_scheduler = config.RUN_SCHEDULER_IN_API if run_scheduler is None else run_scheduler

    guard = CooldownGuard(
        store,
        window_hours=settings.cooldown_window_hours,
        admin_ids=settings.privileged_caller_ids,
        clock=clock,
    )
    service = CallService(store, oracle, guard, settings, clock=clock, notifier=notifier)
    ranker = LeaderboardRanker(store)
    scheduler = CallScheduler(store, oracle, notifier, settings, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        stop = asyncio.Event()
        task = None
        if run_scheduler:
            task = asyncio.create_task(scheduler.run_forever(stop))
            log.info("API started with in-process scheduler.")
        else:
            log.info("API started.")
        yield
        if task is not None:
            stop.set()
            try:
                await asyncio.wait_for(task, timeout=60)
            except asyncio.TimeoutError:
                task.cancel()
        await oracle.aclose()
        await notifier.aclose()
        log.info("API shutdown.")

    app = FastAPI(title="Callwatch", version="0.1.0", lifespan=lifespan)
    app.state.secret = config.INTERNAL_API_SECRET if secret is None else secret
    app.state.store = store
    app.state.service = service
    app.state.scheduler = scheduler

    # -----------------------------------------------------------------------
    # Error mapping
    # -----------------------------------------------------------------------

    @app.exception_handler(CallNotFoundError)
    async def _not_found(request: Request, exc: CallNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(PersistenceConflict)
    async def _conflict(request: Request, exc: PersistenceConflict):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={"detail": f"call {exc.call_id} is no longer active or changed concurrently"},
        )

    # -----------------------------------------------------------------------
    # Health (no auth)
    # -----------------------------------------------------------------------

    @app.get("/health")
    async def health():
        paused = await asyncio.to_thread(store.is_paused)
        return {"ok": True, "paused": paused, "ts": clock().isoformat()}

    # -----------------------------------------------------------------------
    # Calls
    # -----------------------------------------------------------------------

    @app.post("/api/calls", status_code=status.HTTP_201_CREATED)
    async def submit_call(body: CallRequest, _: str = Depends(require_internal)):
        try:
            caller = Caller(external_id=body.caller_id, display_name=body.display_name)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        try:
            call = await service.submit(caller, body.address)
        except InvalidAddressError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except CooldownActive as exc:
            headers = None
            if exc.retry_after is not None:
                seconds = max(1, math.ceil((exc.retry_after - clock()).total_seconds()))
                headers = {"Retry-After": str(seconds)}
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=exc.reason,
                headers=headers,
            )
        return _call_json(call)

    @app.get("/api/leaderboard")
    async def leaderboard(limit: int = Query(default=10, ge=1, le=100)):
        entries = await asyncio.to_thread(ranker.rank, limit)
        return [e.model_dump() for e in entries]

    @app.get("/api/callers/{caller_id}/calls")
    async def caller_calls(caller_id: str, limit: int = Query(default=50, ge=1, le=500)):
        calls = await asyncio.to_thread(service.calls_for, caller_id, limit)
        return [_call_json(c) for c in calls]

    # -----------------------------------------------------------------------
    # Admin
    # -----------------------------------------------------------------------

    @app.post("/api/calls/{call_id}/cancel")
    async def cancel_call(call_id: int, _: str = Depends(require_internal)):
        return _call_json(await asyncio.to_thread(service.cancel, call_id))

    @app.post("/api/calls/{call_id}/peak-lock")
    async def lock_peak(call_id: int, body: PeakLockRequest, _: str = Depends(require_internal)):
        try:
            call = await asyncio.to_thread(service.lock_peak, call_id, body.value)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return _call_json(call)

    @app.post("/api/calls/{call_id}/exclude")
    async def exclude_call(call_id: int, body: ExcludeRequest, _: str = Depends(require_internal)):
        return _call_json(await asyncio.to_thread(service.set_excluded, call_id, body.excluded))

    @app.post("/api/premium/{caller_id}")
    async def grant_premium(caller_id: str, body: PremiumRequest, _: str = Depends(require_internal)):
        try:
            entitlement = await asyncio.to_thread(
                service.grant_premium, caller_id, body.calls_per_day, body.days
            )
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        return entitlement.model_dump(mode="json")

    return app
