import argparse
import asyncio
import logging
import signal

from config import (
    DB_PATH,
    TELEGRAM_CHAT_ID,
    TELEGRAM_TIMEOUT_SECONDS,
    TELEGRAM_TOKEN,
    tracker_settings,
)
from data.market_data import PriceOracle
from tracking.leaderboard import LeaderboardRanker
from tracking.milestones import parse_ladder
from tracking.scheduler import CallScheduler
from utils.db import CallStore
from utils.format import format_leaderboard
from utils.log import setup_logging
from utils.notifier import TelegramNotifier

log = logging.getLogger(__name__)


def _require_env():
    if not TELEGRAM_TOKEN:
        raise ValueError("❌ TELEGRAM_TOKEN missing in .env")
    if not TELEGRAM_CHAT_ID:
        raise ValueError("❌ TELEGRAM_CHAT_ID missing in .env")


def _build_scheduler(store: CallStore):
    settings = tracker_settings()
    oracle = PriceOracle()
    notifier = TelegramNotifier(TELEGRAM_TOKEN, TELEGRAM_CHAT_ID, TELEGRAM_TIMEOUT_SECONDS)
    return CallScheduler(store, oracle, notifier, settings), oracle, notifier


async def run_worker(store: CallStore, once: bool = False):
    scheduler, oracle, notifier = _build_scheduler(store)
    settings = scheduler.settings
    log.info(
        "Startup config: CHECK_INTERVAL_MINUTES=%s BATCH=%s WORKERS=%s MILESTONES=%s HIGH=%g..%g "
        "DUMP_ALERT_DRAWDOWN=%s BASE_TRACK_DAYS=%s TOLERANCE=%s MIN_LP_USD=%s",
        settings.poll_interval_minutes,
        settings.batch_size,
        settings.max_workers,
        ",".join(f"{m:g}" for m in settings.low_milestone_ladder),
        settings.high_milestone_ladder[0] if settings.high_milestone_ladder else 0,
        settings.high_milestone_ladder[-1] if settings.high_milestone_ladder else 0,
        settings.drawdown_fraction,
        settings.base_track_days,
        settings.milestone_tolerance,
        settings.min_liquidity_usd,
    )

    try:
        if once:
            report = await scheduler.run_tick()
            log.info("Single tick: %s", report.model_dump())
            return

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still interrupts.
                pass
        await scheduler.run_forever(stop)
    finally:
        await oracle.aclose()
        await notifier.aclose()


async def _post(text: str):
    notifier = TelegramNotifier(TELEGRAM_TOKEN, TELEGRAM_CHAT_ID, TELEGRAM_TIMEOUT_SECONDS)
    try:
        if not await notifier.send(text):
            log.warning("Leaderboard was not delivered.")
    finally:
        await notifier.aclose()


def main():
    parser = argparse.ArgumentParser(description="Token call tracker: milestone and dump alerts.")
    sub = parser.add_subparsers(dest="command")
    run_p = sub.add_parser("run", help="Run the polling worker (default).")
    run_p.add_argument("--once", action="store_true", help="Run a single tick and exit.")
    serve_p = sub.add_parser("serve", help="Serve the HTTP API.")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=8000)
    pause_p = sub.add_parser("pause", help="Pause tracking for every instance.")
    pause_p.add_argument("--reason", default="")
    sub.add_parser("resume", help="Resume tracking.")
    over_p = sub.add_parser("overrides", help="Override the milestone ladder and check interval at runtime.")
    over_p.add_argument("--milestones", default="", help="e.g. 2,3,5,10 (empty = env ladder)")
    over_p.add_argument("--interval-minutes", type=float, default=None, help="empty = env interval")
    board_p = sub.add_parser("leaderboard", help="Print (or post) the top callers.")
    board_p.add_argument("--limit", type=int, default=10)
    board_p.add_argument("--post", action="store_true", help="Send to TELEGRAM_CHAT_ID.")
    args = parser.parse_args()

    setup_logging()
    store = CallStore(DB_PATH)
    store.init_db()

    command = args.command or "run"
    if command == "serve":
        import uvicorn

        uvicorn.run("api.app:create_app", factory=True, host=args.host, port=args.port)
    elif command == "pause":
        store.set_paused(True, args.reason)
        log.info("Tracking paused.")
    elif command == "resume":
        store.set_paused(False)
        log.info("Tracking resumed.")
    elif command == "overrides":
        milestones = parse_ladder(args.milestones, low=1)
        store.set_overrides(milestones or None, args.interval_minutes)
        log.info("Overrides now: %s", store.get_overrides() or "none (env settings)")
    elif command == "leaderboard":
        text = format_leaderboard(LeaderboardRanker(store).rank(args.limit))
        if args.post:
            _require_env()
            asyncio.run(_post(text))
        else:
            print(text)
    else:
        _require_env()
        asyncio.run(run_worker(store, once=getattr(args, "once", False)))
        print("Engine stopped.")


if __name__ == "__main__":
    main()
