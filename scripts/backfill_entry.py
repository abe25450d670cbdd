#!/usr/bin/env python3
"""Set entry_value on active calls that were stored before a price was known."""
import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from config import DB_PATH, tracker_settings  # noqa: E402
from data.market_data import PriceOracle  # noqa: E402
from tracking.cooldown import CooldownGuard  # noqa: E402
from tracking.service import CallService  # noqa: E402
from utils.db import CallStore  # noqa: E402
from utils.log import setup_logging  # noqa: E402


async def _run(limit: int) -> int:
    settings = tracker_settings()
    store = CallStore(DB_PATH)
    store.init_db()
    oracle = PriceOracle()
    try:
        guard = CooldownGuard(store, settings.cooldown_window_hours, settings.privileged_caller_ids)
        service = CallService(store, oracle, guard, settings)
        return await service.backfill_entries(limit)
    finally:
        await oracle.aclose()


def main():
    parser = argparse.ArgumentParser(description="Backfill missing entry market caps.")
    parser.add_argument("--limit", type=int, default=2000, help="Max calls to price this run.")
    args = parser.parse_args()

    setup_logging()
    updated = asyncio.run(_run(args.limit))
    print(f"Backfilled {updated} call(s).")


if __name__ == "__main__":
    main()
