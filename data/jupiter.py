"""
data/jupiter.py — Price-only fallback for Solana tokens.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from data.dexscreener import get_json

log = logging.getLogger(__name__)

DEFAULT_PRICE_URL = "https://lite-api.jup.ag/price/v3"


def _extract_price(data, mint: str) -> Optional[float]:
    if not isinstance(data, dict):
        return None
    # v3: {mint: {"usdPrice": ...}}  v2: {"data": {mint: {"price": "..."}}}
    entry = data.get(mint)
    if entry is None and isinstance(data.get("data"), dict):
        entry = data["data"].get(mint)
    if not isinstance(entry, dict):
        return None
    raw = entry.get("usdPrice", entry.get("price"))
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


async def fetch_price(
    client: httpx.AsyncClient,
    mint: str,
    price_url: str = DEFAULT_PRICE_URL,
    timeout: float = 8.0,
) -> Optional[float]:
    data = await get_json(client, price_url or DEFAULT_PRICE_URL, params={"ids": mint}, timeout=timeout)
    price = _extract_price(data, mint)
    if price is None:
        log.debug("Jupiter has no price for %s", mint[:12])
    return price
