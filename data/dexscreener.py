"""
data/dexscreener.py — Primary market data source.

GET {base}/latest/dex/tokens/{address} returns every trading pair for the
token across chains. We keep the pairs on the call's chain and use the most
liquid one.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from tracking.errors import FetchTimeoutError, RateLimitedError, TransientFetchError
from tracking.models import Chain

log = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.dexscreener.com"


def _to_float(value, default=None):
    try:
        if value is None or value == "":
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


async def get_json(client: httpx.AsyncClient, url: str, params: Optional[dict] = None, timeout: float = 10.0):
    """
    GET and decode JSON, mapping transport problems onto the oracle taxonomy.
    Returns None for 4xx answers other than 429 (unknown token, bad address).
    """
    try:
        response = await client.get(url, params=params, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise FetchTimeoutError(f"timeout after {timeout}s: {url}") from exc
    except httpx.HTTPError as exc:
        # transport failures, redirect loops, undecodable bodies
        raise TransientFetchError(f"request failed for {url}: {exc}") from exc

    if response.status_code == 429:
        raise RateLimitedError(f"rate limited: {url}")
    if response.status_code >= 500:
        raise TransientFetchError(f"HTTP {response.status_code} for {url}")
    if response.status_code >= 400:
        log.debug("HTTP %s for %s", response.status_code, url)
        return None

    try:
        return response.json()
    except ValueError as exc:
        raise TransientFetchError(f"invalid JSON from {url}") from exc


def _obj(value) -> dict:
    return value if isinstance(value, dict) else {}


def _text(value) -> Optional[str]:
    return value if isinstance(value, str) and value else None


def normalize_pair(pair) -> Optional[dict]:
    """Flatten one DexScreener pair. Malformed entries come back as None."""
    if not isinstance(pair, dict):
        return None
    base_token = _obj(pair.get("baseToken"))
    info = _obj(pair.get("info"))
    chain_id = str(pair.get("chainId") or "").strip().lower()
    if not chain_id:
        return None

    market_cap = _to_float(pair.get("marketCap"))
    if market_cap is None or market_cap <= 0:
        market_cap = _to_float(pair.get("fdv"))

    pair_address = str(pair.get("pairAddress") or "")
    chart_url = pair.get("url") or (
        f"https://dexscreener.com/{chain_id}/{pair_address}" if pair_address else None
    )

    return {
        "chain_id": chain_id,
        "pair_address": pair_address,
        "symbol": _text(base_token.get("symbol")),
        "base_address": str(base_token.get("address") or ""),
        "price": _to_float(pair.get("priceUsd")),
        "market_cap": market_cap if market_cap and market_cap > 0 else None,
        "liquidity": _to_float(_obj(pair.get("liquidity")).get("usd")),
        "volume_24h": _to_float(_obj(pair.get("volume")).get("h24")),
        "chart_url": _text(chart_url),
        "image_url": _text(info.get("imageUrl")),
    }


def _same_token(chain: Chain, a: str, b: str) -> bool:
    # EVM addresses are case-insensitive hex; base58 mints are not.
    if chain is Chain.BSC:
        return a.lower() == b.lower()
    return a == b


def pick_best_pair(pairs: list, chain: Chain, address: Optional[str] = None) -> Optional[dict]:
    """
    Highest liquidity on the requested chain; ties go to the lowest pair
    address. With `address`, only pairs where that token is the base side
    count: the tokens endpoint also lists pairs where it is the quote.
    """
    if not isinstance(pairs, list):
        return None
    normalized = [p for p in (normalize_pair(pair) for pair in pairs) if p]
    normalized = [p for p in normalized if p["chain_id"] == chain.dexscreener_id]
    if address:
        normalized = [p for p in normalized if _same_token(chain, p["base_address"], address)]
    if not normalized:
        return None
    normalized.sort(key=lambda p: (-(p["liquidity"] or 0.0), p["pair_address"]))
    return normalized[0]


async def fetch_token_pair(
    client: httpx.AsyncClient,
    chain: Chain,
    address: str,
    base_url: str = DEFAULT_BASE_URL,
    timeout: float = 10.0,
) -> Optional[dict]:
    """Best pair for the token, or None when DexScreener lists nothing."""
    endpoint = f"{(base_url or DEFAULT_BASE_URL).rstrip('/')}/latest/dex/tokens/{address}"
    data = await get_json(client, endpoint, timeout=timeout)
    if not isinstance(data, dict):
        return None
    return pick_best_pair(data.get("pairs") or [], chain, address)
