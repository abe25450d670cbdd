"""
data/market_data.py — PriceOracle: (chain, address) -> MarketData.

Prefer DexScreener (market cap, liquidity, volume, ticker) and fall back to
Jupiter's price-only feed for Solana tokens. When only a price is known the
market cap is estimated from an assumed circulating supply and flagged with
`market_cap_estimated`.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from config import ASSUMED_SUPPLY, DEXSCREENER_API_URL, JUPITER_PRICE_URL, PRICE_TIMEOUT_SECONDS
from data import dexscreener, jupiter
from tracking.errors import TokenNotFoundError, TransientFetchError
from tracking.models import Chain, MarketData

log = logging.getLogger(__name__)


def estimate_market_cap(price_usd: Optional[float], supply: float = ASSUMED_SUPPLY) -> Optional[float]:
    """Heuristic: price × assumed supply (1B is the pump.fun launch supply)."""
    if not price_usd or price_usd <= 0 or supply <= 0:
        return None
    return price_usd * supply


class PriceOracle:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = PRICE_TIMEOUT_SECONDS,
        assumed_supply: float = ASSUMED_SUPPLY,
        dexscreener_url: str = DEXSCREENER_API_URL,
        jupiter_url: str = JUPITER_PRICE_URL,
    ):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            headers={"Accept": "application/json", "User-Agent": "callwatch/1.0"},
            follow_redirects=True,
        )
        self.timeout = timeout
        self.assumed_supply = assumed_supply
        self.dexscreener_url = dexscreener_url
        self.jupiter_url = jupiter_url

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()

    def _from_pair(self, pair: dict) -> MarketData:
        market_cap = pair.get("market_cap")
        estimated = False
        if market_cap is None and pair.get("price"):
            market_cap = estimate_market_cap(pair["price"], self.assumed_supply)
            estimated = market_cap is not None
        return MarketData(
            price_usd=pair.get("price"),
            market_cap_usd=market_cap,
            liquidity_usd=pair.get("liquidity"),
            volume_24h_usd=pair.get("volume_24h"),
            ticker=pair.get("symbol"),
            pair_address=pair.get("pair_address") or None,
            chart_url=pair.get("chart_url"),
            image_url=pair.get("image_url"),
            source="dexscreener",
            market_cap_estimated=estimated,
        )

    async def fetch(self, chain: Chain, address: str) -> MarketData:
        """
        Raises TokenNotFoundError when no source knows the token and
        TransientFetchError (timeout / rate limit) when the primary could not
        be reached and the fallback had nothing either.
        """
        chain = Chain(chain)
        address = str(address).strip()
        primary_error: Optional[TransientFetchError] = None

        try:
            pair = await dexscreener.fetch_token_pair(
                self._client, chain, address, base_url=self.dexscreener_url, timeout=self.timeout
            )
        except TransientFetchError as exc:
            log.debug("DexScreener failed for %s %s: %s", chain.value, address[:12], exc)
            primary_error = exc
            pair = None

        if pair:
            return self._from_pair(pair)

        if chain is Chain.SOL:
            try:
                price = await jupiter.fetch_price(
                    self._client, address, price_url=self.jupiter_url, timeout=self.timeout
                )
            except TransientFetchError as exc:
                log.debug("Jupiter failed for %s: %s", address[:12], exc)
                price = None
                primary_error = primary_error or exc
            if price:
                market_cap = estimate_market_cap(price, self.assumed_supply)
                return MarketData(
                    price_usd=price,
                    market_cap_usd=market_cap,
                    source="jupiter",
                    market_cap_estimated=market_cap is not None,
                )

        if primary_error is not None:
            raise primary_error
        raise TokenNotFoundError(f"no trading pair for {chain.value} {address}")
