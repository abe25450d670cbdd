import httpx
import pytest

from conftest import BSC_TOKEN, SOL_MINT
from data.dexscreener import normalize_pair, pick_best_pair
from data.market_data import PriceOracle, estimate_market_cap
from tracking.errors import FetchTimeoutError, RateLimitedError, TokenNotFoundError, TransientFetchError
from tracking.models import Chain


def _pair(
    chain="solana", pair_address="P1", liquidity=10_000, market_cap=250_000, fdv=None, symbol="POP", base=SOL_MINT
):
    return {
        "chainId": chain,
        "pairAddress": pair_address,
        "baseToken": {"address": base, "symbol": symbol},
        "priceUsd": "0.00025",
        "marketCap": market_cap,
        "fdv": fdv,
        "liquidity": {"usd": liquidity},
        "volume": {"h24": 5_000},
        "url": f"https://dexscreener.com/{chain}/{pair_address}",
        "info": {"imageUrl": "https://img.example/pop.png"},
    }


def _oracle(handler):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PriceOracle(
        client=client,
        timeout=1.0,
        dexscreener_url="https://dex.test",
        jupiter_url="https://jup.test/price/v3",
    )


def test_normalize_pair_falls_back_to_fdv():
    pair = normalize_pair(_pair(market_cap=None, fdv=300_000))
    assert pair["market_cap"] == 300_000
    assert pair["liquidity"] == 10_000
    assert pair["image_url"] == "https://img.example/pop.png"


def test_pick_best_pair_prefers_liquidity_on_chain():
    pairs = [
        _pair(pair_address="small", liquidity=1_000),
        _pair(pair_address="big", liquidity=90_000),
        _pair(chain="bsc", pair_address="other-chain", liquidity=10_000_000),
    ]
    assert pick_best_pair(pairs, Chain.SOL)["pair_address"] == "big"
    assert pick_best_pair(pairs, Chain.BSC)["pair_address"] == "other-chain"
    assert pick_best_pair([], Chain.SOL) is None


def test_estimate_market_cap():
    assert estimate_market_cap(0.001, 1_000_000_000) == pytest.approx(1_000_000)
    assert estimate_market_cap(None) is None
    assert estimate_market_cap(0) is None


@pytest.mark.asyncio
async def test_fetch_uses_dexscreener_market_cap():
    def handler(request):
        assert request.url.path == f"/latest/dex/tokens/{SOL_MINT}"
        return httpx.Response(200, json={"pairs": [_pair()]})

    oracle = _oracle(handler)
    market = await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()

    assert market.market_cap_usd == 250_000
    assert market.ticker == "POP"
    assert market.source == "dexscreener"
    assert market.market_cap_estimated is False


@pytest.mark.asyncio
async def test_price_only_pair_is_flagged_estimated():
    def handler(request):
        return httpx.Response(200, json={"pairs": [_pair(market_cap=None, fdv=None)]})

    oracle = _oracle(handler)
    market = await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()

    assert market.market_cap_estimated is True
    assert market.market_cap_usd == pytest.approx(0.00025 * 1_000_000_000)


@pytest.mark.asyncio
async def test_solana_falls_back_to_jupiter():
    def handler(request):
        if request.url.host == "dex.test":
            return httpx.Response(200, json={"pairs": []})
        assert request.url.params["ids"] == SOL_MINT
        return httpx.Response(200, json={SOL_MINT: {"usdPrice": 0.002}})

    oracle = _oracle(handler)
    market = await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()

    assert market.source == "jupiter"
    assert market.market_cap_estimated is True
    assert market.market_cap_usd == pytest.approx(2_000_000)


@pytest.mark.asyncio
async def test_unknown_bsc_token_not_found():
    def handler(request):
        assert request.url.host == "dex.test"
        return httpx.Response(200, json={"pairs": None})

    oracle = _oracle(handler)
    with pytest.raises(TokenNotFoundError):
        await oracle.fetch(Chain.BSC, BSC_TOKEN)
    await oracle._client.aclose()


@pytest.mark.asyncio
async def test_rate_limit_surfaces_when_fallback_has_nothing():
    def handler(request):
        if request.url.host == "dex.test":
            return httpx.Response(429)
        return httpx.Response(200, json={})

    oracle = _oracle(handler)
    with pytest.raises(RateLimitedError):
        await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()


@pytest.mark.asyncio
async def test_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    oracle = _oracle(handler)
    with pytest.raises(FetchTimeoutError):
        await oracle.fetch(Chain.BSC, BSC_TOKEN)
    await oracle._client.aclose()


@pytest.mark.asyncio
async def test_client_error_means_not_found():
    def handler(request):
        return httpx.Response(404)

    oracle = _oracle(handler)
    with pytest.raises(TokenNotFoundError):
        await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()


def test_malformed_pair_fields_are_tolerated():
    pair = _pair()
    pair["liquidity"] = "lots"
    pair["volume"] = [1, 2]
    pair["info"] = None
    pair["baseToken"]["symbol"] = ["POP"]
    normalized = normalize_pair(pair)
    assert normalized["liquidity"] is None
    assert normalized["volume_24h"] is None
    assert normalized["image_url"] is None
    assert normalized["symbol"] is None
    assert normalized["market_cap"] == 250_000
    assert normalize_pair("not a pair") is None
    assert normalize_pair(None) is None


def test_pick_best_pair_ignores_pairs_quoting_the_token():
    pairs = [
        _pair(pair_address="quote-side", liquidity=5_000_000, symbol="BIG", base="So11111111111111111111111111111111111111112"),
        _pair(pair_address="base-side", liquidity=20_000, symbol="MEME"),
    ]
    best = pick_best_pair(pairs, Chain.SOL, SOL_MINT)
    assert best["pair_address"] == "base-side"
    assert best["symbol"] == "MEME"
    assert pick_best_pair(pairs[:1], Chain.SOL, SOL_MINT) is None


def test_bsc_base_address_matches_any_case():
    pairs = [_pair(chain="bsc", pair_address="B1", base="0x" + "AB" * 20)]
    assert pick_best_pair(pairs, Chain.BSC, BSC_TOKEN)["pair_address"] == "B1"


@pytest.mark.asyncio
async def test_fetch_picks_base_side_pair():
    def handler(request):
        return httpx.Response(
            200,
            json={
                "pairs": [
                    _pair(pair_address="Q", liquidity=9_000_000, market_cap=80_000_000_000, symbol="SOL",
                          base="So11111111111111111111111111111111111111112"),
                    _pair(pair_address="M", liquidity=30_000, market_cap=400_000, symbol="MEME"),
                ]
            },
        )

    oracle = _oracle(handler)
    market = await oracle.fetch(Chain.SOL, SOL_MINT)
    await oracle._client.aclose()

    assert market.ticker == "MEME"
    assert market.market_cap_usd == 400_000


@pytest.mark.asyncio
async def test_malformed_pairs_list_means_not_found():
    def handler(request):
        return httpx.Response(200, json={"pairs": {"oops": True}})

    oracle = _oracle(handler)
    with pytest.raises(TokenNotFoundError):
        await oracle.fetch(Chain.BSC, BSC_TOKEN)
    await oracle._client.aclose()


@pytest.mark.asyncio
async def test_non_transport_http_error_is_transient():
    def handler(request):
        raise httpx.DecodingError("bad gzip", request=request)

    oracle = _oracle(handler)
    with pytest.raises(TransientFetchError):
        await oracle.fetch(Chain.BSC, BSC_TOKEN)
    await oracle._client.aclose()
