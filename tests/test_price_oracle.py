"""
Tests for MarketPriceOracle using httpx.MockTransport.
"""

import random

import httpx
import pytest

from price_oracle import SOL_MINT, MarketPriceOracle

MINT = "TokenMint1111"


def dex_pair(price_native, liquidity_usd, quote="SOL", chain="solana"):
    return {
        "chainId": chain,
        "priceNative": price_native,
        "liquidity": {"usd": liquidity_usd, "quote": 10},
        "quoteToken": {"symbol": quote},
    }


def make_oracle(handler, **kwargs) -> MarketPriceOracle:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return MarketPriceOracle(
        dexscreener_url="https://dex.test/latest/dex",
        jupiter_price_url="https://jup.test/price/v3",
        client=client,
        **kwargs,
    )


class TestMarketPriceOracle:
    """DexScreener first, Jupiter fallback, optional synthetic price."""

    @pytest.mark.asyncio
    async def test_dexscreener_most_liquid_sol_pair(self):
        """Should use priceNative of the most liquid SOL-quoted pair."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.host == "dex.test"
            return httpx.Response(
                200,
                json={
                    "pairs": [
                        dex_pair("0.5", 1_000),
                        dex_pair("0.7", 50_000),
                        dex_pair("9.9", 900_000, quote="USDC"),
                    ]
                },
            )

        oracle = make_oracle(handler)
        assert await oracle.get_price(MINT) == pytest.approx(0.7)

    @pytest.mark.asyncio
    async def test_falls_back_to_jupiter(self):
        """Should divide token USD by SOL USD when DexScreener has no pairs."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "dex.test":
                return httpx.Response(200, json={"pairs": []})
            assert request.url.params["ids"] == f"{MINT},{SOL_MINT}"
            return httpx.Response(
                200,
                json={MINT: {"usdPrice": 0.5}, SOL_MINT: {"usdPrice": 200.0}},
            )

        oracle = make_oracle(handler)
        assert await oracle.get_price(MINT) == pytest.approx(0.0025)

    @pytest.mark.asyncio
    async def test_total_failure_returns_none(self):
        """Should return None when both sources fail and simulation is off."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        oracle = make_oracle(handler)
        assert await oracle.get_price(MINT, reference_price=1.0) is None

    @pytest.mark.asyncio
    async def test_network_error_is_handled(self):
        """Transport errors count as a failed source."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        oracle = make_oracle(handler)
        assert await oracle.get_price(MINT) is None

    @pytest.mark.asyncio
    async def test_synthetic_price_stays_in_band(self):
        """In simulation mode the fabricated price stays around the reference."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        oracle = make_oracle(handler, simulate=True, walk_step=0.2, band=0.3, rng=random.Random(3))
        for _ in range(50):
            price = await oracle.get_price(MINT, reference_price=1.0)
            assert 0.7 <= price <= 1.3

    @pytest.mark.asyncio
    async def test_synthetic_price_needs_reference(self):
        """Without a reference there is nothing to walk from."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        oracle = make_oracle(handler, simulate=True)
        assert await oracle.get_price(MINT) is None

    @pytest.mark.asyncio
    async def test_fetch_best_pair_any_chain_fallback(self):
        """Should fall back to any pair when none is quoted in SOL."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"pairs": [dex_pair("2", 10, quote="USDC")]})

        oracle = make_oracle(handler)
        pair = await oracle.fetch_best_pair(MINT)
        assert pair["priceNative"] == "2"
