# price_oracle.py
"""
Oráculo de precios para las posiciones abiertas (precio en SOL por token).

- Intenta primero DexScreener: https://api.dexscreener.com/latest/dex/tokens/{mint}
- Si falla o no hay pares válidos, hace fallback a Jupiter Price API v3:
  https://lite-api.jup.ag/price/v3?ids={mint},{So1111...}
- Si ambos fallan devuelve None (el tick se salta). Solo con `simulate=True`
  se inventa un precio (paseo aleatorio acotado alrededor del precio de
  referencia) para poder ejercitar el monitor sin conexión.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex"
JUPITER_PRICE_URL_LITE = "https://lite-api.jup.ag/price/v3"
# Mint de SOL "wrapped" estándar en Solana, usado por Jupiter como referencia
SOL_MINT = "So11111111111111111111111111111111111111112"


class PriceOracle(Protocol):
    async def get_price(
        self, token_address: str, reference_price: Optional[float] = None
    ) -> Optional[float]:
        ...


def _liq_usd(pair: Dict[str, Any]) -> float:
    liq = pair.get("liquidity") or {}
    usd = liq.get("usd")
    try:
        return float(usd) if usd is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


class MarketPriceOracle:
    def __init__(
        self,
        *,
        dexscreener_url: str = DEXSCREENER_TOKENS_URL,
        jupiter_price_url: str = JUPITER_PRICE_URL_LITE,
        timeout: float = 8.0,
        client: Optional[httpx.AsyncClient] = None,
        simulate: bool = False,
        walk_step: float = 0.05,
        band: float = 0.5,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.dexscreener_url = dexscreener_url.rstrip("/")
        self.jupiter_price_url = jupiter_price_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

        self.simulate = simulate
        self.walk_step = walk_step
        self.band = band
        self._rng = rng or random.Random()
        self._synthetic: Dict[str, float] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -------------------------------------------------------------------------
    # API pública
    # -------------------------------------------------------------------------

    async def get_price(
        self, token_address: str, reference_price: Optional[float] = None
    ) -> Optional[float]:
        """
        Lógica unificada: primero DexScreener, si no hay precio, fallback Jupiter.
        Devuelve precio en SOL (float) o None.
        """
        price = await self._fetch_price_from_dexscreener(token_address)
        if price is not None:
            return price

        price = await self._fetch_price_from_jupiter(token_address)
        if price is not None:
            return price

        if self.simulate:
            return self._synthetic_price(token_address, reference_price)

        logger.debug("[PriceOracle] Sin precio para %s (DexScreener+Jupiter)", token_address)
        return None

    async def fetch_best_pair(self, token_address: str) -> Optional[Dict[str, Any]]:
        """
        Par de DexScreener con mayor liquidez en USD, priorizando los que cotizan
        contra SOL en Solana. None si no hay pares o la API falla.
        """
        url = f"{self.dexscreener_url}/tokens/{token_address}"
        try:
            resp = await self._client.get(url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.debug("[PriceOracle] DexScreener error de red: %r", exc)
            return None

        if resp.status_code != 200:
            logger.debug(
                "[PriceOracle] DexScreener status %s para %s",
                resp.status_code,
                token_address,
            )
            return None

        try:
            data = resp.json()
        except ValueError as exc:
            logger.debug("[PriceOracle] DexScreener JSON inválido: %r", exc)
            return None

        pairs = data.get("pairs") if isinstance(data, dict) else None
        if not pairs:
            return None

        sol_pairs = [
            p
            for p in pairs
            if p.get("chainId") == "solana"
            and (p.get("quoteToken") or {}).get("symbol") in ("SOL", "WSOL")
        ]
        if not sol_pairs:
            sol_pairs = pairs  # fallback: usar cualquier par

        return max(sol_pairs, key=_liq_usd)

    # -------------------------------------------------------------------------
    # Fuentes
    # -------------------------------------------------------------------------

    async def _fetch_price_from_dexscreener(self, token_address: str) -> Optional[float]:
        best_pair = await self.fetch_best_pair(token_address)
        if best_pair is None:
            return None

        price_native = best_pair.get("priceNative")
        if price_native is None:
            return None

        try:
            price_sol = float(price_native)
        except (TypeError, ValueError):
            return None
        return price_sol if price_sol > 0 else None

    async def _fetch_price_from_jupiter(self, token_address: str) -> Optional[float]:
        """
        Fallback: precio en USD del token y de SOL en Jupiter Price v3;
        token_price_usd / sol_price_usd = precio del token en SOL.
        """
        url = f"{self.jupiter_price_url}?ids={token_address},{SOL_MINT}"
        try:
            resp = await self._client.get(url, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logger.debug("[PriceOracle] Jupiter error de red: %r", exc)
            return None

        if resp.status_code != 200:
            logger.debug(
                "[PriceOracle] Jupiter status %s para %s",
                resp.status_code,
                token_address,
            )
            return None

        try:
            data = resp.json()
        except ValueError as exc:
            logger.debug("[PriceOracle] Jupiter JSON inválido: %r", exc)
            return None

        if not isinstance(data, dict):
            return None

        token_info = data.get(token_address)
        sol_info = data.get(SOL_MINT)
        if not token_info or not sol_info:
            return None

        try:
            token_usd = float(token_info.get("usdPrice"))
            sol_usd = float(sol_info.get("usdPrice"))
        except (TypeError, ValueError):
            return None
        if token_usd <= 0 or sol_usd <= 0:
            return None
        return token_usd / sol_usd

    def _synthetic_price(
        self, token_address: str, reference_price: Optional[float]
    ) -> Optional[float]:
        last = self._synthetic.get(token_address, reference_price)
        if last is None or last <= 0:
            return None

        anchor = reference_price if reference_price and reference_price > 0 else last
        step = self._rng.uniform(-self.walk_step, self.walk_step)
        price = last * (1 + step)
        low, high = anchor * (1 - self.band), anchor * (1 + self.band)
        price = min(max(price, low), high)

        self._synthetic[token_address] = price
        logger.warning(
            "[PriceOracle] Usando precio SIMULADO para %s: %.10f SOL", token_address, price
        )
        return price
