# swap_provider.py
from __future__ import annotations

import asyncio
import logging
import os
import random
import time
from typing import Any, Dict, Optional, Protocol

from jup_python_sdk.clients.ultra_api_client import UltraApiClient
from jup_python_sdk.models.ultra_api.ultra_order_request_model import UltraOrderRequest
from solana.rpc.async_api import AsyncClient
from solders.pubkey import Pubkey

from models import SwapDirection, SwapResult
from price_oracle import PriceOracle

logger = logging.getLogger(__name__)

# WSOL mint en Solana mainnet
WSOL_MINT = "So11111111111111111111111111111111111111112"
SOL_DECIMALS = 9


class SwapProvider(Protocol):
    async def swap(
        self,
        direction: SwapDirection,
        token_address: str,
        amount: float,
        slippage_percent: float,
        *,
        price_hint: Optional[float] = None,
    ) -> SwapResult:
        """
        BUY: `amount` en SOL, devuelve tokens en out_amount.
        SELL: `amount` en tokens, devuelve SOL en out_amount.
        Nunca lanza por fallos del swap: devuelve SwapResult(success=False).
        """
        ...


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class JupiterSwapProvider:
    """
    Swaps reales usando Jupiter Ultra API (jup-python-sdk).

    - Usa tu WALLET_PRIVATE_KEY (base58 estilo Phantom) vía variable de entorno.
    - Opcionalmente usa JUPITER_API_KEY si existe.
    - Los decimales del token se leen del RPC (getTokenSupply) y se cachean.
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        private_key_env_var: str = "WALLET_PRIVATE_KEY",
        client: Optional[UltraApiClient] = None,
        rpc_client: Optional[AsyncClient] = None,
    ) -> None:
        if client is None:
            kwargs: Dict[str, Any] = {"private_key_env_var": private_key_env_var}
            api_key = os.getenv("JUPITER_API_KEY")
            if api_key:
                kwargs["api_key"] = api_key
            # Ultra API client: no necesita RPC explícito, lo hace la API por dentro
            client = UltraApiClient(**kwargs)
        self.client = client
        self.rpc = rpc_client or AsyncClient(rpc_url)
        self._decimals: Dict[str, int] = {}

    async def aclose(self) -> None:
        try:
            self.client.close()
        except Exception as exc:
            logger.debug("[Jupiter] Error cerrando cliente Ultra: %r", exc)
        await self.rpc.close()

    async def token_decimals(self, mint: str) -> int:
        if mint == WSOL_MINT:
            return SOL_DECIMALS
        if mint not in self._decimals:
            resp = await self.rpc.get_token_supply(Pubkey.from_string(mint))
            self._decimals[mint] = int(resp.value.decimals)
        return self._decimals[mint]

    async def swap(
        self,
        direction: SwapDirection,
        token_address: str,
        amount: float,
        slippage_percent: float,
        *,
        price_hint: Optional[float] = None,
    ) -> SwapResult:
        if amount <= 0:
            return SwapResult.failure("amount debe ser > 0")

        if direction == SwapDirection.BUY:
            input_mint, output_mint = WSOL_MINT, token_address
        else:
            input_mint, output_mint = token_address, WSOL_MINT

        try:
            in_decimals = await self.token_decimals(input_mint)
            out_decimals = await self.token_decimals(output_mint)

            # Pasar a unidades enteras (ej. 1.23 * 10**6 = 1_230_000)
            raw_amount = int(amount * (10 ** in_decimals))
            if raw_amount <= 0:
                return SwapResult.failure("amount calculado es 0; revisa decimales")

            taker = self.client._get_public_key()
            order_request = UltraOrderRequest(
                input_mint=input_mint,
                output_mint=output_mint,
                amount=raw_amount,
                taker=taker,
                # Ultra calcula el slippage por su cuenta; UltraOrderRequest no lo expone.
            )
            logger.info(
                "[Jupiter] %s %s amount=%s (slippage pedido %.2f%%)",
                direction.value,
                token_address,
                amount,
                slippage_percent,
            )
            resp: Dict[str, Any] = await asyncio.to_thread(
                self.client.order_and_execute, order_request
            )
        except Exception as exc:
            logger.error("[Jupiter] Error ejecutando swap %s %s: %r", direction.value, token_address, exc)
            return SwapResult.failure(repr(exc))

        status = str(resp.get("status", "")).lower()
        signature = resp.get("signature")
        if status != "success" or not signature:
            error = resp.get("error") or f"status={resp.get('status')}"
            return SwapResult.failure(str(error))

        raw_in = _to_float(resp.get("inputAmountResult") or resp.get("inAmount")) or 0.0
        raw_out = _to_float(resp.get("outputAmountResult") or resp.get("outAmount")) or 0.0
        price_impact = _to_float(resp.get("priceImpactPct")) or 0.0

        return SwapResult(
            success=True,
            in_amount=raw_in / (10 ** in_decimals),
            out_amount=raw_out / (10 ** out_decimals),
            price_impact=abs(price_impact),
            tx_reference=str(signature),
        )


class SimulatedSwapProvider:
    """
    Swaps simulados para MODE=simulation: no toca la red, precio del oráculo
    (o `price_hint`), impacto aleatorio acotado por el slippage y una tasa de
    fallos configurable.
    """

    def __init__(
        self,
        price_oracle: Optional[PriceOracle] = None,
        *,
        failure_rate: float = 0.1,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.price_oracle = price_oracle
        self.failure_rate = failure_rate
        self._rng = rng or random.Random()

    async def swap(
        self,
        direction: SwapDirection,
        token_address: str,
        amount: float,
        slippage_percent: float,
        *,
        price_hint: Optional[float] = None,
    ) -> SwapResult:
        if amount <= 0:
            return SwapResult.failure("amount debe ser > 0")

        if self._rng.random() < self.failure_rate:
            logger.info("[SimSwap] Fallo simulado en %s de %s", direction.value, token_address)
            return SwapResult(success=False, error="Simulated swap failure", simulated=True)

        price = price_hint
        if price is None and self.price_oracle is not None:
            price = await self.price_oracle.get_price(token_address)
        if price is None or price <= 0:
            price = 0.000001 * (1 + self._rng.random())

        impact = self._rng.uniform(0.0, max(slippage_percent, 0.0)) if slippage_percent > 0 else 0.0
        factor = 1 - impact / 100.0

        if direction == SwapDirection.BUY:
            out_amount = amount / price * factor
        else:
            out_amount = amount * price * factor

        return SwapResult(
            success=True,
            in_amount=amount,
            out_amount=out_amount,
            price_impact=impact,
            tx_reference=f"demo_tx_{int(time.time() * 1000):x}",
            simulated=True,
        )
