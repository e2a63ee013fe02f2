# discovery.py
"""
Fuentes de tokens candidatos para el escáner del AutoTrader.

- FlintrDiscoveryFeed: señales de Flintr (mint / graduation) acumuladas desde
  el hilo del WebSocket y enriquecidas con DexScreener + RPC al drenarlas.
- SimulatedDiscoveryFeed: memecoins inventadas para MODE=simulation.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional, Protocol, Tuple

from solders.pubkey import Pubkey

from flintr_client import FlintrClient
from models import TokenMetadata
from price_oracle import MarketPriceOracle
from risk_analyzer import TokenInspector

logger = logging.getLogger(__name__)


class DiscoveryFeed(Protocol):
    async def fetch_candidates(self) -> List[TokenMetadata]:
        ...


def _float_or(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class FlintrDiscoveryFeed:
    def __init__(
        self,
        client: FlintrClient,
        oracle: MarketPriceOracle,
        inspector: Optional[TokenInspector] = None,
        *,
        max_buffer: int = 500,
        max_per_fetch: int = 20,
        max_seen: int = 5000,
    ) -> None:
        self.client = client
        self.oracle = oracle
        self.inspector = inspector
        self.max_per_fetch = max_per_fetch
        self.max_seen = max_seen

        self._lock = threading.Lock()
        self._pending: Deque[Tuple[str, Dict[str, Any], float]] = deque(maxlen=max_buffer)
        # mints ya recibidos, los más antiguos se olvidan primero
        self._seen: "OrderedDict[str, None]" = OrderedDict()

        client.on_mint = self._on_signal
        client.on_graduation = self._on_signal

    def start(self) -> None:
        self.client.start_in_thread()

    def stop(self) -> None:
        self.client.stop()

    # Llamado desde el hilo del WebSocket
    def _on_signal(self, data: Dict[str, Any]) -> None:
        payload = data.get("data") or {}
        mint = payload.get("mint")
        if not mint:
            return
        with self._lock:
            if mint in self._seen:
                return
            self._seen[mint] = None
            while len(self._seen) > self.max_seen:
                self._seen.popitem(last=False)
            self._pending.append((mint, payload.get("metaData") or {}, time.time()))

    def _drain(self) -> List[Tuple[str, Dict[str, Any], float]]:
        with self._lock:
            batch = []
            while self._pending and len(batch) < self.max_per_fetch:
                batch.append(self._pending.popleft())
        return batch

    async def fetch_candidates(self) -> List[TokenMetadata]:
        candidates: List[TokenMetadata] = []
        for mint, meta, received_at in self._drain():
            token = await self._enrich(mint, meta, received_at)
            if token is not None:
                candidates.append(token)
        if candidates:
            logger.info("[Discovery] %d candidatos de Flintr", len(candidates))
        return candidates

    async def _enrich(
        self, mint: str, meta: Dict[str, Any], received_at: float
    ) -> Optional[TokenMetadata]:
        pair = await self.oracle.fetch_best_pair(mint)
        if pair is None:
            # Sin pool todavía: no hay liquidez que evaluar
            logger.debug("[Discovery] %s sin par en DexScreener, descartado", mint)
            return None

        liquidity = pair.get("liquidity") or {}
        created_ms = pair.get("pairCreatedAt")
        created_at = created_ms / 1000.0 if isinstance(created_ms, (int, float)) else received_at
        price = _float_or(pair.get("priceNative"), 0.0)
        base = pair.get("baseToken") or {}

        holders: Optional[int] = None
        if self.inspector is not None:
            try:
                holders = await self.inspector.count_holders(mint)
            except Exception as exc:
                logger.warning("[Discovery] No se pudo contar holders de %s: %r", mint, exc)

        return TokenMetadata(
            address=mint,
            name=meta.get("name") or base.get("name") or mint[:6],
            symbol=meta.get("symbol") or base.get("symbol") or "???",
            created_at=created_at,
            liquidity_sol=_float_or(liquidity.get("quote"), 0.0),
            holder_count=holders,
            price_sol=price if price > 0 else None,
            is_memecoin=True,
            is_nsfw=bool(meta.get("nsfw", False)),
            source="flintr",
        )


# -----------------------------------------------------------------------------
# Simulación
# -----------------------------------------------------------------------------

MEME_PREFIXES = [
    "Moon", "Doge", "Shib", "Pepe", "Wojak", "Chad", "Ape", "Frog", "Cat", "Sol",
    "Elon", "Baby", "Floki", "Space", "Galaxy", "Cyber", "Meme", "Magic", "Rocket", "Based",
]
MEME_SUFFIXES = [
    "Inu", "Moon", "Rocket", "Lambo", "Coin", "Token", "Doge", "Floki", "Cash", "Money",
    "Gold", "Diamond", "Hands", "King", "Lord", "God", "Star", "AI", "Chain", "Dao",
]


class SimulatedDiscoveryFeed:
    def __init__(
        self,
        *,
        hit_probability: float = 0.75,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.hit_probability = hit_probability
        self._rng = rng or random.Random()

    def meme_name(self) -> str:
        return self._rng.choice(MEME_PREFIXES) + self._rng.choice(MEME_SUFFIXES)

    def meme_symbol(self, name: str) -> str:
        return name[: self._rng.randint(3, 5)].upper().ljust(3, "X")

    def random_address(self) -> str:
        return str(Pubkey(bytes(self._rng.getrandbits(8) for _ in range(32))))

    async def fetch_candidates(self) -> List[TokenMetadata]:
        if self._rng.random() >= self.hit_probability:
            return []

        rng = self._rng
        name = self.meme_name()
        token = TokenMetadata(
            address=self.random_address(),
            name=name,
            symbol=self.meme_symbol(name),
            created_at=time.time() - rng.uniform(0, 5 * 60),
            liquidity_sol=rng.uniform(5, 50),
            holder_count=rng.randint(20, 400),
            risk_level=float(rng.randint(10, 40)),
            price_sol=rng.uniform(1e-6, 1e-5),
            is_memecoin=True,
            source="simulation",
        )

        logger.info(
            "[Discovery][SIM] Nueva memecoin %s (%s) liq=%.2f SOL",
            token.name,
            token.symbol,
            token.liquidity_sol,
        )
        return [token]
