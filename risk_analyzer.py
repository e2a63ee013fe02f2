# risk_analyzer.py
"""
Análisis de riesgo on-chain de un token SPL (0 = sin riesgo, 100 = máximo).

Reglas:
- La cuenta del mint no existe            -> 100
- Base                                    -> 10
- Mint authority activa (se puede inflar) -> +30
- Freeze authority activa                 -> +30
- Pocos holders                           -> +10
- Cualquier error de RPC                  -> 100 con warning
"""

from __future__ import annotations

import logging
import struct
from typing import Optional, Protocol

from solana.rpc.async_api import AsyncClient
from solana.rpc.types import DataSliceOpts, MemcmpOpts
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID

from models import RiskReport

logger = logging.getLogger(__name__)

# Layout de una cuenta Mint SPL (82 bytes):
#   0  COption<Pubkey> mint_authority (4 + 32)
#  36  u64 supply
#  44  u8 decimals
#  45  bool is_initialized
#  46  COption<Pubkey> freeze_authority (4 + 32)
MINT_ACCOUNT_SIZE = 82
MINT_AUTHORITY_OFFSET = 0
FREEZE_AUTHORITY_OFFSET = 46
TOKEN_ACCOUNT_SIZE = 165

BASE_RISK = 10.0
MAX_RISK = 100.0


class RiskScorer(Protocol):
    async def score(self, token_address: str) -> RiskReport:
        ...


def _option_is_some(data: bytes, offset: int) -> bool:
    (tag,) = struct.unpack_from("<I", data, offset)
    return tag == 1


class TokenInspector:
    """Consultas de solo lectura sobre un mint SPL vía RPC."""

    def __init__(self, rpc: AsyncClient) -> None:
        self.rpc = rpc

    async def mint_account_data(self, mint: str) -> Optional[bytes]:
        resp = await self.rpc.get_account_info(Pubkey.from_string(mint))
        account = resp.value
        if account is None:
            return None
        return bytes(account.data)

    async def count_holders(self, mint: str) -> int:
        """
        Número de cuentas de token del mint. Solo pedimos las claves
        (data_slice vacío), no los datos de cada cuenta.
        """
        resp = await self.rpc.get_program_accounts(
            TOKEN_PROGRAM_ID,
            encoding="base64",
            data_slice=DataSliceOpts(offset=0, length=0),
            filters=[TOKEN_ACCOUNT_SIZE, MemcmpOpts(offset=0, bytes=mint)],
        )
        return len(resp.value)


class RpcRiskScorer:
    def __init__(
        self,
        rpc: AsyncClient,
        *,
        low_holder_threshold: int = 50,
        check_holders: bool = True,
    ) -> None:
        self.inspector = TokenInspector(rpc)
        self.low_holder_threshold = low_holder_threshold
        self.check_holders = check_holders

    async def score(self, token_address: str) -> RiskReport:
        logger.info("[Risk] Analizando %s", token_address)
        try:
            report = await self._score(token_address)
        except Exception as exc:
            logger.error("[Risk] Error analizando %s: %r", token_address, exc)
            return RiskReport(
                risk_level=MAX_RISK,
                warnings=[f"Error analyzing token: {exc}"],
            )

        logger.info("[Risk] %s -> riesgo %.0f%%", token_address, report.risk_level)
        return report

    async def _score(self, token_address: str) -> RiskReport:
        data = await self.inspector.mint_account_data(token_address)
        if data is None:
            return RiskReport(risk_level=MAX_RISK, warnings=["Token does not exist on chain"])
        if len(data) < MINT_ACCOUNT_SIZE:
            return RiskReport(risk_level=MAX_RISK, warnings=["Account is not an SPL mint"])

        risk = BASE_RISK
        warnings = []

        if _option_is_some(data, MINT_AUTHORITY_OFFSET):
            risk += 30
            warnings.append("Mint authority not renounced")
        if _option_is_some(data, FREEZE_AUTHORITY_OFFSET):
            risk += 30
            warnings.append("Freeze authority enabled")

        if self.check_holders:
            holders = await self.inspector.count_holders(token_address)
            if holders < self.low_holder_threshold:
                risk += 10
                warnings.append(f"Low holder count ({holders})")

        return RiskReport(risk_level=min(risk, MAX_RISK), warnings=warnings)
