# position_manager.py
from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import defaultdict
from dataclasses import fields
from typing import Any, Dict, List, Mapping, Optional

from config import BotConfig
from events import (
    EventBus,
    PositionClosed,
    PositionCreated,
    PartialSellExecuted,
    PositionUpdated,
    SellExecuted,
    SellFailed,
)
from models import (
    CloseReason,
    PartialSell,
    PartialTakeProfitLevel,
    Position,
    PositionOptions,
    PositionStatus,
    SwapDirection,
    SwapResult,
    coerce_levels,
    new_id,
)
from price_oracle import PriceOracle
from scheduler import PeriodicTask
from storage import Store
from swap_provider import SwapProvider

logger = logging.getLogger(__name__)

_POSITION_FIELDS = {f.name for f in fields(Position)}

# Solo close_position / el monitor escriben estos campos
_LIFECYCLE_FIELDS = {
    "id",
    "status",
    "exit_price",
    "profit",
    "closed_at",
    "close_reason",
    "exit_tx",
    "exit_amount_sol",
    "executed_partial_levels",
    "partial_sells",
}


class PositionManager:
    """
    Única fuente de verdad de las posiciones.

    - Abre / actualiza / cierra posiciones y las persiste en cada cambio.
    - Monitor periódico: un precio por token y reglas de salida en orden
      TAKE_PROFIT → STOP_LOSS → TRAILING_STOP → MAX_HOLD_TIME.
    - Si ninguna salida total dispara, vende por tramos según
      `partial_take_profit_levels` (un nivel por tick) y reduce `amount`.
    - La venta de salida va por el SwapProvider; si falla, la posición sigue
      OPEN y se reevalúa en el siguiente tick.
    - El monitor se para solo cuando no quedan posiciones abiertas y vuelve a
      arrancar con la siguiente add_position().
    """

    def __init__(
        self,
        config: BotConfig,
        price_oracle: PriceOracle,
        swap_provider: SwapProvider,
        store: Store[Position],
        events: EventBus,
    ) -> None:
        self.config = config
        self.price_oracle = price_oracle
        self.swap_provider = swap_provider
        self.store = store
        self.events = events

        self._lock = threading.RLock()
        self._positions: Dict[str, Position] = {p.id: p for p in store.load()}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._dirty = False

        self._monitor = PeriodicTask(
            "position-monitor",
            config.position_check_interval_sec,
            self.check_positions,
        )

        open_count = len(self.get_open_positions())
        logger.info(
            "[Positions] %d posiciones cargadas (%d abiertas)",
            len(self._positions),
            open_count,
        )

    # -------------------------------------------------------------------------
    # Ciclo de vida del monitor
    # -------------------------------------------------------------------------

    @property
    def monitoring(self) -> bool:
        return self._monitor.running

    def start(self) -> None:
        """Arranca el monitor si hay posiciones abiertas. Llamar dentro del loop."""
        self._loop = asyncio.get_running_loop()
        if self.get_open_positions():
            self._ensure_monitor()

    async def stop(self) -> None:
        await self._monitor.stop()

    def _ensure_monitor(self) -> None:
        if self._monitor.running:
            return

        try:
            running_loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        if running_loop is not None:
            self._loop = running_loop
            self._monitor.start()
            logger.info("[Positions] Monitor iniciado (cada %.0fs)", self._monitor.interval_sec)
        elif self._loop is not None and self._loop.is_running():
            # add_position desde otro hilo (Telegram, Flintr, ...)
            self._loop.call_soon_threadsafe(self._monitor.start)
        else:
            logger.debug("[Positions] Sin event loop; el monitor arrancará con start()")

    # -------------------------------------------------------------------------
    # Lectura
    # -------------------------------------------------------------------------

    def get_open_positions(self) -> List[Position]:
        with self._lock:
            return [p for p in self._positions.values() if p.is_open]

    def get_all_positions(self) -> List[Position]:
        with self._lock:
            return list(self._positions.values())

    def get_position(self, position_id: str) -> Optional[Position]:
        with self._lock:
            return self._positions.get(position_id)

    def get_positions_by_token(self, token_address: str) -> List[Position]:
        with self._lock:
            return [p for p in self._positions.values() if p.token_address == token_address]

    # -------------------------------------------------------------------------
    # Mutaciones
    # -------------------------------------------------------------------------

    def add_position(
        self,
        token_address: str,
        entry_price: float,
        amount: float,
        options: Optional[PositionOptions] = None,
    ) -> Position:
        opts = options or PositionOptions()
        position = Position(
            id=new_id(),
            token_address=token_address,
            entry_price=entry_price,
            amount=amount,
            highest_price=entry_price,
            stop_loss=opts.stop_loss,
            take_profit=opts.take_profit,
            trailing_stop=opts.trailing_stop,
            max_hold_minutes=opts.max_hold_minutes,
            partial_take_profit_levels=list(opts.partial_take_profit_levels or ()),
            strategy_id=opts.strategy_id,
            initial_investment=opts.initial_investment,
            token_name=opts.token_name,
            token_symbol=opts.token_symbol,
            simulated=opts.simulated,
            entry_tx=opts.entry_tx,
        )

        with self._lock:
            self._positions[position.id] = position
            self._persist()

        logger.info(
            "[Positions] Nueva posición %s %s @ %.10f SOL (amount=%s, SL=%s TP=%s TS=%s)",
            position.id,
            position.label,
            entry_price,
            amount,
            position.stop_loss,
            position.take_profit,
            position.trailing_stop,
        )

        self._ensure_monitor()
        self.events.publish(PositionCreated(position))
        return position

    def update_position(
        self, position_id: str, updates: Mapping[str, Any]
    ) -> Optional[Position]:
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                logger.warning("[Positions] update_position: %s no existe", position_id)
                return None

            if not position.is_open:
                logger.warning("[Positions] update_position: %s está cerrada", position_id)
                return None

            for key, value in updates.items():
                if key in _LIFECYCLE_FIELDS or key not in _POSITION_FIELDS:
                    logger.warning("[Positions] Campo ignorado en update: %s", key)
                    continue
                if key == "partial_take_profit_levels":
                    value = list(coerce_levels(value))
                setattr(position, key, value)

            self._persist()

        self.events.publish(PositionUpdated(position))
        return position

    def close_position(
        self,
        position_id: str,
        exit_price: float,
        reason: CloseReason,
        *,
        exit_tx: Optional[str] = None,
        exit_amount_sol: Optional[float] = None,
    ) -> Optional[Position]:
        """
        Cierra la posición. Cerrar una posición ya CLOSED no hace nada y
        devuelve None (ni persiste ni emite positionClosed otra vez).
        """
        with self._lock:
            position = self._positions.get(position_id)
            if position is None:
                logger.warning("[Positions] close_position: %s no existe", position_id)
                return None
            if not position.is_open:
                logger.warning(
                    "[Positions] %s ya estaba cerrada (%s), ignorando",
                    position_id,
                    position.close_reason.value if position.close_reason else "?",
                )
                return None

            position.status = PositionStatus.CLOSED
            position.exit_price = exit_price
            position.profit = position.pnl_percent(exit_price)
            position.closed_at = time.time()
            position.close_reason = CloseReason(reason)
            position.exit_tx = exit_tx
            position.exit_amount_sol = exit_amount_sol
            self._persist()

        logger.info(
            "[Positions] Cerrada %s %s @ %.10f → %s (%.2f%%)",
            position.id,
            position.label,
            exit_price,
            position.close_reason.value,
            position.profit,
        )
        self.events.publish(PositionClosed(position))
        return position

    def _persist(self) -> bool:
        with self._lock:
            snapshot = list(self._positions.values())
        ok = self.store.save(snapshot)
        if not ok:
            logger.error("[Positions] No se pudieron guardar las posiciones")
        return ok

    # -------------------------------------------------------------------------
    # Monitor
    # -------------------------------------------------------------------------

    async def check_positions(self) -> None:
        """Un tick del monitor. Nunca propaga excepciones."""
        open_positions = self.get_open_positions()
        if not open_positions:
            logger.info("[Positions] Sin posiciones abiertas, parando monitor")
            self._monitor.request_stop()
            return

        by_token: Dict[str, List[Position]] = defaultdict(list)
        for position in open_positions:
            by_token[position.token_address].append(position)

        for token_address, group in by_token.items():
            try:
                await self._check_token(token_address, group)
            except Exception:
                logger.exception("[Positions] Error revisando %s", token_address)

        # Solo se guarda si un máximo o un intento de venta cambió algo
        with self._lock:
            dirty, self._dirty = self._dirty, False
        if dirty:
            self._persist()

    async def _check_token(self, token_address: str, group: List[Position]) -> None:
        try:
            price = await self.price_oracle.get_price(
                token_address, reference_price=group[0].entry_price
            )
        except Exception as exc:
            logger.warning("[Positions] Error obteniendo precio de %s: %r", token_address, exc)
            return

        if price is None or price <= 0:
            logger.warning("[Positions] Sin precio para %s, se salta este tick", token_address)
            return

        now = time.time()
        for position in group:
            reason = self._evaluate(position, price, now)
            if reason is not None:
                await self._execute_exit(position, price, reason)
                continue
            level = self._next_partial_level(position, price)
            if level is not None:
                await self._execute_partial_sell(position, price, level)

    def _evaluate(
        self, position: Position, price: float, now: float
    ) -> Optional[CloseReason]:
        with self._lock:
            if not position.is_open:
                return None

            position.last_checked = now
            if price > position.highest_price:
                position.highest_price = price
                self._dirty = True

            entry = position.entry_price
            if position.take_profit is not None and price >= entry * (1 + position.take_profit / 100):
                return CloseReason.TAKE_PROFIT
            if position.stop_loss is not None and price <= entry * (1 - position.stop_loss / 100):
                return CloseReason.STOP_LOSS
            if (
                position.trailing_stop is not None
                and price <= position.highest_price * (1 - position.trailing_stop / 100)
            ):
                return CloseReason.TRAILING_STOP
            if (
                position.max_hold_minutes is not None
                and position.hold_minutes(now) >= position.max_hold_minutes
            ):
                return CloseReason.MAX_HOLD_TIME
            return None

    @staticmethod
    def _next_partial_level(
        position: Position, price: float
    ) -> Optional[PartialTakeProfitLevel]:
        """
        Nivel parcial más alto alcanzado y aún sin ejecutar. Uno por tick: los
        niveles inferiores pendientes salen en los ticks siguientes.
        """
        if not position.is_open or not position.partial_take_profit_levels:
            return None
        profit = position.pnl_percent(price)
        if profit <= 0:
            return None
        for level in sorted(
            position.partial_take_profit_levels, key=lambda lv: lv.percentage, reverse=True
        ):
            if profit >= level.percentage and level.percentage not in position.executed_partial_levels:
                return level
        return None

    async def _sell(
        self, position: Position, amount: float, price: float, slippage: float
    ) -> SwapResult:
        try:
            return await self.swap_provider.swap(
                SwapDirection.SELL,
                position.token_address,
                amount,
                slippage,
                price_hint=price,
            )
        except Exception as exc:
            logger.exception("[Positions] Excepción vendiendo %s", position.label)
            return SwapResult.failure(repr(exc))

    def _record_sell_failure(self, position: Position, reason: str, error: Optional[str]) -> None:
        with self._lock:
            position.sell_attempts += 1
            position.sell_error = error
            position.last_sell_attempt = time.time()
            attempts = position.sell_attempts
            self._dirty = True
        logger.warning(
            "[Positions] Venta fallida de %s (%s, intento %d): %s",
            position.label,
            reason,
            attempts,
            error,
        )
        self.events.publish(
            SellFailed(
                position_id=position.id,
                token_address=position.token_address,
                reason=reason,
                attempts=attempts,
                error=error or "unknown error",
            )
        )

    async def _execute_partial_sell(
        self, position: Position, price: float, level: PartialTakeProfitLevel
    ) -> None:
        amount = position.amount * level.sell_percentage / 100
        reason = f"PARTIAL_TP_{level.percentage:g}"
        if amount <= 0:
            return

        logger.info(
            "[Positions] %s alcanza +%.2f%%: %s, vendiendo %.2f%% (%s tokens)",
            position.label,
            position.pnl_percent(price),
            reason,
            level.sell_percentage,
            amount,
        )

        result = await self._sell(position, amount, price, self.config.sell_slippage_percent)
        if not result.success:
            # El nivel sigue pendiente y se reintenta en el siguiente tick
            self._record_sell_failure(position, reason, result.error)
            return

        with self._lock:
            if not position.is_open:
                return
            position.amount -= amount
            position.executed_partial_levels.append(level.percentage)
            position.partial_sells.append(
                PartialSell(
                    level=level.percentage,
                    amount=amount,
                    price=price,
                    sol_received=result.out_amount,
                    tx_reference=result.tx_reference,
                )
            )
            remaining = position.amount
            self._persist()

        self.events.publish(
            PartialSellExecuted(
                position_id=position.id,
                token_address=position.token_address,
                amount=amount,
                amount_remaining=remaining,
                price=price,
                reason=reason,
                tx_reference=result.tx_reference,
                amount_sol=result.out_amount,
            )
        )

    async def _execute_exit(
        self, position: Position, price: float, reason: CloseReason
    ) -> None:
        slippage = (
            self.config.stop_loss_slippage_percent
            if reason == CloseReason.STOP_LOSS
            else self.config.sell_slippage_percent
        )
        logger.info(
            "[Positions] %s dispara %s a %.10f SOL (PnL %.2f%%), vendiendo...",
            position.label,
            reason.value,
            price,
            position.pnl_percent(price),
        )

        result = await self._sell(position, position.amount, price, slippage)
        if not result.success:
            self._record_sell_failure(position, reason.value, result.error)
            return

        closed = self.close_position(
            position.id,
            price,
            reason,
            exit_tx=result.tx_reference,
            exit_amount_sol=result.out_amount,
        )
        if closed is None:
            return

        self.events.publish(
            SellExecuted(
                position_id=closed.id,
                token_address=closed.token_address,
                price=price,
                reason=reason.value,
                tx_reference=result.tx_reference,
                amount_sol=result.out_amount,
            )
        )
