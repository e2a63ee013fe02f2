# events.py
"""
Eventos tipados del motor y un bus de observadores muy simple.

Los consumidores (notificador de Telegram, histórico en Postgres, etc.) se
suscriben a una clase de evento concreta o a `EngineEvent` para recibirlos
todos. Los handlers pueden ser funciones normales o corutinas; las corutinas
se lanzan como tareas en el loop activo.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, List, Optional, Set, Type

from models import Opportunity, Position, Strategy, SwapResult

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


@dataclass(frozen=True)
class EngineEvent:
    name: ClassVar[str] = "event"


# ----------------- PositionManager -----------------

@dataclass(frozen=True)
class PositionCreated(EngineEvent):
    name: ClassVar[str] = "positionCreated"
    position: Position


@dataclass(frozen=True)
class PositionUpdated(EngineEvent):
    name: ClassVar[str] = "positionUpdated"
    position: Position


@dataclass(frozen=True)
class PositionClosed(EngineEvent):
    name: ClassVar[str] = "positionClosed"
    position: Position


@dataclass(frozen=True)
class SellExecuted(EngineEvent):
    name: ClassVar[str] = "sellExecuted"
    position_id: str
    token_address: str
    price: float
    reason: str
    tx_reference: Optional[str] = None
    amount_sol: Optional[float] = None


@dataclass(frozen=True)
class SellFailed(EngineEvent):
    name: ClassVar[str] = "sellFailed"
    position_id: str
    token_address: str
    reason: str
    attempts: int
    error: str


@dataclass(frozen=True)
class PartialSellExecuted(EngineEvent):
    name: ClassVar[str] = "partialSellExecuted"
    position_id: str
    token_address: str
    amount: float
    amount_remaining: float
    price: float
    reason: str
    tx_reference: Optional[str] = None
    amount_sol: Optional[float] = None


# ----------------- AutoTrader -----------------

@dataclass(frozen=True)
class StrategyCreated(EngineEvent):
    name: ClassVar[str] = "strategyCreated"
    strategy: Strategy


@dataclass(frozen=True)
class StrategyUpdated(EngineEvent):
    name: ClassVar[str] = "strategyUpdated"
    strategy: Strategy


@dataclass(frozen=True)
class StrategyDeleted(EngineEvent):
    name: ClassVar[str] = "strategyDeleted"
    strategy_id: str


@dataclass(frozen=True)
class TraderStarted(EngineEvent):
    name: ClassVar[str] = "started"


@dataclass(frozen=True)
class TraderStopped(EngineEvent):
    name: ClassVar[str] = "stopped"


@dataclass(frozen=True)
class TokenDiscovered(EngineEvent):
    name: ClassVar[str] = "tokenDiscovered"
    strategy: Strategy
    opportunity: Opportunity


@dataclass(frozen=True)
class TradeExecuted(EngineEvent):
    name: ClassVar[str] = "tradeExecuted"
    strategy: Strategy
    opportunity: Opportunity
    position: Position
    swap: SwapResult


@dataclass(frozen=True)
class TradeError(EngineEvent):
    name: ClassVar[str] = "tradeError"
    strategy: Strategy
    opportunity: Opportunity
    error: str


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: Dict[Type[EngineEvent], List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(
        self, event_type: Type[EngineEvent], handler: Handler
    ) -> Callable[[], None]:
        """Registra `handler` y devuelve una función para desuscribirlo."""
        with self._lock:
            self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers[event_type]:
                    self._handlers[event_type].remove(handler)

        return _unsubscribe

    def publish(self, event: EngineEvent) -> None:
        with self._lock:
            handlers: List[Handler] = []
            for cls in type(event).__mro__:
                handlers.extend(self._handlers.get(cls, ()))

        for handler in handlers:
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception:
                # Un suscriptor roto no debe tumbar el tick que emite el evento.
                logger.exception("[EventBus] Error en handler de %s", event.name)

    def _schedule(self, awaitable: Any, event: EngineEvent) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "[EventBus] Handler async para %s sin event loop activo, descartado",
                event.name,
            )
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[EventBus] Handler async falló: %r", exc)

    async def drain(self) -> None:
        """Espera a que terminen los handlers async pendientes."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
