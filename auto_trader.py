# auto_trader.py
from __future__ import annotations

import asyncio
import contextlib
import logging
import random
import threading
import time
from collections import OrderedDict, defaultdict
from typing import Any, Awaitable, Dict, List, Mapping, Optional, Set

from config import BotConfig
from discovery import DiscoveryFeed
from events import (
    EventBus,
    PositionClosed,
    StrategyCreated,
    StrategyDeleted,
    StrategyUpdated,
    TokenDiscovered,
    TradeError,
    TradeExecuted,
    TraderStarted,
    TraderStopped,
)
from models import (
    Opportunity,
    Position,
    PositionOptions,
    Strategy,
    StrategyConfig,
    SwapDirection,
    SwapResult,
    TokenMetadata,
    new_id,
)
from position_manager import PositionManager
from risk_analyzer import RiskScorer
from scheduler import PeriodicTask
from storage import Store
from swap_provider import SwapProvider

logger = logging.getLogger(__name__)

# Por debajo de este % del tamaño máximo no merece la pena abrir posición
MIN_SIZE_FRACTION = 0.5

# Límites de memoria por estrategia mientras está llena
MAX_QUEUED_OPPORTUNITIES = 50
MAX_REMEMBERED_TOKENS = 1000


class AutoTrader:
    """
    Trading autónomo por estrategias.

    Dos tareas periódicas independientes:
      - escaneo: pide candidatos al DiscoveryFeed y los encola por estrategia
        si pasan sus filtros (liquidez, edad, riesgo, holders, ...);
      - ejecución: por cada estrategia activa con hueco, consume la oportunidad
        más reciente y aplica el control de presupuesto antes de comprar.

    Las posiciones se abren siempre a través del PositionManager, que se
    encarga de cerrarlas por SL / TP / trailing.
    """

    def __init__(
        self,
        config: BotConfig,
        position_manager: Optional[PositionManager],
        swap_provider: Optional[SwapProvider],
        discovery_feed: Optional[DiscoveryFeed],
        risk_scorer: Optional[RiskScorer],
        store: Store[Strategy],
        events: EventBus,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config
        self.position_manager = position_manager
        self.swap_provider = swap_provider
        self.discovery_feed = discovery_feed
        self.risk_scorer = risk_scorer
        self.store = store
        self.events = events
        self._rng = rng or random.Random()

        self._lock = threading.RLock()
        self._apply_lock = asyncio.Lock()
        self._strategies: Dict[str, Strategy] = {s.id: s for s in store.load()}
        # strategy_id -> cola de oportunidades / tokens ya encolados (mint -> created_at)
        self._opportunities: Dict[str, List[Opportunity]] = defaultdict(list)
        self._queued_tokens: Dict[str, "OrderedDict[str, float]"] = defaultdict(OrderedDict)

        self.running = False
        self._scan_task = PeriodicTask(
            "opportunity-scan",
            config.scan_interval_sec,
            self.scan_for_trading_opportunities,
        )
        self._trade_task = PeriodicTask(
            "strategy-executor",
            config.trade_interval_sec,
            self._trade_tick,
        )
        self._passes: Set[asyncio.Task] = set()

        self._unsubscribe = events.subscribe(PositionClosed, self._on_position_closed)
        logger.info("[AutoTrader] %d estrategias cargadas", len(self._strategies))

    # -------------------------------------------------------------------------
    # Estrategias
    # -------------------------------------------------------------------------

    def add_strategy(self, data: Optional[Mapping[str, Any]] = None) -> Strategy:
        """
        Crea una estrategia. Acepta `name` y los campos de config, bien en
        plano o bajo la clave `config`; lo que falte toma su valor por defecto.
        """
        values = dict(data or {})
        name = values.pop("name", None)
        raw_config = values.pop("config", None)
        source = raw_config if raw_config is not None else values

        if isinstance(source, StrategyConfig):
            strategy_config = source
        else:
            strategy_config = StrategyConfig.from_dict(source)

        with self._lock:
            strategy = Strategy(
                id=new_id(),
                name=name or f"Strategy {len(self._strategies) + 1}",
                config=strategy_config,
            )
            self._strategies[strategy.id] = strategy
            self._persist()

        logger.info("[AutoTrader] Estrategia creada: %s (%s)", strategy.name, strategy.id)
        self.events.publish(StrategyCreated(strategy))

        if self.running:
            self._spawn(self._run_pass(only=strategy.id))
        return strategy

    def get_strategy(self, strategy_id: str) -> Optional[Strategy]:
        with self._lock:
            return self._strategies.get(strategy_id)

    def get_all_strategies(self) -> List[Strategy]:
        with self._lock:
            return list(self._strategies.values())

    def get_opportunities(self, strategy_id: str) -> List[Opportunity]:
        with self._lock:
            return list(self._opportunities.get(strategy_id, []))

    def update_strategy(
        self, strategy_id: str, updates: Mapping[str, Any]
    ) -> Optional[Strategy]:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                logger.warning("[AutoTrader] update_strategy: %s no existe", strategy_id)
                return None

            for key, value in updates.items():
                if key == "config":
                    if isinstance(value, StrategyConfig):
                        strategy.config = value
                    else:
                        strategy.config = strategy.config.merged(value or {})
                elif key in ("name", "enabled"):
                    setattr(strategy, key, value)
                else:
                    logger.warning("[AutoTrader] Campo ignorado en update: %s", key)

            self._persist()

        self.events.publish(StrategyUpdated(strategy))
        return strategy

    def delete_strategy(self, strategy_id: str) -> bool:
        with self._lock:
            if self._strategies.pop(strategy_id, None) is None:
                logger.warning("[AutoTrader] delete_strategy: %s no existe", strategy_id)
                return False
            self._opportunities.pop(strategy_id, None)
            self._queued_tokens.pop(strategy_id, None)
            self._persist()

        logger.info("[AutoTrader] Estrategia eliminada: %s", strategy_id)
        self.events.publish(StrategyDeleted(strategy_id))
        return True

    def _enabled_strategies(self, only: Optional[str] = None) -> List[Strategy]:
        with self._lock:
            return [
                s
                for s in self._strategies.values()
                if s.enabled and (only is None or s.id == only)
            ]

    def _persist(self) -> bool:
        with self._lock:
            snapshot = list(self._strategies.values())
        ok = self.store.save(snapshot)
        if not ok:
            logger.error("[AutoTrader] No se pudieron guardar las estrategias")
        return ok

    # -------------------------------------------------------------------------
    # Ciclo de vida
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        if self.running:
            return True

        missing = [
            name
            for name, value in (
                ("position_manager", self.position_manager),
                ("swap_provider", self.swap_provider),
                ("discovery_feed", self.discovery_feed),
            )
            if value is None
        ]
        if not self.config.is_simulation and not self.config.wallet_private_key:
            missing.append("wallet")
        if missing:
            logger.error("[AutoTrader] No se puede iniciar, faltan: %s", ", ".join(missing))
            return False

        self.running = True
        self._scan_task.start()
        self._trade_task.start()
        self._spawn(self._run_pass())

        logger.info(
            "[AutoTrader] Iniciado (escaneo cada %.0fs, ejecución cada %.0fs)",
            self._scan_task.interval_sec,
            self._trade_task.interval_sec,
        )
        self.events.publish(TraderStarted())
        return True

    async def stop(self) -> None:
        """Para las tareas y espera a que terminen. Idempotente."""
        if not self.running:
            return
        self.running = False

        await self._scan_task.stop()
        await self._trade_task.stop()
        for task in list(self._passes):
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        logger.info("[AutoTrader] Detenido")
        self.events.publish(TraderStopped())

    async def aclose(self) -> None:
        await self.stop()
        self._unsubscribe()

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._passes.add(task)
        task.add_done_callback(self._passes.discard)

    async def _run_pass(self, only: Optional[str] = None) -> None:
        try:
            await self.scan_for_trading_opportunities()
            await self.execute_strategies(only=only)
        except Exception:
            logger.exception("[AutoTrader] Error en pasada inmediata")

    async def _trade_tick(self) -> None:
        await self.execute_strategies()
        await self.manage_positions()

    # -------------------------------------------------------------------------
    # Escaneo
    # -------------------------------------------------------------------------

    async def scan_for_trading_opportunities(self) -> None:
        if not self.running or self.discovery_feed is None:
            return

        strategies = self._enabled_strategies()
        if not strategies:
            logger.debug("[AutoTrader] Sin estrategias activas que escanear")
            return

        try:
            candidates = await self.discovery_feed.fetch_candidates()
        except Exception:
            logger.exception("[AutoTrader] Error obteniendo candidatos")
            return

        now = time.time()
        for strategy in strategies:
            self._prune_queue(strategy, now)

        for token in candidates:
            if token.risk_level is None and self.risk_scorer is not None:
                try:
                    report = await self.risk_scorer.score(token.address)
                except Exception:
                    logger.exception("[AutoTrader] Error evaluando riesgo de %s, se omite", token.symbol)
                    continue
                token.risk_level = report.risk_level
                token.warnings = list(report.warnings)

            for strategy in strategies:
                rejection = self._rejection_reason(strategy.config, token, now)
                if rejection is not None:
                    logger.debug(
                        "[AutoTrader] %s no cumple %s: %s", token.symbol, strategy.name, rejection
                    )
                    continue
                self._enqueue(strategy, token)

    @staticmethod
    def _rejection_reason(
        config: StrategyConfig, token: TokenMetadata, now: float
    ) -> Optional[str]:
        filters = config.token_filters
        age = token.age_hours(now)

        if token.liquidity_sol < config.min_liquidity_sol:
            return f"liquidez {token.liquidity_sol:.2f} < {config.min_liquidity_sol}"
        if age > filters.max_age_hours:
            return f"edad {age:.2f}h > {filters.max_age_hours}h"
        if age < filters.min_age_hours:
            return f"edad {age:.2f}h < {filters.min_age_hours}h"
        if token.risk_level is None or token.risk_level > config.max_risk_level:
            return f"riesgo {token.risk_level} > {config.max_risk_level}"
        if token.holder_count is None or token.holder_count < config.min_holders:
            return f"holders {token.holder_count} < {config.min_holders}"
        if filters.exclude_nsfw and token.is_nsfw:
            return "nsfw"
        if filters.exclude_meme_tokens and token.is_memecoin:
            return "memecoin"
        return None

    def _enqueue(self, strategy: Strategy, token: TokenMetadata) -> None:
        with self._lock:
            if strategy.id not in self._strategies:
                return
            remembered = self._queued_tokens[strategy.id]
            if token.address in remembered:
                return
            remembered[token.address] = token.created_at
            while len(remembered) > MAX_REMEMBERED_TOKENS:
                remembered.popitem(last=False)

            opportunity = Opportunity(token_address=token.address, metadata=token)
            queue = self._opportunities[strategy.id]
            queue.append(opportunity)
            if len(queue) > MAX_QUEUED_OPPORTUNITIES:
                # Se descartan las más antiguas
                queue.sort(key=lambda o: o.discovered_at)
                del queue[: len(queue) - MAX_QUEUED_OPPORTUNITIES]

        logger.info(
            "[AutoTrader] Oportunidad para %s: %s (%s) liq=%.2f SOL riesgo=%s",
            strategy.name,
            token.name,
            token.symbol,
            token.liquidity_sol,
            token.risk_level,
        )
        self.events.publish(TokenDiscovered(strategy=strategy, opportunity=opportunity))

    def _prune_queue(self, strategy: Strategy, now: float) -> None:
        """
        Olvida oportunidades y tokens que ya superan `max_age_hours`: no pueden
        volver a pasar el filtro de edad.
        """
        max_age_sec = strategy.config.token_filters.max_age_hours * 3600
        with self._lock:
            queue = self._opportunities.get(strategy.id)
            if queue:
                fresh = [o for o in queue if now - o.metadata.created_at <= max_age_sec]
                if len(fresh) != len(queue):
                    logger.debug(
                        "[AutoTrader] %s: %d oportunidades caducadas",
                        strategy.name,
                        len(queue) - len(fresh),
                    )
                    self._opportunities[strategy.id] = fresh

            remembered = self._queued_tokens.get(strategy.id)
            if remembered:
                for address in [a for a, created in remembered.items() if now - created > max_age_sec]:
                    del remembered[address]

    # -------------------------------------------------------------------------
    # Ejecución
    # -------------------------------------------------------------------------

    async def execute_strategies(self, only: Optional[str] = None) -> None:
        if not self.running:
            return

        strategies = self._enabled_strategies(only)
        if not strategies:
            logger.debug("[AutoTrader] Sin estrategias activas que ejecutar")
            return

        for strategy in strategies:
            try:
                await self._execute_strategy(strategy)
            except Exception:
                logger.exception("[AutoTrader] Error ejecutando %s", strategy.name)

    async def _execute_strategy(self, strategy: Strategy) -> None:
        if self._capacity_problem(strategy) is not None:
            # La oportunidad se queda en cola hasta que haya hueco
            return

        self._prune_queue(strategy, time.time())
        with self._lock:
            queue = self._opportunities.get(strategy.id, [])
            pending = sorted(
                (o for o in queue if not o.processed),
                key=lambda o: o.discovered_at,
                reverse=True,
            )
            if not pending:
                return
            opportunity = pending[0]
            opportunity.processed = True
            self._opportunities[strategy.id] = [o for o in queue if not o.processed]

        await self.apply_strategy(strategy, opportunity)

    def _strategy_open_positions(self, strategy: Strategy) -> List[Position]:
        if self.position_manager is None:
            return []
        return [
            p for p in self.position_manager.get_open_positions() if p.strategy_id == strategy.id
        ]

    def _capacity_problem(self, strategy: Strategy) -> Optional[str]:
        cfg = strategy.config
        open_positions = self._strategy_open_positions(strategy)
        if len(open_positions) >= cfg.max_concurrent_positions:
            return f"máximo de posiciones ({len(open_positions)}/{cfg.max_concurrent_positions})"

        used = sum(p.initial_investment for p in open_positions)
        available = cfg.total_budget_sol - used
        if available < cfg.max_position_size_sol * MIN_SIZE_FRACTION:
            return f"presupuesto insuficiente ({available:.4f} SOL disponibles)"
        return None

    async def apply_strategy(
        self, strategy: Strategy, opportunity: Opportunity
    ) -> Optional[Position]:
        """
        Control de presupuesto y riesgo + compra. Devuelve la posición abierta
        o None si se aborta o la compra falla.
        """
        if self.position_manager is None or self.swap_provider is None:
            logger.error("[AutoTrader] apply_strategy sin position_manager/swap_provider")
            return None

        async with self._apply_lock:
            return await self._apply_strategy(strategy, opportunity)

    async def _apply_strategy(
        self, strategy: Strategy, opportunity: Opportunity
    ) -> Optional[Position]:
        cfg = strategy.config
        token = opportunity.metadata

        problem = self._capacity_problem(strategy)
        if problem is not None:
            logger.info("[AutoTrader] %s: %s, se omite %s", strategy.name, problem, token.symbol)
            return None

        # Puede llevar tiempo en cola: los filtros se vuelven a comprobar
        rejection = self._rejection_reason(cfg, token, time.time())
        if rejection is not None:
            logger.info(
                "[AutoTrader] %s: %s ya no cumple (%s), se descarta",
                strategy.name,
                token.symbol,
                rejection,
            )
            return None

        used = sum(p.initial_investment for p in self._strategy_open_positions(strategy))
        available = cfg.total_budget_sol - used

        if self.risk_scorer is not None:
            try:
                report = await self.risk_scorer.score(opportunity.token_address)
            except Exception:
                logger.exception("[AutoTrader] Error evaluando riesgo de %s, se omite", token.symbol)
                return None
            if report.risk_level > cfg.max_risk_level:
                logger.info(
                    "[AutoTrader] %s: riesgo actual de %s %.0f > %.0f, se omite",
                    strategy.name,
                    token.symbol,
                    report.risk_level,
                    cfg.max_risk_level,
                )
                return None

        factor = self._rng.uniform(0.5, 1.0)
        size = min(cfg.max_position_size_sol * factor, available)

        logger.info(
            "[AutoTrader] %s compra %s por %.4f SOL (disponible %.4f)",
            strategy.name,
            token.symbol,
            size,
            available,
        )

        try:
            result = await self.swap_provider.swap(
                SwapDirection.BUY,
                opportunity.token_address,
                size,
                self.config.buy_slippage_percent,
                price_hint=token.price_sol,
            )
        except Exception as exc:
            logger.exception("[AutoTrader] Excepción comprando %s", token.symbol)
            result = SwapResult.failure(repr(exc))

        if result.success and result.out_amount <= 0:
            result = SwapResult.failure("swap sin tokens recibidos")

        with self._lock:
            strategy.stats.total_trades += 1
            strategy.last_run = time.time()
            if result.success:
                strategy.stats.successful_trades += 1
            else:
                strategy.stats.failed_trades += 1
            self._persist()

        if not result.success:
            logger.warning(
                "[AutoTrader] Compra fallida de %s para %s: %s",
                token.symbol,
                strategy.name,
                result.error,
            )
            self.events.publish(
                TradeError(
                    strategy=strategy,
                    opportunity=opportunity,
                    error=result.error or "unknown error",
                )
            )
            return None

        spent = result.in_amount if result.in_amount > 0 else size
        position = self.position_manager.add_position(
            opportunity.token_address,
            spent / result.out_amount,
            result.out_amount,
            PositionOptions(
                stop_loss=cfg.stop_loss,
                take_profit=cfg.take_profit,
                trailing_stop=cfg.trailing_stop,
                max_hold_minutes=cfg.max_hold_minutes,
                partial_take_profit_levels=cfg.partial_take_profit_levels,
                strategy_id=strategy.id,
                initial_investment=size,
                token_name=token.name,
                token_symbol=token.symbol,
                simulated=result.simulated,
                entry_tx=result.tx_reference,
            ),
        )
        self.events.publish(
            TradeExecuted(
                strategy=strategy,
                opportunity=opportunity,
                position=position,
                swap=result,
            )
        )
        return position

    async def manage_positions(self) -> None:
        """
        Punto de extensión para salidas específicas de estrategia. Las salidas
        genéricas (SL / TP / trailing) ya las hace el PositionManager.
        """
        if not self.running or self.position_manager is None:
            return

        for position in self.position_manager.get_open_positions():
            if position.strategy_id is None:
                continue
            strategy = self.get_strategy(position.strategy_id)
            if strategy is None:
                logger.debug(
                    "[AutoTrader] Posición %s de estrategia eliminada %s",
                    position.id,
                    position.strategy_id,
                )
            elif not strategy.enabled:
                logger.debug(
                    "[AutoTrader] Posición %s de estrategia desactivada %s",
                    position.id,
                    strategy.name,
                )

    # -------------------------------------------------------------------------
    # Estadísticas
    # -------------------------------------------------------------------------

    def _on_position_closed(self, event: PositionClosed) -> None:
        position = event.position
        if position.strategy_id is None or position.profit is None:
            return

        if position.partial_sells and position.exit_amount_sol is not None:
            received = sum(s.sol_received for s in position.partial_sells) + position.exit_amount_sol
            realised = received - position.initial_investment
        else:
            realised = position.initial_investment * position.profit / 100.0

        with self._lock:
            strategy = self._strategies.get(position.strategy_id)
            if strategy is None:
                return
            strategy.stats.profit += realised
            self._persist()

    def get_performance_stats(self) -> Dict[str, Any]:
        with self._lock:
            strategies = list(self._strategies.values())

        total = sum(s.stats.total_trades for s in strategies)
        successful = sum(s.stats.successful_trades for s in strategies)
        return {
            "strategy_count": len(strategies),
            "active_strategies": sum(1 for s in strategies if s.enabled),
            "total_trades": total,
            "successful_trades": successful,
            "failed_trades": sum(s.stats.failed_trades for s in strategies),
            "win_rate": successful / total * 100 if total > 0 else 0,
            "total_profit": sum(s.stats.profit for s in strategies),
        }
