# main.py
import asyncio
import logging
import signal
import threading
from typing import Optional

from dotenv import load_dotenv
from solana.rpc.async_api import AsyncClient
from telegram import Bot

from auto_trader import AutoTrader
from config import BotConfig, load_config
from discovery import FlintrDiscoveryFeed, SimulatedDiscoveryFeed
from events import EventBus
from flintr_client import FlintrClient
from health_server import build_server, create_app
from position_manager import PositionManager
from price_oracle import MarketPriceOracle
from risk_analyzer import RpcRiskScorer, TokenInspector
from storage import position_store, strategy_store
from swap_provider import JupiterSwapProvider, SimulatedSwapProvider
from telegram_notifier import TelegramNotifier
from trade_history import TradeHistoryRecorder

logger = logging.getLogger("main")


async def run(config: BotConfig) -> None:
    events = EventBus()

    oracle = MarketPriceOracle(
        dexscreener_url=config.dexscreener_api_url,
        jupiter_price_url=f"{config.jupiter_api_url.rstrip('/')}/price/v3",
        timeout=config.price_timeout_sec,
        simulate=config.simulate_prices,
    )

    # -------------------------------------------------------------------------
    # Swaps / descubrimiento / riesgo según el modo
    # -------------------------------------------------------------------------
    rpc: Optional[AsyncClient] = None
    flintr_feed: Optional[FlintrDiscoveryFeed] = None

    if config.is_simulation:
        swap_provider = SimulatedSwapProvider(
            oracle, failure_rate=config.sim_swap_failure_rate
        )
        discovery_feed = SimulatedDiscoveryFeed()
        risk_scorer = None
    else:
        rpc = AsyncClient(config.rpc_url)
        swap_provider = JupiterSwapProvider(config.rpc_url, rpc_client=rpc)
        risk_scorer = RpcRiskScorer(rpc)
        if config.flintr_api_key:
            flintr_feed = FlintrDiscoveryFeed(
                FlintrClient(api_key=config.flintr_api_key, platform_filter="pump.fun"),
                oracle,
                TokenInspector(rpc),
            )
        else:
            logger.warning("FLINTR_API_KEY no configurado: sin descubrimiento de tokens")
        discovery_feed = flintr_feed

    position_manager = PositionManager(
        config, oracle, swap_provider, position_store(config.data_dir), events
    )
    auto_trader = AutoTrader(
        config,
        position_manager,
        swap_provider,
        discovery_feed,
        risk_scorer,
        strategy_store(config.data_dir),
        events,
    )

    if not auto_trader.get_all_strategies():
        if config.is_simulation:
            auto_trader.add_strategy({"name": "Demo"})
        else:
            logger.warning("No hay estrategias configuradas en %s", config.data_dir)

    # -------------------------------------------------------------------------
    # Integraciones opcionales: Telegram, Postgres, health server
    # -------------------------------------------------------------------------
    bot: Optional[Bot] = None
    notifier: Optional[TelegramNotifier] = None
    if config.telegram_bot_token and config.telegram_chat_id:
        bot = Bot(token=config.telegram_bot_token)
        await bot.initialize()
        notifier = TelegramNotifier(
            bot,
            config.telegram_chat_id,
            events,
            strategy_lookup=auto_trader.get_strategy,
            position_lookup=position_manager.get_position,
        )
        notifier.attach()
    else:
        logger.info("Telegram no configurado, notificaciones desactivadas")

    recorder: Optional[TradeHistoryRecorder] = None
    if config.database_url:
        recorder = TradeHistoryRecorder(config.database_url, events)
        await recorder.connect()

    # uvicorn en su propio hilo: así no toca las señales del loop principal
    server = build_server(
        create_app(position_manager, auto_trader, mode=config.mode), config.health_port
    )
    health_thread = threading.Thread(target=server.run, name="health-server", daemon=True)
    health_thread.start()

    # -------------------------------------------------------------------------
    # Arranque y espera hasta SIGINT / SIGTERM
    # -------------------------------------------------------------------------
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: nos quedamos con KeyboardInterrupt
            pass

    try:
        position_manager.start()
        if flintr_feed is not None:
            flintr_feed.start()

        if auto_trader.start():
            logger.info("✅ Motor arrancado en modo %s", config.mode)
        else:
            logger.error("AutoTrader no arrancó; solo se monitorizan posiciones")

        await stop_event.wait()
        logger.info("⏹️  Señal de parada recibida, cerrando...")
    finally:
        await auto_trader.aclose()
        await position_manager.stop()
        if flintr_feed is not None:
            flintr_feed.stop()

        await events.drain()
        if notifier is not None:
            notifier.detach()
        if recorder is not None:
            await recorder.close()
        if bot is not None:
            await bot.shutdown()

        await oracle.aclose()
        if isinstance(swap_provider, JupiterSwapProvider):
            await swap_provider.aclose()

        server.should_exit = True
        health_thread.join(timeout=5)
        logger.info("Bot detenido")


def main() -> None:
    # Localmente lee .env; en Railway usas variables de entorno directas
    load_dotenv()

    config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    if not config.is_simulation and not config.wallet_private_key:
        logger.warning("MODE=real sin WALLET_PRIVATE_KEY: el AutoTrader no arrancará")

    try:
        asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("⏹️  Bot detenido por el usuario (Ctrl+C).")


if __name__ == "__main__":
    main()
