# telegram_notifier.py
import html
import logging
from typing import Callable, List, Optional

from telegram import Bot
from telegram.error import TelegramError

from events import (
    EngineEvent,
    EventBus,
    PartialSellExecuted,
    PositionClosed,
    PositionCreated,
    SellFailed,
    TradeError,
    TraderStarted,
    TraderStopped,
)
from models import NotificationSettings, Position, Strategy

logger = logging.getLogger(__name__)

StrategyLookup = Callable[[str], Optional[Strategy]]
PositionLookup = Callable[[str], Optional[Position]]


def _esc(value: object) -> str:
    return html.escape(str(value))


def format_position_opened(position: Position) -> str:
    return (
        "🟢 <b>Posición abierta</b>\n\n"
        f"Token: <code>{_esc(position.label)}</code>\n"
        f"Mint: <code>{_esc(position.token_address)}</code>\n"
        f"Entrada: <code>{position.entry_price:.10f} SOL</code>\n"
        f"Size: <code>{position.initial_investment:.4f} SOL</code>\n"
        f"SL / TP / TS: <code>{position.stop_loss} / {position.take_profit} / {position.trailing_stop}</code>"
    )


def format_position_closed(position: Position) -> str:
    profit = position.profit or 0.0
    icon = "✅" if profit >= 0 else "🔴"
    reason = position.close_reason.value if position.close_reason else "?"
    return (
        f"{icon} <b>Posición cerrada</b> ({_esc(reason)})\n\n"
        f"Token: <code>{_esc(position.label)}</code>\n"
        f"Entrada: <code>{position.entry_price:.10f} SOL</code>\n"
        f"Salida: <code>{(position.exit_price or 0.0):.10f} SOL</code>\n"
        f"PnL: <code>{profit:+.2f}%</code>"
    )


def format_partial_sell(event: PartialSellExecuted) -> str:
    return (
        f"💰 <b>Venta parcial</b> ({_esc(event.reason)})\n\n"
        f"Mint: <code>{_esc(event.token_address)}</code>\n"
        f"Precio: <code>{event.price:.10f} SOL</code>\n"
        f"Vendido: <code>{event.amount:.4f}</code> → <code>{(event.amount_sol or 0.0):.4f} SOL</code>\n"
        f"Restante: <code>{event.amount_remaining:.4f}</code>"
    )


def format_sell_failed(event: SellFailed) -> str:
    return (
        "⚠️ <b>Venta fallida</b>\n\n"
        f"Mint: <code>{_esc(event.token_address)}</code>\n"
        f"Motivo: <code>{_esc(event.reason)}</code>\n"
        f"Intentos: <code>{event.attempts}</code>\n"
        f"Error: {_esc(event.error)}"
    )


def format_trade_error(event: TradeError) -> str:
    return (
        f"❌ <b>Error de compra</b> [{_esc(event.strategy.name)}]\n\n"
        f"Token: <code>{_esc(event.opportunity.metadata.symbol)}</code>\n"
        f"Error: {_esc(event.error)}"
    )


class TelegramNotifier:
    """
    Reenvía eventos del motor a un chat de Telegram.

    Las posiciones y errores ligados a una estrategia respetan sus
    `notifications` (on_entry / on_exit / on_error); las manuales siempre
    se notifican.
    """

    def __init__(
        self,
        bot: Bot,
        chat_id: int,
        events: EventBus,
        *,
        strategy_lookup: Optional[StrategyLookup] = None,
        position_lookup: Optional[PositionLookup] = None,
    ) -> None:
        self.bot = bot
        self.chat_id = chat_id
        self.events = events
        self.strategy_lookup = strategy_lookup
        self.position_lookup = position_lookup
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self) -> None:
        for event_type in (
            PositionCreated,
            PositionClosed,
            PartialSellExecuted,
            SellFailed,
            TradeError,
            TraderStarted,
            TraderStopped,
        ):
            self._unsubscribers.append(self.events.subscribe(event_type, self.handle))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()

    # ----------------- gating -----------------

    def _settings_for(self, strategy_id: Optional[str]) -> NotificationSettings:
        if strategy_id is None or self.strategy_lookup is None:
            return NotificationSettings()
        strategy = self.strategy_lookup(strategy_id)
        if strategy is None:
            return NotificationSettings()
        return strategy.config.notifications

    def _strategy_of(self, position_id: str) -> Optional[str]:
        position = self.position_lookup(position_id) if self.position_lookup else None
        return position.strategy_id if position else None

    def render(self, event: EngineEvent) -> Optional[str]:
        """Texto a enviar para `event`, o None si no toca notificarlo."""
        if isinstance(event, PositionCreated):
            if self._settings_for(event.position.strategy_id).on_entry:
                return format_position_opened(event.position)
            return None

        if isinstance(event, PositionClosed):
            if self._settings_for(event.position.strategy_id).on_exit:
                return format_position_closed(event.position)
            return None

        if isinstance(event, PartialSellExecuted):
            if self._settings_for(self._strategy_of(event.position_id)).on_exit:
                return format_partial_sell(event)
            return None

        if isinstance(event, SellFailed):
            if self._settings_for(self._strategy_of(event.position_id)).on_error:
                return format_sell_failed(event)
            return None

        if isinstance(event, TradeError):
            if event.strategy.config.notifications.on_error:
                return format_trade_error(event)
            return None

        if isinstance(event, TraderStarted):
            return "🚀 <b>AutoTrader iniciado</b>"
        if isinstance(event, TraderStopped):
            return "🛑 <b>AutoTrader detenido</b>"
        return None

    # ----------------- envío -----------------

    async def handle(self, event: EngineEvent) -> None:
        text = self.render(event)
        if text is not None:
            await self.send(text)

    async def send(self, text: str) -> bool:
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode="HTML")
        except TelegramError as exc:
            logger.warning("[Telegram] Error enviando mensaje: %r", exc)
            return False
        return True
