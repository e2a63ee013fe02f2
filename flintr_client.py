# flintr_client.py
import json
import logging
import threading
from typing import Any, Callable, Dict, Optional

from websocket import WebSocketApp

logger = logging.getLogger(__name__)

FlintrCallback = Callable[[Dict[str, Any]], None]


class FlintrClient:
    """
    Cliente WebSocket para Flintr (señales de mint / graduation de pump.fun).

    Corre en su propio hilo (`start_in_thread`); los callbacks se invocan
    desde ese hilo, así que quien los reciba debe ser thread-safe.
    """

    def __init__(
        self,
        api_key: str,
        *,
        platform_filter: str = "pump.fun",
        on_mint: Optional[FlintrCallback] = None,
        on_graduation: Optional[FlintrCallback] = None,
        debug: bool = False,
        reconnect_delay: float = 5.0,
    ) -> None:
        if not api_key:
            raise RuntimeError("FLINTR_API_KEY vacío")

        self.api_key = api_key
        self.ws_url = f"wss://api-v1.flintr.io/sub?token={self.api_key}"

        self.platform_filter = platform_filter
        self.on_mint = on_mint
        self.on_graduation = on_graduation

        self.debug = debug
        self.reconnect_delay = reconnect_delay

        self._stop = threading.Event()
        self._ws_app: Optional[WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None

    # ----------------- API pública -----------------

    def start_in_thread(self) -> threading.Thread:
        if self._thread is not None and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(
            target=self.run_forever, name="flintr-ws", daemon=True
        )
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        self._stop.set()
        if self._ws_app is not None:
            self._ws_app.close()

    def run_forever(self) -> None:
        """Loop con reconexión automática hasta que se llame a stop()."""
        while not self._stop.is_set():
            logger.info("[Flintr] Conectando a wss://api-v1.flintr.io/sub ...")

            self._ws_app = WebSocketApp(
                self.ws_url,
                on_open=self._on_open,
                on_message=self._on_message,
                on_error=self._on_error,
                on_close=self._on_close,
            )

            self._ws_app.run_forever(ping_interval=30, ping_timeout=10)

            if self._stop.is_set():
                break
            logger.warning(
                "[Flintr] Desconectado. Reintentando en %.1fs...", self.reconnect_delay
            )
            self._stop.wait(self.reconnect_delay)

        logger.info("[Flintr] Cliente detenido")

    # ----------------- Callbacks internos -----------------

    def _on_open(self, ws: WebSocketApp) -> None:
        logger.info("[Flintr] ✅ Conectado → escuchando señales…")

    def _on_message(self, ws: WebSocketApp, message: str) -> None:
        try:
            data = json.loads(message)
        except json.JSONDecodeError:
            logger.warning("[Flintr] ⚠️ JSON inválido: %s", message[:200])
            return

        event = data.get("event") or {}
        event_class = event.get("class")

        # Ping keep-alive
        if event_class == "ping":
            if self.debug:
                logger.debug("[Flintr] 🔁 Ping: %s", data.get("time"))
            return

        if event_class == "token":
            self._handle_token_event(data)
            return

        if self.debug:
            logger.debug("[Flintr] Evento ignorado: %s", data)

    def _on_error(self, ws: WebSocketApp, error: Exception) -> None:
        logger.warning("[Flintr] ⚠️ Error WebSocket: %r", error)

    def _on_close(
        self,
        ws: WebSocketApp,
        close_status_code: Optional[int],
        close_msg: Optional[str],
    ) -> None:
        logger.warning(
            "[Flintr] 🔴 Cerrado (code=%s, msg=%s)", close_status_code, close_msg
        )

    # ----------------- Eventos de token -----------------

    def _handle_token_event(self, data: Dict[str, Any]) -> None:
        event = data.get("event") or {}
        platform = event.get("platform")
        event_type = event.get("type")

        if self.platform_filter and platform != self.platform_filter:
            return

        if event_type == "mint":
            self._dispatch("MINT", self.on_mint, data)
        elif event_type == "graduation":
            self._dispatch("GRADUATION", self.on_graduation, data)
        elif self.debug:
            logger.debug("[Flintr] Token event ignorado: %s %s", platform, event_type)

    def _dispatch(
        self, kind: str, callback: Optional[FlintrCallback], data: Dict[str, Any]
    ) -> None:
        payload = data.get("data") or {}
        meta = payload.get("metaData") or {}
        logger.info(
            "[Flintr] %s %s → %s (%s) mint=%s",
            kind,
            self.platform_filter or "*",
            meta.get("symbol") or "",
            meta.get("name") or "",
            payload.get("mint"),
        )

        if callback is None:
            return
        try:
            callback(data)
        except Exception:
            logger.exception("[Flintr] Error en callback %s", kind.lower())
