# config.py
import os
from dataclasses import dataclass


def _get_env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value


def _get_env_float(name: str, default: float) -> float:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_env_int(name: str, default: int) -> int:
    v = _get_env(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_env_bool(name: str, default: bool = False) -> bool:
    v = _get_env(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


@dataclass
class BotConfig:
    mode: str
    log_level: str
    data_dir: str

    telegram_bot_token: str
    telegram_chat_id: int | None

    wallet_private_key: str | None
    rpc_url: str
    flintr_api_key: str

    jupiter_api_url: str
    dexscreener_api_url: str
    price_timeout_sec: float

    database_url: str | None
    health_port: int

    # periodos de los bucles (segundos)
    position_check_interval_sec: float
    scan_interval_sec: float
    trade_interval_sec: float

    # slippage en porcentaje (2.0 = 2%)
    buy_slippage_percent: float
    sell_slippage_percent: float
    stop_loss_slippage_percent: float

    # solo para modo simulación / demo
    simulate_prices: bool
    sim_swap_failure_rate: float

    @property
    def is_simulation(self) -> bool:
        return self.mode == "simulation"


def load_config() -> BotConfig:
    mode = _get_env("MODE", "simulation").lower()
    if mode not in ("simulation", "real"):
        mode = "simulation"

    telegram_chat_id_str = _get_env("TELEGRAM_CHAT_ID")
    try:
        telegram_chat_id = int(telegram_chat_id_str) if telegram_chat_id_str else None
    except ValueError:
        telegram_chat_id = None

    return BotConfig(
        mode=mode,
        log_level=_get_env("LOG_LEVEL", "INFO"),
        data_dir=_get_env("DATA_DIR", "data"),

        telegram_bot_token=_get_env("TELEGRAM_BOT_TOKEN", "") or "",
        telegram_chat_id=telegram_chat_id,

        wallet_private_key=_get_env("WALLET_PRIVATE_KEY"),
        rpc_url=_get_env("RPC_URL", "https://api.mainnet-beta.solana.com"),
        flintr_api_key=_get_env("FLINTR_API_KEY", "") or "",

        jupiter_api_url=_get_env("JUPITER_API_URL", "https://lite-api.jup.ag"),
        dexscreener_api_url=_get_env(
            "DEXSCREENER_API_URL", "https://api.dexscreener.com/latest/dex"
        ),
        price_timeout_sec=_get_env_float("PRICE_TIMEOUT_SEC", 8.0),

        database_url=_get_env("DATABASE_URL"),
        health_port=_get_env_int("HEALTH_PORT", 8080),

        position_check_interval_sec=_get_env_float("POSITION_CHECK_INTERVAL_SEC", 10.0),
        scan_interval_sec=_get_env_float("SCAN_INTERVAL_SEC", 60.0),
        trade_interval_sec=_get_env_float("TRADE_INTERVAL_SEC", 30.0),

        buy_slippage_percent=_get_env_float("BUY_SLIPPAGE_PERCENT", 5.0),
        sell_slippage_percent=_get_env_float("SELL_SLIPPAGE_PERCENT", 2.0),
        stop_loss_slippage_percent=_get_env_float("STOP_LOSS_SLIPPAGE_PERCENT", 5.0),

        # En simulación el precio sintético está activo por defecto;
        # en real hay que pedirlo explícitamente.
        simulate_prices=_get_env_bool("SIMULATE_PRICES", mode == "simulation"),
        sim_swap_failure_rate=_get_env_float("SIM_SWAP_FAILURE_RATE", 0.1),
    )
