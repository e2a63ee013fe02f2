# models.py
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


class PositionStatus(str, Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class CloseReason(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TRAILING_STOP = "TRAILING_STOP"
    MAX_HOLD_TIME = "MAX_HOLD_TIME"
    MANUAL = "MANUAL"


class SwapDirection(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


def new_id() -> str:
    """ID único y ordenable por creación: milisegundos + sufijo aleatorio."""
    return f"{int(time.time() * 1000):013d}-{uuid.uuid4().hex[:8]}"


def _known_fields(cls: Any, data: Mapping[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


# -----------------------------------------------------------------------------
# Posiciones
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class PartialTakeProfitLevel:
    percentage: float       # % de beneficio que dispara el nivel
    sell_percentage: float  # % de la cantidad restante que se vende


# Al 30% vende 20%, al 50% vende 30%, al 100% vende 40%
DEFAULT_PARTIAL_TAKE_PROFIT_LEVELS: Tuple[PartialTakeProfitLevel, ...] = (
    PartialTakeProfitLevel(30, 20),
    PartialTakeProfitLevel(50, 30),
    PartialTakeProfitLevel(100, 40),
)


def coerce_levels(value: Any) -> Tuple[PartialTakeProfitLevel, ...]:
    """Lista de niveles (dataclasses o dicts) -> tupla de PartialTakeProfitLevel."""
    levels = []
    for item in value or ():
        if isinstance(item, PartialTakeProfitLevel):
            levels.append(item)
        elif isinstance(item, Mapping):
            levels.append(PartialTakeProfitLevel(**_known_fields(PartialTakeProfitLevel, item)))
        else:
            raise TypeError(f"nivel de take profit parcial inválido: {item!r}")
        if not 0 < levels[-1].sell_percentage <= 100:
            raise ValueError(f"sell_percentage fuera de rango: {levels[-1].sell_percentage}")
    return tuple(levels)


@dataclass
class PartialSell:
    level: float
    amount: float             # tokens vendidos
    price: float
    sol_received: float
    tx_reference: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class PositionOptions:
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None
    max_hold_minutes: Optional[float] = None
    strategy_id: Optional[str] = None
    initial_investment: float = 0.0
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    simulated: bool = False
    entry_tx: Optional[str] = None
    partial_take_profit_levels: Tuple[PartialTakeProfitLevel, ...] = DEFAULT_PARTIAL_TAKE_PROFIT_LEVELS


@dataclass
class Position:
    id: str
    token_address: str
    entry_price: float            # precio por token en SOL
    amount: float                 # tokens comprados
    highest_price: float          # máximo observado (solo para trailing)

    # reglas de salida en %; None = regla desactivada
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None
    max_hold_minutes: Optional[float] = None
    partial_take_profit_levels: List[PartialTakeProfitLevel] = field(default_factory=list)

    status: PositionStatus = PositionStatus.OPEN
    strategy_id: Optional[str] = None
    initial_investment: float = 0.0   # SOL comprometidos
    token_name: Optional[str] = None
    token_symbol: Optional[str] = None
    simulated: bool = False

    created_at: float = field(default_factory=time.time)
    last_checked: Optional[float] = None
    entry_tx: Optional[str] = None

    # solo al cerrar
    exit_price: Optional[float] = None
    profit: Optional[float] = None    # % sobre precio de entrada
    closed_at: Optional[float] = None
    close_reason: Optional[CloseReason] = None
    exit_tx: Optional[str] = None
    exit_amount_sol: Optional[float] = None

    # reintentos de venta
    sell_attempts: int = 0
    sell_error: Optional[str] = None
    last_sell_attempt: Optional[float] = None

    # take profits parciales ya ejecutados (amount es lo que queda)
    executed_partial_levels: List[float] = field(default_factory=list)
    partial_sells: List[PartialSell] = field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status == PositionStatus.OPEN

    @property
    def label(self) -> str:
        return self.token_symbol or self.token_address[:6]

    def pnl_percent(self, price: float) -> float:
        if self.entry_price <= 0:
            return 0.0
        return (price - self.entry_price) / self.entry_price * 100.0

    def hold_minutes(self, now: Optional[float] = None) -> float:
        return ((now or time.time()) - self.created_at) / 60.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["close_reason"] = self.close_reason.value if self.close_reason else None
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Position":
        values = _known_fields(cls, data)
        values["status"] = PositionStatus(values.get("status") or "OPEN")
        reason = values.get("close_reason")
        values["close_reason"] = CloseReason(reason) if reason else None
        values["partial_take_profit_levels"] = list(
            coerce_levels(values.get("partial_take_profit_levels"))
        )
        values["partial_sells"] = [
            s if isinstance(s, PartialSell) else PartialSell(**_known_fields(PartialSell, s))
            for s in values.get("partial_sells") or []
        ]
        return cls(**values)


# -----------------------------------------------------------------------------
# Estrategias
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenFilters:
    exclude_nsfw: bool = True
    exclude_meme_tokens: bool = False
    min_age_hours: float = 0
    max_age_hours: float = 72


@dataclass(frozen=True)
class TradingConditions:
    min_price_change_percent: float = 5
    timeframe_minutes: int = 15
    min_volume: float = 5  # SOL
    volume_increase_percent: float = 20


@dataclass(frozen=True)
class NotificationSettings:
    on_entry: bool = True
    on_exit: bool = True
    on_error: bool = True


_NESTED_CONFIG = {
    "token_filters": TokenFilters,
    "trading_conditions": TradingConditions,
    "notifications": NotificationSettings,
}

# Campos que aceptan None explícito en una actualización (regla desactivada).
_NULLABLE_CONFIG = {"stop_loss", "take_profit", "trailing_stop", "max_hold_minutes"}


def _merge_nested(current: Any, updates: Mapping[str, Any]) -> Any:
    changes = {k: v for k, v in _known_fields(type(current), updates).items() if v is not None}
    return replace(current, **changes)


@dataclass(frozen=True)
class StrategyConfig:
    # tamaño / presupuesto
    max_concurrent_positions: int = 3
    max_position_size_sol: float = 0.1
    total_budget_sol: float = 1.0

    # riesgo
    stop_loss: Optional[float] = 10
    take_profit: Optional[float] = 30
    trailing_stop: Optional[float] = None
    max_hold_minutes: Optional[float] = 240
    max_risk_level: float = 50
    partial_take_profit_levels: Tuple[PartialTakeProfitLevel, ...] = DEFAULT_PARTIAL_TAKE_PROFIT_LEVELS

    # escaneo
    scan_interval_minutes: float = 5  # informativo, el escaneo real es global
    min_liquidity_sol: float = 10
    min_holders: int = 50

    token_filters: TokenFilters = field(default_factory=TokenFilters)
    trading_conditions: TradingConditions = field(default_factory=TradingConditions)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]] = None) -> "StrategyConfig":
        """Config completa a partir de un dict parcial; None o ausente = default."""
        base = cls()
        changes: Dict[str, Any] = {}
        for key, value in _known_fields(cls, data or {}).items():
            if value is None:
                continue
            if key in _NESTED_CONFIG:
                value = _coerce_nested(getattr(base, key), value)
            elif key == "partial_take_profit_levels":
                value = coerce_levels(value)
            changes[key] = value
        return replace(base, **changes)

    def merged(self, updates: Mapping[str, Any]) -> "StrategyConfig":
        """Copia con `updates` aplicados; los campos no mencionados se conservan."""
        changes: Dict[str, Any] = {}
        for key, value in _known_fields(type(self), updates).items():
            if value is None and key not in _NULLABLE_CONFIG:
                continue
            if key in _NESTED_CONFIG:
                value = _coerce_nested(getattr(self, key), value)
            elif key == "partial_take_profit_levels":
                value = coerce_levels(value)
            changes[key] = value
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _coerce_nested(current: Any, value: Any) -> Any:
    if isinstance(value, type(current)):
        return value
    if isinstance(value, Mapping):
        return _merge_nested(current, value)
    raise TypeError(f"valor inválido para {type(current).__name__}: {value!r}")


@dataclass
class StrategyStats:
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    profit: float = 0.0  # SOL realizados acumulados


@dataclass
class Strategy:
    id: str
    name: str
    config: StrategyConfig = field(default_factory=StrategyConfig)
    enabled: bool = True
    created_at: float = field(default_factory=time.time)
    last_run: Optional[float] = None
    stats: StrategyStats = field(default_factory=StrategyStats)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Strategy":
        values = _known_fields(cls, data)
        values["config"] = StrategyConfig().merged(values.get("config") or {})
        values["stats"] = StrategyStats(**_known_fields(StrategyStats, values.get("stats") or {}))
        return cls(**values)


# -----------------------------------------------------------------------------
# Oportunidades / colaboradores externos
# -----------------------------------------------------------------------------


@dataclass
class TokenMetadata:
    address: str
    name: str
    symbol: str
    created_at: float
    liquidity_sol: float
    holder_count: Optional[int] = None
    risk_level: Optional[float] = None
    price_sol: Optional[float] = None
    is_memecoin: bool = True
    is_nsfw: bool = False
    source: str = "unknown"
    warnings: List[str] = field(default_factory=list)

    def age_hours(self, now: Optional[float] = None) -> float:
        return ((now or time.time()) - self.created_at) / 3600.0


@dataclass
class Opportunity:
    token_address: str
    metadata: TokenMetadata
    discovered_at: float = field(default_factory=time.time)
    processed: bool = False


@dataclass
class SwapResult:
    success: bool
    in_amount: float = 0.0        # SOL en BUY, tokens en SELL
    out_amount: float = 0.0       # tokens en BUY, SOL en SELL
    price_impact: float = 0.0
    tx_reference: Optional[str] = None
    error: Optional[str] = None
    simulated: bool = False

    @classmethod
    def failure(cls, error: str) -> "SwapResult":
        return cls(success=False, error=error)


@dataclass
class RiskReport:
    risk_level: float
    warnings: List[str] = field(default_factory=list)
