# trade_history.py
"""
Histórico de trades cerrados en PostgreSQL (asyncpg).

Cada positionClosed se inserta en `trade_history`. Si la base de datos no
está disponible el bot sigue funcionando: solo se pierde el histórico.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

import asyncpg

from events import EventBus, PositionClosed
from models import Position

logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS trade_history (
        id SERIAL PRIMARY KEY,
        position_id VARCHAR(40) UNIQUE,
        mint VARCHAR(44),
        symbol VARCHAR(20),
        strategy_id VARCHAR(40),
        entry_price NUMERIC(30, 15),
        exit_price NUMERIC(30, 15),
        amount NUMERIC(30, 9),
        initial_investment_sol NUMERIC(20, 9),
        exit_amount_sol NUMERIC(20, 9),
        result_profit_percent NUMERIC(10, 4),
        hold_time_min NUMERIC(10, 2),
        entry_time TIMESTAMP,
        exit_time TIMESTAMP,
        exit_reason VARCHAR(50),
        simulated BOOLEAN DEFAULT FALSE,
        created_at TIMESTAMP DEFAULT NOW()
    )
"""

INSERT_SQL = """
    INSERT INTO trade_history (
        position_id, mint, symbol, strategy_id,
        entry_price, exit_price, amount,
        initial_investment_sol, exit_amount_sol,
        result_profit_percent, hold_time_min,
        entry_time, exit_time, exit_reason, simulated
    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
    ON CONFLICT (position_id) DO NOTHING
"""


def trade_row(position: Position) -> tuple:
    closed_at = position.closed_at or position.created_at
    return (
        position.id,
        position.token_address,
        (position.token_symbol or "")[:20],
        position.strategy_id,
        position.entry_price,
        position.exit_price,
        position.amount,
        position.initial_investment,
        position.exit_amount_sol,
        position.profit,
        position.hold_minutes(closed_at),
        datetime.fromtimestamp(position.created_at),
        datetime.fromtimestamp(closed_at),
        position.close_reason.value if position.close_reason else None,
        position.simulated,
    )


class TradeHistoryRecorder:
    def __init__(self, database_url: str, events: EventBus) -> None:
        self.database_url = database_url
        self.events = events
        self.pool: Optional[Any] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def connect(self) -> bool:
        try:
            self.pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=5)
            async with self.pool.acquire() as conn:
                await conn.execute(CREATE_TABLE_SQL)
        except (OSError, asyncpg.PostgresError) as exc:
            logger.error("[TradeHistory] ❌ Error database: %r", exc)
            self.pool = None
            return False

        self._unsubscribe = self.events.subscribe(PositionClosed, self._on_position_closed)
        logger.info("[TradeHistory] ✅ Database inicializada")
        return True

    async def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self.pool is not None:
            await self.pool.close()
            self.pool = None

    async def _on_position_closed(self, event: PositionClosed) -> None:
        await self.record(event.position)

    async def record(self, position: Position) -> bool:
        if self.pool is None:
            return False

        try:
            async with self.pool.acquire() as conn:
                await conn.execute(INSERT_SQL, *trade_row(position))
        except (OSError, asyncpg.PostgresError) as exc:
            logger.warning("[TradeHistory] Error guardando %s: %r", position.id, exc)
            return False

        logger.info(
            "[TradeHistory] 💾 Trade guardado: %s (%+.2f%%)",
            position.label,
            position.profit or 0.0,
        )
        return True
