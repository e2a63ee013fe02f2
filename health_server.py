#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
🏥 HEALTH CHECK SERVER
======================
Servidor HTTP ligero para healthchecks y consulta del estado del motor
(posiciones, estrategias y rendimiento). Solo lectura.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from auto_trader import AutoTrader
from position_manager import PositionManager

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════
# FASTAPI APP
# ═══════════════════════════════════════════════════════════════


def create_app(
    position_manager: PositionManager,
    auto_trader: Optional[AutoTrader] = None,
    *,
    mode: str = "unknown",
) -> FastAPI:
    app = FastAPI(
        title="Solana Position Engine",
        version="1.0",
        docs_url=None,  # Desactivar docs para producción
        redoc_url=None,
    )
    started_at = datetime.now()

    def uptime_seconds() -> int:
        return int((datetime.now() - started_at).total_seconds())

    @app.get("/health")
    async def health_check():
        """
        Healthcheck del contenedor.
        Retorna 200 SIEMPRE: el motor puede estar parado y el proceso sano.
        """
        return JSONResponse(
            status_code=200,
            content={
                "status": "healthy",
                "trader_running": bool(auto_trader and auto_trader.running),
                "monitoring": position_manager.monitoring,
                "uptime_seconds": uptime_seconds(),
                "mode": mode,
                "timestamp": datetime.now().isoformat(),
            },
        )

    @app.get("/status")
    async def get_status():
        """Status detallado del motor"""
        performance: Dict[str, Any] = (
            auto_trader.get_performance_stats() if auto_trader is not None else {}
        )
        return JSONResponse({
            "engine": {
                "mode": mode,
                "trader_running": bool(auto_trader and auto_trader.running),
                "monitoring": position_manager.monitoring,
                "started_at": started_at.isoformat(),
                "uptime_seconds": uptime_seconds(),
            },
            "positions": {
                "open": len(position_manager.get_open_positions()),
                "total": len(position_manager.get_all_positions()),
            },
            "performance": performance,
        })

    @app.get("/positions")
    async def get_positions(status: Optional[str] = None):
        positions = position_manager.get_all_positions()
        if status:
            positions = [p for p in positions if p.status.value == status.upper()]
        return JSONResponse([p.to_dict() for p in positions])

    @app.get("/strategies")
    async def get_strategies():
        if auto_trader is None:
            return JSONResponse([])
        return JSONResponse([s.to_dict() for s in auto_trader.get_all_strategies()])

    @app.get("/ping")
    async def ping():
        """Ping simple para verificar que el servidor está vivo"""
        return {"ping": "pong", "timestamp": datetime.now().isoformat()}

    return app


# ═══════════════════════════════════════════════════════════════
# SERVIDOR
# ═══════════════════════════════════════════════════════════════


def build_server(app: FastAPI, port: int = 8080) -> uvicorn.Server:
    config = uvicorn.Config(
        app,
        host="0.0.0.0",
        port=port,
        log_level="warning",
        access_log=False,
        timeout_keep_alive=60,
    )
    logger.info("🏥 Healthcheck disponible en: http://0.0.0.0:%d/health", port)
    return uvicorn.Server(config)
