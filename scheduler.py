# scheduler.py
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class PeriodicTask:
    """
    Tarea periódica sobre asyncio.

    - El cuerpo de cada tick se espera completo antes de dormir, así que dos
      ticks de la misma tarea nunca se solapan.
    - Una excepción en el tick se loguea y el bucle sigue.
    - `request_stop()` se puede llamar desde dentro del tick (auto-parada);
      `stop()` cancela y espera a que la tarea termine.
    """

    def __init__(
        self,
        name: str,
        interval_sec: float,
        callback: TickCallback,
        *,
        run_immediately: bool = False,
    ) -> None:
        self.name = name
        self.interval_sec = interval_sec
        self._callback = callback
        self._run_immediately = run_immediately
        self._task: Optional[asyncio.Task] = None
        self._stop_requested = False

    @property
    def running(self) -> bool:
        return (
            self._task is not None
            and not self._task.done()
            and not self._stop_requested
        )

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            # Si se pidió parar dentro del tick actual, simplemente seguimos.
            self._stop_requested = False
            return

        self._stop_requested = False
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run(), name=self.name)
        logger.debug("[%s] iniciada (cada %.1fs)", self.name, self.interval_sec)

    def request_stop(self) -> None:
        self._stop_requested = True

    async def stop(self) -> None:
        task = self._task
        self._stop_requested = True
        if task is None:
            return
        if task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._task = None
        logger.debug("[%s] detenida", self.name)

    async def _run(self) -> None:
        if not self._run_immediately:
            await asyncio.sleep(self.interval_sec)

        while not self._stop_requested:
            try:
                await self._callback()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[%s] Error en tick", self.name)

            if self._stop_requested:
                break
            await asyncio.sleep(self.interval_sec)
