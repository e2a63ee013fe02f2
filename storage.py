# storage.py
"""
Persistencia simple en disco (un JSON por colección).

Cada mutación de posiciones/estrategias guarda el conjunto completo. Para el
volumen que maneja el bot es suficiente; la escritura es atómica (fichero
temporal + os.replace) para no dejar un JSON a medias si el proceso muere.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any, Callable, Dict, Generic, Iterable, List, Protocol, TypeVar

from models import Position, Strategy

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Store(Protocol[T]):
    def load(self) -> List[T]:
        ...

    def save(self, items: Iterable[T]) -> bool:
        ...


class JsonFileStore(Generic[T]):
    def __init__(
        self,
        path: str,
        *,
        to_dict: Callable[[T], Dict[str, Any]],
        from_dict: Callable[[Dict[str, Any]], T],
    ) -> None:
        self.path = path
        self._to_dict = to_dict
        self._from_dict = from_dict

    def load(self) -> List[T]:
        if not os.path.exists(self.path):
            logger.info("[Store] %s no existe, empezando vacío", self.path)
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("[Store] No se pudo leer %s: %r", self.path, exc)
            return []

        if not isinstance(raw, list):
            logger.error("[Store] Formato inválido en %s (se esperaba lista)", self.path)
            return []

        items: List[T] = []
        for entry in raw:
            try:
                items.append(self._from_dict(entry))
            except (TypeError, ValueError, KeyError) as exc:
                logger.warning("[Store] Registro ignorado en %s: %r", self.path, exc)

        logger.info("[Store] Cargados %d registros de %s", len(items), self.path)
        return items

    def save(self, items: Iterable[T]) -> bool:
        directory = os.path.dirname(self.path) or "."
        try:
            os.makedirs(directory, exist_ok=True)
            payload = [self._to_dict(item) for item in items]
            fd, tmp_path = tempfile.mkstemp(dir=directory, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as exc:
            logger.error("[Store] No se pudo guardar %s: %r", self.path, exc)
            return False

        logger.debug("[Store] Guardados %d registros en %s", len(payload), self.path)
        return True


def position_store(data_dir: str) -> JsonFileStore[Position]:
    return JsonFileStore(
        os.path.join(data_dir, "positions.json"),
        to_dict=lambda p: p.to_dict(),
        from_dict=Position.from_dict,
    )


def strategy_store(data_dir: str) -> JsonFileStore[Strategy]:
    return JsonFileStore(
        os.path.join(data_dir, "strategies.json"),
        to_dict=lambda s: s.to_dict(),
        from_dict=Strategy.from_dict,
    )
