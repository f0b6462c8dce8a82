from __future__ import annotations

import copy
import threading
from typing import Any, Dict, Iterable, Mapping

from .base import TABLES, Store


class MemoryStore(Store):
    """Process-local store; nothing survives a restart."""

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in TABLES}
        self._lock = threading.Lock()

    def _table(self, table: str) -> Dict[str, Any]:
        return self._tables.setdefault(table, {})

    def load_table(self, table: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._table(table))

    def put(self, table: str, key: str, value: Any) -> None:
        with self._lock:
            self._table(table)[key] = copy.deepcopy(value)

    def put_many(self, table: str, rows: Mapping[str, Any]) -> None:
        with self._lock:
            self._table(table).update(copy.deepcopy(dict(rows)))

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            self._table(table).pop(key, None)

    def delete_many(self, table: str, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._table(table)
            for key in keys:
                data.pop(key, None)

    def replace_table(self, table: str, rows: Mapping[str, Any]) -> None:
        with self._lock:
            self._tables[table] = copy.deepcopy(dict(rows))
