from __future__ import annotations

import copy
import json
import os
import threading
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping

from ..errors import StoreError
from ..utils.logging import get_logger
from .base import Store

logger = get_logger("fl.storage.json")


class JsonFileStore(Store):
    """File-backed store keeping one JSON document per table.

    Each table is loaded on first use and rewritten atomically (temporary
    file + rename) after every mutation.
    """

    def __init__(self, data_dir: Path | str) -> None:
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._tables: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _path(self, table: str) -> Path:
        return self.data_dir / f"{table}.json"

    def _table(self, table: str) -> Dict[str, Any]:
        data = self._tables.get(table)
        if data is not None:
            return data
        path = self._path(table)
        data = {}
        if path.exists():
            try:
                loaded = json.loads(path.read_text(encoding="utf-8"))
                if isinstance(loaded, dict):
                    data = loaded
                else:
                    logger.warning("Ignoring %s: expected a JSON object", path)
            except (OSError, json.JSONDecodeError) as exc:
                # Corrupt or unexpected format; start fresh
                logger.warning("Cannot read %s, starting empty: %s", path, exc)
        self._tables[table] = data
        return data

    def _persist(self, table: str) -> None:
        path = self._path(table)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(json.dumps(self._tables[table], ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as exc:
            raise StoreError(f"Cannot write {path}: {exc}") from exc

    def load_table(self, table: str) -> Dict[str, Any]:
        with self._lock:
            return copy.deepcopy(self._table(table))

    def put(self, table: str, key: str, value: Any) -> None:
        with self._lock:
            self._table(table)[key] = copy.deepcopy(value)
            self._persist(table)

    def put_many(self, table: str, rows: Mapping[str, Any]) -> None:
        if not rows:
            return
        with self._lock:
            self._table(table).update(copy.deepcopy(dict(rows)))
            self._persist(table)

    def delete(self, table: str, key: str) -> None:
        with self._lock:
            if self._table(table).pop(key, None) is not None:
                self._persist(table)

    def delete_many(self, table: str, keys: Iterable[str]) -> None:
        with self._lock:
            data = self._table(table)
            removed = [k for k in keys if data.pop(k, None) is not None]
            if removed:
                self._persist(table)

    def replace_table(self, table: str, rows: Mapping[str, Any]) -> None:
        with self._lock:
            self._tables[table] = copy.deepcopy(dict(rows))
            self._persist(table)
