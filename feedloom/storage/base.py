from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Mapping

CLASSIFY_TABLE = "classify_cache"
POSTPROCESS_TABLE = "postprocess_cache"
ITEMS_TABLE = "items_cache"
READ_STATE_TABLE = "read_state"

TABLES = (CLASSIFY_TABLE, POSTPROCESS_TABLE, ITEMS_TABLE, READ_STATE_TABLE)


class Store(ABC):
    """Durable key/value tables backing the in-memory caches.

    Values are JSON-compatible. Keys are article links, or source URLs for
    the items table.
    """

    @abstractmethod
    def load_table(self, table: str) -> Dict[str, Any]:
        """Return a copy of every row in ``table``."""

    @abstractmethod
    def put(self, table: str, key: str, value: Any) -> None:
        """Insert or replace one row."""

    @abstractmethod
    def put_many(self, table: str, rows: Mapping[str, Any]) -> None:
        """Insert or replace several rows at once."""

    @abstractmethod
    def delete(self, table: str, key: str) -> None:
        """Delete one row; a missing key is not an error."""

    @abstractmethod
    def delete_many(self, table: str, keys: Iterable[str]) -> None:
        """Delete several rows at once."""

    @abstractmethod
    def replace_table(self, table: str, rows: Mapping[str, Any]) -> None:
        """Replace the whole table content."""

    def close(self) -> None:
        """Release resources held by the store."""
