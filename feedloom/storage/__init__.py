"""Durable tables, the in-memory cache layer and its garbage collector."""

from .base import CLASSIFY_TABLE, ITEMS_TABLE, POSTPROCESS_TABLE, READ_STATE_TABLE, TABLES, Store
from .caches import CacheStore
from .gc import CacheCollector
from .json_store import JsonFileStore
from .memory import MemoryStore

__all__ = [
    "CLASSIFY_TABLE",
    "ITEMS_TABLE",
    "POSTPROCESS_TABLE",
    "READ_STATE_TABLE",
    "TABLES",
    "Store",
    "CacheStore",
    "CacheCollector",
    "JsonFileStore",
    "MemoryStore",
]
