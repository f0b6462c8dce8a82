"""Config diffing and the file-watching reconciliation coordinator."""

from .diff import CACHE_AFFECTING_FIELDS, affected_sources, source_changed
from .watcher import ConfigReconciler

__all__ = ["CACHE_AFFECTING_FIELDS", "affected_sources", "source_changed", "ConfigReconciler"]
