"""Typed models used across the application."""

from .source import (
    AIConfig,
    Category,
    CategoryPackage,
    ClassifyStrategy,
    Config,
    Folder,
    FolderEntry,
    PostProcessConfig,
    Schedule,
    Source,
)
from .article import Item, PostProcessEntry
from .feed import FeedSnapshot

__all__ = [
    "AIConfig",
    "Category",
    "CategoryPackage",
    "ClassifyStrategy",
    "Config",
    "Folder",
    "FolderEntry",
    "PostProcessConfig",
    "Schedule",
    "Source",
    "Item",
    "PostProcessEntry",
    "FeedSnapshot",
]
