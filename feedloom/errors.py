from __future__ import annotations


class FeedloomError(Exception):
    """Base class for all errors raised by feedloom."""


class ConfigError(FeedloomError):
    """Raised when the configuration file is invalid or missing required fields."""


class FetchError(FeedloomError):
    """Raised when a remote feed cannot be downloaded or parsed."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{url}: {message}")
        self.url = url


class SourceNotFoundError(FeedloomError, LookupError):
    """Raised when a refresh target matches no configured source or folder."""


class AIResponseError(FeedloomError):
    """Raised when the AI backend fails or returns an unusable reply."""


class ScriptError(FeedloomError):
    """Raised when a filter or post-process script fails, times out or misbehaves."""


class StoreError(FeedloomError):
    """Raised by durable store implementations."""
