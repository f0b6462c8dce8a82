from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Callable


def _env_int(name: str, default: int) -> Callable[[], int]:
    def read() -> int:
        try:
            return int(os.getenv(name, str(default)))
        except ValueError:
            return default

    return read


def _env_float(name: str, default: float) -> Callable[[], float]:
    def read() -> float:
        try:
            return float(os.getenv(name, str(default)))
        except ValueError:
            return default

    return read


@dataclass(slots=True)
class RuntimeSettings:
    """Process-level timing and sizing knobs, overridable from the environment.

    Defaults are read when an instance is built, so values loaded from
    ``.env`` by ``main`` apply.
    """

    tick_seconds: float = field(default_factory=_env_float("FEEDLOOM_TICK_SECONDS", 10.0))
    fetch_concurrency: int = field(default_factory=_env_int("FEEDLOOM_FETCH_CONCURRENCY", 5))
    fetch_retries: int = field(default_factory=_env_int("FEEDLOOM_FETCH_RETRIES", 3))
    fetch_retry_delay: float = field(default_factory=_env_float("FEEDLOOM_FETCH_RETRY_DELAY", 1.0))
    fetch_timeout: float = field(default_factory=_env_float("FEEDLOOM_FETCH_TIMEOUT", 30.0))
    flush_seconds: float = field(default_factory=_env_float("FEEDLOOM_FLUSH_SECONDS", 60.0))
    gc_hours: float = field(default_factory=_env_float("FEEDLOOM_GC_HOURS", 6.0))
    read_grace_seconds: int = field(default_factory=_env_int("FEEDLOOM_READ_GRACE_SECONDS", 24 * 3600))
    debounce_ms: int = field(default_factory=_env_int("FEEDLOOM_DEBOUNCE_MS", 500))
    data_dir: str = field(default_factory=lambda: os.getenv("FEEDLOOM_DATA_DIR", "./data"))

    @property
    def gc_seconds(self) -> float:
        return self.gc_hours * 3600
