from __future__ import annotations

import time
from typing import Callable, TypeVar

from ...utils.logging import get_logger

T = TypeVar("T")
logger = get_logger("fl.ai.retry")


def with_retries(fn: Callable[[], T], *, attempts: int = 3, wait: float = 2.0, label: str = "AI call") -> T:
    """Call ``fn`` up to ``attempts`` times, sleeping ``wait`` seconds between tries.

    The last exception is re-raised once attempts are exhausted.
    """
    attempts = max(1, attempts)
    last_exc: BaseException | None = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:  # noqa: BLE001
            last_exc = exc
            if attempt >= attempts:
                break
            kind = "timed out" if "timeout" in str(exc).lower() or "timed out" in str(exc).lower() else "failed"
            logger.warning("%s %s (attempt %s/%s): %s; retrying in %.1fs", label, kind, attempt, attempts, exc, wait)
            time.sleep(wait)
    assert last_exc is not None
    raise last_exc
