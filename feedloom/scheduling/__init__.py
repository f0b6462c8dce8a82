"""Refresh timing: schedule-window interval policy and the tick-loop scheduler."""

from .interval import effective_interval, window_matches
from .scheduler import RefreshScheduler

__all__ = ["effective_interval", "window_matches", "RefreshScheduler"]
