from __future__ import annotations

from datetime import datetime, time
from typing import Iterable, Optional, Tuple

from ..models import Schedule, Source

_TIME_FORMATS = ("%H:%M:%S", "%H:%M")


def parse_time_of_day(value: str) -> Optional[time]:
    value = (value or "").strip()
    if not value:
        return None
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    return None


def window_matches(schedule: Schedule, now: time) -> bool:
    """Return True if ``now`` falls inside the window.

    ``start < end`` matches the closed range; ``start > end`` wraps past
    midnight. Empty, unparseable or equal bounds never match.
    """
    start = parse_time_of_day(schedule.start_time)
    end = parse_time_of_day(schedule.end_time)
    if start is None or end is None or start == end:
        return False
    now = now.replace(microsecond=0)
    if start < end:
        return start <= now <= end
    return now >= start or now <= end


def effective_interval(
    source: Source,
    now: datetime | time,
    schedules: Iterable[Schedule],
) -> Tuple[int, Optional[Schedule]]:
    """Map time-of-day and the source multiplier to a refresh interval in minutes.

    The first matching window wins. A source ``refresh_count`` above zero
    overrides the window's default count. ``(0, None)`` means the source is
    not refreshed under the current policy.
    """
    tod = now.time() if isinstance(now, datetime) else now
    for schedule in schedules:
        if not window_matches(schedule, tod):
            continue
        count = source.refresh_count if source.refresh_count > 0 else schedule.default_count
        return schedule.base_refresh * count, schedule
    return 0, None
