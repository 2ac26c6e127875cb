"""
Clock helpers shared by task bookkeeping and log formatting.

Task timestamps (start/end, action and event times) are wall-clock UNIX seconds so
they can be shown to users and serialized as-is. Log lines carry an ISO UTC stamp
plus the process uptime.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

_PROCESS_START_MONOTONIC = time.monotonic()
_PROCESS_START_WALL = time.time()


def now_timestamp() -> float:
    """Wall-clock UNIX timestamp used for task and event times."""
    return time.time()


def elapsed_seconds(start: Optional[float], end: Optional[float] = None) -> float:
    """Seconds from ``start`` to ``end`` (or now). 0 when never started; never negative."""
    if not start:
        return 0.0
    return max(0.0, (end if end is not None else now_timestamp()) - start)


def uptime_seconds() -> float:
    return time.monotonic() - _PROCESS_START_MONOTONIC


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def now_utc_iso() -> str:
    """e.g. 2025-08-25T12:34:56.789Z"""
    return _iso(datetime.now(timezone.utc))


def process_start_utc_iso() -> str:
    return _iso(datetime.fromtimestamp(_PROCESS_START_WALL, tz=timezone.utc))
