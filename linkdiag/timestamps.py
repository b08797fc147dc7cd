"""Clock helpers.

Deadlines and TTLs use the monotonic clock so wall-clock jumps (NTP on a
poller box) never expire a cache early or stretch a session timeout.
"""

import time


def monotonic() -> float:
    """Seconds on the monotonic clock."""
    return time.monotonic()


def elapsed_ms(started: float) -> int:
    """Milliseconds since a monotonic() reading."""
    return int((time.monotonic() - started) * 1000)
