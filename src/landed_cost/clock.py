"""Time source shared by the session, provider-cache and reset components.

Components take a ``Clock`` so tests can move time forward deterministically.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def epoch_seconds(clock: Clock) -> int:
    """Current time of ``clock`` as whole epoch seconds."""
    return int(clock().timestamp())
