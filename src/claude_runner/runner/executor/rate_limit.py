"""Detection of the task CLI usage-limit signal.

The CLI reports an exhausted quota as ``Claude AI usage limit reached|<epoch>``
where ``<epoch>`` is the reset time in unix seconds. The marker can show up on
either stream.
"""

from __future__ import annotations

import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

RATE_LIMIT_PATTERN = re.compile(r"Claude AI usage limit reached\|(\d+)")

# A reset further away than this is not worth waiting for.
TIMEOUT_THRESHOLD_SECONDS = 6 * 60 * 60


@dataclass(frozen=True, slots=True)
class RateLimitInfo:
    is_limited: bool
    reset_time: datetime | None = None
    wait_seconds: float = 0.0
    is_timeout: bool = False


NOT_LIMITED = RateLimitInfo(is_limited=False)


def detect_rate_limit(
    output: str,
    stderr: str | None = None,
    *,
    clock: Callable[[], float] = time.time,
) -> RateLimitInfo:
    match = RATE_LIMIT_PATTERN.search(f"{output} {stderr or ''}")
    if not match:
        return NOT_LIMITED

    reset_epoch = int(match.group(1))
    try:
        reset_time = datetime.fromtimestamp(reset_epoch, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return NOT_LIMITED

    wait = reset_epoch - clock()
    return RateLimitInfo(
        is_limited=True,
        reset_time=reset_time,
        wait_seconds=max(0.0, wait),
        is_timeout=wait > TIMEOUT_THRESHOLD_SECONDS,
    )
