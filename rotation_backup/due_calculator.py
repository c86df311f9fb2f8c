"""
Due Calculator

Decides which granularities have waited long enough since their last
signoff. A granularity is due when the elapsed time strictly exceeds its
period; a granularity that never ran is always due. Disabled tiers
(ring_size 0) are never due.
"""

import logging
from typing import Iterable, List, Optional
from datetime import datetime, timezone

from .config import Granularity
from .clock_store import ClockStore

logger = logging.getLogger(__name__)


def elapsed_seconds(now: datetime, last_run: Optional[datetime]) -> float:
    """Seconds since last_run, infinite when it never ran."""
    if last_run is None:
        return float('inf')
    return (_aware(now) - _aware(last_run)).total_seconds()


def is_due(granularity: Granularity, now: datetime, last_run: Optional[datetime]) -> bool:
    if not granularity.enabled:
        return False
    return elapsed_seconds(now, last_run) > granularity.period


def compute_due(now: datetime, clock_store: ClockStore,
                granularities: Iterable[Granularity]) -> List[Granularity]:
    """
    Compute the due set for this invocation.

    Args:
        now: Current time
        clock_store: Source of last-run timestamps
        granularities: Configured granularities

    Returns:
        Due granularities in configuration order (the order carries no meaning)
    """
    due = []
    for granularity in granularities:
        if not granularity.enabled:
            logger.debug(f"Granularity {granularity.name} is disabled")
            continue

        last_run, found = clock_store.read_last_run(granularity.name)
        if is_due(granularity, now, last_run if found else None):
            due.append(granularity)
        else:
            logger.debug(
                f"Granularity {granularity.name} not due: "
                f"{elapsed_seconds(now, last_run):.0f}s elapsed of {granularity.period}s"
            )
    return due


def seconds_until_due(granularity: Granularity, now: datetime,
                      last_run: Optional[datetime]) -> Optional[float]:
    """Seconds left before the granularity becomes due; None when disabled."""
    if not granularity.enabled:
        return None
    if last_run is None:
        return 0.0
    # Due once elapsed is strictly past the period
    remaining = granularity.period - elapsed_seconds(now, last_run)
    return max(remaining, 0.0)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
