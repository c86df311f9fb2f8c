"""
Slot Allocator

Computes the next rotating slot for a granularity. Slots run from 0 to
ring_size inclusive, so a ring holds ring_size + 1 numbered side
directories: after slot ring_size comes slot 0 again. Remote slot
directories are addressed by exactly these numbers.
"""

import logging

from .config import Granularity
from .clock_store import ClockStore

logger = logging.getLogger(__name__)


def next_slot(granularity: Granularity, clock_store: ClockStore) -> int:
    """Return the slot the next signoff of this granularity will write."""
    last, found = clock_store.read_last_slot(granularity.name)
    if not found:
        # First run writes slot 0
        last = -1

    slot = last + 1
    if slot > granularity.ring_size:
        slot = 0

    logger.debug(f"Allocated slot {slot} for {granularity.name} (last: {last if found else 'never'})")
    return slot

