"""
Signoff Ledger

Records completed granularities after a transfer pass. Only granularities
whose every source transferred are signed off, and all of them receive the
pass start time so a slow pass never shortens the next interval.
"""

import logging
from typing import List

from .clock_store import ClockStore

logger = logging.getLogger(__name__)


class SignoffLedger:
    """Writes signoffs for a finished pass."""

    def __init__(self, clock_store: ClockStore):
        self.clock_store = clock_store

    def signoff(self, run_context, pass_result) -> List[str]:
        """
        Sign off every due granularity without transfer failures.

        Args:
            run_context: RunContext of the pass
            pass_result: PassResult returned by the transfer pass

        Returns:
            Names of the granularities signed off
        """
        signed = []
        for granularity in run_context.due:
            if not pass_result.succeeded(granularity.name):
                failed = ', '.join(pass_result.failures.get(granularity.name, []))
                logger.warning(
                    f"Not signing off {granularity.name}: transfer failures for {failed}; "
                    f"slot {run_context.slots[granularity.name]} will be offered again"
                )
                continue

            slot = run_context.slots[granularity.name]
            self.clock_store.write_signoff(granularity.name, slot, run_context.start_timestamp)
            signed.append(granularity.name)
            logger.info(f"Signed off {granularity.name}: slot {slot}")

        return signed
