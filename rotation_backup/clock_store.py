"""
Clock Store

Persists, per granularity, when it was last signed off and which slot it
last wrote. Each granularity has one small JSON record in the state
directory. Plain-integer marker files from older installations (slot in the
content, last run in the modification time) are still read and get replaced
by a JSON record on the next signoff.

A missing or unreadable record means "never run". A record that is present
but cannot be parsed raises CorruptState.

While a slot is in use but not yet signed off, a ``<name>.pending`` file
holds its number. A retried pass that is offered the same slot finds it
there and keeps what earlier attempts already moved into the slot.
"""

import os
import json
import logging
from typing import List, Optional, Tuple, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .errors import CorruptState

logger = logging.getLogger(__name__)


@dataclass
class ClockRecord:
    """Last signoff of one granularity."""
    granularity: str
    last_run: Optional[datetime] = None
    last_slot: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.last_run is not None


class ClockStore:
    """File-backed store of per-granularity clock records."""

    RECORD_SUFFIX = '.json'
    PENDING_SUFFIX = '.pending'

    def __init__(self, state_dir: str):
        self.state_dir = Path(state_dir)

    def record_path(self, granularity: str) -> Path:
        return self.state_dir / f"{granularity}{self.RECORD_SUFFIX}"

    def pending_path(self, granularity: str) -> Path:
        return self.state_dir / f"{granularity}{self.PENDING_SUFFIX}"

    def legacy_marker_path(self, granularity: str) -> Path:
        return self.state_dir / granularity

    def read(self, granularity: str) -> ClockRecord:
        """Read the clock record for a granularity."""
        path = self.record_path(granularity)
        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = f.read()
        except FileNotFoundError:
            return self._read_legacy_marker(granularity)
        except OSError as e:
            logger.warning(f"Clock record {path} is unreadable, treating '{granularity}' as never run: {e}")
            return ClockRecord(granularity)

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CorruptState(granularity, str(path), f"invalid JSON ({e})") from e
        if not isinstance(data, dict):
            raise CorruptState(granularity, str(path), "record is not an object")

        slot = _parse_slot(granularity, path, data.get('slot'))
        last_run_raw = data.get('last_run')
        if not isinstance(last_run_raw, str):
            raise CorruptState(granularity, str(path), f"missing last_run timestamp: {last_run_raw!r}")
        try:
            last_run = _as_utc(datetime.fromisoformat(last_run_raw))
        except ValueError as e:
            raise CorruptState(granularity, str(path), f"bad last_run timestamp {last_run_raw!r}") from e

        return ClockRecord(granularity, last_run=last_run, last_slot=slot)

    def read_last_run(self, granularity: str) -> Tuple[Optional[datetime], bool]:
        record = self.read(granularity)
        return record.last_run, record.found

    def read_last_slot(self, granularity: str) -> Tuple[Optional[int], bool]:
        record = self.read(granularity)
        return record.last_slot, record.found

    def records(self, granularities: Iterable[str]) -> List[ClockRecord]:
        return [self.read(name) for name in granularities]

    def write_signoff(self, granularity: str, slot: int, timestamp: datetime):
        """Atomically record a completed run of a granularity."""
        if not isinstance(slot, int) or isinstance(slot, bool) or slot < 0:
            raise ValueError(f"Slot must be a non-negative integer, got {slot!r}")

        timestamp = _as_utc(timestamp)
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.record_path(granularity)
        tmp = path.with_name(path.name + '.tmp')
        record = {
            'granularity': granularity,
            'slot': slot,
            'last_run': timestamp.isoformat(),
        }

        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(record, f)
            f.flush()
            os.fsync(f.fileno())
        epoch = timestamp.timestamp()
        os.utime(tmp, (epoch, epoch))
        os.replace(tmp, path)

        self.clear_pending(granularity)

        legacy = self.legacy_marker_path(granularity)
        if legacy.is_file():
            try:
                legacy.unlink()
                logger.info(f"Replaced legacy marker {legacy} with {path}")
            except OSError as e:
                logger.warning(f"Could not remove legacy marker {legacy}: {e}")

        logger.debug(f"Recorded {granularity} signoff: slot {slot} at {timestamp.isoformat()}")

    def read_pending(self, granularity: str) -> Optional[int]:
        """Slot emptied for an interval that has not been signed off yet."""
        path = self.pending_path(granularity)
        try:
            content = path.read_text(encoding='ascii').strip()
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as e:
            raise CorruptState(granularity, str(path), f"unreadable pending slot ({e})") from e

        try:
            slot = int(content)
        except ValueError as e:
            raise CorruptState(granularity, str(path), f"pending slot {content!r} is not an integer") from e
        return _parse_slot(granularity, path, slot)

    def write_pending(self, granularity: str, slot: int):
        """Remember that ``slot`` was emptied for the current interval."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self.pending_path(granularity)
        tmp = path.with_name(path.name + '.tmp')
        with open(tmp, 'w', encoding='ascii') as f:
            f.write(f"{slot}\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
        logger.debug(f"Slot {slot} of {granularity} pending signoff")

    def clear_pending(self, granularity: str):
        try:
            self.pending_path(granularity).unlink()
        except FileNotFoundError:
            pass

    def _read_legacy_marker(self, granularity: str) -> ClockRecord:
        path = self.legacy_marker_path(granularity)
        try:
            with open(path, 'r', encoding='ascii') as f:
                content = f.read().strip()
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return ClockRecord(granularity)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Marker {path} is unreadable, treating '{granularity}' as never run: {e}")
            return ClockRecord(granularity)

        try:
            slot = int(content)
        except ValueError as e:
            raise CorruptState(granularity, str(path), f"slot content {content!r} is not an integer") from e
        slot = _parse_slot(granularity, path, slot)
        return ClockRecord(
            granularity,
            last_run=datetime.fromtimestamp(mtime, tz=timezone.utc),
            last_slot=slot,
        )


def _parse_slot(granularity: str, path: Path, value) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise CorruptState(granularity, str(path), f"slot {value!r} is not a non-negative integer")
    return value


def _as_utc(value: datetime) -> datetime:
    # Naive timestamps are taken as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
