"""
Unit Tests for the Clock Store
==============================

Tests record persistence, bootstrap behaviour, legacy markers and
corruption handling.
"""

import unittest
import tempfile
import shutil
import json
import os
import sys
from datetime import datetime, timezone, timedelta

# Add project root for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from rotation_backup.clock_store import ClockStore, ClockRecord
from rotation_backup.errors import CorruptState


class TestClockStore(unittest.TestCase):
    """Test clock record storage."""

    def setUp(self):
        """Set up a temporary state directory."""
        self.state_dir = tempfile.mkdtemp(prefix='clock_store_test_')
        self.store = ClockStore(self.state_dir)
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def tearDown(self):
        shutil.rmtree(self.state_dir, ignore_errors=True)

    def test_missing_record_means_never_run(self):
        """A granularity without any record has never run."""
        self.assertEqual(self.store.read_last_run('daily'), (None, False))
        self.assertEqual(self.store.read_last_slot('daily'), (None, False))
        self.assertFalse(self.store.read('daily').found)

    def test_missing_state_dir_means_never_run(self):
        store = ClockStore(os.path.join(self.state_dir, 'does', 'not', 'exist'))
        self.assertEqual(store.read('hourly'), ClockRecord('hourly'))

    def test_write_then_read_signoff(self):
        """A signoff is read back with its slot and timestamp."""
        self.store.write_signoff('daily', 3, self.now)

        last_run, found = self.store.read_last_run('daily')
        self.assertTrue(found)
        self.assertEqual(last_run, self.now)
        self.assertEqual(self.store.read_last_slot('daily'), (3, True))

    def test_signoff_sets_modification_time(self):
        self.store.write_signoff('weekly', 1, self.now)
        mtime = os.stat(self.store.record_path('weekly')).st_mtime
        self.assertAlmostEqual(mtime, self.now.timestamp(), delta=1)

    def test_signoff_leaves_no_temporary_file(self):
        self.store.write_signoff('daily', 0, self.now)
        self.assertEqual(os.listdir(self.state_dir), ['daily.json'])

    def test_overwrite_keeps_latest(self):
        self.store.write_signoff('daily', 0, self.now)
        later = self.now + timedelta(days=1)
        self.store.write_signoff('daily', 1, later)

        record = self.store.read('daily')
        self.assertEqual(record.last_slot, 1)
        self.assertEqual(record.last_run, later)

    def test_naive_timestamp_taken_as_utc(self):
        self.store.write_signoff('hourly', 2, datetime(2026, 3, 1, 12, 0, 0))
        self.assertEqual(self.store.read('hourly').last_run, self.now)

    def test_granularities_are_independent(self):
        self.store.write_signoff('daily', 4, self.now)
        self.assertFalse(self.store.read('weekly').found)

    def test_rejects_negative_slot(self):
        with self.assertRaises(ValueError):
            self.store.write_signoff('daily', -1, self.now)

    def test_invalid_json_is_corrupt(self):
        """An unparseable record must not default to slot 0."""
        with open(self.store.record_path('daily'), 'w') as f:
            f.write('{not json')

        with self.assertRaises(CorruptState) as ctx:
            self.store.read_last_slot('daily')
        self.assertEqual(ctx.exception.granularity, 'daily')

    def test_non_integer_slot_is_corrupt(self):
        with open(self.store.record_path('daily'), 'w') as f:
            json.dump({'slot': 'three', 'last_run': self.now.isoformat()}, f)

        with self.assertRaises(CorruptState):
            self.store.read('daily')

    def test_boolean_slot_is_corrupt(self):
        with open(self.store.record_path('daily'), 'w') as f:
            json.dump({'slot': True, 'last_run': self.now.isoformat()}, f)

        with self.assertRaises(CorruptState):
            self.store.read('daily')

    def test_bad_timestamp_is_corrupt(self):
        with open(self.store.record_path('daily'), 'w') as f:
            json.dump({'slot': 1, 'last_run': 'yesterday'}, f)

        with self.assertRaises(CorruptState):
            self.store.read_last_run('daily')


class TestPendingSlots(unittest.TestCase):
    """Test slots emptied for an interval that is not signed off yet."""

    def setUp(self):
        self.state_dir = tempfile.mkdtemp(prefix='clock_store_pending_')
        self.store = ClockStore(self.state_dir)
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def tearDown(self):
        shutil.rmtree(self.state_dir, ignore_errors=True)

    def test_no_pending_slot(self):
        self.assertIsNone(self.store.read_pending('daily'))

    def test_write_then_read_pending(self):
        self.store.write_pending('daily', 3)

        self.assertEqual(self.store.read_pending('daily'), 3)
        self.assertIsNone(self.store.read_pending('weekly'))
        self.assertEqual(sorted(os.listdir(self.state_dir)), ['daily.pending'])

    def test_pending_does_not_change_clock(self):
        self.store.write_pending('daily', 3)
        self.assertFalse(self.store.read('daily').found)

    def test_signoff_clears_pending(self):
        self.store.write_pending('daily', 3)
        self.store.write_signoff('daily', 3, self.now)

        self.assertIsNone(self.store.read_pending('daily'))
        self.assertEqual(os.listdir(self.state_dir), ['daily.json'])

    def test_malformed_pending_is_corrupt(self):
        with open(self.store.pending_path('daily'), 'w') as f:
            f.write('three')
        with self.assertRaises(CorruptState):
            self.store.read_pending('daily')

    def test_clear_without_pending(self):
        self.store.clear_pending('daily')
        self.assertIsNone(self.store.read_pending('daily'))


class TestLegacyMarkers(unittest.TestCase):
    """Test plain-integer markers whose mtime is the last run."""

    def setUp(self):
        self.state_dir = tempfile.mkdtemp(prefix='clock_store_legacy_')
        self.store = ClockStore(self.state_dir)
        self.marker = os.path.join(self.state_dir, 'daily')

    def tearDown(self):
        shutil.rmtree(self.state_dir, ignore_errors=True)

    def _write_marker(self, content, mtime):
        with open(self.marker, 'w') as f:
            f.write(content)
        os.utime(self.marker, (mtime, mtime))

    def test_reads_slot_and_mtime(self):
        """Legacy marker content is the slot, its mtime the last run."""
        mtime = datetime(2025, 12, 24, 6, 0, tzinfo=timezone.utc).timestamp()
        self._write_marker('5\n', mtime)

        record = self.store.read('daily')
        self.assertEqual(record.last_slot, 5)
        self.assertEqual(record.last_run.timestamp(), mtime)

    def test_malformed_marker_is_corrupt(self):
        self._write_marker('five', 0)
        with self.assertRaises(CorruptState):
            self.store.read('daily')

    def test_signoff_replaces_legacy_marker(self):
        self._write_marker('5', 0)
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)

        self.store.write_signoff('daily', 6, now)

        self.assertFalse(os.path.exists(self.marker))
        self.assertEqual(self.store.read('daily').last_slot, 6)


if __name__ == '__main__':
    unittest.main()
