"""
Integration Tests for the Command Line Interface
================================================
"""

import unittest
import tempfile
import shutil
import json
import os
import sys
from contextlib import redirect_stdout, redirect_stderr
from datetime import datetime, timezone
from io import StringIO
from unittest.mock import patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import backup_cli
from rotation_backup.config import load_config
from rotation_backup.orchestrator import OrchestrationResult
from rotation_backup.errors import CorruptState


class TestCli(unittest.TestCase):
    """Test exit codes and command dispatch."""

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp(prefix='cli_test_')
        self.config_path = os.path.join(self.temp_dir, 'backup_config.json')
        with open(self.config_path, 'w') as f:
            json.dump({
                'remote': {'target': '/mnt/backup'},
                'sources': ['/etc'],
                'state_dir': os.path.join(self.temp_dir, 'state'),
                'staging_dir': os.path.join(self.temp_dir, 'staging'),
                'logging': {'log_dir': os.path.join(self.temp_dir, 'logs')},
            }, f)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, *argv):
        out, err = StringIO(), StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = backup_cli.main(list(argv))
        return code, out.getvalue(), err.getvalue()

    def test_no_command_is_usage_error(self):
        code, out, err = self.run_cli()
        self.assertEqual(code, backup_cli.EXIT_USAGE)

    def test_missing_config_is_usage_error(self):
        code, out, err = self.run_cli('--config', os.path.join(self.temp_dir, 'missing.json'), 'run')
        self.assertEqual(code, backup_cli.EXIT_USAGE)
        self.assertIn('usage', err)

    @patch('backup_cli.setup_logging')
    def test_prepare_remote_requires_path(self, mock_logging):
        code, out, err = self.run_cli('--config', self.config_path, 'prepare-remote')
        self.assertEqual(code, backup_cli.EXIT_USAGE)
        self.assertIn('--path', err)

    def test_create_config_is_loadable(self):
        output = os.path.join(self.temp_dir, 'sample.json')
        code, out, err = self.run_cli('create-config', '--output', output)

        self.assertEqual(code, backup_cli.EXIT_OK)
        config = load_config(output)
        self.assertTrue(config.granularities)

    @patch('backup_cli.setup_logging')
    @patch('backup_cli.BackupOrchestrator')
    def test_run_with_failures_exits_zero(self, mock_orchestrator, mock_logging):
        mock_orchestrator.return_value.execute_backup_pass.return_value = OrchestrationResult(
            run_id='backup_1', started_at=datetime.now(timezone.utc), success=False,
            due=['daily'], slots={'daily': 3}, error_messages=['daily/etc: transfer failed'],
        )

        code, out, err = self.run_cli('--config', self.config_path, 'run', '--dry-run')

        self.assertEqual(code, backup_cli.EXIT_OK)
        self.assertIn('daily: slot 3', out)
        self.assertTrue(mock_orchestrator.call_args.kwargs['dry_run'])

    @patch('backup_cli.setup_logging')
    @patch('backup_cli.BackupOrchestrator')
    def test_already_running_is_silent(self, mock_orchestrator, mock_logging):
        mock_orchestrator.return_value.execute_backup_pass.return_value = OrchestrationResult(
            run_id='backup_1', started_at=datetime.now(timezone.utc), success=True, already_running=True,
        )

        code, out, err = self.run_cli('--config', self.config_path, 'run')

        self.assertEqual(code, backup_cli.EXIT_OK)
        self.assertEqual(out, '')
        self.assertEqual(err, '')

    @patch('backup_cli.setup_logging')
    @patch('backup_cli.BackupScheduler')
    def test_schedule_halted_by_corrupt_state(self, mock_scheduler, mock_logging):
        mock_scheduler.return_value.fatal_error = CorruptState('daily', '/state/daily.json', 'invalid JSON')

        code, out, err = self.run_cli('--config', self.config_path, 'schedule', '--interval', '5')

        self.assertEqual(code, backup_cli.EXIT_CORRUPT_STATE)
        mock_scheduler.return_value.run_forever.assert_called_once()
        self.assertIn('daily', err)

    @patch('backup_cli.setup_logging')
    @patch('backup_cli.BackupScheduler')
    def test_schedule_stopped_normally(self, mock_scheduler, mock_logging):
        mock_scheduler.return_value.fatal_error = None
        mock_scheduler.return_value.run_forever.side_effect = KeyboardInterrupt

        code, out, err = self.run_cli('--config', self.config_path, 'schedule')
        self.assertEqual(code, backup_cli.EXIT_OK)

    @patch('backup_cli.setup_logging')
    @patch('backup_cli.BackupOrchestrator')
    def test_corrupt_state_exit_code(self, mock_orchestrator, mock_logging):
        mock_orchestrator.return_value.execute_backup_pass.side_effect = CorruptState(
            'daily', '/state/daily.json', 'invalid JSON'
        )

        code, out, err = self.run_cli('--config', self.config_path, 'run')

        self.assertEqual(code, backup_cli.EXIT_CORRUPT_STATE)
        self.assertIn('daily', err)

    @patch('backup_cli.setup_logging')
    def test_status_json(self, mock_logging):
        code, out, err = self.run_cli('--config', self.config_path, 'status', '--json')

        self.assertEqual(code, backup_cli.EXIT_OK)
        status = json.loads(out)
        names = [entry['name'] for entry in status['granularities']]
        self.assertIn('daily', names)
        self.assertFalse(status['running'])
        daily = next(entry for entry in status['granularities'] if entry['name'] == 'daily')
        self.assertTrue(daily['due'])
        self.assertEqual(daily['next_slot'], 0)
        self.assertIsNone(daily['pending_slot'])

    @patch('backup_cli.setup_logging')
    def test_status_json_masks_secret(self, mock_logging):
        with open(self.config_path) as f:
            data = json.load(f)
        data['transfer'] = {'auth_secret': 'hunter2'}
        with open(self.config_path, 'w') as f:
            json.dump(data, f)

        code, out, err = self.run_cli('--config', self.config_path, 'status', '--json')

        self.assertEqual(code, backup_cli.EXIT_OK)
        self.assertNotIn('hunter2', out)
        status = json.loads(out)
        self.assertEqual(status['config']['transfer']['auth_secret'], '***')
        self.assertEqual(status['config']['remote']['target'], '/mnt/backup')


if __name__ == '__main__':
    unittest.main()
