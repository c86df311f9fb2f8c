#!/usr/bin/env python3
"""
Rotating Backup CLI

Command-line interface for the rotating backup system.

Usage:
    python3 backup_cli.py --help
    python3 backup_cli.py run --config backup_config.json
    python3 backup_cli.py status --config backup_config.json
    python3 backup_cli.py schedule --interval 15
"""

import sys
import json
import argparse
import logging

from rotation_backup.config import (
    load_config,
    create_sample_config_dict,
    config_summary,
    BackupConfig,
)
from rotation_backup.orchestrator import (
    BackupOrchestrator,
    console_notification_handler,
    log_notification_handler,
)
from rotation_backup.scheduler import BackupScheduler
from rotation_backup.log_setup import setup_logging
from rotation_backup.errors import ConfigurationError, CorruptState

DEFAULT_CONFIG_PATH = 'backup_config.json'

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CORRUPT_STATE = 2

logger = logging.getLogger('backup_cli')


def build_orchestrator(config: BackupConfig, dry_run: bool = False) -> BackupOrchestrator:
    orchestrator = BackupOrchestrator(config, dry_run=dry_run)
    orchestrator.add_notification_handler(log_notification_handler)
    return orchestrator


def cmd_run(args, config: BackupConfig) -> int:
    """Execute one backup pass."""
    orchestrator = build_orchestrator(config, dry_run=args.dry_run)
    orchestrator.add_notification_handler(console_notification_handler)

    result = orchestrator.execute_backup_pass()
    if result.already_running:
        return EXIT_OK

    if result.due:
        print(f"Due: {', '.join(result.due)}")
        for name, slot in result.slots.items():
            print(f"  {name}: slot {slot}")
    if result.warning_messages:
        print("\n⚠️ Warnings:")
        for warning in result.warning_messages:
            print(f"  - {warning}")
    if result.error_messages:
        print("\n❌ Errors:")
        for error in result.error_messages:
            print(f"  - {error}")

    # Transfer failures are reported but do not change the exit code
    return EXIT_OK


def cmd_status(args, config: BackupConfig) -> int:
    """Show clock state of every granularity."""
    orchestrator = BackupOrchestrator(config)
    status = orchestrator.get_status()

    if args.json:
        status['config'] = config_summary(config)
        print(json.dumps(status, indent=2))
        return EXIT_OK

    print("📊 Rotating Backup Status")
    print("=" * 50)
    print(f"Remote: {status['remote']}")
    print(f"State: {status['state_dir']}")
    print(f"Running: {'yes' if status['running'] else 'no'}")
    print()

    for entry in status['granularities']:
        if not entry['enabled']:
            print(f"  {entry['name']:<10} disabled")
            continue
        last_run = entry['last_run'] or 'never'
        last_slot = entry['last_slot'] if entry['last_slot'] is not None else '-'
        due = 'due' if entry['due'] else f"due in {entry['seconds_until_due']:.0f}s"
        print(f"  {entry['name']:<10} last run {last_run}, slot {last_slot}/{entry['ring_size']}, "
              f"next slot {entry['next_slot']}, {due}")

    return EXIT_OK


def cmd_schedule(args, config: BackupConfig) -> int:
    """Run backup passes periodically."""
    interval = args.interval or config.schedule_interval_minutes
    scheduler = BackupScheduler(lambda: build_orchestrator(config), interval_minutes=interval)
    print(f"⏱️ Running a backup pass every {interval} minute(s) (press Ctrl+C to stop)")
    try:
        scheduler.run_forever()
    except KeyboardInterrupt:
        print("\n⏹️ Scheduler stopped")

    if scheduler.fatal_error is not None:
        raise scheduler.fatal_error
    return EXIT_OK


def cmd_prepare_remote(args, config: BackupConfig, parser: argparse.ArgumentParser) -> int:
    """Create a directory path on the remote side without deleting anything."""
    if not args.path:
        parser.print_usage(sys.stderr)
        print("error: prepare-remote requires --path", file=sys.stderr)
        return EXIT_USAGE

    orchestrator = BackupOrchestrator(config)
    if orchestrator.prepare_remote(args.path):
        print(f"✅ Remote path ready: {config.remote.join(args.path)}")
    else:
        print(f"❌ Could not prepare remote path {args.path}")
    return EXIT_OK


def create_sample_config(args) -> int:
    """Create a sample configuration file."""
    config_path = args.output or DEFAULT_CONFIG_PATH

    with open(config_path, 'w') as f:
        json.dump(create_sample_config_dict(), f, indent=2)

    print(f"📄 Sample configuration created: {config_path}")
    print("Edit this file to customize your settings")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Rotating multi-tier backup to a remote rsync mirror',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One backup pass (suitable for a frequent cron entry)
  python3 backup_cli.py run --config backup_config.json

  # Show last runs and next slots
  python3 backup_cli.py status

  # Keep running passes every 10 minutes
  python3 backup_cli.py schedule --interval 10

  # Generate sample config
  python3 backup_cli.py create-config --output backup_config.json
        """
    )

    parser.add_argument('-v', '--verbose', action='store_true', help='Enable verbose logging')
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH,
                        help=f'Configuration file path (default: {DEFAULT_CONFIG_PATH})')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    run_parser = subparsers.add_parser('run', help='Execute one backup pass')
    run_parser.add_argument('--dry-run', action='store_true',
                            help='Transfer with rsync --dry-run and record nothing')

    status_parser = subparsers.add_parser('status', help='Show retention state')
    status_parser.add_argument('--json', action='store_true', help='Print status as JSON')

    schedule_parser = subparsers.add_parser('schedule', help='Run backup passes periodically')
    schedule_parser.add_argument('--interval', type=int,
                                 help='Minutes between passes (default: from configuration)')

    prepare_parser = subparsers.add_parser('prepare-remote',
                                           help='Create a path below the remote root')
    prepare_parser.add_argument('--path', help='Path relative to the remote root')

    config_parser = subparsers.add_parser('create-config', help='Create sample configuration file')
    config_parser.add_argument('--output', help=f'Output file path (default: {DEFAULT_CONFIG_PATH})')

    return parser


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return EXIT_USAGE

    if args.command == 'create-config':
        return create_sample_config(args)

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        parser.print_usage(sys.stderr)
        print(f"❌ {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(args.verbose, config.log_dir, config.json_logs)

    try:
        if args.command == 'run':
            return cmd_run(args, config)
        elif args.command == 'status':
            return cmd_status(args, config)
        elif args.command == 'schedule':
            return cmd_schedule(args, config)
        elif args.command == 'prepare-remote':
            return cmd_prepare_remote(args, config, parser)
    except CorruptState as e:
        print(f"❌ {e}", file=sys.stderr)
        print("Inspect or remove the clock record before the next run.", file=sys.stderr)
        return EXIT_CORRUPT_STATE

    parser.print_help()
    return EXIT_USAGE


if __name__ == '__main__':
    try:
        exit_code = main()
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\n⚠️  Operation cancelled by user")
        sys.exit(130)
