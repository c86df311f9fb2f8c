"""
Rotating Backup System

Scheduled, incremental, multi-tier backups of local directories (and
optionally databases) to a remote rsync mirror, keeping a bounded rotating
history per retention tier (hourly, daily, weekly, monthly, yearly).

Modules:
    clock_store: Per-granularity last-run/last-slot records
    due_calculator: Determines which granularities are due
    slot_allocator: Rotating slot numbers per granularity
    transfer: Sync primitive port and rsync adapter
    orchestrator: Transfer pass and top-level backup run flow
    signoff: Durable recording of completed granularities
    run_guard: Single-instance guard
    collaborators: Database dump and package inventory producers
    scheduler: In-process periodic invocation
"""

__version__ = "1.0.0"
__author__ = "Rotating Backup Team"

# Retention tiers: ring_size is the number of increments to keep (0 disables
# the tier), period is the minimum number of seconds between two runs.
DEFAULT_GRANULARITIES = [
    {"name": "hourly", "ring_size": 24, "period": 3600},
    {"name": "daily", "ring_size": 7, "period": 86400},
    {"name": "weekly", "ring_size": 4, "period": 604800},
    {"name": "monthly", "ring_size": 12, "period": 2592000},
    {"name": "yearly", "ring_size": 0, "period": 31536000},
]

# Local paths
DEFAULT_PATHS = {
    "state_dir": "/var/lib/rotation-backup",
    "staging_dir": "/var/backups/rotation-backup-staging",
}

# Transfer configuration defaults
DEFAULT_TRANSFER_CONFIG = {
    "excludes": [],
    "auth_secret": None,
    "rsync_binary": "rsync",
    "extra_args": [],
    "timeout": None,
}

# Database configuration defaults
DEFAULT_DB_CONFIG = {
    "enabled": False,
    "host": "localhost",
    "port": 5432,
    "user": "postgres",
    "password": "",
    "maintenance_db": "postgres",
}

# Run guard and scheduling defaults
DEFAULT_GUARD_CONFIG = {
    "lock_name": "rotation-backup",
    "process_scan": False,
}

DEFAULT_SCHEDULE_CONFIG = {
    "interval_minutes": 15,
}

DEFAULT_LOGGING_CONFIG = {
    "log_dir": "logs",
    "json": False,
}

# Environment variable consulted for the transfer secret
SECRET_ENV_VAR = "ROTATION_BACKUP_SECRET"
