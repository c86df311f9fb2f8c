"""
Backup Configuration

Immutable configuration structures passed explicitly into every component:
retention tiers, backup sources, remote target and collaborator settings.
Configuration is read from a JSON file; missing keys fall back to the
package defaults.
"""

import os
import re
import json
import logging
from typing import Dict, List, Optional, Any, Tuple
from dataclasses import dataclass, field, asdict

from . import (
    DEFAULT_GRANULARITIES,
    DEFAULT_PATHS,
    DEFAULT_TRANSFER_CONFIG,
    DEFAULT_DB_CONFIG,
    DEFAULT_GUARD_CONFIG,
    DEFAULT_SCHEDULE_CONFIG,
    DEFAULT_LOGGING_CONFIG,
    SECRET_ENV_VAR,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]+$')


@dataclass(frozen=True)
class Granularity:
    """A named retention tier."""
    name: str
    ring_size: int
    period: int

    def __post_init__(self):
        if not isinstance(self.name, str) or not NAME_PATTERN.match(self.name):
            raise ConfigurationError(f"Invalid granularity name: {self.name!r}")
        if not isinstance(self.ring_size, int) or isinstance(self.ring_size, bool) or self.ring_size < 0:
            raise ConfigurationError(
                f"Granularity '{self.name}' needs an integer ring_size >= 0, got {self.ring_size!r}"
            )
        if not isinstance(self.period, int) or isinstance(self.period, bool) or self.period <= 0:
            raise ConfigurationError(
                f"Granularity '{self.name}' needs a positive integer period, got {self.period!r}"
            )

    @property
    def enabled(self) -> bool:
        return self.ring_size > 0


@dataclass(frozen=True)
class BackupSource:
    """A local directory mirrored to the remote side."""
    path: str
    name: str

    @classmethod
    def from_path(cls, path: str) -> 'BackupSource':
        if not os.path.isabs(path):
            raise ConfigurationError(f"Backup source must be an absolute path: {path}")
        return cls(path=path, name=flatten_source_name(path))


@dataclass(frozen=True)
class RemoteTarget:
    """Remote location of the mirror.

    ``target`` must already exist (an rsync module, ``host:/dir`` or a local
    directory); ``path`` is created below it on demand.
    """
    target: str
    path: str = ""

    def join(self, *parts: str) -> str:
        segments = [p.strip('/') for p in (self.path,) + parts if p and p.strip('/')]
        base = self.target.rstrip('/')
        if not segments:
            return base
        # "host::module" style targets take the path straight after the colons
        separator = '' if base.endswith(':') else '/'
        return base + separator + '/'.join(segments)


@dataclass(frozen=True)
class TransferConfig:
    excludes: Tuple[str, ...] = ()
    auth_secret: Optional[str] = None
    rsync_binary: str = "rsync"
    extra_args: Tuple[str, ...] = ()
    timeout: Optional[int] = None


@dataclass(frozen=True)
class DatabaseConfig:
    enabled: bool = False
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = ""
    maintenance_db: str = "postgres"

    def connection_kwargs(self, database: Optional[str] = None) -> Dict[str, Any]:
        return {
            'host': self.host,
            'port': self.port,
            'user': self.user,
            'password': self.password,
            'dbname': database or self.maintenance_db,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Complete configuration for a backup run."""
    state_dir: str
    staging_dir: str
    sources: Tuple[BackupSource, ...]
    remote: RemoteTarget
    granularities: Tuple[Granularity, ...]
    transfer: TransferConfig = field(default_factory=TransferConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    inventory_enabled: bool = True
    lock_name: str = "rotation-backup"
    guard_process_scan: bool = False
    schedule_interval_minutes: int = 15
    log_dir: str = "logs"
    json_logs: bool = False

    def __post_init__(self):
        names = [g.name for g in self.granularities]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate granularity names: {', '.join(duplicates)}")

        flat_names: Dict[str, str] = {}
        for source in self.sources:
            if source.name in flat_names:
                raise ConfigurationError(
                    f"Sources {flat_names[source.name]} and {source.path} both map to "
                    f"destination name '{source.name}'"
                )
            flat_names[source.name] = source.path


def flatten_source_name(path: str) -> str:
    """Flatten a source path into a single-level destination name.

    >>> flatten_source_name('/home/user/docs')
    'home_user_docs'
    """
    stripped = path.strip('/').strip(os.sep)
    if not stripped:
        return 'root'
    return re.sub(r'[/\\]+', '_', stripped)


def parse_granularities(entries: List[Dict[str, Any]]) -> Tuple[Granularity, ...]:
    """Build granularities from ``{name, ring_size, period}`` mappings."""
    result = []
    for entry in entries:
        try:
            result.append(Granularity(
                name=entry['name'],
                ring_size=entry['ring_size'],
                period=entry['period'],
            ))
        except KeyError as e:
            raise ConfigurationError(f"Granularity entry {entry!r} is missing {e}") from e
    return tuple(result)


def config_from_dict(data: Dict[str, Any]) -> BackupConfig:
    """Create a BackupConfig from a parsed configuration mapping."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a JSON object")

    remote_data = data.get('remote') or {}
    if isinstance(remote_data, str):
        remote_data = {'target': remote_data}
    if not remote_data.get('target'):
        raise ConfigurationError("Configuration is missing remote.target")

    transfer_data = {**DEFAULT_TRANSFER_CONFIG, **(data.get('transfer') or {})}
    db_data = {**DEFAULT_DB_CONFIG, **(data.get('database') or {})}
    guard_data = {**DEFAULT_GUARD_CONFIG, **(data.get('guard') or {})}
    schedule_data = {**DEFAULT_SCHEDULE_CONFIG, **(data.get('schedule') or {})}
    logging_data = {**DEFAULT_LOGGING_CONFIG, **(data.get('logging') or {})}
    inventory_data = data.get('inventory') or {}

    auth_secret = transfer_data.get('auth_secret') or os.environ.get(SECRET_ENV_VAR)

    return BackupConfig(
        state_dir=data.get('state_dir', DEFAULT_PATHS['state_dir']),
        staging_dir=data.get('staging_dir', DEFAULT_PATHS['staging_dir']),
        sources=tuple(BackupSource.from_path(p) for p in data.get('sources', [])),
        remote=RemoteTarget(target=remote_data['target'], path=remote_data.get('path', '')),
        granularities=parse_granularities(data.get('granularities', DEFAULT_GRANULARITIES)),
        transfer=TransferConfig(
            excludes=tuple(transfer_data['excludes']),
            auth_secret=auth_secret,
            rsync_binary=transfer_data['rsync_binary'],
            extra_args=tuple(transfer_data['extra_args']),
            timeout=transfer_data['timeout'],
        ),
        database=DatabaseConfig(
            enabled=bool(db_data['enabled']),
            host=db_data['host'],
            port=int(db_data['port']),
            user=db_data['user'],
            password=db_data['password'],
            maintenance_db=db_data['maintenance_db'],
        ),
        inventory_enabled=bool(inventory_data.get('enabled', True)),
        lock_name=guard_data['lock_name'],
        guard_process_scan=bool(guard_data['process_scan']),
        schedule_interval_minutes=int(schedule_data['interval_minutes']),
        log_dir=logging_data['log_dir'],
        json_logs=bool(logging_data['json']),
    )


def load_config(config_path: str) -> BackupConfig:
    """Load configuration from a JSON file."""
    try:
        with open(config_path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file {config_path}: {e}") from e

    logger.debug(f"Loaded configuration from {config_path}")
    return config_from_dict(data)


def create_sample_config_dict() -> Dict[str, Any]:
    """Create a sample configuration mapping."""
    return {
        "state_dir": DEFAULT_PATHS['state_dir'],
        "staging_dir": DEFAULT_PATHS['staging_dir'],
        "sources": ["/etc", "/home"],
        "remote": {
            "target": "backup@backup.example.com::backups",
            "path": os.uname().nodename if hasattr(os, 'uname') else "myhost"
        },
        "granularities": [dict(g) for g in DEFAULT_GRANULARITIES],
        "transfer": {
            "excludes": ["*.tmp", ".cache/"],
            "auth_secret": None,
            "rsync_binary": "rsync",
            "extra_args": [],
            "timeout": None
        },
        "database": {k: v for k, v in DEFAULT_DB_CONFIG.items()},
        "inventory": {"enabled": True},
        "guard": dict(DEFAULT_GUARD_CONFIG),
        "schedule": dict(DEFAULT_SCHEDULE_CONFIG),
        "logging": dict(DEFAULT_LOGGING_CONFIG)
    }


def config_summary(config: BackupConfig) -> Dict[str, Any]:
    """Serializable view of a configuration, secrets masked."""
    summary = asdict(config)
    if summary['transfer'].get('auth_secret'):
        summary['transfer']['auth_secret'] = '***'
    if summary['database'].get('password'):
        summary['database']['password'] = '***'
    return summary
