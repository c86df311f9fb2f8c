"""
Transfer Primitive

The sync primitive copies the contents of a local directory to a remote
location and can move every file it would overwrite or delete into a side
directory instead of discarding it. ``SyncPrimitive`` is the port the
rotation engine talks to; ``RsyncSync`` implements it with the rsync client.

``RsyncSync`` is a context manager: on entry it writes the transient
artifacts derived from configuration (password file, exclude list) into a
private temporary directory, and on exit it removes them, whatever the
outcome of the run.
"""

import os
import re
import shutil
import logging
import tempfile
import subprocess
from typing import List, Optional, Tuple
from dataclasses import dataclass, field

from .config import TransferConfig

logger = logging.getLogger(__name__)

# rsync exit codes
RSYNC_OK = 0
RSYNC_PARTIAL_ERROR = 23
RSYNC_PARTIAL_VANISHED = 24

VANISHED_PATTERN = re.compile(r'file has vanished: "(?P<path>[^"]+)"')
FAILED_PATH_PATTERN = re.compile(r'^rsync: .*?"(?P<path>[^"]+)"')
SUMMARY_PATTERN = re.compile(r'^rsync (error|warning):')


@dataclass(frozen=True)
class SideDirectory:
    """Where a granularity keeps files superseded during one interval."""
    granularity: str
    slot: int
    source_name: str

    def relative_to_mirror(self) -> str:
        # Mirror lives at <granularity>/current/<source>, slots at <granularity>/<slot>/<source>
        return f"../../{self.slot}/{self.source_name}"


@dataclass
class SyncOptions:
    """Options for one sync call."""
    backup_dir: Optional[SideDirectory] = None
    delete_extraneous: bool = False
    excludes: Tuple[str, ...] = ()
    auth_secret: Optional[str] = None


@dataclass
class SyncResult:
    """Outcome of one sync call."""
    ok: bool
    exit_code: Optional[int] = None
    failed_paths: List[str] = field(default_factory=list)
    vanished: List[str] = field(default_factory=list)
    detail: str = ""


class SyncPrimitive:
    """Port for the directory sync primitive."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        return False

    def sync(self, source_path: str, destination: str, options: SyncOptions) -> SyncResult:
        raise NotImplementedError


class RsyncSync(SyncPrimitive):
    """Sync primitive backed by the rsync command line client."""

    def __init__(self, config: TransferConfig, dry_run: bool = False):
        self.config = config
        self.dry_run = dry_run
        self.temp_dir = None
        self.password_file = None
        self.exclude_file = None

    def __enter__(self):
        """Create the transient credential and exclusion files."""
        self.temp_dir = tempfile.mkdtemp(prefix='rotation_backup_')
        os.chmod(self.temp_dir, 0o700)

        if self.config.auth_secret:
            self.password_file = os.path.join(self.temp_dir, 'rsync.secret')
            fd = os.open(self.password_file, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, 'w') as f:
                f.write(self.config.auth_secret + '\n')

        if self.config.excludes:
            self.exclude_file = os.path.join(self.temp_dir, 'excludes.txt')
            with open(self.exclude_file, 'w', encoding='utf-8') as f:
                for pattern in self.config.excludes:
                    f.write(pattern + '\n')

        logger.debug(f"Prepared transfer artifacts in {self.temp_dir}")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Remove transient artifacts on every exit path."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            shutil.rmtree(self.temp_dir, ignore_errors=True)
            logger.debug(f"Removed transfer artifacts in {self.temp_dir}")
        self.temp_dir = None
        self.password_file = None
        self.exclude_file = None
        return False

    def build_command(self, source_path: str, destination: str, options: SyncOptions) -> List[str]:
        """Build the rsync command line for one sync call."""
        if self.temp_dir is None:
            raise RuntimeError("RsyncSync must be used as context manager")

        cmd = [self.config.rsync_binary, '-a', '--hard-links', '--numeric-ids']

        if options.delete_extraneous:
            cmd.append('--delete')
        if options.backup_dir is not None:
            cmd.extend(['--backup', f'--backup-dir={options.backup_dir.relative_to_mirror()}'])
        if options.excludes and self.exclude_file:
            cmd.append(f'--exclude-from={self.exclude_file}')
        if options.auth_secret and self.password_file:
            cmd.append(f'--password-file={self.password_file}')
        if self.config.timeout:
            cmd.append(f'--timeout={int(self.config.timeout)}')
        if self.dry_run:
            cmd.append('--dry-run')
        cmd.extend(self.config.extra_args)

        cmd.extend([_as_contents(source_path), destination.rstrip('/') + '/'])
        return cmd

    def sync(self, source_path: str, destination: str, options: SyncOptions) -> SyncResult:
        cmd = self.build_command(source_path, destination, options)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            completed = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except OSError as e:
            return SyncResult(ok=False, detail=f"could not run {self.config.rsync_binary}: {e}")

        return interpret_rsync_result(completed.returncode, completed.stderr or "")


def interpret_rsync_result(exit_code: int, stderr: str) -> SyncResult:
    """
    Map an rsync exit status and its error output to a SyncResult.

    Files that vanish between enumeration and transfer are reported by rsync
    but are not failures: exit code 24, or exit code 23 whose only error
    lines are vanished-file warnings, count as success.
    """
    vanished = []
    failed = []
    other_errors = []

    for line in stderr.splitlines():
        line = line.strip()
        if not line:
            continue
        match = VANISHED_PATTERN.search(line)
        if match:
            vanished.append(match.group('path'))
            continue
        if SUMMARY_PATTERN.match(line):
            continue
        other_errors.append(line)
        match = FAILED_PATH_PATTERN.match(line)
        if match:
            failed.append(match.group('path'))

    if exit_code == RSYNC_OK:
        return SyncResult(ok=True, exit_code=exit_code, vanished=vanished)

    if exit_code == RSYNC_PARTIAL_VANISHED or (exit_code == RSYNC_PARTIAL_ERROR and vanished and not other_errors):
        return SyncResult(ok=True, exit_code=exit_code, vanished=vanished)

    detail = other_errors[-1] if other_errors else f"rsync exited with code {exit_code}"
    return SyncResult(ok=False, exit_code=exit_code, failed_paths=failed,
                      vanished=vanished, detail=detail)


def ensure_remote_path(sync: SyncPrimitive, empty_dir: str, base: str, parts: List[str],
                       created: Optional[set] = None) -> SyncResult:
    """
    Create each directory level of ``base/parts[0]/parts[1]/...`` in turn.

    Uses the deletion-safe sync variant (no --delete, no backup dir): syncing
    an empty directory onto an existing one leaves its content untouched.
    ``created`` remembers levels already made during this pass.
    """
    if created is None:
        created = set()

    current = base.rstrip('/')
    for part in parts:
        part = part.strip('/')
        if not part:
            continue
        separator = '' if current.endswith(':') else '/'
        current = f"{current}{separator}{part}"
        if current in created:
            continue

        result = sync.sync(empty_dir, current, SyncOptions(delete_extraneous=False))
        if not result.ok:
            logger.error(f"Could not create remote directory {current}: {result.detail}")
            return result
        created.add(current)
        logger.debug(f"Remote directory ready: {current}")

    return SyncResult(ok=True, exit_code=RSYNC_OK)


def split_path(path: str) -> List[str]:
    return [p for p in path.replace('\\', '/').split('/') if p]


def _as_contents(path: str) -> str:
    # Trailing slash: copy the directory's contents, not the directory itself
    return path.rstrip('/') + '/'
