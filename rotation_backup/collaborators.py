"""
Staging Collaborators

Producers that write into the local staging directory before a transfer
pass: PostgreSQL dumps (pg_dump, one gzip file per database) and a listing
of the packages installed on the host. The staging directory is then
mirrored like any other source.

Both raise CollaboratorUnavailable when they are not configured or their
tooling is missing; the run logs a notice and carries on.
"""

import os
import gzip
import shutil
import logging
import subprocess
from typing import Dict, List, Optional
from pathlib import Path

import psycopg2

from .config import DatabaseConfig
from .errors import CollaboratorUnavailable

logger = logging.getLogger(__name__)

DATABASE_SUBDIR = 'databases'
INVENTORY_FILE = 'packages.txt'


class PostgresDumper:
    """Dumps every PostgreSQL database of a server into the staging directory."""

    def __init__(self, db_config: DatabaseConfig, pg_dump_binary: str = 'pg_dump',
                 timeout: int = 3600):
        self.db_config = db_config
        self.pg_dump_binary = pg_dump_binary
        self.timeout = timeout

    def available(self) -> bool:
        return self.db_config.enabled and shutil.which(self.pg_dump_binary) is not None

    def list_databases(self) -> List[str]:
        """List non-template databases on the server."""
        try:
            with psycopg2.connect(**self.db_config.connection_kwargs()) as conn:
                with conn.cursor() as cur:
                    cur.execute("""
                        SELECT datname FROM pg_database
                        WHERE NOT datistemplate AND datallowconn
                        ORDER BY datname
                    """)
                    return [row[0] for row in cur.fetchall()]
        except psycopg2.Error as e:
            raise CollaboratorUnavailable(f"Cannot list databases on {self.db_config.host}: {e}") from e

    def dump_database(self, name: str, target_path: Path) -> bool:
        """Dump one database to a gzip file."""
        cmd = [
            self.pg_dump_binary,
            '-h', self.db_config.host,
            '-p', str(self.db_config.port),
            '-U', self.db_config.user,
            '-d', name,
            '--no-password',
        ]

        env = os.environ.copy()
        env['PGPASSWORD'] = self.db_config.password or ''

        tmp_path = target_path.with_name(target_path.name + '.partial')
        try:
            with gzip.open(tmp_path, 'wb') as f:
                result = subprocess.run(cmd, stdout=f, stderr=subprocess.PIPE,
                                        env=env, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Dump of database {name} failed: {e}")
            tmp_path.unlink(missing_ok=True)
            return False

        if result.returncode != 0:
            stderr = result.stderr.decode('utf-8', errors='replace').strip()
            logger.error(f"Dump of database {name} failed: {stderr}")
            tmp_path.unlink(missing_ok=True)
            return False

        os.replace(tmp_path, target_path)
        return True

    def dump_all(self, staging_dir: str) -> Dict[str, bool]:
        """
        Dump every database into ``<staging_dir>/databases``.

        Returns:
            Mapping of database name to dump success
        """
        if not self.available():
            if not self.db_config.enabled:
                raise CollaboratorUnavailable("Database backup is not enabled")
            raise CollaboratorUnavailable(f"{self.pg_dump_binary} not found on PATH")

        target_dir = Path(staging_dir) / DATABASE_SUBDIR
        target_dir.mkdir(parents=True, exist_ok=True)

        results = {}
        for name in self.list_databases():
            logger.info(f"Dumping database {name}")
            results[name] = self.dump_database(name, target_dir / f"{name}.sql.gz")
        return results


class PackageInventory:
    """Lists installed packages with whichever package manager is present."""

    COMMANDS = [
        ['dpkg-query', '-W', '-f', '${Package}\t${Version}\n'],
        ['rpm', '-qa', '--qf', '%{NAME}\t%{VERSION}-%{RELEASE}\n'],
        ['pacman', '-Q'],
        ['apk', 'info', '-v'],
    ]

    def __init__(self, commands: Optional[List[List[str]]] = None, timeout: int = 300):
        self.commands = commands or self.COMMANDS
        self.timeout = timeout

    def list_installed_packages(self) -> str:
        for cmd in self.commands:
            if shutil.which(cmd[0]) is None:
                continue
            try:
                result = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                                        text=True, timeout=self.timeout, check=False)
            except (OSError, subprocess.TimeoutExpired) as e:
                logger.warning(f"Package listing with {cmd[0]} failed: {e}")
                continue
            if result.returncode == 0:
                return result.stdout
            logger.warning(f"Package listing with {cmd[0]} exited with code {result.returncode}")

        raise CollaboratorUnavailable("No supported package manager found")

    def write(self, staging_dir: str) -> Path:
        """Write the package listing to ``<staging_dir>/packages.txt``."""
        listing = self.list_installed_packages()
        target = Path(staging_dir) / INVENTORY_FILE
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(listing, encoding='utf-8')
        return target
