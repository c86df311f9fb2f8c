"""
Run Guard

Keeps at most one backup pass active at a time. The guard is an advisory
lock file in the state directory holding the owner's PID and start time;
a lock whose owner is gone (checked with psutil), or whose metadata has
been unreadable for longer than a short grace period, is stale and gets
taken over. The lock is hard-linked into place from a private temp file,
so it never exists without its metadata. Optionally the process table is
also scanned for another instance by name.

The check happens once, at the start of a pass.
"""

import os
import json
import time
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any

import psutil

logger = logging.getLogger(__name__)

# Seconds an unreadable lock file is still treated as held
LOCK_GRACE_SECONDS = 10


def is_pid_alive(pid: int) -> bool:
    """Check if a process with the given PID is alive."""
    try:
        return psutil.pid_exists(int(pid))
    except (TypeError, ValueError):
        return False


def is_process_running(name: str, exclude_pid: Optional[int] = None) -> bool:
    """Scan the process table for another process whose command line mentions ``name``."""
    exclude_pid = os.getpid() if exclude_pid is None else exclude_pid
    for proc in psutil.process_iter(['pid', 'name', 'cmdline']):
        try:
            if proc.info['pid'] == exclude_pid:
                continue
            cmdline = proc.info.get('cmdline') or []
            if proc.info.get('name') == name or any(os.path.basename(arg) == name for arg in cmdline):
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return False


class RunGuard:
    """Advisory single-instance lock."""

    def __init__(self, state_dir: str, lock_name: str = 'rotation-backup',
                 process_scan: bool = False, process_name: Optional[str] = None):
        self.lock_path = Path(state_dir) / f"{lock_name}.lock"
        self.process_scan = process_scan
        self.process_name = process_name or lock_name
        self.held = False

    def read_metadata(self) -> Optional[Dict[str, Any]]:
        return _read_lock_file(self.lock_path)

    def is_stale(self) -> bool:
        return self._is_stale(self.read_metadata())

    def _is_stale(self, meta: Optional[Dict[str, Any]]) -> bool:
        if meta:
            return not is_pid_alive(meta.get('pid'))
        # Unreadable: live during the grace period, stale after it
        try:
            age = time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return True
        return age > LOCK_GRACE_SECONDS

    def is_already_running(self) -> bool:
        """True when another live instance holds the guard."""
        if self.held:
            return False
        if self.lock_path.exists() and not self.is_stale():
            return True
        if self.process_scan and is_process_running(self.process_name):
            return True
        return False

    def acquire(self) -> bool:
        """Take the lock; False when another live instance holds it."""
        if self.held:
            return True
        if self.process_scan and is_process_running(self.process_name):
            return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            'pid': os.getpid(),
            'ts': datetime.now(timezone.utc).isoformat(),
            'name': self.process_name,
        }
        tmp = self.lock_path.with_name(f"{self.lock_path.name}.{os.getpid()}.tmp")
        with open(tmp, 'w', encoding='utf-8') as f:
            json.dump(data, f)

        try:
            # The lock appears with its content or not at all
            self.held = self._link(tmp) or (self._take_over_stale() and self._link(tmp))
        finally:
            tmp.unlink(missing_ok=True)
        return self.held

    def release(self):
        if not self.held:
            return
        meta = self.read_metadata()
        if meta and meta.get('pid') == os.getpid():
            self._remove_lock()
        self.held = False

    def _link(self, tmp: Path) -> bool:
        try:
            os.link(tmp, self.lock_path)
        except FileExistsError:
            return False
        return True

    def _take_over_stale(self) -> bool:
        """Move a stale lock out of the way; False when the lock is live."""
        meta = self.read_metadata()
        if not self._is_stale(meta):
            return False

        aside = self.lock_path.with_name(f"{self.lock_path.name}.{os.getpid()}.stale")
        try:
            os.rename(self.lock_path, aside)
        except FileNotFoundError:
            return True

        if _read_lock_file(aside) != meta:
            # Another instance replaced the stale lock in the meantime
            try:
                os.link(aside, self.lock_path)
            except FileExistsError:
                pass
            aside.unlink(missing_ok=True)
            return False

        logger.warning(f"Removing stale lock: {self.lock_path}")
        aside.unlink(missing_ok=True)
        return True

    def _remove_lock(self):
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False


def _read_lock_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return data if isinstance(data, dict) else None
    except (OSError, json.JSONDecodeError):
        return None
