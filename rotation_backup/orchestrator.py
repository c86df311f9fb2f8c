"""
Backup Orchestrator

Coordinates one backup invocation:
- Run guard (exit quietly if another pass is active)
- Due calculation against the clock store
- Slot allocation, one slot per due granularity
- Staging (database dumps, package inventory)
- Transfer pass: every due granularity x every source
- Signoff of the granularities whose sources all transferred

Remote layout below the configured remote root::

    <granularity>/current/<source>/   current mirror of that granularity
    <granularity>/<slot>/<source>/    files superseded since its last run
"""

import os
import time
import logging
import tempfile
from typing import Dict, List, Optional, Any, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import BackupConfig, BackupSource, Granularity, RemoteTarget, TransferConfig
from .clock_store import ClockStore
from .due_calculator import compute_due, seconds_until_due, is_due
from .slot_allocator import next_slot
from .signoff import SignoffLedger
from .run_guard import RunGuard
from .transfer import (
    SyncPrimitive,
    RsyncSync,
    SyncOptions,
    SideDirectory,
    ensure_remote_path,
    split_path,
)
from .collaborators import PostgresDumper, PackageInventory
from .errors import CorruptState, CollaboratorUnavailable, TransferFailure

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """State of one invocation, captured at its start."""
    start_timestamp: datetime
    due: List[Granularity] = field(default_factory=list)
    slots: Dict[str, int] = field(default_factory=dict)

    def slot_of(self, granularity: Granularity) -> int:
        return self.slots[granularity.name]


@dataclass
class PassResult:
    """Outcome of a transfer pass."""
    attempted: int = 0
    failures: Dict[str, List[str]] = field(default_factory=dict)
    errors: List[TransferFailure] = field(default_factory=list)
    vanished: int = 0

    def record_failure(self, failure: TransferFailure):
        self.failures.setdefault(failure.granularity, []).append(failure.source)
        self.errors.append(failure)

    def succeeded(self, granularity_name: str) -> bool:
        return not self.failures.get(granularity_name)

    @property
    def failed_granularities(self) -> List[str]:
        return sorted(name for name, sources in self.failures.items() if sources)


@dataclass
class OrchestrationResult:
    """Result of one backup invocation."""
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: bool = False
    already_running: bool = False
    due: List[str] = None
    slots: Dict[str, int] = None
    signed_off: List[str] = None
    phase_results: Dict[str, Any] = None
    processing_time: float = 0.0
    error_messages: List[str] = None
    warning_messages: List[str] = None

    def __post_init__(self):
        if self.due is None:
            self.due = []
        if self.slots is None:
            self.slots = {}
        if self.signed_off is None:
            self.signed_off = []
        if self.phase_results is None:
            self.phase_results = {}
        if self.error_messages is None:
            self.error_messages = []
        if self.warning_messages is None:
            self.warning_messages = []


class TransferOrchestrator:
    """Runs the sync primitive for every (due granularity, source) pair."""

    def __init__(self, sync: SyncPrimitive, remote: RemoteTarget,
                 transfer_config: Optional[TransferConfig] = None,
                 clock: Optional[ClockStore] = None):
        """
        Args:
            sync: Sync primitive, already entered
            remote: Remote root
            transfer_config: Excludes and credentials for mirror transfers
            clock: Clock store tracking slots pending signoff; without one
                every pass empties its slot
        """
        self.sync = sync
        self.remote = remote
        self.transfer_config = transfer_config or TransferConfig()
        self.clock = clock

    def run_pass(self, due: Iterable[Granularity], sources: List[BackupSource],
                 slot_of: Callable[[Granularity], int]) -> PassResult:
        """
        Transfer all sources for all due granularities.

        A failure for one (granularity, source) pair is recorded and the pass
        moves on; it only prevents that granularity's signoff.
        """
        result = PassResult()
        due = list(due)
        if not due:
            return result

        with tempfile.TemporaryDirectory(prefix='rotation_backup_empty_') as empty_dir:
            created = set()
            root_parts = split_path(self.remote.path)

            root_ready = ensure_remote_path(self.sync, empty_dir, self.remote.target, root_parts, created)
            if not root_ready.ok:
                for granularity in due:
                    self._fail_all(result, granularity, sources, root_ready.exit_code,
                                   f"remote root unavailable: {root_ready.detail}")
                return result

            for granularity in due:
                slot = slot_of(granularity)
                if not self._prepare_granularity(granularity, slot, empty_dir, created, root_parts,
                                                 sources, result):
                    continue

                for source in sources:
                    self._transfer_source(granularity, slot, source, result)

        for granularity in due:
            if result.succeeded(granularity.name):
                logger.info(f"{granularity.name}: all {len(sources)} source(s) transferred")
            else:
                logger.warning(
                    f"{granularity.name}: {len(result.failures[granularity.name])} source(s) failed"
                )
        return result

    def _prepare_granularity(self, granularity: Granularity, slot: int, empty_dir: str,
                             created: set, root_parts: List[str], sources: List[BackupSource],
                             result: PassResult) -> bool:
        """
        Create the granularity's directories and empty the slot being reused.

        A slot still pending signoff from an earlier attempt is not emptied:
        sources that transferred in that attempt already moved their
        superseded files into it, and those files exist nowhere else.
        """
        for leaf in ('current', str(slot)):
            ready = ensure_remote_path(self.sync, empty_dir, self.remote.target,
                                       root_parts + [granularity.name, leaf], created)
            if not ready.ok:
                self._fail_all(result, granularity, sources, ready.exit_code,
                               f"could not create {granularity.name}/{leaf}: {ready.detail}")
                return False

        if self.clock is not None and self.clock.read_pending(granularity.name) == slot:
            logger.info(f"{granularity.name}: resuming unfinished slot {slot}")
            return True

        slot_dir = self.remote.join(granularity.name, str(slot))
        recycled = self.sync.sync(empty_dir, slot_dir, SyncOptions(delete_extraneous=True))
        if not recycled.ok:
            self._fail_all(result, granularity, sources, recycled.exit_code,
                           f"could not recycle slot {slot}: {recycled.detail}")
            return False

        if self.clock is not None:
            self.clock.write_pending(granularity.name, slot)
        logger.info(f"{granularity.name}: writing superseded files into slot {slot}")
        return True

    def _transfer_source(self, granularity: Granularity, slot: int, source: BackupSource,
                         result: PassResult):
        destination = self.remote.join(granularity.name, 'current', source.name)
        options = SyncOptions(
            backup_dir=SideDirectory(granularity.name, slot, source.name),
            delete_extraneous=True,
            excludes=tuple(self.transfer_config.excludes),
            auth_secret=self.transfer_config.auth_secret,
        )

        logger.info(f"{granularity.name}: syncing {source.path} -> {destination}")
        result.attempted += 1

        if not os.path.isdir(source.path):
            failure = TransferFailure(granularity.name, source.name, detail=f"{source.path} is not a directory")
            logger.error(str(failure))
            result.record_failure(failure)
            return

        outcome = self.sync.sync(source.path, destination, options)
        if outcome.vanished:
            result.vanished += len(outcome.vanished)
            logger.debug(f"{granularity.name}: {len(outcome.vanished)} file(s) vanished during transfer of {source.path}")

        if not outcome.ok:
            failure = TransferFailure(granularity.name, source.name, outcome.exit_code, outcome.detail)
            logger.error(str(failure))
            result.record_failure(failure)

    def _fail_all(self, result: PassResult, granularity: Granularity, sources: List[BackupSource],
                  exit_code: Optional[int], detail: str):
        logger.error(f"{granularity.name}: {detail}")
        for source in sources:
            result.record_failure(TransferFailure(granularity.name, source.name, exit_code, detail))


class BackupOrchestrator:
    """Top-level controller for one backup invocation."""

    def __init__(self, config: BackupConfig, sync: Optional[SyncPrimitive] = None,
                 dumper: Optional[PostgresDumper] = None,
                 inventory: Optional[PackageInventory] = None,
                 guard: Optional[RunGuard] = None, clock: Optional[ClockStore] = None,
                 dry_run: bool = False):
        """
        Initialize the orchestrator.

        Args:
            config: Backup configuration
            sync: Sync primitive (rsync by default)
            dumper: Database dump collaborator
            inventory: Package inventory collaborator
            guard: Single-instance guard
            clock: Clock store
            dry_run: Transfer with --dry-run and skip signoff
        """
        self.config = config
        self.dry_run = dry_run
        self.sync = sync or RsyncSync(config.transfer, dry_run=dry_run)
        self.dumper = dumper or PostgresDumper(config.database)
        self.inventory = inventory if inventory is not None else (
            PackageInventory() if config.inventory_enabled else None
        )
        self.guard = guard or RunGuard(config.state_dir, config.lock_name, config.guard_process_scan)
        self.clock = clock or ClockStore(config.state_dir)
        self.ledger = SignoffLedger(self.clock)
        self.result = None
        self.notification_handlers = []

    def add_notification_handler(self, handler: Callable[[OrchestrationResult], None]):
        """Add a notification handler for finished runs."""
        self.notification_handlers.append(handler)

    def execute_backup_pass(self, now: Optional[datetime] = None) -> OrchestrationResult:
        """
        Execute one backup pass.

        Args:
            now: Start time of the pass (current UTC time by default)

        Returns:
            OrchestrationResult: Summary of the pass

        Raises:
            CorruptState: A clock record could not be parsed
        """
        start_time = time.time()
        started_at = now or datetime.now(timezone.utc)
        run_id = f"backup_{int(start_time)}"
        self.result = OrchestrationResult(run_id=run_id, started_at=started_at)

        if not self.guard.acquire():
            logger.info("Another backup pass is already running; nothing to do")
            self.result.already_running = True
            self.result.success = True
            self.result.completed_at = datetime.now(timezone.utc)
            return self.result

        try:
            logger.info(f"Starting backup pass: {run_id}")
            context = RunContext(start_timestamp=started_at)

            context.due = compute_due(started_at, self.clock, self.config.granularities)
            self.result.due = [g.name for g in context.due]
            if not context.due:
                logger.info("No backup intervals are due")
                self.result.success = True
                return self.result

            logger.info(f"Due intervals: {', '.join(self.result.due)}")

            context.slots = {g.name: next_slot(g, self.clock) for g in context.due}
            self.result.slots = dict(context.slots)

            self.result.phase_results['staging'] = self._execute_staging_phase()
            sources = self._pass_sources()

            with self.sync as sync:
                # Dry runs leave no pending slot
                transfer = TransferOrchestrator(sync, self.config.remote, self.config.transfer,
                                                clock=None if self.dry_run else self.clock)
                pass_result = transfer.run_pass(context.due, sources, context.slot_of)

            self.result.phase_results['transfer'] = {
                'attempted': pass_result.attempted,
                'failures': pass_result.failures,
                'vanished': pass_result.vanished,
            }
            for failure in pass_result.errors:
                self.result.error_messages.append(str(failure))

            if self.dry_run:
                logger.info("Dry run: skipping signoff")
                self.result.warning_messages.append("Dry run, nothing signed off")
            else:
                self.result.signed_off = self.ledger.signoff(context, pass_result)

            self.result.success = not pass_result.failed_granularities

        except CorruptState as e:
            logger.error(str(e))
            self.result.error_messages.append(str(e))
            self.result.success = False
            raise

        except Exception as e:
            error_msg = f"Backup pass failed: {e}"
            logger.exception(error_msg)
            self.result.error_messages.append(error_msg)
            self.result.success = False

        finally:
            self.guard.release()
            self._finalize_result(start_time)
            self._send_notifications()

        return self.result

    def _execute_staging_phase(self) -> Dict[str, Any]:
        """Produce database dumps and package inventory in the staging directory."""
        staging = {'databases': None, 'inventory': None}

        if self.config.database.enabled:
            try:
                staging['databases'] = self.dumper.dump_all(self.config.staging_dir)
                failed = [name for name, ok in staging['databases'].items() if not ok]
                if failed:
                    self.result.warning_messages.append(f"Database dumps failed: {', '.join(failed)}")
            except CollaboratorUnavailable as e:
                logger.info(f"Skipping database dumps: {e}")
                self.result.warning_messages.append(f"Database dumps skipped: {e}")
        else:
            logger.debug("Database backup not enabled")

        if self.inventory is not None:
            try:
                staging['inventory'] = str(self.inventory.write(self.config.staging_dir))
                logger.info(f"Wrote package inventory to {staging['inventory']}")
            except CollaboratorUnavailable as e:
                logger.info(f"Skipping package inventory: {e}")
                self.result.warning_messages.append(f"Package inventory skipped: {e}")
            except OSError as e:
                logger.warning(f"Could not write package inventory: {e}")
                self.result.warning_messages.append(f"Package inventory failed: {e}")

        return staging

    def _pass_sources(self) -> List[BackupSource]:
        sources = list(self.config.sources)
        staging_dir = os.path.abspath(self.config.staging_dir)
        if os.path.isdir(staging_dir) and os.listdir(staging_dir):
            if all(source.path.rstrip('/') != staging_dir.rstrip('/') for source in sources):
                staging = BackupSource.from_path(staging_dir)
                if all(source.name != staging.name for source in sources):
                    sources.append(staging)
        return sources

    def prepare_remote(self, relative_path: str) -> bool:
        """Create ``relative_path`` below the remote root, level by level."""
        parts = split_path(self.config.remote.path) + split_path(relative_path)
        with self.sync as sync:
            with tempfile.TemporaryDirectory(prefix='rotation_backup_empty_') as empty_dir:
                result = ensure_remote_path(sync, empty_dir, self.config.remote.target, parts)
        if result.ok:
            logger.info(f"Remote path ready: {self.config.remote.join(relative_path)}")
        return result.ok

    def get_status(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Report clock state and due-ness of every granularity."""
        now = now or datetime.now(timezone.utc)
        granularities = []
        records = self.clock.records([g.name for g in self.config.granularities])
        for granularity, record in zip(self.config.granularities, records):
            granularities.append({
                'name': granularity.name,
                'ring_size': granularity.ring_size,
                'period': granularity.period,
                'enabled': granularity.enabled,
                'last_run': record.last_run.isoformat() if record.last_run else None,
                'last_slot': record.last_slot,
                'next_slot': next_slot(granularity, self.clock) if granularity.enabled else None,
                'pending_slot': self.clock.read_pending(granularity.name),
                'due': is_due(granularity, now, record.last_run),
                'seconds_until_due': seconds_until_due(granularity, now, record.last_run),
            })

        return {
            'timestamp': now.isoformat(),
            'state_dir': self.config.state_dir,
            'remote': self.config.remote.join(),
            'sources': [source.path for source in self.config.sources],
            'running': self.guard.is_already_running(),
            'granularities': granularities,
        }

    def _finalize_result(self, start_time: float):
        self.result.completed_at = datetime.now(timezone.utc)
        self.result.processing_time = time.time() - start_time

        if self.result.success:
            logger.info(f"Backup pass completed in {self.result.processing_time:.2f}s; "
                        f"signed off: {', '.join(self.result.signed_off) or 'none'}")
        else:
            logger.error(f"Backup pass finished with errors after {self.result.processing_time:.2f}s")
        return self.result

    def _send_notifications(self):
        for handler in self.notification_handlers:
            try:
                handler(self.result)
            except Exception as e:
                logger.warning(f"Notification handler failed: {e}")


# Notification handlers
def console_notification_handler(result: OrchestrationResult):
    """Simple console notification handler."""
    if result.already_running:
        return
    if result.success:
        print(f"✅ Backup pass completed: {', '.join(result.signed_off) or 'nothing due'} "
              f"in {result.processing_time:.2f}s")
    else:
        print(f"❌ Backup pass had failures: {'; '.join(result.error_messages)}")


def log_notification_handler(result: OrchestrationResult):
    """Log-based notification handler."""
    log_level = logging.INFO if result.success else logging.ERROR
    logger.log(
        log_level,
        f"Backup run '{result.run_id}' completed: success={result.success}, "
        f"due={result.due}, signed_off={result.signed_off}, duration={result.processing_time:.1f}s"
    )
