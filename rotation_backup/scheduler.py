"""
Backup Scheduler

Runs backup passes periodically inside a long-lived process, for hosts
without cron. Each tick creates a fresh orchestrator and runs one pass; the
due calculation decides whether anything actually transfers, so ticks can
be frequent.
"""

import time
import threading
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Callable, Any
from dataclasses import dataclass

import schedule

from .orchestrator import BackupOrchestrator, OrchestrationResult
from .errors import CorruptState

logger = logging.getLogger(__name__)

JOB_TAG = 'backup_pass'
HISTORY_LIMIT = 100


@dataclass
class ScheduledJobResult:
    """Result of a scheduled pass."""
    started_at: datetime
    completed_at: datetime
    success: bool
    orchestration_result: Optional[OrchestrationResult] = None
    error_message: Optional[str] = None


class BackupScheduler:
    """Scheduler for periodic backup passes."""

    def __init__(self, orchestrator_factory: Callable[[], BackupOrchestrator],
                 interval_minutes: int = 15, max_consecutive_failures: int = 0):
        """
        Initialize the scheduler.

        Args:
            orchestrator_factory: Builds the orchestrator for one pass
            interval_minutes: Minutes between passes
            max_consecutive_failures: Stop after this many failed passes in a row (0 never stops)
        """
        if interval_minutes <= 0:
            raise ValueError("interval_minutes must be positive")

        self.orchestrator_factory = orchestrator_factory
        self.interval_minutes = interval_minutes
        self.max_consecutive_failures = max_consecutive_failures
        self.scheduler = schedule.Scheduler()
        self.job_history: List[ScheduledJobResult] = []
        self.consecutive_failures = 0
        self.running = False
        self.fatal_error: Optional[CorruptState] = None
        self.scheduler_thread = None
        self._stop_event = threading.Event()

    def start_scheduler(self):
        """Start the scheduler in a background thread."""
        if self.running:
            logger.warning("Scheduler is already running")
            return

        self._setup_job()
        self.running = True
        self._stop_event.clear()
        self.scheduler_thread = threading.Thread(target=self._run_scheduler, daemon=True)
        self.scheduler_thread.start()
        logger.info(f"Backup scheduler started: every {self.interval_minutes} minute(s)")

    def stop_scheduler(self):
        """Stop the scheduler."""
        if not self.running:
            logger.warning("Scheduler is not running")
            return

        self.running = False
        self._stop_event.set()
        self.scheduler.clear(JOB_TAG)

        if self.scheduler_thread and self.scheduler_thread.is_alive():
            self.scheduler_thread.join(timeout=5)

        logger.info("Backup scheduler stopped")

    def run_forever(self, run_immediately: bool = True):
        """Run passes in the calling thread until interrupted."""
        self._setup_job()
        self.running = True
        if run_immediately:
            self.execute_scheduled_pass()
        try:
            while self.running:
                self.scheduler.run_pending()
                if self._stop_event.wait(self._sleep_seconds()):
                    break
        finally:
            self.running = False
            self.scheduler.clear(JOB_TAG)

    def _setup_job(self):
        self.scheduler.clear(JOB_TAG)
        self.scheduler.every(self.interval_minutes).minutes.do(self.execute_scheduled_pass).tag(JOB_TAG)

    def _sleep_seconds(self) -> float:
        idle = self.scheduler.idle_seconds
        if idle is None:
            return 60.0
        return min(max(idle, 1.0), 60.0)

    def _run_scheduler(self):
        logger.info("Scheduler thread started")
        while self.running:
            try:
                self.scheduler.run_pending()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")
            if self._stop_event.wait(self._sleep_seconds()):
                break
        logger.info("Scheduler thread stopped")

    def execute_scheduled_pass(self) -> ScheduledJobResult:
        """Run one pass and record its outcome."""
        started_at = datetime.now(timezone.utc)
        job_result = ScheduledJobResult(started_at=started_at, completed_at=started_at, success=False)

        try:
            orchestrator = self.orchestrator_factory()
            result = orchestrator.execute_backup_pass()
            job_result.orchestration_result = result
            job_result.success = result.success
        except CorruptState as e:
            # Repeating the pass cannot fix a corrupt record
            logger.error(f"Stopping scheduler: {e}")
            job_result.error_message = str(e)
            self.fatal_error = e
            self.running = False
            self._stop_event.set()
        except Exception as e:
            logger.error(f"Scheduled backup pass failed with exception: {e}")
            job_result.error_message = str(e)
        finally:
            job_result.completed_at = datetime.now(timezone.utc)
            self.job_history.append(job_result)
            if len(self.job_history) > HISTORY_LIMIT:
                self.job_history = self.job_history[-HISTORY_LIMIT:]

        if job_result.success:
            self.consecutive_failures = 0
        else:
            self.consecutive_failures += 1
            if self.max_consecutive_failures and self.consecutive_failures >= self.max_consecutive_failures:
                logger.error(f"Stopping scheduler after {self.consecutive_failures} consecutive failures")
                self.running = False
                self._stop_event.set()

        return job_result

    def get_scheduler_status(self) -> Dict[str, Any]:
        """Get overall scheduler status."""
        recent_results = sorted(self.job_history, key=lambda x: x.started_at, reverse=True)[:20]
        successful_recent = sum(1 for r in recent_results if r.success)
        next_run = self.scheduler.next_run if self.scheduler.jobs else None

        return {
            'running': self.running,
            'interval_minutes': self.interval_minutes,
            'consecutive_failures': self.consecutive_failures,
            'recent_success_rate': successful_recent / len(recent_results) if recent_results else 0,
            'total_executions': len(self.job_history),
            'last_execution': recent_results[0].started_at.isoformat() if recent_results else None,
            'next_run': next_run.isoformat() if next_run else None,
        }
