"""Periodic pull sync guarded by a database lock.

A ``running`` row in sync_state is the lock for its sync_type; the partial
unique index on (sync_type) where status = 'running' makes acquisition
safe across processes and hosts.
"""

import asyncio
import logging
import time
from datetime import timedelta
from enum import Enum
from typing import Callable, Optional
from uuid import UUID

from sqlalchemy.exc import IntegrityError

from .config import Settings
from .database import DatabaseManager, SyncStateDB, as_utc, utcnow
from .models import ChannelContext, PullSyncReport, SyncRunStatus
from .pull_sync import PullSyncService
from .services import BaseChannelClient, create_client

logger = logging.getLogger(__name__)

STALE_LOCK_MESSAGE = "Sync timed out (stale lock released)"


class LockContentionError(Exception):
    """Another process holds the sync lock. Handled inside the scheduler."""
    pass


class TickOutcome(str, Enum):
    """Result of one scheduler tick."""

    COMPLETED = "completed"
    FAILED = "failed"
    CONTENDED = "contended"
    DISABLED = "disabled"


class PullSyncScheduler:
    """Runs pull sync for one channel context on a fixed interval with backoff."""

    def __init__(
        self,
        context: ChannelContext,
        settings: Settings,
        db_manager: DatabaseManager,
        client_factory: Callable[[ChannelContext, Settings], BaseChannelClient] = create_client
    ):
        """Initialize scheduler.

        Args:
            context: Resolved channel configuration
            settings: Application settings
            db_manager: Database manager
            client_factory: Builds the channel client for each run
        """
        self.context = context
        self.settings = settings
        self.config = settings.scheduler
        self.db_manager = db_manager
        self.client_factory = client_factory
        self.sync_type = context.sync_type
        self.logger = logger.getChild(context.integration)

        self.backoff_ms = self.config.interval_ms
        self.running = False
        self.last_outcome: Optional[TickOutcome] = None
        self.last_report: Optional[PullSyncReport] = None
        self._owned_lock: Optional[UUID] = None
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # -- lock management --------------------------------------------------

    def reclaim_stale_locks(self) -> int:
        """Fail running rows older than the lock timeout.

        Returns:
            Number of locks released
        """
        cutoff = utcnow() - timedelta(milliseconds=self.config.lock_timeout_ms)
        with self.db_manager.get_session() as session:
            stale = session.query(SyncStateDB).filter(
                SyncStateDB.sync_type == self.sync_type,
                SyncStateDB.status == SyncRunStatus.RUNNING.value,
                SyncStateDB.started_at < cutoff
            ).all()
            for row in stale:
                row.status = SyncRunStatus.FAILED.value
                row.completed_at = utcnow()
                row.error_message = STALE_LOCK_MESSAGE
                self.logger.warning(
                    f"Released stale {self.sync_type} lock {row.id} started at {as_utc(row.started_at)}"
                )
            session.commit()
            return len(stale)

    def acquire_lock(self) -> UUID:
        """Insert the running row for this sync_type.

        Raises:
            LockContentionError: If a running row already exists
        """
        with self.db_manager.get_session() as session:
            existing = session.query(SyncStateDB).filter(
                SyncStateDB.sync_type == self.sync_type,
                SyncStateDB.status == SyncRunStatus.RUNNING.value
            ).first()
            if existing is not None:
                raise LockContentionError(f"{self.sync_type} is already running ({existing.id})")

            lock = SyncStateDB(sync_type=self.sync_type, status=SyncRunStatus.RUNNING.value, started_at=utcnow())
            session.add(lock)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise LockContentionError(f"{self.sync_type} lock taken concurrently")

            self._owned_lock = lock.id
            return lock.id

    def _close_run(
        self,
        lock_id: UUID,
        status: SyncRunStatus,
        report: Optional[PullSyncReport] = None,
        error_message: Optional[str] = None,
        started: Optional[float] = None
    ) -> None:
        with self.db_manager.get_session() as session:
            row = session.get(SyncStateDB, lock_id)
            # Reclaimed or interrupted rows are already closed
            if row is None or row.status != SyncRunStatus.RUNNING.value:
                return
            row.status = status.value
            row.completed_at = utcnow()
            row.error_message = error_message
            row.retry_count = 0 if status == SyncRunStatus.COMPLETED else self._failure_streak()
            if started is not None:
                row.duration_ms = int((time.monotonic() - started) * 1000)
            if report is not None:
                row.items_processed = report.processed
                row.items_created = report.created
                row.items_updated = report.updated
                row.items_failed = report.failed
                if status == SyncRunStatus.COMPLETED:
                    row.last_successful_sync = report.started_at
            session.commit()

    def _failure_streak(self) -> int:
        with self.db_manager.get_session() as session:
            config = self.db_manager.get_channel_config(session, self.context.property_id, self.context.channel)
            return config.consecutive_failures if config is not None else 0

    # -- ticks ------------------------------------------------------------

    def _load_config(self):
        with self.db_manager.get_session() as session:
            return self.db_manager.get_channel_config(session, self.context.property_id, self.context.channel)

    async def _pull(self, modified_since) -> PullSyncReport:
        client = self.client_factory(self.context, self.settings)
        try:
            service = PullSyncService(self.context, self.settings, self.db_manager, client=client)
            return await service.sync_bookings(modified_since)
        finally:
            await client.close()

    async def tick(self, full_sync: bool = False) -> TickOutcome:
        """One scheduler pass: reclaim, lock, pull, close.

        Args:
            full_sync: Pull the whole lookback window instead of changes since the last success

        Returns:
            Outcome of the tick
        """
        self.last_report = None
        self.reclaim_stale_locks()

        config = self._load_config()
        if config is None or not (config.sync_enabled and config.pull_sync_enabled):
            self.logger.debug(f"Pull sync disabled for {self.context.channel}")
            self.last_outcome = TickOutcome.DISABLED
            return self.last_outcome

        try:
            lock_id = self.acquire_lock()
        except LockContentionError as e:
            self.logger.info(f"Skipping tick: {e}")
            self.last_outcome = TickOutcome.CONTENDED
            return self.last_outcome

        started = time.monotonic()
        try:
            report = await self._pull(None if full_sync else as_utc(config.last_successful_sync))
            self.last_report = report
            if not report.made_progress:
                raise RuntimeError(f"All {report.failed} bookings failed: {'; '.join(report.errors[:3])}")

            with self.db_manager.get_session() as session:
                self.db_manager.record_sync_outcome(
                    session, self.context.config_id, success=True, synced_at=report.started_at
                )
            self._close_run(lock_id, SyncRunStatus.COMPLETED, report=report, started=started)
            self._owned_lock = None
            self.backoff_ms = self.config.interval_ms
            self.last_outcome = TickOutcome.COMPLETED
            self.logger.info(
                f"Pull sync completed: {report.created} created, {report.updated} updated, "
                f"{report.skipped} skipped, {report.failed} failed"
            )

        except Exception as e:
            message = f"{type(e).__name__}: {e}"
            with self.db_manager.get_session() as session:
                self.db_manager.record_sync_outcome(
                    session, self.context.config_id, success=False, error_message=message
                )
            self._close_run(lock_id, SyncRunStatus.FAILED, report=self.last_report, error_message=message, started=started)
            self._owned_lock = None
            self.backoff_ms = min(self.backoff_ms * 2, self.config.max_backoff_ms)
            self.last_outcome = TickOutcome.FAILED
            self.logger.error(f"Pull sync failed, next attempt in {self.backoff_ms} ms: {message}")

        return self.last_outcome

    async def run_once(self, full_sync: bool = False) -> TickOutcome:
        """Single tick for manual runs."""
        return await self.tick(full_sync=full_sync)

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> None:
        """Clean old history and start ticking in the background."""
        removed = self.cleanup_history()
        if removed:
            self.logger.info(f"Removed {removed} sync_state rows older than {self.config.history_retention_days} days")
        self.running = True
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop())
        self.logger.info(f"Scheduler started for {self.sync_type} every {self.config.interval_ms} ms")

    def cleanup_history(self) -> int:
        with self.db_manager.get_session() as session:
            return self.db_manager.cleanup_sync_history(session, self.config.history_retention_days)

    async def _loop(self) -> None:
        while self.running:
            try:
                await self.tick()
            except Exception:
                self.logger.exception("Scheduler tick crashed")
                self.backoff_ms = min(self.backoff_ms * 2, self.config.max_backoff_ms)

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.backoff_ms / 1000)
            except asyncio.TimeoutError:
                pass

    async def wait(self) -> None:
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def stop(self, signal_name: str = "shutdown") -> None:
        """Cancel the pending timer and fail any lock this scheduler holds."""
        self.running = False
        self._stop_event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        if self._owned_lock is not None:
            lock_id, self._owned_lock = self._owned_lock, None
            with self.db_manager.get_session() as session:
                row = session.get(SyncStateDB, lock_id)
                if row is not None and row.status == SyncRunStatus.RUNNING.value:
                    row.status = SyncRunStatus.FAILED.value
                    row.completed_at = utcnow()
                    row.error_message = f"Interrupted by {signal_name}"
                    session.commit()
            self.logger.warning(f"Released {self.sync_type} lock on {signal_name}")
        self.logger.info(f"Scheduler stopped for {self.sync_type}")
