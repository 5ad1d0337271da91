"""
Background sweeps for expired record locks and stale presence rows.

Correctness never depends on these having run: expired locks and stale
presence rows are already invisible to every read path. The sweeps only
reclaim space.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session

from calcrm.core.clock import Clock
from calcrm.core.config import settings
from calcrm.db.session import SessionLocal
from calcrm.services.presence_service import PresenceService
from calcrm.services.record_lock_service import RecordLockService

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


def cleanup_expired_locks(session_factory: SessionFactory = SessionLocal, clock: Optional[Clock] = None) -> int:
    db = session_factory()
    try:
        count = RecordLockService(db, clock=clock).cleanup_expired()
        db.commit()
        return count
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def cleanup_stale_presence(session_factory: SessionFactory = SessionLocal, clock: Optional[Clock] = None) -> int:
    db = session_factory()
    try:
        count = PresenceService(db, clock=clock).cleanup_stale()
        db.commit()
        return count
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@dataclass
class SweepResult:
    locks_removed: int
    presence_removed: int


def run_sweep_once(session_factory: SessionFactory = SessionLocal, clock: Optional[Clock] = None) -> SweepResult:
    """Run both sweeps once, e.g. from cron via scripts/sweep_expired.py."""
    result = SweepResult(
        locks_removed=cleanup_expired_locks(session_factory, clock),
        presence_removed=cleanup_stale_presence(session_factory, clock),
    )
    logger.info(
        "sweep_once locks_removed=%s presence_removed=%s",
        result.locks_removed,
        result.presence_removed,
    )
    return result


class BackgroundTaskManager:
    """Manages the periodic sweep tasks for the lifetime of the app."""

    def __init__(
        self,
        session_factory: SessionFactory = SessionLocal,
        *,
        lock_interval: Optional[float] = None,
        presence_interval: Optional[float] = None,
        retry_delay: float = 60.0,
    ):
        self.session_factory = session_factory
        self.lock_interval = float(lock_interval or settings.LOCK_SWEEP_INTERVAL_SECONDS)
        self.presence_interval = float(presence_interval or settings.PRESENCE_SWEEP_INTERVAL_SECONDS)
        self.retry_delay = retry_delay
        self.tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def start(self):
        if self._running:
            logger.warning("Background tasks already running")
            return

        self._running = True
        self.tasks.append(
            asyncio.create_task(
                self._periodic("expired_locks", cleanup_expired_locks, self.lock_interval)
            )
        )
        self.tasks.append(
            asyncio.create_task(
                self._periodic("stale_presence", cleanup_stale_presence, self.presence_interval)
            )
        )
        logger.info(
            "background_tasks_started count=%s lock_interval=%s presence_interval=%s",
            len(self.tasks),
            self.lock_interval,
            self.presence_interval,
        )

    async def stop(self):
        if not self._running:
            return

        self._running = False
        for task in self.tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.tasks.clear()
        logger.info("background_tasks_stopped")

    async def _periodic(self, name: str, sweep: Callable[[SessionFactory], int], interval: float):
        while self._running:
            try:
                await asyncio.sleep(interval)
                count = await asyncio.to_thread(sweep, self.session_factory)
                if count > 0:
                    logger.info("sweep_completed task=%s removed=%s", name, count)
            except asyncio.CancelledError:
                logger.info("sweep_cancelled task=%s", name)
                break
            except Exception:
                logger.exception("sweep_failed task=%s", name)
                # Wait before retrying
                await asyncio.sleep(self.retry_delay)


# Global background task manager instance (set in the app lifespan)
background_task_manager: Optional[BackgroundTaskManager] = None


def get_background_task_manager() -> BackgroundTaskManager:
    if background_task_manager is None:
        raise RuntimeError("BackgroundTaskManager not initialized")
    return background_task_manager
