# Auto-Release Scheduler
# The milestone state machine only knows the ReleaseScheduler interface.
# DatabaseReleaseScheduler keeps jobs in a table written inside the caller's
# transaction; AutoReleaseWorker polls that table and fires due jobs.

import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable

from sqlalchemy import update, or_
from sqlalchemy.orm import Session

from config.app_config import (
    AUTO_RELEASE_BACKOFF_SECONDS, AUTO_RELEASE_BACKOFF_MAX_SECONDS,
    AUTO_RELEASE_BATCH_SIZE, RELEASE_LEASE_SECONDS
)
from core.payments import PaymentsProvider, ProviderError
from database.escrow_models import ScheduledRelease
from services.event_log import record_event

logger = logging.getLogger(__name__)


# ============================================================================
# SCHEDULER INTERFACE
# ============================================================================

class ReleaseScheduler(ABC):
    """Durable delayed jobs keyed by milestone id."""

    @abstractmethod
    def schedule(self, key: str, fire_at: datetime, payload: Dict[str, Any]) -> None:
        """Create or replace the job for key."""

    @abstractmethod
    def cancel(self, key: str) -> None:
        """Remove the job for key. Cancelling a missing job is a no-op."""


class DatabaseReleaseScheduler(ReleaseScheduler):
    """Cron-polling table implementation. Writes join the session's open transaction."""

    def __init__(self, db: Session):
        self.db = db

    def schedule(self, key: str, fire_at: datetime, payload: Dict[str, Any]) -> None:
        job = self.db.get(ScheduledRelease, key)
        if job is None:
            job = ScheduledRelease(milestone_id=key, deal_id=payload["deal_id"], fire_at=fire_at, next_attempt_at=fire_at)
            self.db.add(job)
            self.db.flush()
        job.fire_at = fire_at
        job.next_attempt_at = fire_at
        job.payload = payload
        job.attempts = 0
        job.locked_until = None
        job.last_error = None
        logger.info(f"Auto-release for milestone {key} scheduled at {fire_at.isoformat()}")

    def cancel(self, key: str) -> None:
        deleted = (
            self.db.query(ScheduledRelease)
            .filter(ScheduledRelease.milestone_id == key)
            .delete(synchronize_session=False)
        )
        if deleted:
            logger.info(f"Auto-release for milestone {key} cancelled")

    def get(self, key: str) -> Optional[ScheduledRelease]:
        return self.db.query(ScheduledRelease).filter(ScheduledRelease.milestone_id == key).first()


# ============================================================================
# WORKER
# ============================================================================

def backoff_delay(attempts: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base ... capped at max."""
    seconds = base_seconds * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(seconds, max_seconds))


class AutoReleaseWorker:
    """
    Fires due auto-release jobs.

    Each job is claimed with a short lease (locked_until) so several workers
    can poll the same table. A job is deleted once the milestone is released
    or no longer needs the timer; a provider failure keeps it with a pushed
    back next_attempt_at.
    """

    def __init__(
        self,
        provider: PaymentsProvider,
        session_factory: Optional[Callable[[], Session]] = None,
        backoff_seconds: int = AUTO_RELEASE_BACKOFF_SECONDS,
        backoff_max_seconds: int = AUTO_RELEASE_BACKOFF_MAX_SECONDS,
        batch_size: int = AUTO_RELEASE_BATCH_SIZE,
        claim_seconds: int = RELEASE_LEASE_SECONDS
    ):
        if session_factory is None:
            from database.config import SessionLocal
            session_factory = SessionLocal
        self.provider = provider
        self.session_factory = session_factory
        self.backoff_seconds = backoff_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.batch_size = batch_size
        self.claim_seconds = claim_seconds

    def run_due_jobs(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Process every job due at `now`. Returns counters for logging and the admin endpoint."""
        now = now or datetime.utcnow()
        summary = {"claimed": 0, "released": 0, "skipped": 0, "retrying": 0}

        for milestone_id in self._claim_due(now):
            summary["claimed"] += 1
            outcome = self._fire(milestone_id, now)
            summary[outcome] += 1

        if summary["claimed"]:
            logger.info(f"Auto-release run at {now.isoformat()}: {summary}")
        return summary

    def _claim_due(self, now: datetime) -> List[str]:
        db = self.session_factory()
        try:
            candidates = [
                row.milestone_id for row in (
                    db.query(ScheduledRelease.milestone_id)
                    .filter(
                        ScheduledRelease.next_attempt_at <= now,
                        or_(ScheduledRelease.locked_until.is_(None), ScheduledRelease.locked_until < now)
                    )
                    .order_by(ScheduledRelease.next_attempt_at.asc())
                    .limit(self.batch_size)
                    .all()
                )
            ]

            claimed = []
            for milestone_id in candidates:
                result = db.execute(
                    update(ScheduledRelease)
                    .where(
                        ScheduledRelease.milestone_id == milestone_id,
                        ScheduledRelease.next_attempt_at <= now,
                        or_(ScheduledRelease.locked_until.is_(None), ScheduledRelease.locked_until < now)
                    )
                    .values(locked_until=now + timedelta(seconds=self.claim_seconds))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(milestone_id)
            db.commit()
            return claimed
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _fire(self, milestone_id: str, now: datetime) -> str:
        from services.milestone_service import MilestoneService, AutoReleaseOutcome

        db = self.session_factory()
        try:
            service = MilestoneService(db, self.provider)
            try:
                outcome = service.auto_release(milestone_id)
            except ProviderError as e:
                self._reschedule(db, milestone_id, now, f"{type(e).__name__}: {e}")
                return "retrying"
            except Exception as e:
                logger.exception(f"Auto-release for milestone {milestone_id} crashed")
                db.rollback()
                record_event(db, "auto_release.error", milestone_id=milestone_id, payload={"error": str(e)})
                self._reschedule(db, milestone_id, now, f"{type(e).__name__}: {e}")
                return "retrying"

            if outcome == AutoReleaseOutcome.BUSY:
                # Another path holds the release lease; look again after one backoff step
                self._reschedule(db, milestone_id, now, "release in progress", count_attempt=False)
                return "retrying"

            DatabaseReleaseScheduler(db).cancel(milestone_id)
            db.commit()
            return "released" if outcome == AutoReleaseOutcome.RELEASED else "skipped"
        finally:
            db.close()

    def _reschedule(self, db: Session, milestone_id: str, now: datetime, error: str, count_attempt: bool = True):
        job = db.get(ScheduledRelease, milestone_id)
        if job is None:
            db.commit()
            return
        if count_attempt:
            job.attempts = (job.attempts or 0) + 1
        delay = backoff_delay(max(job.attempts, 1), self.backoff_seconds, self.backoff_max_seconds)
        job.next_attempt_at = now + delay
        job.locked_until = None
        job.last_error = error
        db.commit()
        logger.warning(
            f"Auto-release for milestone {milestone_id} failed ({error}); "
            f"attempt {job.attempts}, next try at {job.next_attempt_at.isoformat()}"
        )
