"""Job lifecycle state machine and the staleness/expiry sweep."""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional

from jobcatalog.domain.job import CanonicalJob, JobSource, JobState, utcnow
from jobcatalog.error_handling import InvalidTransitionError

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    JobState.NEW: {JobState.ACTIVE, JobState.DUPLICATE},
    JobState.ACTIVE: {JobState.STALE, JobState.EXPIRED, JobState.DUPLICATE},
    JobState.STALE: {JobState.ACTIVE, JobState.EXPIRED, JobState.DUPLICATE},
    JobState.EXPIRED: set(),
    JobState.DUPLICATE: set(),
}

# Days without a sighting before a job goes stale, and before it is expired outright
DEFAULT_STALE_DAYS = {
    JobSource.USAJOBS: 30,
    JobSource.REMOTEOK: 21,
    JobSource.REMOTIVE: 21,
    JobSource.THE_MUSE: 14,
}
DEFAULT_EXPIRE_DAYS = {
    JobSource.USAJOBS: 60,
    JobSource.REMOTEOK: 30,
    JobSource.REMOTIVE: 30,
    JobSource.THE_MUSE: 21,
}


class ExpirationReason(Enum):
    DEADLINE_PASSED = "DEADLINE_PASSED"
    AGE_LIMIT = "AGE_LIMIT"
    POSITION_FILLED = "POSITION_FILLED"
    SOURCE_REMOVED = "SOURCE_REMOVED"
    MANUAL = "MANUAL"
    APPLICATIONS_CLOSED = "APPLICATIONS_CLOSED"


def can_transition(current: JobState, target: JobState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def transition(job: CanonicalJob, target: JobState) -> None:
    """Move a job to ``target``, keeping ``is_active`` in step with the state.

    Raises:
        InvalidTransitionError: If the move is not allowed from the current state
    """
    if job.state == target:
        return
    if not can_transition(job.state, target):
        raise InvalidTransitionError(job.id, job.state.value, target.value)
    job.state = target
    job.is_active = target == JobState.ACTIVE
    if target == JobState.DUPLICATE:
        job.metadata.is_duplicate = True


@dataclass
class ExpirationStats:
    """Counters for one lifecycle sweep."""
    checked: int = 0
    stale: int = 0
    expired: int = 0
    by_reason: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    def record_expiry(self, reason: ExpirationReason) -> None:
        self.expired += 1
        self.by_reason[reason.value] = self.by_reason.get(reason.value, 0) + 1


class LifecycleManager:
    """Applies staleness and expiry rules to the catalog.

    Windows are measured from ``last_checked_at``, so a job that keeps being
    re-sighted never goes stale however old its posting date is.
    """

    def __init__(self, store, stale_days: int = 21, expire_days: Optional[int] = 45,
                 source_stale_days: Optional[Dict[JobSource, int]] = None,
                 source_expire_days: Optional[Dict[JobSource, int]] = None):
        """Initialize the lifecycle manager.

        Args:
            store: Catalog store
            stale_days: Staleness window for sources without an override
            expire_days: Age limit for sources without an override, None disables it
            source_stale_days: Per-source staleness windows
            source_expire_days: Per-source age limits
        """
        self.store = store
        self.stale_days = stale_days
        self.expire_days = expire_days
        self.source_stale_days = dict(DEFAULT_STALE_DAYS if source_stale_days is None else source_stale_days)
        self.source_expire_days = dict(DEFAULT_EXPIRE_DAYS if source_expire_days is None else source_expire_days)

    def stale_window(self, source: JobSource) -> timedelta:
        return timedelta(days=self.source_stale_days.get(source, self.stale_days))

    def expire_window(self, source: JobSource) -> Optional[timedelta]:
        days = self.source_expire_days.get(source, self.expire_days)
        return timedelta(days=days) if days else None

    def evaluate(self, job: CanonicalJob, now: datetime):
        """Decide what a sweep should do with a job.

        Returns:
            (target state, expiration reason) or (None, None) when nothing changes
        """
        if job.state not in (JobState.ACTIVE, JobState.STALE):
            return None, None
        if job.expires_at is not None and job.expires_at <= now:
            return JobState.EXPIRED, ExpirationReason.DEADLINE_PASSED

        unseen = now - job.metadata.last_checked_at
        age_limit = self.expire_window(job.source)
        if age_limit is not None and unseen >= age_limit:
            return JobState.EXPIRED, ExpirationReason.AGE_LIMIT

        if job.state == JobState.ACTIVE and job.expires_at is None and unseen >= self.stale_window(job.source):
            return JobState.STALE, None
        return None, None

    def sweep(self, now: Optional[datetime] = None) -> ExpirationStats:
        """Mark stale and expired jobs across the catalog.

        Args:
            now: Reference time, defaults to the current UTC time

        Returns:
            ExpirationStats for the sweep
        """
        now = now or utcnow()
        started = time.monotonic()
        stats = ExpirationStats()

        for job in self.store.lifecycle_candidates():
            stats.checked += 1
            target, reason = self.evaluate(job, now)
            if target is None:
                continue
            transition(job, target)
            self.store.set_state(job.id, job.state, is_active=job.is_active)
            if target == JobState.EXPIRED:
                stats.record_expiry(reason)
                logger.debug(f"Job {job.id} expired: {reason.value}")
            else:
                stats.stale += 1
                logger.debug(f"Job {job.id} marked stale")

        stats.duration_seconds = time.monotonic() - started
        logger.info(
            f"Lifecycle sweep complete: {stats.checked} checked, "
            f"{stats.expired} expired, {stats.stale} marked stale"
        )
        return stats

    def expire(self, job_id: str, reason: ExpirationReason = ExpirationReason.MANUAL) -> bool:
        """Expire one job, e.g. when its source stops listing it.

        Returns:
            True if the job moved to EXPIRED
        """
        job = self.store.get(job_id)
        if job is None:
            logger.debug(f"Cannot expire unknown job {job_id}")
            return False
        if not can_transition(job.state, JobState.EXPIRED):
            logger.debug(f"Job {job_id} is {job.state.value}, not expiring")
            return False
        transition(job, JobState.EXPIRED)
        self.store.mark_expired(job.id)
        logger.info(f"Job {job_id} expired: {reason.value}")
        return True
