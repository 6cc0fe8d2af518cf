"""Exact and fuzzy duplicate detection for canonical jobs."""
import hashlib
import itertools
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple

from jobcatalog.domain.job import CanonicalJob, JobState
from jobcatalog.domain.lifecycle import transition
from jobcatalog.domain.normalization import compute_quality_score
from jobcatalog.error_handling import DuplicateRaceError, StoreError

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 0.40
COMPANY_WEIGHT = 0.25
LOCATION_WEIGHT = 0.20
DATE_WEIGHT = 0.15


class IngestOutcome(Enum):
    CREATED = "CREATED"
    RESIGHTED = "RESIGHTED"
    UPDATED = "UPDATED"
    DUPLICATE = "DUPLICATE"
    PROMOTED = "PROMOTED"


@dataclass
class IngestResult:
    """What the engine did with one candidate job.

    Attributes:
        job_id: Id of the record the candidate was stored as or folded into
        parent_job_id: Canonical id when the record is a duplicate
        demoted_ids: Former canonical records demoted in favour of this one
        similarity: Near-duplicate score that triggered a link, if any
    """
    outcome: IngestOutcome
    job_id: str
    parent_job_id: Optional[str] = None
    demoted_ids: List[str] = field(default_factory=list)
    similarity: Optional[float] = None


def compute_hash(job: CanonicalJob, description_prefix: int = 500) -> str:
    """Content fingerprint used for exact re-sighting detection.

    Args:
        job: Normalized job
        description_prefix: Number of description characters included

    Returns:
        Hex SHA-256 digest
    """
    parts = [
        job.normalized_title,
        job.company_key,
        job.location.key(),
        job.description[:description_prefix],
    ]
    return hashlib.sha256('|'.join(parts).encode('utf-8')).hexdigest()


def title_similarity(a: str, b: str) -> float:
    """Jaccard similarity of the token sets of two normalized titles."""
    tokens_a = set(a.split())
    tokens_b = set(b.split())
    if not tokens_a and not tokens_b:
        return 1.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def date_proximity(a: datetime, b: datetime, window_days: float = 3) -> float:
    """1.0 within the window, decaying linearly to 0 at twice the window."""
    delta = abs((a - b).total_seconds()) / 86400
    if delta <= window_days:
        return 1.0
    if window_days <= 0 or delta >= 2 * window_days:
        return 0.0
    return 1.0 - (delta - window_days) / window_days


def similarity(a: CanonicalJob, b: CanonicalJob, window_days: float = 3) -> float:
    """Weighted near-duplicate similarity between two jobs (0-1)."""
    score = TITLE_WEIGHT * title_similarity(a.normalized_title, b.normalized_title)
    if a.company_key == b.company_key:
        score += COMPANY_WEIGHT
    if a.location.key() == b.location.key():
        score += LOCATION_WEIGHT
    score += DATE_WEIGHT * date_proximity(a.posted_at, b.posted_at, window_days)
    return score


def precedence(job: CanonicalJob) -> Tuple[datetime, str]:
    """Sort key deciding which of two duplicates stays canonical."""
    return job.metadata.first_seen_at, job.id


class DeduplicationEngine:
    """Folds candidate jobs into the catalog.

    Exact matches are found through the store's hash index: under the same
    id they are re-sightings, under a new id the posting is kept as a
    duplicate of the canonical record. Near duplicates are found by comparing
    against canonical jobs of the same company. Either way the earlier of the
    two stays canonical.

    Work on one company and one fingerprint is serialized through an
    in-process lock registry, and the store's atomic hash claim catches
    anything that gets past it (e.g. a second process).
    """

    def __init__(self, store, threshold: float = 0.85, date_window_days: float = 3,
                 description_prefix: int = 500):
        """Initialize the engine.

        Args:
            store: Catalog store
            threshold: Minimum similarity (0-1) to link two jobs as duplicates
            date_window_days: Posting dates this close count as the same day
            description_prefix: Description characters included in the fingerprint
        """
        self.store = store
        self.threshold = threshold
        self.date_window_days = date_window_days
        self.description_prefix = description_prefix
        self._locks: Dict[str, List] = {}
        self._registry_lock = threading.Lock()

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key``; the entry is dropped once nobody holds or waits on it."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @property
    def held_locks(self) -> int:
        """Number of keys currently locked or waited on."""
        with self._registry_lock:
            return len(self._locks)

    def similarity(self, a: CanonicalJob, b: CanonicalJob) -> float:
        return similarity(a, b, self.date_window_days)

    def process(self, job: CanonicalJob) -> IngestResult:
        """Deduplicate and store one normalized job.

        Args:
            job: Candidate job from the normalizer

        Returns:
            IngestResult describing how the job was stored
        """
        job.deduplication_hash = compute_hash(job, self.description_prefix)
        with self._locked(f"company:{job.company_key}"), self._locked(f"hash:{job.deduplication_hash}"):
            try:
                return self._process_locked(job)
            except DuplicateRaceError as e:
                logger.debug(f"{e}; retrying")
            try:
                return self._process_locked(job)
            except DuplicateRaceError as e:
                logger.warning(f"{e}; folding {job.id} into the winner")
                return self._resight_winner(job, e)

    def _process_locked(self, job: CanonicalJob) -> IngestResult:
        holder = self.store.find_by_hash(job.deduplication_hash)
        if holder is not None and holder.id == job.id:
            return self._resight(holder, job)

        own = self.store.get(job.id)
        if own is not None:
            if own.deduplication_hash == job.deduplication_hash:
                return self._resight(own, job)
            return self._refresh(own, job)

        if holder is not None:
            return self._link_exact_copy(job, holder)

        match, score = self._best_match(job, self.store.find_candidates(job.company_key, exclude_id=job.id))
        if match is None:
            self.store.insert_claiming_hash(job)
            logger.debug(f"Created job {job.id}")
            return IngestResult(IngestOutcome.CREATED, job.id)

        if precedence(job) > precedence(match):
            return self._link_duplicate(job, match, score)
        return self._promote(job, match, score)

    def _best_match(self, job: CanonicalJob, candidates: List[CanonicalJob]):
        best, best_score = None, 0.0
        for candidate in candidates:
            score = self.similarity(job, candidate)
            if score >= self.threshold and (
                best is None or score > best_score
                or (score == best_score and precedence(candidate) < precedence(best))
            ):
                best, best_score = candidate, score
        return best, best_score

    def _resight(self, existing: CanonicalJob, job: CanonicalJob) -> IngestResult:
        changed = existing.merge_from(job)
        existing.record_sighting(job.metadata.last_checked_at)
        if existing.state == JobState.STALE:
            transition(existing, JobState.ACTIVE)
            logger.info(f"Job {existing.id} reactivated")
        existing.quality_score = compute_quality_score(existing)
        self.store.upsert(existing)
        if changed:
            logger.debug(f"Re-sighted {existing.id} via {job.id}, merged {', '.join(changed)}")
        return IngestResult(IngestOutcome.RESIGHTED, existing.id, parent_job_id=existing.parent_job_id)

    def _refresh(self, existing: CanonicalJob, job: CanonicalJob) -> IngestResult:
        """Same id, new content: take the new content and claim the new fingerprint.

        If another job already holds the new fingerprint the index is left
        alone and ``reconcile`` links the two records.
        """
        if not self.store.claim_hash(job.deduplication_hash, existing.id):
            logger.info(f"Job {existing.id} now matches the fingerprint of another job")

        for name in ('title', 'normalized_title', 'company', 'location', 'application_url',
                     'remote_option', 'job_type', 'description', 'summary', 'posted_at'):
            setattr(existing, name, getattr(job, name))
        existing.required_skills = list(job.required_skills)
        existing.preferred_skills = list(job.preferred_skills)
        existing.categories = list(job.categories)
        if job.experience_level is not None:
            existing.experience_level = job.experience_level
        if job.salary is not None:
            existing.salary = job.salary
        if job.expires_at is not None:
            existing.expires_at = job.expires_at
        existing.updated_at = max(existing.updated_at or job.updated_at, job.updated_at)
        existing.deduplication_hash = job.deduplication_hash
        existing.record_sighting(job.metadata.last_checked_at)
        if existing.state == JobState.STALE:
            transition(existing, JobState.ACTIVE)
        existing.quality_score = compute_quality_score(existing)
        self.store.upsert(existing)
        logger.info(f"Job {existing.id} content changed, record refreshed")
        return IngestResult(IngestOutcome.UPDATED, existing.id, parent_job_id=existing.parent_job_id)

    def _link_exact_copy(self, job: CanonicalJob, holder: CanonicalJob) -> IngestResult:
        """Same fingerprint under a new id: keep the posting, linked to the canonical record.

        The hash stays claimed by the canonical record, so the copy is stored
        without a claim of its own.
        """
        canonical = holder
        if holder.is_duplicate and holder.parent_job_id:
            canonical = self.store.get(holder.parent_job_id) or holder

        if canonical.state == JobState.EXPIRED:
            self.store.upsert(job)
            self.store.move_hash(job.deduplication_hash, job.id)
            logger.info(f"Job {job.id} relists expired {canonical.id}, stored as canonical")
            return IngestResult(IngestOutcome.CREATED, job.id)

        if precedence(job) < precedence(canonical):
            return self._promote(job, canonical, 1.0, exact=True)
        return self._link_duplicate(job, canonical, 1.0, exact=True)

    def _link_duplicate(self, job: CanonicalJob, canonical: CanonicalJob, score: float,
                        exact: bool = False) -> IngestResult:
        transition(job, JobState.DUPLICATE)
        job.metadata.parent_job_id = canonical.id
        if exact:
            self.store.upsert(job)
            canonical.record_sighting(job.metadata.last_checked_at)
            if canonical.state == JobState.STALE:
                transition(canonical, JobState.ACTIVE)
                logger.info(f"Job {canonical.id} reactivated")
        else:
            self.store.insert_claiming_hash(job)

        if canonical.merge_from(job) or exact:
            canonical.quality_score = compute_quality_score(canonical)
            self.store.upsert(canonical)
        logger.info(f"Job {job.id} is a duplicate of {canonical.id} (similarity {score:.2f})")
        return IngestResult(IngestOutcome.DUPLICATE, job.id, parent_job_id=canonical.id, similarity=score)

    def _promote(self, job: CanonicalJob, former: CanonicalJob, score: float,
                 exact: bool = False) -> IngestResult:
        """The incoming job predates a canonical match: it takes over as canonical."""
        job.merge_from(former)
        job.quality_score = compute_quality_score(job)
        if exact:
            self.store.upsert(job)
            self.store.move_hash(job.deduplication_hash, job.id)
        else:
            self.store.insert_claiming_hash(job)
        self._demote(former, job)
        logger.info(f"Job {job.id} predates {former.id} and replaces it as canonical (similarity {score:.2f})")
        return IngestResult(IngestOutcome.PROMOTED, job.id, demoted_ids=[former.id], similarity=score)

    def _demote(self, former: CanonicalJob, survivor: CanonicalJob) -> None:
        repointed = self.store.mark_duplicate(former.id, survivor.id)
        self.store.redirect(former.id, survivor.id)
        if repointed:
            logger.debug(f"Re-pointed {len(repointed)} duplicates of {former.id} to {survivor.id}")

    def _resight_winner(self, job: CanonicalJob, error: DuplicateRaceError) -> IngestResult:
        own = self.store.get(job.id)
        if own is not None:
            return self._resight(own, job)
        winner = None
        if error.holder_id:
            winner = self.store.get(error.holder_id)
        winner = winner or self.store.find_by_hash(job.deduplication_hash)
        if winner is None:
            raise StoreError(f"hash {job.deduplication_hash[:12]} claimed but no holder found") from error
        return self._link_exact_copy(job, winner)

    def reconcile(self) -> List[IngestResult]:
        """Demote canonical jobs that near-duplicate an earlier canonical job.

        Catches collisions that concurrent ingestion let through. Within each
        company, jobs are visited oldest first, so every demotion points at a
        record that stays canonical.

        Returns:
            One DUPLICATE result per demoted job
        """
        results = []
        for company_key, group in itertools.groupby(self.store.canonical_jobs(), key=lambda j: j.company_key):
            with self._locked(f"company:{company_key}"):
                survivors: List[CanonicalJob] = []
                for job in sorted(group, key=precedence):
                    match, score = self._best_match(job, survivors)
                    if match is None:
                        survivors.append(job)
                        continue
                    self._demote(job, match)
                    logger.info(f"Reconciled {job.id} as a duplicate of {match.id} (similarity {score:.2f})")
                    results.append(IngestResult(
                        IngestOutcome.DUPLICATE, job.id, parent_job_id=match.id, similarity=score
                    ))
        if results:
            logger.info(f"Reconciliation demoted {len(results)} jobs")
        return results
