"""Batch and on-demand relevance ranking over the catalog."""
import asyncio
import dataclasses
import hashlib
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from jobcatalog.domain.job import CanonicalJob, utcnow
from jobcatalog.domain.matching import RelevanceScorer, ScoreBreakdown, UserSearchCriteria
from jobcatalog.error_handling import ErrorHandler, ScoringTimeoutError
from jobcatalog.metrics import MetricsCollector, metrics as default_metrics

logger = logging.getLogger(__name__)

ScoredJob = Tuple[CanonicalJob, ScoreBreakdown]


def criteria_key(criteria: UserSearchCriteria) -> str:
    """Stable fingerprint of a criteria object."""
    return hashlib.sha1(repr(criteria).encode('utf-8')).hexdigest()


class ScoreCache:
    """Short-lived cache of score breakdowns keyed by user, criteria and job."""

    def __init__(self, ttl_seconds: float = 60, max_entries: int = 50000,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize the cache.

        Args:
            ttl_seconds: How long an entry counts as fresh
            max_entries: Oldest entries are dropped beyond this size
            clock: Monotonic time source
        """
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[Tuple[str, str, str], Tuple[ScoreBreakdown, float]] = {}
        self._lock = threading.Lock()

    def get(self, user_id: str, criteria: UserSearchCriteria, job_id: str,
            allow_stale: bool = False) -> Optional[ScoreBreakdown]:
        key = (user_id, criteria_key(criteria), job_id)
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        breakdown, stored_at = entry
        if not allow_stale and self._clock() - stored_at >= self.ttl_seconds:
            return None
        return breakdown

    def set(self, user_id: str, criteria: UserSearchCriteria, breakdown: ScoreBreakdown) -> None:
        key = (user_id, criteria_key(criteria), breakdown.job_id)
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (breakdown, self._clock())
            while len(self._entries) > self.max_entries:
                self._entries.pop(next(iter(self._entries)))

    def invalidate(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._entries.clear()
            else:
                for key in [k for k in self._entries if k[0] == user_id]:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class BatchResult:
    """Outcome of a batch scoring run; ``results`` keeps catalog order."""
    results: List[ScoredJob] = field(default_factory=list)
    failed: int = 0
    cache_hits: int = 0
    cancelled: bool = False
    deadline_exceeded: bool = False

    @property
    def complete(self) -> bool:
        return not (self.cancelled or self.deadline_exceeded)


class RankingService:
    """Scores catalog jobs for users.

    Batch scoring walks the active catalog in chunks, each scored in a worker
    thread, and checks a cancel flag and an optional deadline between chunks.
    On-demand scoring of a single job is bounded by a timeout and falls back
    to the last cached score, or a neutral partial one.
    """

    def __init__(self, store, scorer: Optional[RelevanceScorer] = None, cache: Optional[ScoreCache] = None,
                 chunk_size: int = 200, on_demand_timeout: float = 0.3, score_cutoff: float = 0,
                 batch_deadline: Optional[float] = None,
                 error_handler: Optional[ErrorHandler] = None, metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.scorer = scorer or RelevanceScorer()
        self.cache = cache if cache is not None else ScoreCache()
        self.chunk_size = max(1, chunk_size)
        self.on_demand_timeout = on_demand_timeout
        self.score_cutoff = score_cutoff
        self.batch_deadline = batch_deadline
        self.error_handler = error_handler or ErrorHandler()
        self.metrics = metrics or default_metrics

    @classmethod
    def from_settings(cls, store, settings, **kwargs) -> "RankingService":
        """Build a service from ``ScoringSettings``."""
        scorer = RelevanceScorer(
            weights=settings.weights,
            recency_half_life_days=settings.recency_half_life_days,
            recommended_threshold=settings.recommended_threshold,
        )
        return cls(
            store,
            scorer=scorer,
            cache=ScoreCache(ttl_seconds=settings.cache_ttl),
            chunk_size=settings.chunk_size,
            on_demand_timeout=settings.on_demand_timeout,
            score_cutoff=settings.score_cutoff,
            batch_deadline=settings.batch_deadline,
            **kwargs,
        )

    def _score_and_cache(self, user_id: str, job: CanonicalJob, criteria: UserSearchCriteria,
                         now: datetime) -> ScoreBreakdown:
        started = time.perf_counter()
        breakdown = self.scorer.score(job, criteria, now)
        self.metrics.record_score(time.perf_counter() - started)
        self.cache.set(user_id, criteria, breakdown)
        return breakdown

    def _score_chunk(self, user_id: str, jobs: List[CanonicalJob], criteria: UserSearchCriteria,
                     now: datetime, result: BatchResult) -> None:
        for job in jobs:
            cached = self.cache.get(user_id, criteria, job.id)
            self.metrics.record_cache_lookup(cached is not None)
            if cached is not None:
                result.cache_hits += 1
                result.results.append((job, cached))
                continue
            try:
                breakdown = self._score_and_cache(user_id, job, criteria, now)
            except Exception as e:
                result.failed += 1
                self.metrics.record_scoring_failure()
                self.error_handler.record('score', job.id, e)
                continue
            result.results.append((job, breakdown))

    async def score_batch(self, user_id: str, criteria: UserSearchCriteria,
                          jobs: Optional[List[CanonicalJob]] = None, now: Optional[datetime] = None,
                          cancel_event: Optional[asyncio.Event] = None,
                          deadline: Optional[float] = None) -> BatchResult:
        """Score a slice of the catalog for one user.

        Args:
            user_id: User the scores are cached for
            criteria: User's search criteria
            jobs: Jobs to score, the whole active catalog when omitted
            now: Reference time shared by every score in the batch
            cancel_event: Stops the batch before the next chunk once set
            deadline: Seconds after which no further chunk is started, defaults to ``batch_deadline``

        Returns:
            BatchResult with whatever was scored before stopping
        """
        now = now or utcnow()
        loop = asyncio.get_running_loop()
        if deadline is None:
            deadline = self.batch_deadline
        stop_at = loop.time() + deadline if deadline is not None else None
        if jobs is None:
            jobs = await asyncio.to_thread(self.store.active_jobs)
        result = BatchResult()

        for start in range(0, len(jobs), self.chunk_size):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = True
                logger.info(f"Batch scoring for {user_id} cancelled after {len(result.results)} jobs")
                break
            if stop_at is not None and loop.time() >= stop_at:
                result.deadline_exceeded = True
                logger.warning(f"Batch scoring for {user_id} hit its deadline after {len(result.results)} jobs")
                break
            chunk = jobs[start:start + self.chunk_size]
            await asyncio.to_thread(self._score_chunk, user_id, chunk, criteria, now, result)

        if result.failed:
            logger.warning(f"{result.failed} jobs could not be scored for {user_id}")
        return result

    async def score_on_demand(self, user_id: str, job: CanonicalJob, criteria: UserSearchCriteria,
                              now: Optional[datetime] = None) -> ScoreBreakdown:
        """Score one job within the on-demand time budget.

        A computation that overruns keeps going in its worker thread and
        fills the cache when it finishes.

        Returns:
            Fresh score, else the last cached score marked partial, else a neutral partial score
        """
        cached = self.cache.get(user_id, criteria, job.id)
        self.metrics.record_cache_lookup(cached is not None)
        if cached is not None:
            return cached

        now = now or utcnow()
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._score_and_cache, user_id, job, criteria, now),
                timeout=self.on_demand_timeout,
            )
        except asyncio.TimeoutError:
            self.metrics.record_scoring_timeout()
            self.error_handler.record('score', job.id, ScoringTimeoutError(job.id, self.on_demand_timeout))

        stale = self.cache.get(user_id, criteria, job.id, allow_stale=True)
        if stale is not None:
            return dataclasses.replace(stale, partial=True)
        return ScoreBreakdown.neutral(job.id, self.scorer.weights, now)

    async def get_scored_jobs(self, user_id: str, criteria: UserSearchCriteria, page: int = 1,
                              page_size: int = 20, now: Optional[datetime] = None,
                              cancel_event: Optional[asyncio.Event] = None,
                              deadline: Optional[float] = None) -> List[ScoredJob]:
        """Ranked page of active jobs for a user.

        Sorted by total descending, then ``posted_at`` descending. Jobs below
        the score cutoff or hit by an excluded keyword are left out.

        Args:
            user_id: User identifier
            criteria: User's search criteria
            page: 1-based page number
            page_size: Jobs per page

        Returns:
            List of (job, breakdown) pairs
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")

        batch = await self.score_batch(user_id, criteria, now=now, cancel_event=cancel_event, deadline=deadline)
        ranked = [
            (job, breakdown) for job, breakdown in batch.results
            if breakdown.excluded_keyword is None and breakdown.total >= self.score_cutoff
        ]
        ranked.sort(key=lambda pair: pair[0].id)
        ranked.sort(key=lambda pair: (pair[1].total, pair[0].posted_at), reverse=True)

        start = (page - 1) * page_size
        page_items = ranked[start:start + page_size]
        for job, breakdown in page_items:
            job.relevance_score = breakdown.total
        return page_items
