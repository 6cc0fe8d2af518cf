"""In-process counters for ingestion, deduplication, scoring and lifecycle."""
import logging
import time
from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class MetricsCollector:
    """Collects and stores pipeline metrics."""

    # Ingestion metrics
    postings_received_total: int = 0
    postings_received_by_source: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    postings_rejected_total: int = 0
    postings_rejected_by_source: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    ingest_errors_by_type: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    outcomes: Dict[str, int] = field(default_factory=lambda: defaultdict(int))

    # Scoring metrics
    scores_computed: int = 0
    scoring_failures: int = 0
    scoring_timeouts: int = 0
    score_cache_hits: int = 0
    score_cache_misses: int = 0
    scoring_times: deque = field(default_factory=lambda: deque(maxlen=1000))

    # Lifecycle metrics
    jobs_marked_stale: int = 0
    jobs_expired: int = 0

    start_time: float = field(default_factory=time.time)

    def record_posting_received(self, source: str, count: int = 1) -> None:
        self.postings_received_total += count
        self.postings_received_by_source[source] += count

    def record_posting_rejected(self, source: str, error_type: str = "validation") -> None:
        """Record a posting that did not make it into the catalog.

        Args:
            source: Job source name
            error_type: Type of failure (validation, dedup, store, etc.)
        """
        self.postings_rejected_total += 1
        self.postings_rejected_by_source[source] += 1
        self.ingest_errors_by_type[error_type] += 1

    def record_outcome(self, outcome: str) -> None:
        self.outcomes[outcome] += 1

    def record_score(self, duration: float) -> None:
        """Record one computed score.

        Args:
            duration: Scoring time in seconds
        """
        self.scores_computed += 1
        self.scoring_times.append(duration)

    def record_scoring_failure(self) -> None:
        self.scoring_failures += 1

    def record_scoring_timeout(self) -> None:
        self.scoring_timeouts += 1

    def record_cache_lookup(self, hit: bool) -> None:
        if hit:
            self.score_cache_hits += 1
        else:
            self.score_cache_misses += 1

    def record_sweep(self, stale: int, expired: int) -> None:
        self.jobs_marked_stale += stale
        self.jobs_expired += expired

    def get_success_rate(self, source: Optional[str] = None) -> float:
        """Calculate the share of postings accepted into the catalog.

        Args:
            source: Optional source to calculate rate for

        Returns:
            Success rate as percentage (0-100)
        """
        if source:
            received = self.postings_received_by_source.get(source, 0)
            rejected = self.postings_rejected_by_source.get(source, 0)
        else:
            received = self.postings_received_total
            rejected = self.postings_rejected_total

        if received == 0:
            return 100.0

        return ((received - rejected) / received) * 100.0

    def get_average_scoring_time(self) -> float:
        """Average scoring time in seconds over recent scores."""
        if not self.scoring_times:
            return 0.0
        return sum(self.scoring_times) / len(self.scoring_times)

    def get_uptime(self) -> float:
        return time.time() - self.start_time

    def health_status(self) -> str:
        success_rate = self.get_success_rate()
        status = "healthy"
        if success_rate < 80:
            status = "degraded"
        if success_rate < 50 or self.get_average_scoring_time() > 0.3:
            status = "unhealthy"
        return status

    def snapshot(self) -> Dict[str, Any]:
        """Get all metrics as a plain dictionary.

        Returns:
            Dictionary containing all metrics
        """
        return {
            "ingest": {
                "received_total": self.postings_received_total,
                "received_by_source": dict(self.postings_received_by_source),
                "rejected_total": self.postings_rejected_total,
                "rejected_by_source": dict(self.postings_rejected_by_source),
                "errors_by_type": dict(self.ingest_errors_by_type),
                "outcomes": dict(self.outcomes),
            },
            "scoring": {
                "computed": self.scores_computed,
                "failures": self.scoring_failures,
                "timeouts": self.scoring_timeouts,
                "cache_hits": self.score_cache_hits,
                "cache_misses": self.score_cache_misses,
                "average_time_ms": self.get_average_scoring_time() * 1000,
            },
            "lifecycle": {
                "marked_stale": self.jobs_marked_stale,
                "expired": self.jobs_expired,
            },
            "success_rates": {
                "overall": self.get_success_rate(),
                "by_source": {
                    source: self.get_success_rate(source)
                    for source in self.postings_received_by_source.keys()
                },
            },
            "status": self.health_status(),
            "uptime_seconds": self.get_uptime(),
        }

    def reset(self) -> None:
        self.__dict__.update(MetricsCollector().__dict__)
        logger.info("Metrics reset")


# Global metrics collector
metrics = MetricsCollector()
