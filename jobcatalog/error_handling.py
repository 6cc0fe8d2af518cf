"""Error types and failure accounting for the ingestion and scoring pipeline."""
import logging
from collections import defaultdict
from typing import Dict, Iterable, Optional

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ValidationError(PipelineError):
    """Raised when a raw posting is malformed or missing required fields."""

    def __init__(self, source: str, external_id: str, missing: Iterable[str] = (), reason: str = ""):
        self.source = source
        self.external_id = external_id
        self.missing = list(missing)
        self.reason = reason
        detail = reason or f"missing required fields: {', '.join(self.missing)}"
        super().__init__(f"Invalid posting {source}/{external_id}: {detail}")


class DuplicateRaceError(PipelineError):
    """Raised when two ingests try to claim the same deduplication hash."""

    def __init__(self, dedup_hash: str, job_id: str, holder_id: Optional[str] = None):
        self.dedup_hash = dedup_hash
        self.job_id = job_id
        self.holder_id = holder_id
        super().__init__(
            f"Hash {dedup_hash[:12]} already claimed by {holder_id or 'another ingest'} (wanted by {job_id})"
        )


class ScoringTimeoutError(PipelineError):
    """Raised when on-demand scoring exceeds its time budget."""

    def __init__(self, job_id: str, timeout: float):
        self.job_id = job_id
        self.timeout = timeout
        super().__init__(f"Scoring {job_id} exceeded {timeout * 1000:.0f}ms")


class InvalidTransitionError(PipelineError):
    """Raised on an illegal job lifecycle transition."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job {job_id} cannot move from {current} to {target}")


class StoreError(PipelineError):
    """Raised when the catalog store fails."""


class ErrorHandler:
    """Counts per-record failures so a run can report them instead of aborting."""

    def __init__(self, notification_threshold: int = 25):
        """Initialize the error handler.

        Args:
            notification_threshold: Failures per key before a critical log line is emitted
        """
        self.error_counts: Dict[str, int] = defaultdict(int)
        self.notification_threshold = notification_threshold
        self._notified = set()

    def record(self, stage: str, key: str, error: Exception) -> None:
        """Record a failure.

        Args:
            stage: Pipeline stage (normalize, dedup, score)
            key: Source name or job id the failure belongs to
            error: The exception that occurred
        """
        counter = f"{stage}:{key}"
        self.error_counts[counter] += 1

        if isinstance(error, ValidationError):
            logger.warning(f"Rejected posting {error.source}/{error.external_id}: {error}")
        elif isinstance(error, ScoringTimeoutError):
            logger.warning(str(error))
        else:
            logger.error(f"{stage} failed for {key}: {type(error).__name__}: {error}")

        self.check_notification_threshold(counter)

    def check_notification_threshold(self, counter: str) -> None:
        """Log a critical line once a counter reaches the threshold.

        Args:
            counter: Counter key (``stage:key``)
        """
        count = self.error_counts.get(counter, 0)
        if count >= self.notification_threshold and counter not in self._notified:
            self._notified.add(counter)
            logger.critical(f"High error rate detected for {counter}: {count} errors")

    def total(self, stage: Optional[str] = None) -> int:
        if stage is None:
            return sum(self.error_counts.values())
        prefix = f"{stage}:"
        return sum(v for k, v in self.error_counts.items() if k.startswith(prefix))

    def reset(self) -> None:
        self.error_counts.clear()
        self._notified.clear()
