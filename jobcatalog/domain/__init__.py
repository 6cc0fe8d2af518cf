"""Domain module for business logic and models."""

from .job import CanonicalJob, JobSource, JobState, RawPosting, RemovalNotice
from .normalization import JobNormalizer
from .deduplication import DeduplicationEngine, IngestOutcome, IngestResult
from .matching import RelevanceScorer, ScoreBreakdown, ScoringWeights, UserSearchCriteria
from .lifecycle import ExpirationReason, ExpirationStats, LifecycleManager

__all__ = [
    'CanonicalJob', 'JobSource', 'JobState', 'RawPosting', 'RemovalNotice',
    'JobNormalizer',
    'DeduplicationEngine', 'IngestOutcome', 'IngestResult',
    'RelevanceScorer', 'ScoreBreakdown', 'ScoringWeights', 'UserSearchCriteria',
    'ExpirationReason', 'ExpirationStats', 'LifecycleManager',
]
