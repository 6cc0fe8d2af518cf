"""Shared fixtures for the job catalog tests."""
from datetime import datetime

import pytest

from jobcatalog.database import CatalogStore
from jobcatalog.domain.deduplication import DeduplicationEngine
from jobcatalog.domain.job import JobSource, RawPosting
from jobcatalog.domain.normalization import JobNormalizer
from jobcatalog.error_handling import ErrorHandler
from jobcatalog.metrics import MetricsCollector


@pytest.fixture
def now():
    """Fixed reference time used across tests."""
    return datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def make_posting(now):
    """Factory for flat (Indeed-style) raw postings.

    Keyword overrides are merged into the payload.
    """
    def _make(external_id="1", source=JobSource.INDEED, fetched_at=None, **overrides):
        fetched_at = fetched_at or now
        payload = {
            'title': 'Senior Backend Engineer',
            'company': 'Acme Corp',
            'location': 'Austin, TX',
            'url': f'https://jobs.example.com/{external_id}',
            'description': 'Build and operate APIs with Python and SQL on AWS.',
            'skills': ['Python', 'SQL', 'AWS'],
            'posted_at': fetched_at.isoformat(),
        }
        payload.update(overrides)
        return RawPosting(source=source, external_id=external_id, payload=payload, fetched_at=fetched_at)
    return _make


@pytest.fixture
def store():
    """Create an in-memory catalog store."""
    catalog = CatalogStore("sqlite:///:memory:")
    yield catalog
    catalog.close()


@pytest.fixture
def normalizer():
    return JobNormalizer()


@pytest.fixture
def engine(store):
    return DeduplicationEngine(store)


@pytest.fixture
def ingest(normalizer, engine):
    """Normalize and deduplicate one raw posting synchronously."""
    def _ingest(raw):
        return engine.process(normalizer.normalize(raw))
    return _ingest


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def error_handler():
    return ErrorHandler(notification_threshold=3)
