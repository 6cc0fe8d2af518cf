"""
Ingestion pipeline: source adapters -> normalizer -> deduplication engine.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Union

import yaml

from jobcatalog.domain.deduplication import DeduplicationEngine, IngestOutcome, IngestResult
from jobcatalog.domain.job import JobSource, RawPosting, RemovalNotice, utcnow
from jobcatalog.domain.lifecycle import ExpirationReason, LifecycleManager
from jobcatalog.domain.normalization import JobNormalizer
from jobcatalog.domain.sources import SourceRegistry, default_registry
from jobcatalog.error_handling import ErrorHandler, ValidationError
from jobcatalog.metrics import MetricsCollector, metrics as default_metrics

logger = logging.getLogger(__name__)

AdapterItem = Union[RawPosting, RemovalNotice]


@dataclass
class IngestStats:
    """Counters for one ingestion run."""
    received: int = 0
    created: int = 0
    resighted: int = 0
    updated: int = 0
    duplicates: int = 0
    promoted: int = 0
    rejected: int = 0
    failed: int = 0
    removed: int = 0
    reconciled: int = 0
    received_by_source: Dict[str, int] = field(default_factory=dict)

    def record_received(self, source: str) -> None:
        self.received += 1
        self.received_by_source[source] = self.received_by_source.get(source, 0) + 1

    def record_outcome(self, outcome: IngestOutcome) -> None:
        name = {
            IngestOutcome.CREATED: 'created',
            IngestOutcome.RESIGHTED: 'resighted',
            IngestOutcome.UPDATED: 'updated',
            IngestOutcome.DUPLICATE: 'duplicates',
            IngestOutcome.PROMOTED: 'promoted',
        }[outcome]
        setattr(self, name, getattr(self, name) + 1)

    @property
    def stored(self) -> int:
        return self.created + self.resighted + self.updated + self.duplicates + self.promoted


class FileSourceAdapter:
    """
    Replays postings for one source from a JSON or YAML file.

    The file holds either a list of payloads, or a mapping with ``postings``
    (list of payloads) and optionally ``source``, ``fetched_at`` and
    ``removed`` (external ids the source no longer lists).
    """

    def __init__(self, path: Union[str, Path], source: Optional[JobSource] = None,
                 registry: Optional[SourceRegistry] = None, fetched_at: Optional[datetime] = None):
        """
        Initialize the adapter.

        Args:
            path: JSON or YAML file
            source: Source of the postings, required unless the file names it
            registry: Mapping registry used to find each payload's external id
            fetched_at: Sighting time stamped on every posting, defaults to now
        """
        self.path = Path(path)
        self.source = JobSource(source) if source is not None else None
        self.registry = registry or default_registry()
        self.fetched_at = fetched_at

    @property
    def name(self) -> str:
        return self.path.name

    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            raise FileNotFoundError(f"Postings file not found: {self.path}")
        with open(self.path, 'r') as f:
            data = yaml.safe_load(f) or []
        if isinstance(data, list):
            data = {'postings': data}
        if not isinstance(data, dict):
            raise ValueError(f"{self.path} must contain a list or a mapping of postings")
        return data

    async def __aiter__(self) -> AsyncIterator[AdapterItem]:
        data = await asyncio.to_thread(self._load)
        source = JobSource(str(data['source']).upper()) if data.get('source') else self.source
        if source is None:
            raise ValueError(f"No source given for {self.path}")
        fetched_at = self.fetched_at or utcnow()
        mapping = self.registry.get(source) if source in self.registry else None

        for index, payload in enumerate(data.get('postings') or []):
            external_id = mapping.external_id(payload) if mapping and isinstance(payload, dict) else None
            yield RawPosting(
                source=source,
                external_id=external_id or f"{self.path.stem}-{index}",
                payload=payload,
                fetched_at=fetched_at,
            )
        for external_id in data.get('removed') or []:
            yield RemovalNotice(source=source, external_id=external_id)


async def iterate_postings(items: Iterable[AdapterItem]) -> AsyncIterator[AdapterItem]:
    """Wrap an in-memory sequence as an adapter."""
    for item in items:
        yield item


class IngestionPipeline:
    """
    Drives postings from source adapters into the catalog.

    Each adapter gets its own asyncio task. Normalization runs on the event
    loop; deduplication and storage run in worker threads. A posting that
    fails at any stage is logged, counted and dropped without stopping the
    run.
    """

    def __init__(self, engine: DeduplicationEngine, normalizer: Optional[JobNormalizer] = None,
                 lifecycle: Optional[LifecycleManager] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 metrics: Optional[MetricsCollector] = None, reconcile: bool = True):
        """
        Initialize the pipeline.

        Args:
            engine: Deduplication engine bound to the catalog store
            normalizer: Job normalizer, a default one when omitted
            lifecycle: Lifecycle manager used for removal signals
            error_handler: Failure accounting
            metrics: Metrics collector, the global one when omitted
            reconcile: Scan for near-duplicate collisions after each run
        """
        self.engine = engine
        self.normalizer = normalizer or JobNormalizer()
        self.lifecycle = lifecycle
        self.error_handler = error_handler or ErrorHandler()
        self.metrics = metrics or default_metrics
        self.reconcile = reconcile

    async def run(self, adapters: List[Any]) -> IngestStats:
        """
        Consume every adapter to exhaustion.

        Args:
            adapters: Async iterables of RawPosting / RemovalNotice

        Returns:
            IngestStats for the run
        """
        stats = IngestStats()
        if not adapters:
            logger.info("No adapters given, nothing to ingest")
            return stats

        tasks = [asyncio.create_task(self._consume(adapter, stats)) for adapter in adapters]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for adapter, result in zip(adapters, results):
            if isinstance(result, Exception):
                name = getattr(adapter, 'name', type(adapter).__name__)
                self.error_handler.record('adapter', name, result)

        if self.reconcile:
            demoted = await asyncio.to_thread(self.engine.reconcile)
            stats.reconciled = len(demoted)

        logger.info(
            f"Ingestion complete: {stats.received} received, {stats.created} created, "
            f"{stats.resighted} re-sighted, {stats.updated} updated, {stats.duplicates} duplicates, "
            f"{stats.promoted} promoted, {stats.rejected} rejected, {stats.failed} failed"
        )
        return stats

    async def _consume(self, adapter, stats: IngestStats) -> None:
        async for item in adapter:
            if isinstance(item, RemovalNotice):
                await self.remove(item, stats)
            else:
                await self.ingest_one(item, stats)

    async def ingest_one(self, raw: RawPosting, stats: Optional[IngestStats] = None) -> Optional[IngestResult]:
        """
        Normalize and deduplicate one posting.

        Returns:
            The engine's result, or None if the posting was rejected or failed
        """
        stats = stats if stats is not None else IngestStats()
        source = raw.source.value
        stats.record_received(source)
        self.metrics.record_posting_received(source)

        try:
            job = self.normalizer.normalize(raw)
        except ValidationError as e:
            stats.rejected += 1
            self.metrics.record_posting_rejected(source, 'validation')
            self.error_handler.record('normalize', source, e)
            return None
        except Exception as e:
            stats.failed += 1
            self.metrics.record_posting_rejected(source, type(e).__name__)
            self.error_handler.record('normalize', source, e)
            return None

        try:
            result = await asyncio.to_thread(self.engine.process, job)
        except Exception as e:
            stats.failed += 1
            self.metrics.record_posting_rejected(source, type(e).__name__)
            self.error_handler.record('dedup', source, e)
            return None

        stats.record_outcome(result.outcome)
        self.metrics.record_outcome(result.outcome.value)
        return result

    async def remove(self, notice: RemovalNotice, stats: Optional[IngestStats] = None) -> bool:
        """Expire a job its source no longer lists."""
        if self.lifecycle is None:
            logger.debug(f"No lifecycle manager, ignoring removal of {notice.job_id}")
            return False
        try:
            expired = await asyncio.to_thread(self.lifecycle.expire, notice.job_id, ExpirationReason.SOURCE_REMOVED)
        except Exception as e:
            self.error_handler.record('remove', notice.source.value, e)
            return False
        if expired and stats is not None:
            stats.removed += 1
        return expired
