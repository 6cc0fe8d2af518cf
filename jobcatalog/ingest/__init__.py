"""Ingestion of raw postings from source adapters."""

from .pipeline import FileSourceAdapter, IngestionPipeline, IngestStats, iterate_postings

__all__ = ['FileSourceAdapter', 'IngestionPipeline', 'IngestStats', 'iterate_postings']
