"""Job ingestion, deduplication and relevance scoring pipeline."""

__version__ = "0.1.0"
