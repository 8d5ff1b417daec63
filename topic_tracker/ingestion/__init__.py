"""Source adapters, HTTP retry layer and deduplication."""

from topic_tracker.ingestion.base_adapter import FetchedItem, FetchResult, SourceAdapter
from topic_tracker.ingestion.deduplication import DeduplicationGate, fingerprint, similarity_hash
from topic_tracker.ingestion.factory import AdapterFactory, UnsupportedSourceKindError
from topic_tracker.ingestion.http_client import HTTPClient, HTTPClientError, RateLimitError, RetryConfig

__all__ = [
    "AdapterFactory",
    "DeduplicationGate",
    "FetchedItem",
    "FetchResult",
    "HTTPClient",
    "HTTPClientError",
    "RateLimitError",
    "RetryConfig",
    "SourceAdapter",
    "UnsupportedSourceKindError",
    "fingerprint",
    "similarity_hash",
]
