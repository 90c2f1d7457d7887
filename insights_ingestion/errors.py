"""
Exception types raised by the Meta insights ingestion pipeline.

Only fetch and storage failures abort a run. Enrichment failures are
collected per lookup and never propagate past the enricher.
"""

from typing import Any, Optional


class IngestionError(Exception):
    """Base class for all pipeline errors."""
    pass


class ConfigError(IngestionError):
    """Missing credentials, identifiers or an invalid conversion table."""
    pass


class UpstreamError(IngestionError):
    """Non-success status, network failure or malformed payload from the Graph API."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class EnrichmentError(IngestionError):
    """Thumbnail lookup failure for a single creative or ad."""

    def __init__(self, node_id: str, reason: str, kind: str = "creative"):
        super().__init__(f"Thumbnail lookup failed for {kind} {node_id}: {reason}")
        self.node_id = node_id
        self.kind = kind
        self.reason = reason


class StorageError(IngestionError):
    """Upsert failure. The whole batch is assumed uncommitted."""
    pass


class IngestionTimeout(IngestionError):
    """Run deadline exceeded before the batch was persisted."""
    pass
