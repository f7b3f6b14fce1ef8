"""
Exception taxonomy for the ingestion pipeline.

Input validation errors are raised before any side effect. Item-level
failures (storage, metadata) are caught by the orchestrators and reported;
fatal errors abort the whole operation.
"""
from __future__ import annotations


class IngestError(Exception):
    """Base class for pipeline errors."""


class InputValidationError(IngestError):
    """Bad reference shape, missing target, oversized or disallowed file."""


class NotFoundError(IngestError):
    pass


class StorageError(IngestError):
    """A blob store call failed."""

    def __init__(self, message: str, *, status: int | None = None, not_found: bool = False):
        super().__init__(message)
        self.status = status
        self.not_found = bool(not_found)


class StrategyUnavailable(StorageError):
    """An upload strategy cannot run in this environment (missing key or client)."""


class MetadataStoreError(IngestError):
    """A catalog query failed; fatal to the current item only."""


class MissingSchemaError(MetadataStoreError):
    """A table or column the caller relies on is not provisioned."""


class FatalIngestError(IngestError):
    """Aborts the whole operation."""


class MetadataUnavailableError(FatalIngestError):
    """The catalog store cannot be reached at all."""


class ProviderError(IngestError):
    """The external content provider rejected a lookup or download."""

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class RollbackError(IngestError):
    """Rollback did not complete; the file keeps its pre-rollback content."""
