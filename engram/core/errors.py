"""
Engram exceptions.

Every failure the memory engine reports derives from ``EngramError``.
Component families (embedding, store, index) are also
``MemoryOperationError`` subclasses so the tool layer can catch a
single memory-level family and render ``str(exc)`` to the user.
"""

from __future__ import annotations

from typing import Optional


class EngramError(RuntimeError):
    """Base class for all Engram errors."""


class MemoryOperationError(EngramError):
    """A memory interface call failed; ``str(exc)`` is human-readable."""


class PermissionDenied(MemoryOperationError):
    """Raised when a non-owner caller attempts a fact mutation."""


# --- Embedding ---

class EmbeddingError(MemoryOperationError):
    """Base class for embedding backend failures."""


class ProviderUnavailable(EmbeddingError):
    """The backend could not be initialised or refused the request."""


class EmbeddingTimeout(EmbeddingError):
    """A remote embedding request exceeded its timeout."""


class EmbeddingDimensionMismatch(EmbeddingError):
    """The backend returned a vector of an unexpected length."""

    def __init__(self, expected: int, actual: int, provider: Optional[str] = None) -> None:
        self.expected = expected
        self.actual = actual
        self.provider = provider
        source = f" from {provider}" if provider else ""
        super().__init__(
            f"Embedding dimension mismatch{source}: expected {expected}, got {actual}"
        )


# --- Store ---

class StoreError(MemoryOperationError):
    """Base class for conversation store failures."""


class StoreIOFailure(StoreError):
    """The record store could not be read or written."""


class StoreCorruption(StoreError):
    """The record store file is damaged; the operator must reset it."""


class RecordNotFound(StoreError):
    """No row exists for the requested identifier."""

    def __init__(self, kind: str, record_id: str) -> None:
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"No {kind} with id '{record_id}'")


# --- Vector index ---

class VectorIndexError(MemoryOperationError):
    """Base class for vector index failures."""


class IndexDimensionMismatch(VectorIndexError):
    """A vector's dimension disagrees with the index's active epoch."""

    def __init__(self, expected: int, actual: int) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Vector dimension {actual} does not match index dimension {expected}"
        )


class IndexNotFound(VectorIndexError):
    """Removal was requested for an identifier the index does not hold."""

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"Index has no entry for '{record_id}'")


class IndexCorruption(VectorIndexError):
    """The persisted index could not be opened."""
