"""
Engram Embedding Provider
-------------------------
Abstract capability shared by the local and remote embedding backends.

Subclasses implement ``_embed_text``; this class owns the concurrency
cap, the passage/query distinction and the dimension check so that
callers always receive a correctly tagged ``EmbeddingVector``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

import numpy as np

from engram.core.errors import EmbeddingDimensionMismatch, ProviderUnavailable
from engram.core.types import EmbeddingVector

logger = logging.getLogger("Engram.Embedding")

PASSAGE = "passage"
QUERY = "query"


class EmbeddingProvider(ABC):
    """Turns text into fixed-dimension vectors."""

    #: Short backend name, part of the epoch identity (e.g. "local", "ollama").
    name: str = "base"

    def __init__(self, model: str, dimensions: int, max_concurrency: int = 2):
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self.model = model
        self._dimensions = dimensions
        self._max_concurrency = max(1, max_concurrency)
        self._semaphore = asyncio.Semaphore(self._max_concurrency)
        self._in_flight = 0

    def dimension(self) -> int:
        return self._dimensions

    @property
    def identity(self) -> str:
        """Provider identity stored alongside every vector."""
        return f"{self.name}/{self.model}"

    @property
    def epoch(self) -> str:
        return f"{self.identity}/{self._dimensions}"

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def embed(self, text: str) -> EmbeddingVector:
        """Embed a passage (a record that will be stored and searched)."""
        return await self._embed_one(text, PASSAGE)

    async def embed_query(self, text: str) -> EmbeddingVector:
        """Embed a search query against stored passages."""
        return await self._embed_one(text, QUERY)

    async def _embed_one(self, text: str, kind: str) -> EmbeddingVector:
        async with self._semaphore:
            self._in_flight += 1
            try:
                values = await self._embed_text(text, kind)
            finally:
                self._in_flight -= 1
        return self._tag(values)

    def _tag(self, values: Any) -> EmbeddingVector:
        array = np.asarray(values, dtype=np.float32).reshape(-1)
        if array.shape[0] != self._dimensions:
            raise EmbeddingDimensionMismatch(self._dimensions, int(array.shape[0]), self.identity)
        if not np.all(np.isfinite(array)):
            raise ProviderUnavailable(f"{self.identity} returned a non-finite vector")
        return EmbeddingVector(
            values=array.tolist(),
            dimension=self._dimensions,
            provider=self.identity,
        )

    @abstractmethod
    async def _embed_text(self, text: str, kind: str) -> List[float]:
        """Return the raw vector for ``text``; ``kind`` is PASSAGE or QUERY."""

    async def start(self) -> None:
        """Start background work (timers). Default: nothing."""

    async def close(self) -> None:
        """Release backend resources. Default: nothing."""

    def status(self) -> Dict[str, Any]:
        return {
            "provider": self.name,
            "model": self.model,
            "dimensions": self._dimensions,
            "max_concurrency": self._max_concurrency,
            "in_flight": self._in_flight,
        }
