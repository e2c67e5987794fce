"""
Engram Vector Index
-------------------
Approximate similarity index over turn and fact embeddings, backed by a
local on-disk Qdrant collection. The index is derived state: every
point mirrors a store row and the whole collection can be reset and
replayed from the conversation store.

Writes are serialized and never overlap queries (AsyncRWLock); the
synchronous methods do the work and the async wrappers add the
locking and move the call off the event loop.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from qdrant_client import QdrantClient
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    MatchValue,
    PointStruct,
    ScalarQuantization,
    ScalarQuantizationConfig,
    ScalarType,
    VectorParams,
)

from engram.core.errors import IndexCorruption, IndexDimensionMismatch, IndexNotFound
from engram.core.types import IndexMatch, RecordKind
from engram.store.lock import AsyncRWLock

logger = logging.getLogger("Engram.Index")

DEFAULT_COLLECTION = "engram_memories"

T = TypeVar("T")


def point_id_for(record_id: str) -> str:
    """Stable Qdrant point id for a record identifier."""
    return str(uuid.uuid5(uuid.NAMESPACE_DNS, record_id))


class VectorIndex:
    """Manages record embeddings in local Qdrant for similarity search."""

    def __init__(
        self,
        data_path,
        embedding_dims: int,
        collection_name: str = DEFAULT_COLLECTION,
        reduced_precision: bool = False,
        overfetch: int = 8,
    ):
        self.data_path = Path(data_path) if not isinstance(data_path, Path) else data_path
        self.collection_name = collection_name
        self.embedding_dims = embedding_dims
        self.reduced_precision = reduced_precision
        self.overfetch = max(0, overfetch)
        self._client: Optional[QdrantClient] = None
        self._rw = AsyncRWLock()
        self._initialize()

    def _get_client(self) -> QdrantClient:
        if self._client is None:
            self.data_path.mkdir(parents=True, exist_ok=True)
            try:
                self._client = QdrantClient(path=str(self.data_path))
            except Exception as e:
                raise IndexCorruption(f"Cannot open vector index at {self.data_path}: {e}") from e
        return self._client

    def _initialize(self) -> None:
        client = self._get_client()
        try:
            collections = [c.name for c in client.get_collections().collections]
        except Exception as e:
            self.close()
            raise IndexCorruption(f"Cannot read vector index at {self.data_path}: {e}") from e
        if self.collection_name not in collections:
            self._create_collection()
            return

        stored_dims = self.stored_dimension()
        if stored_dims is not None and stored_dims != self.embedding_dims:
            # Release the storage lock so the caller can wipe the directory.
            self.close()
            raise IndexDimensionMismatch(expected=stored_dims, actual=self.embedding_dims)
        logger.info(
            "Vector index '%s' loaded (%d points, %d dims)",
            self.collection_name,
            self.count(),
            self.embedding_dims,
        )

    def _create_collection(self) -> None:
        quantization = None
        if self.reduced_precision:
            quantization = ScalarQuantization(
                scalar=ScalarQuantizationConfig(type=ScalarType.INT8, quantile=0.99, always_ram=True)
            )
        self._get_client().create_collection(
            collection_name=self.collection_name,
            vectors_config=VectorParams(
                size=self.embedding_dims,
                distance=Distance.COSINE,
                on_disk=True,
            ),
            quantization_config=quantization,
        )
        logger.info(
            "Created vector index '%s' (%d dims, %s)",
            self.collection_name,
            self.embedding_dims,
            "int8" if self.reduced_precision else "f32",
        )

    def stored_dimension(self) -> Optional[int]:
        """Vector size the persisted collection was created with."""
        info = self._get_client().get_collection(self.collection_name)
        vectors = info.config.params.vectors
        if isinstance(vectors, dict):
            vectors = next(iter(vectors.values()), None)
        return getattr(vectors, "size", None)

    def _check_dims(self, vector: List[float]) -> None:
        if len(vector) != self.embedding_dims:
            raise IndexDimensionMismatch(expected=self.embedding_dims, actual=len(vector))

    # ------------------------------------------------------------------
    # Synchronous operations
    # ------------------------------------------------------------------

    def upsert(self, record_id: str, vector: List[float], kind: RecordKind = RecordKind.TURN, seq: int = 0) -> str:
        """Insert or replace one point. Returns the point id."""
        self._check_dims(vector)
        return self.upsert_many([(record_id, vector, kind, seq)])[0]

    def upsert_many(self, items: Iterable[Tuple[str, List[float], RecordKind, int]]) -> List[str]:
        """Insert a batch. Every vector is checked before anything is written."""
        points = []
        for record_id, vector, kind, seq in items:
            self._check_dims(vector)
            points.append(
                PointStruct(
                    id=point_id_for(record_id),
                    vector=vector,
                    payload={"record_id": record_id, "kind": RecordKind(kind).value, "seq": seq},
                )
            )
        if points:
            self._get_client().upsert(collection_name=self.collection_name, points=points)
        return [str(p.id) for p in points]

    def contains(self, record_id: str) -> bool:
        found = self._get_client().retrieve(
            collection_name=self.collection_name,
            ids=[point_id_for(record_id)],
            with_payload=False,
            with_vectors=False,
        )
        return bool(found)

    def delete(self, record_id: str) -> None:
        """Delete the point for ``record_id``. Raises IndexNotFound when absent."""
        if not self.contains(record_id):
            raise IndexNotFound(record_id)
        self._get_client().delete(
            collection_name=self.collection_name,
            points_selector=[point_id_for(record_id)],
        )

    def search(
        self,
        query_vector: List[float],
        limit: int = 10,
        min_score: Optional[float] = None,
        kind: Optional[RecordKind] = None,
    ) -> List[IndexMatch]:
        """
        Similarity search.
        Returns matches by descending score; equal scores keep insertion
        order (lowest seq first).

        The candidate window starts at ``limit + overfetch`` and doubles
        while the score at the cut-off still equals the score of the last
        candidate, so a run of ties is never split arbitrarily.
        """
        self._check_dims(query_vector)
        if limit <= 0:
            return []
        query_filter = None
        if kind is not None:
            query_filter = Filter(
                must=[FieldCondition(key="kind", match=MatchValue(value=RecordKind(kind).value))]
            )

        fetch = limit + max(1, self.overfetch)
        while True:
            hits = self._get_client().query_points(
                collection_name=self.collection_name,
                query=query_vector,
                limit=fetch,
                score_threshold=min_score,
                query_filter=query_filter,
                with_payload=True,
            ).points
            if len(hits) < fetch or hits[-1].score < hits[limit - 1].score:
                break
            fetch *= 2

        ranked = sorted(
            (hit for hit in hits if hit.payload and "record_id" in hit.payload),
            key=lambda hit: (-hit.score, hit.payload.get("seq", 0), hit.payload["record_id"]),
        )
        return [
            IndexMatch(
                id=hit.payload["record_id"],
                score=hit.score,
                kind=RecordKind(hit.payload.get("kind", RecordKind.TURN.value)),
            )
            for hit in ranked[:limit]
        ]

    def list_ids(self, batch_size: int = 256) -> Dict[str, RecordKind]:
        """Every record id held by the index."""
        client = self._get_client()
        ids: Dict[str, RecordKind] = {}
        offset = None
        while True:
            points, offset = client.scroll(
                collection_name=self.collection_name,
                limit=batch_size,
                offset=offset,
                with_payload=True,
                with_vectors=False,
            )
            for point in points:
                payload = point.payload or {}
                if "record_id" in payload:
                    ids[payload["record_id"]] = RecordKind(payload.get("kind", RecordKind.TURN.value))
            if offset is None:
                return ids

    def count(self) -> int:
        info = self._get_client().get_collection(self.collection_name)
        return info.points_count or 0

    def reset(self, embedding_dims: Optional[int] = None, reduced_precision: Optional[bool] = None) -> None:
        """Drop and recreate the collection, optionally for a new epoch."""
        if embedding_dims is not None:
            self.embedding_dims = embedding_dims
        if reduced_precision is not None:
            self.reduced_precision = reduced_precision
        self._get_client().delete_collection(self.collection_name)
        self._create_collection()
        logger.info("Vector index '%s' reset", self.collection_name)

    def close(self) -> None:
        if self._client:
            self._client.close()
            self._client = None

    # ------------------------------------------------------------------
    # Async, lock-aware operations
    # ------------------------------------------------------------------

    async def insert(self, record_id: str, vector: List[float], kind: RecordKind = RecordKind.TURN, seq: int = 0) -> None:
        async with self._rw.write():
            await asyncio.to_thread(self.upsert, record_id, vector, kind, seq)

    async def remove(self, record_id: str) -> None:
        async with self._rw.write():
            await asyncio.to_thread(self.delete, record_id)

    async def query(
        self,
        query_vector: List[float],
        k: int,
        min_score: Optional[float] = None,
        kind: Optional[RecordKind] = None,
    ) -> List[IndexMatch]:
        async with self._rw.read():
            return await asyncio.to_thread(self.search, query_vector, k, min_score, kind)

    async def areset(self, embedding_dims: Optional[int] = None, reduced_precision: Optional[bool] = None) -> None:
        async with self._rw.write():
            await asyncio.to_thread(self.reset, embedding_dims, reduced_precision)

    async def exclusive(self, fn: Callable[..., T], *args) -> T:
        """Run a blocking callable in a worker thread while holding the write lock."""
        async with self._rw.write():
            return await asyncio.to_thread(fn, *args)

    async def acount(self) -> int:
        async with self._rw.read():
            return await asyncio.to_thread(self.count)

    async def alist_ids(self) -> Dict[str, RecordKind]:
        async with self._rw.read():
            return await asyncio.to_thread(self.list_ids)

    async def astats(self) -> Dict[str, Any]:
        async with self._rw.read():
            return await asyncio.to_thread(self.stats)

    def stats(self) -> Dict[str, Any]:
        return {
            "collection": self.collection_name,
            "dimensions": self.embedding_dims,
            "layout": "int8" if self.reduced_precision else "f32",
            "points": self.count(),
        }
