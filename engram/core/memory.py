"""
Engram Memory Engine
--------------------
Central memory management class for a conversational assistant.

Composes the subsystems:
- Conversation store (SQLite, source of truth for turns and facts)
- Vector index (Qdrant local, derived, rebuildable)
- Embedding provider (fastembed locally, or Ollama / Gemini over HTTP)
- Context assembler (Facts, Recent, Related)
- Reconciliation daemon (background repair of unindexed rows)

A turn is always stored, even when embedding or indexing fails; such
rows are flagged unindexed and picked up by reconciliation.
"""

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from engram.core.config import EngramConfig
from engram.core.context import ContextAssembler
from engram.core.errors import (
    EmbeddingError,
    EngramError,
    IndexCorruption,
    IndexDimensionMismatch,
    IndexNotFound,
    PermissionDenied,
    StoreError,
    VectorIndexError,
)
from engram.core.reconcile import ReconciliationDaemon
from engram.core.types import (
    Capability,
    ContextBlock,
    EmbeddingVector,
    Fact,
    MemoryHit,
    RecordKind,
    Turn,
)
from engram.embeddings import EmbeddingProvider, create_embedding_provider
from engram.platform import get_platform_info
from engram.store.conversation_store import ConversationStore
from engram.store.lock import StoreLock
from engram.store.vector_index import VectorIndex

logger = logging.getLogger("Engram")

META_EMBEDDING_EPOCH = "embedding_epoch"
META_INDEX_LAYOUT = "index_layout"
REPLAY_BATCH_SIZE = 256


def wipe_persisted_state(config: EngramConfig) -> None:
    """
    Administrative reset: delete the conversation store and the vector index.

    Works on a damaged store too, since nothing is opened. Refuses while
    another process holds the data directory.
    """
    lock = StoreLock(config.lock_path)
    with lock.acquire():
        db_path = Path(config.store.path)
        for suffix in ("", "-wal", "-shm"):
            candidate = db_path.with_name(db_path.name + suffix)
            if candidate.exists():
                candidate.unlink()
        index_path = Path(config.index.path)
        if index_path.exists():
            shutil.rmtree(index_path)
    logger.warning("Persisted memory state wiped under %s", config.data_dir)


class MemoryManager:
    """
    Engram memory engine: durable turns and facts, similarity recall and
    context assembly for every new exchange.

    Usage:
        config = EngramConfig.from_env()
        memory = MemoryManager(config)
        await memory.initialize()

        await memory.append_turn("What's my cat called?", "Miso, you told me last week.")
        context = await memory.build_context("Does Miso like tuna?")
        prompt_prefix = context.render()

        await memory.shutdown()
    """

    def __init__(
        self,
        config: Optional[EngramConfig] = None,
        provider: Optional[EmbeddingProvider] = None,
    ):
        self.config = config or EngramConfig.from_env()
        self._provider = provider
        self._store: Optional[ConversationStore] = None
        self._index: Optional[VectorIndex] = None
        self._store_lock: Optional[StoreLock] = None
        self._reconciler: Optional[ReconciliationDaemon] = None
        self._assembler = ContextAssembler.from_config(self.config.context)
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._maintenance_lock: Optional[asyncio.Lock] = None
        self._initialized = False

    async def __aenter__(self) -> "MemoryManager":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    async def initialize(self) -> None:
        """
        Open all subsystems. Must be called before any operations.

        Raises StoreCorruption when the conversation store is damaged; the
        operator must reset persisted state. A damaged vector index is
        wiped and rebuilt from the store instead.
        """
        if self._initialized:
            return

        logger.info("Initializing Engram memory engine...")
        t0 = time.time()
        self.config.ensure_directories()

        self._store_lock = StoreLock(self.config.lock_path)
        self._store_lock.hold()
        try:
            self._store = await asyncio.to_thread(ConversationStore, self.config.store.path)
            await asyncio.to_thread(self._store.check_integrity)

            if self._provider is None:
                self._provider = create_embedding_provider(self.config.embedding)
            self._maintenance_lock = asyncio.Lock()
            await self._open_index()
            await self._provider.start()

            self._reconciler = ReconciliationDaemon(self.config.reconcile, self.reconcile)
            await self._reconciler.start()
        except BaseException:
            await self._release()
            raise

        self._initialized = True
        turns = await asyncio.to_thread(self._store.count_turns)
        facts = await asyncio.to_thread(self._store.count_facts)
        logger.info(
            "Engram initialized: %d turns, %d facts loaded in %.2fs (epoch %s)",
            turns,
            facts,
            time.time() - t0,
            self._provider.epoch,
        )

    async def shutdown(self) -> None:
        """Gracefully shut down all subsystems."""
        if self._reconciler:
            await self._reconciler.stop()
        await self._release()
        self._initialized = False
        logger.info("Engram shut down")

    async def _release(self) -> None:
        if self._provider is not None:
            await self._provider.close()
        if self._index is not None:
            self._index.close()
            self._index = None
        if self._store is not None:
            self._store.close()
            self._store = None
        if self._store_lock is not None:
            self._store_lock.release()
            self._store_lock = None
        self._reconciler = None

    # ==========================================
    # Epoch / index lifecycle
    # ==========================================

    def _new_index(self) -> VectorIndex:
        return VectorIndex(
            data_path=self.config.index.path,
            embedding_dims=self._provider.dimension(),
            collection_name=self.config.index.collection,
            reduced_precision=self.config.index.reduced_precision,
            overfetch=self.config.index.overfetch,
        )

    def _recreate_index(self) -> VectorIndex:
        shutil.rmtree(self.config.index.path, ignore_errors=True)
        return self._new_index()

    async def _open_index(self) -> None:
        """
        Open the vector index for the active embedding epoch.

        - embedding epoch changed: stored vectors are dropped, the index is
          recreated empty and reconciliation re-embeds every row
        - only the storage layout changed, the index is unreadable, or it
          holds fewer entries than the store expects: the index is
          recreated and replayed from stored vectors
        """
        epoch = self._provider.epoch
        layout = self.config.index.layout
        stored_epoch = await asyncio.to_thread(self._store.get_meta, META_EMBEDDING_EPOCH)
        stored_layout = await asyncio.to_thread(self._store.get_meta, META_INDEX_LAYOUT)

        rebuild: Optional[str] = None
        if stored_epoch is not None and stored_epoch != epoch:
            rebuild = "epoch"
        elif stored_layout is not None and stored_layout != layout:
            rebuild = "layout"

        try:
            self._index = await asyncio.to_thread(self._new_index)
        except IndexDimensionMismatch as e:
            logger.warning("Vector index belongs to another embedding epoch (%s); discarding it", e)
            rebuild = "epoch"
            self._index = await asyncio.to_thread(self._recreate_index)
        except IndexCorruption as e:
            logger.warning("Vector index unreadable (%s); rebuilding from the store", e)
            rebuild = rebuild or "corrupt"
            self._index = await asyncio.to_thread(self._recreate_index)

        if rebuild is None:
            expected = await asyncio.to_thread(self._store.count_indexed)
            if expected > await self._index.acount():
                rebuild = "missing"

        if rebuild == "epoch":
            logger.warning(
                "Embedding epoch changed (%s -> %s); stored vectors invalidated",
                stored_epoch,
                epoch,
            )
            await asyncio.to_thread(self._store.invalidate_embeddings)
            await self._index.areset(self._provider.dimension(), self.config.index.reduced_precision)
            await asyncio.to_thread(self._store.mark_all_unindexed)
            await asyncio.to_thread(self._store.clear_all_pending_removals)
        elif rebuild is not None:
            logger.info("Rebuilding vector index from stored vectors (reason: %s)", rebuild)
            await self._index.areset(self._provider.dimension(), self.config.index.reduced_precision)
            await asyncio.to_thread(self._store.mark_all_unindexed)
            await asyncio.to_thread(self._store.clear_all_pending_removals)
            replayed = await self._index.exclusive(self._replay_stored_vectors)
            logger.info("Replayed %d stored vectors into the index", replayed)

        await asyncio.to_thread(self._store.set_meta, META_EMBEDDING_EPOCH, epoch)
        await asyncio.to_thread(self._store.set_meta, META_INDEX_LAYOUT, layout)

    def _replay_stored_vectors(self) -> int:
        """Insert every stored vector of the active epoch. Runs in a worker thread."""
        dims = self._provider.dimension()
        identity = self._provider.identity
        total = 0
        for kind in (RecordKind.TURN, RecordKind.FACT):
            for batch in self._store.iter_embedded(kind, identity, REPLAY_BATCH_SIZE):
                items = [(rid, vec, kind, seq) for rid, vec, seq in batch if len(vec) == dims]
                if not items:
                    continue
                self._index.upsert_many(items)
                self._store.mark_indexed(kind, [item[0] for item in items])
                total += len(items)
        return total

    # ==========================================
    # Core Memory Operations
    # ==========================================

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    async def _try_embed(self, text: str, what: str) -> Optional[EmbeddingVector]:
        try:
            return await self._provider.embed(text)
        except EmbeddingError as e:
            logger.warning("Embedding failed for %s (%s); storing it unindexed", what, e)
            return None

    async def _index_record(
        self, record_id: str, values: List[float], kind: RecordKind, seq: Optional[int]
    ) -> bool:
        """Best-effort index insert. The store row already exists."""
        try:
            await self._index.insert(record_id, values, kind, seq or 0)
        except Exception as e:
            logger.warning(
                "Index insert failed for %s %s (%s); left for reconciliation",
                kind.value,
                record_id,
                e,
            )
            return False
        try:
            await asyncio.to_thread(self._store.mark_indexed, kind, [record_id])
        except StoreError as e:
            logger.warning("Could not flag %s %s as indexed: %s", kind.value, record_id, e)
        return True

    async def _remove_from_index(self, record_id: str) -> None:
        try:
            await self._index.remove(record_id)
        except IndexNotFound:
            logger.info("No index entry for %s; nothing to remove", record_id)
        except Exception as e:
            logger.warning("Index removal failed for %s (%s); queued for retry", record_id, e)
            await asyncio.to_thread(self._store.record_pending_removal, record_id, str(e))

    async def append_turn(
        self,
        input_text: str,
        response_text: str,
        *,
        author: str = "User",
        session_id: str = "default",
    ) -> Turn:
        """
        Record one exchange.

        The turn is embedded, written to the store and then inserted into
        the index. Embedding or index failures leave the turn stored but
        unindexed. Appends within one session keep their call order.

        Raises:
            StoreIOFailure: the turn could not be written.
        """
        self._check_initialized()
        async with self._session_lock(session_id):
            turn = Turn(
                session_id=session_id,
                author=author,
                input_text=input_text,
                response_text=response_text,
            )
            vector = await self._try_embed(turn.text, f"turn {turn.id}")
            if vector is not None:
                turn = turn.model_copy(
                    update={
                        "vector": vector.values,
                        "embedding_dim": vector.dimension,
                        "embedding_model": vector.provider,
                    }
                )

            seq = await asyncio.to_thread(self._store.append_turn, turn)
            if vector is not None and await self._index_record(turn.id, vector.values, RecordKind.TURN, seq):
                turn = turn.model_copy(update={"indexed": True})

        logger.debug("Turn %s appended (session=%s, indexed=%s)", turn.id, session_id, turn.indexed)
        return turn

    async def build_context(self, new_input_text: str) -> ContextBlock:
        """
        Assemble Facts, Recent and Related sections for a new input.

        When the input cannot be embedded the Related section is left
        empty; facts and recent turns are still returned.
        """
        self._check_initialized()
        context_config = self.config.context
        facts = await asyncio.to_thread(self._store.list_facts_all)
        recent = await asyncio.to_thread(self._store.list_recent_turns, context_config.recent_window)

        matches = []
        if context_config.semantic_top_k > 0 and new_input_text.strip():
            try:
                query = await self._provider.embed_query(new_input_text)
                # Over-ask so that dropping Recent duplicates cannot starve Related
                hits = await self._index.query(
                    query.values,
                    k=context_config.semantic_top_k + context_config.recent_window,
                    min_score=context_config.min_similarity,
                    kind=RecordKind.TURN,
                )
            except (EmbeddingError, VectorIndexError) as e:
                logger.warning("Related section skipped: %s", e)
                hits = []
            if hits:
                turns = await asyncio.to_thread(self._store.get_turns, [hit.id for hit in hits])
                matches = [(turns[hit.id], hit.score) for hit in hits if hit.id in turns]

        return self._assembler.assemble(facts, recent, matches, new_input_text)

    async def search_memory(self, query: str, limit: int = 5) -> List[MemoryHit]:
        """
        Similarity search over turns and facts.

        ``limit`` is capped at ``context.search_max_limit``. Embedding and
        index failures propagate to the caller.
        """
        self._check_initialized()
        limit = min(limit, self.config.context.search_max_limit)
        if limit <= 0 or not query.strip():
            return []

        vector = await self._provider.embed_query(query)
        matches = await self._index.query(vector.values, k=limit)

        turn_ids = [m.id for m in matches if m.kind == RecordKind.TURN]
        fact_ids = [m.id for m in matches if m.kind == RecordKind.FACT]
        turns = await asyncio.to_thread(self._store.get_turns, turn_ids)
        facts = await asyncio.to_thread(self._store.get_facts, fact_ids)

        hits: List[MemoryHit] = []
        for match in matches:
            record = turns.get(match.id) if match.kind == RecordKind.TURN else facts.get(match.id)
            if record is None:
                logger.debug("Index entry %s has no store row; skipped", match.id)
                continue
            hits.append(
                MemoryHit(
                    id=record.id,
                    kind=match.kind,
                    timestamp=record.created_at,
                    text=record.text,
                    score=match.score,
                )
            )
        return hits

    def _require_owner(self, capability: Union[Capability, str, bool], action: str) -> Capability:
        if isinstance(capability, bool):
            capability = Capability.from_flag(capability)
        if capability != Capability.OWNER:
            raise PermissionDenied(f"Permission denied: only the bot owner can {action}")
        return Capability.OWNER

    async def add_fact(self, text: str, capability: Union[Capability, str, bool]) -> str:
        """
        Store a curated fact and return its id.

        Raises:
            PermissionDenied: the caller is not the owner.
            ValueError: the fact text is empty.
        """
        self._check_initialized()
        capability = self._require_owner(capability, "add important facts")
        text = text.strip()
        if not text:
            raise ValueError("Fact text must not be empty")

        fact = Fact(text=text, created_by=capability)
        vector = await self._try_embed(text, f"fact {fact.id}")
        if vector is not None:
            fact = fact.model_copy(
                update={
                    "vector": vector.values,
                    "embedding_dim": vector.dimension,
                    "embedding_model": vector.provider,
                }
            )

        # A concurrent delete must not land between the row and its index entry
        async with self._maintenance_lock:
            seq = await asyncio.to_thread(self._store.add_fact, fact)
            if vector is not None:
                await self._index_record(fact.id, vector.values, RecordKind.FACT, seq)
        logger.info("Fact %s added", fact.id)
        return fact.id

    async def list_facts(self) -> List[Fact]:
        """All facts, oldest first."""
        self._check_initialized()
        return await asyncio.to_thread(self._store.list_facts_all)

    async def delete_fact(self, fact_id: str, capability: Union[Capability, str, bool]) -> None:
        """
        Delete a fact from the store, then from the index.

        Raises:
            PermissionDenied: the caller is not the owner.
            RecordNotFound: no fact has this id.
        """
        self._check_initialized()
        self._require_owner(capability, "delete important facts")
        async with self._maintenance_lock:
            await asyncio.to_thread(self._store.delete_fact, fact_id)
            await self._remove_from_index(fact_id)
        logger.info("Fact %s deleted", fact_id)

    async def list_recent_turns(self, n: Optional[int] = None) -> List[Turn]:
        """The last ``n`` turns (default: the recent window), oldest first."""
        self._check_initialized()
        if n is None:
            n = self.config.context.recent_window
        return await asyncio.to_thread(self._store.list_recent_turns, n)

    # ==========================================
    # Maintenance
    # ==========================================

    async def rebuild_index(self) -> Dict[str, int]:
        """
        Recreate the index from stored vectors.

        Entries with no store row disappear; rows without a vector are
        left for reconciliation to embed. Running it twice produces the
        same index.
        """
        self._check_initialized()
        t0 = time.time()
        async with self._maintenance_lock:
            await self._index.areset(self._provider.dimension(), self.config.index.reduced_precision)
            await asyncio.to_thread(self._store.mark_all_unindexed)
            await asyncio.to_thread(self._store.clear_all_pending_removals)
            indexed = await self._index.exclusive(self._replay_stored_vectors)
        unembedded = await asyncio.to_thread(self._store.count_unindexed)
        logger.info(
            "Index rebuilt: %d entries, %d rows awaiting embedding (%.2fs)",
            indexed,
            unembedded,
            time.time() - t0,
        )
        return {"indexed": indexed, "unembedded": unembedded}

    def _reusable_vector(self, record: Union[Turn, Fact]) -> Optional[List[float]]:
        if (
            record.vector is not None
            and record.embedding_model == self._provider.identity
            and len(record.vector) == self._provider.dimension()
        ):
            return record.vector
        return None

    async def reconcile(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        One repair pass: retry failed index removals, drop index entries
        whose store row is gone, index rows that have a vector, embed rows
        that do not. Stops embedding for the pass at the first backend
        failure.
        """
        self._check_initialized()
        batch_size = batch_size or self.config.reconcile.batch_size
        result = {"removed": 0, "indexed": 0, "embedded": 0, "failed": 0}

        async with self._maintenance_lock:
            pending = await asyncio.to_thread(self._store.list_pending_removals, batch_size)
            for record_id in pending:
                try:
                    await self._index.remove(record_id)
                except IndexNotFound:
                    pass
                except Exception as e:
                    result["failed"] += 1
                    await asyncio.to_thread(self._store.record_pending_removal, record_id, str(e))
                    continue
                await asyncio.to_thread(self._store.clear_pending_removal, record_id)
                result["removed"] += 1

            # Index ids are read first: every id seen there already has its row
            indexed_ids = await self._index.alist_ids()
            stored_ids = await asyncio.to_thread(self._store.record_ids)
            for record_id in sorted(indexed_ids.keys() - stored_ids.keys()):
                logger.warning("Index entry %s has no store row; removing it", record_id)
                try:
                    await self._index.remove(record_id)
                except IndexNotFound:
                    continue
                except Exception as e:
                    result["failed"] += 1
                    await asyncio.to_thread(self._store.record_pending_removal, record_id, str(e))
                    continue
                result["removed"] += 1

            embedding_down = False
            for kind in (RecordKind.TURN, RecordKind.FACT):
                records = await asyncio.to_thread(self._store.list_unindexed, kind, batch_size)
                for record in records:
                    values = self._reusable_vector(record)
                    if values is None:
                        if embedding_down:
                            continue
                        try:
                            vector = await self._provider.embed(record.text)
                        except EmbeddingError as e:
                            logger.warning("Reconciliation embedding unavailable: %s", e)
                            embedding_down = True
                            result["failed"] += 1
                            continue
                        values = vector.values
                        await asyncio.to_thread(
                            self._store.set_embedding,
                            kind,
                            record.id,
                            values,
                            vector.dimension,
                            vector.provider,
                        )
                        result["embedded"] += 1

                    seq = await asyncio.to_thread(self._store.get_seq, kind, record.id)
                    if await self._index_record(record.id, values, kind, seq):
                        result["indexed"] += 1
                    else:
                        result["failed"] += 1
        return result

    async def health(self) -> Dict[str, Any]:
        """Return system health status."""
        self._check_initialized()
        unindexed = await asyncio.to_thread(self._store.count_unindexed)
        pending = await asyncio.to_thread(self._store.count_pending_removals)
        return {
            "status": "ok" if unindexed == 0 and pending == 0 else "degraded",
            "turns": await asyncio.to_thread(self._store.count_turns),
            "facts": await asyncio.to_thread(self._store.count_facts),
            "unindexed": unindexed,
            "pending_index_removals": pending,
            "epoch": self._provider.epoch,
            "index": await self._index.astats(),
            "embedding": self._provider.status(),
            "reconcile": self._reconciler.status if self._reconciler else {"running": False},
            "data_dir": self.config.data_dir,
            "platform": get_platform_info(),
        }

    def _check_initialized(self) -> None:
        """Raise if not initialized."""
        if not self._initialized:
            raise EngramError("MemoryManager not initialized. Call await memory.initialize() first.")

    @property
    def provider(self) -> Optional[EmbeddingProvider]:
        return self._provider
