"""
Engram Conversation Store
-------------------------
Durable record of conversation turns and curated facts in SQLite.
This is the source of truth for text, timestamps and stored vectors;
the vector index is derived from it and can always be rebuilt.
"""

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from engram.core.errors import RecordNotFound, StoreCorruption, StoreIOFailure
from engram.core.types import Capability, Fact, RecordKind, Turn

logger = logging.getLogger("Engram.Store")

SCHEMA_VERSION = 1

CREATE_TURNS = """
CREATE TABLE IF NOT EXISTS turns (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    session_id      TEXT NOT NULL DEFAULT 'default',
    author          TEXT NOT NULL DEFAULT 'User',
    input_text      TEXT NOT NULL,
    response_text   TEXT NOT NULL,
    created_at      REAL NOT NULL,

    -- Embedding (NULL when embedding failed)
    embedding_json  TEXT,
    embedding_dim   INTEGER,
    embedding_model TEXT,
    indexed         INTEGER NOT NULL DEFAULT 0
);
"""

CREATE_FACTS = """
CREATE TABLE IF NOT EXISTS facts (
    seq             INTEGER PRIMARY KEY AUTOINCREMENT,
    id              TEXT NOT NULL UNIQUE,
    content         TEXT NOT NULL,
    created_by      TEXT NOT NULL DEFAULT 'owner',
    created_at      REAL NOT NULL,

    embedding_json  TEXT,
    embedding_dim   INTEGER,
    embedding_model TEXT,
    indexed         INTEGER NOT NULL DEFAULT 0
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_turns_unindexed ON turns(indexed);",
    "CREATE INDEX IF NOT EXISTS idx_turns_session ON turns(session_id);",
    "CREATE INDEX IF NOT EXISTS idx_facts_unindexed ON facts(indexed);",
]

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""

# Index removals that failed after the row was deleted; retried by reconciliation.
PENDING_INDEX_REMOVALS = """
CREATE TABLE IF NOT EXISTS pending_index_removals (
    record_id  TEXT PRIMARY KEY,
    attempts   INTEGER DEFAULT 1,
    last_error TEXT,
    updated_at REAL NOT NULL
);
"""

_TABLES = {RecordKind.TURN: "turns", RecordKind.FACT: "facts"}

_CORRUPTION_MARKERS = ("malformed", "not a database", "file is encrypted", "corrupt")


def _is_corruption(exc: sqlite3.DatabaseError) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in _CORRUPTION_MARKERS)


class ConversationStore:
    """Manages turns and facts in SQLite with transactional writes."""

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        # One connection shared across worker threads; serialize access to it.
        self._lock = threading.RLock()
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn

    @contextlib.contextmanager
    def _guard(self, operation: str):
        """Serialize access and translate sqlite3 failures into store errors."""
        with self._lock:
            try:
                yield self._get_conn()
            except (RecordNotFound, StoreCorruption, StoreIOFailure):
                raise
            except sqlite3.DatabaseError as e:
                if _is_corruption(e):
                    raise StoreCorruption(
                        f"Conversation store {self.db_path} is corrupt ({e}). "
                        "Reset persisted state with `engram reset --yes` and restart."
                    ) from e
                raise StoreIOFailure(f"Store {operation} failed: {e}") from e
            except OSError as e:
                raise StoreIOFailure(f"Store {operation} failed: {e}") from e

    def _initialize(self) -> None:
        with self._guard("initialize") as conn:
            with conn:
                conn.execute(CREATE_TURNS)
                conn.execute(CREATE_FACTS)
                for idx in CREATE_INDEXES:
                    conn.execute(idx)
                conn.execute(SCHEMA_META)
                conn.execute(PENDING_INDEX_REMOVALS)
                conn.execute(
                    "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
                    ("version", str(SCHEMA_VERSION)),
                )
        logger.info("Conversation store initialized at %s", self.db_path)

    def check_integrity(self) -> None:
        """Raise StoreCorruption unless SQLite reports the file healthy."""
        with self._guard("integrity check") as conn:
            row = conn.execute("PRAGMA quick_check;").fetchone()
        result = row[0] if row else "no result"
        if result != "ok":
            raise StoreCorruption(
                f"Conversation store {self.db_path} failed integrity check ({result}). "
                "Reset persisted state with `engram reset --yes` and restart."
            )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _vector_from_row(d: dict) -> Optional[List[float]]:
        raw = d.get("embedding_json")
        return json.loads(raw) if raw else None

    def _row_to_turn(self, row: sqlite3.Row) -> Turn:
        d = dict(row)
        return Turn(
            id=d["id"],
            session_id=d["session_id"],
            author=d["author"],
            input_text=d["input_text"],
            response_text=d["response_text"],
            created_at=d["created_at"],
            vector=self._vector_from_row(d),
            embedding_dim=d["embedding_dim"],
            embedding_model=d["embedding_model"],
            indexed=bool(d["indexed"]),
        )

    def _row_to_fact(self, row: sqlite3.Row) -> Fact:
        d = dict(row)
        try:
            created_by = Capability(d["created_by"])
        except ValueError:
            created_by = Capability.OWNER
        return Fact(
            id=d["id"],
            text=d["content"],
            created_by=created_by,
            created_at=d["created_at"],
            vector=self._vector_from_row(d),
            embedding_dim=d["embedding_dim"],
            embedding_model=d["embedding_model"],
            indexed=bool(d["indexed"]),
        )

    def _row_to_record(self, kind: RecordKind, row: sqlite3.Row):
        if kind == RecordKind.TURN:
            return self._row_to_turn(row)
        return self._row_to_fact(row)

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    def append_turn(self, turn: Turn) -> int:
        """Insert a turn. Returns its insertion sequence number."""
        with self._guard("append turn") as conn:
            with conn:
                cursor = conn.execute(
                    """INSERT INTO turns (id, session_id, author, input_text, response_text,
                       created_at, embedding_json, embedding_dim, embedding_model, indexed)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        turn.id,
                        turn.session_id,
                        turn.author,
                        turn.input_text,
                        turn.response_text,
                        turn.created_at,
                        json.dumps(turn.vector) if turn.vector is not None else None,
                        turn.embedding_dim,
                        turn.embedding_model,
                        int(turn.indexed),
                    ),
                )
            return cursor.lastrowid

    def list_recent_turns(self, n: int) -> List[Turn]:
        """Return the last ``n`` turns in chronological (append) order."""
        if n <= 0:
            return []
        with self._guard("list recent turns") as conn:
            rows = conn.execute(
                "SELECT * FROM turns ORDER BY seq DESC LIMIT ?", (n,)
            ).fetchall()
        turns = [self._row_to_turn(r) for r in rows]
        turns.reverse()
        return turns

    def get_turns(self, ids: Sequence[str]) -> Dict[str, Turn]:
        """Fetch turns by id. Missing ids are absent from the result."""
        return self._get_many(RecordKind.TURN, ids)

    def count_turns(self) -> int:
        return self._count("turns")

    # ------------------------------------------------------------------
    # Facts
    # ------------------------------------------------------------------

    def add_fact(self, fact: Fact) -> int:
        with self._guard("add fact") as conn:
            with conn:
                cursor = conn.execute(
                    """INSERT INTO facts (id, content, created_by, created_at,
                       embedding_json, embedding_dim, embedding_model, indexed)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        fact.id,
                        fact.text,
                        fact.created_by.value,
                        fact.created_at,
                        json.dumps(fact.vector) if fact.vector is not None else None,
                        fact.embedding_dim,
                        fact.embedding_model,
                        int(fact.indexed),
                    ),
                )
            return cursor.lastrowid

    def list_facts_all(self) -> List[Fact]:
        """All facts, oldest first. No cap."""
        with self._guard("list facts") as conn:
            rows = conn.execute("SELECT * FROM facts ORDER BY seq ASC").fetchall()
        return [self._row_to_fact(r) for r in rows]

    def get_facts(self, ids: Sequence[str]) -> Dict[str, Fact]:
        return self._get_many(RecordKind.FACT, ids)

    def delete_fact(self, fact_id: str) -> None:
        """Delete a fact row. Raises RecordNotFound when absent."""
        with self._guard("delete fact") as conn:
            with conn:
                cursor = conn.execute("DELETE FROM facts WHERE id = ?", (fact_id,))
            if cursor.rowcount == 0:
                raise RecordNotFound("fact", fact_id)
        logger.info("Deleted fact %s from store", fact_id)

    def count_facts(self) -> int:
        return self._count("facts")

    # ------------------------------------------------------------------
    # Embedding / indexing state
    # ------------------------------------------------------------------

    def get_seq(self, kind: RecordKind, record_id: str) -> Optional[int]:
        table = _TABLES[kind]
        with self._guard("get seq") as conn:
            row = conn.execute(f"SELECT seq FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return row[0] if row else None

    def set_embedding(
        self,
        kind: RecordKind,
        record_id: str,
        vector: List[float],
        dimension: int,
        model: str,
    ) -> bool:
        """Attach a vector to an existing row (used by reconciliation)."""
        table = _TABLES[kind]
        with self._guard("set embedding") as conn:
            with conn:
                cursor = conn.execute(
                    f"""UPDATE {table} SET embedding_json = ?, embedding_dim = ?,
                        embedding_model = ?, indexed = 0 WHERE id = ?""",
                    (json.dumps(vector), dimension, model, record_id),
                )
            return cursor.rowcount > 0

    def mark_indexed(self, kind: RecordKind, record_ids: Sequence[str], indexed: bool = True) -> int:
        if not record_ids:
            return 0
        table = _TABLES[kind]
        placeholders = ",".join("?" for _ in record_ids)
        with self._guard("mark indexed") as conn:
            with conn:
                cursor = conn.execute(
                    f"UPDATE {table} SET indexed = ? WHERE id IN ({placeholders})",
                    (int(indexed), *record_ids),
                )
            return cursor.rowcount

    def mark_all_unindexed(self) -> None:
        with self._guard("mark all unindexed") as conn:
            with conn:
                conn.execute("UPDATE turns SET indexed = 0")
                conn.execute("UPDATE facts SET indexed = 0")

    def list_unindexed(self, kind: RecordKind, limit: int = 100) -> list:
        """Rows not yet in the index, oldest first."""
        table = _TABLES[kind]
        with self._guard("list unindexed") as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE indexed = 0 ORDER BY seq ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_record(kind, r) for r in rows]

    def count_unindexed(self) -> int:
        with self._guard("count unindexed") as conn:
            turns = conn.execute("SELECT COUNT(*) FROM turns WHERE indexed = 0").fetchone()[0]
            facts = conn.execute("SELECT COUNT(*) FROM facts WHERE indexed = 0").fetchone()[0]
        return turns + facts

    def count_indexed(self) -> int:
        with self._guard("count indexed") as conn:
            turns = conn.execute("SELECT COUNT(*) FROM turns WHERE indexed = 1").fetchone()[0]
            facts = conn.execute("SELECT COUNT(*) FROM facts WHERE indexed = 1").fetchone()[0]
        return turns + facts

    def iter_embedded(
        self, kind: RecordKind, model: str, batch_size: int = 256
    ) -> Iterator[List[Tuple[str, List[float], int]]]:
        """Yield batches of (id, vector, seq) for rows embedded by ``model``, oldest first."""
        table = _TABLES[kind]
        last_seq = 0
        while True:
            with self._guard("scan embedded") as conn:
                rows = conn.execute(
                    f"""SELECT id, embedding_json, seq FROM {table}
                        WHERE embedding_json IS NOT NULL AND embedding_model = ? AND seq > ?
                        ORDER BY seq ASC LIMIT ?""",
                    (model, last_seq, batch_size),
                ).fetchall()
            if not rows:
                return
            last_seq = rows[-1]["seq"]
            yield [(r["id"], json.loads(r["embedding_json"]), r["seq"]) for r in rows]

    def invalidate_embeddings(self, keep_model: Optional[str] = None) -> int:
        """Drop stored vectors not produced by ``keep_model``; rows become unindexed."""
        with self._guard("invalidate embeddings") as conn:
            with conn:
                total = 0
                for table in ("turns", "facts"):
                    cursor = conn.execute(
                        f"""UPDATE {table} SET embedding_json = NULL, embedding_dim = NULL,
                            embedding_model = NULL, indexed = 0
                            WHERE embedding_model IS NOT ? AND embedding_json IS NOT NULL""",
                        (keep_model,),
                    )
                    total += cursor.rowcount
        if total:
            logger.info("Invalidated %d stored vectors from a previous embedding epoch", total)
        return total

    def record_ids(self) -> Dict[str, RecordKind]:
        """Every identifier currently held by the store."""
        with self._guard("list ids") as conn:
            turn_ids = conn.execute("SELECT id FROM turns").fetchall()
            fact_ids = conn.execute("SELECT id FROM facts").fetchall()
        ids = {r[0]: RecordKind.TURN for r in turn_ids}
        ids.update({r[0]: RecordKind.FACT for r in fact_ids})
        return ids

    # ------------------------------------------------------------------
    # Pending index removals ledger
    # ------------------------------------------------------------------

    def record_pending_removal(self, record_id: str, error: str) -> None:
        with self._guard("record pending removal") as conn:
            with conn:
                conn.execute(
                    """INSERT INTO pending_index_removals (record_id, attempts, last_error, updated_at)
                       VALUES (?, 1, ?, ?)
                       ON CONFLICT(record_id) DO UPDATE SET
                           attempts = attempts + 1,
                           last_error = excluded.last_error,
                           updated_at = excluded.updated_at""",
                    (record_id, error[:500], time.time()),
                )

    def clear_pending_removal(self, record_id: str) -> None:
        with self._guard("clear pending removal") as conn:
            with conn:
                conn.execute(
                    "DELETE FROM pending_index_removals WHERE record_id = ?", (record_id,)
                )

    def list_pending_removals(self, limit: int = 100) -> List[str]:
        with self._guard("list pending removals") as conn:
            rows = conn.execute(
                "SELECT record_id FROM pending_index_removals ORDER BY updated_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [r[0] for r in rows]

    def count_pending_removals(self) -> int:
        return self._count("pending_index_removals")

    def clear_all_pending_removals(self) -> None:
        with self._guard("clear pending removals") as conn:
            with conn:
                conn.execute("DELETE FROM pending_index_removals")

    # ------------------------------------------------------------------
    # Meta / maintenance
    # ------------------------------------------------------------------

    def get_meta(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._guard("get meta") as conn:
            row = conn.execute("SELECT value FROM schema_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else default

    def set_meta(self, key: str, value: str) -> None:
        with self._guard("set meta") as conn:
            with conn:
                conn.execute(
                    "INSERT INTO schema_meta (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )

    def _get_many(self, kind: RecordKind, ids: Sequence[str]) -> dict:
        if not ids:
            return {}
        table = _TABLES[kind]
        placeholders = ",".join("?" for _ in ids)
        with self._guard(f"get {table}") as conn:
            rows = conn.execute(
                f"SELECT * FROM {table} WHERE id IN ({placeholders})", tuple(ids)
            ).fetchall()
        records = (self._row_to_record(kind, r) for r in rows)
        return {record.id: record for record in records}

    def _count(self, table: str) -> int:
        with self._guard(f"count {table}") as conn:
            return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
