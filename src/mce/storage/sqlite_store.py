"""SQLite memory store: records, atomic boosts and transactional supersession."""

from __future__ import annotations

import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator

import numpy as np
import structlog

from mce.config import SupersessionConfig
from mce.embeddings.backends import cosine_distances
from mce.exceptions import StorageError, SupersessionError
from mce.types import EmbeddingStatus, MemoryRecord, Neighbor
from mce.utils import iso_str, json_dumps, json_loads, parse_iso, utcnow

logger = structlog.get_logger(__name__)

SCHEMA_VERSION = 1
BOOST_STEP = 0.05
UNIQUE_CURRENT_INDEX = "uq_memories_current_fingerprint"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    mode TEXT NOT NULL,
    category TEXT NOT NULL,
    subcategory TEXT NOT NULL DEFAULT 'general',
    content TEXT NOT NULL,
    embedding BLOB,
    embedding_status TEXT NOT NULL DEFAULT 'pending',
    embedding_model TEXT NOT NULL DEFAULT '',
    embedding_updated_at TEXT,
    token_count INTEGER NOT NULL DEFAULT 0,
    relevance_score REAL NOT NULL DEFAULT 0.5,
    usage_frequency INTEGER NOT NULL DEFAULT 0,
    is_current INTEGER NOT NULL DEFAULT 1,
    superseded_at TEXT,
    superseded_by INTEGER,
    fact_fingerprint TEXT,
    fingerprint_confidence REAL NOT NULL DEFAULT 0.0,
    metadata TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    last_accessed TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_scope ON memories(user_id, category, is_current);
CREATE INDEX IF NOT EXISTS idx_memories_fingerprint
    ON memories(user_id, mode, fact_fingerprint, is_current);
CREATE INDEX IF NOT EXISTS idx_memories_embedding_status ON memories(embedding_status);
"""

_UNIQUE_CURRENT_SQL = f"""
CREATE UNIQUE INDEX IF NOT EXISTS {UNIQUE_CURRENT_INDEX}
    ON memories(user_id, mode, fact_fingerprint)
    WHERE is_current = 1 AND fact_fingerprint IS NOT NULL
"""

_COLUMNS_NO_VECTOR = (
    "id, user_id, mode, category, subcategory, content, embedding_status, embedding_model, "
    "token_count, relevance_score, usage_frequency, is_current, superseded_at, superseded_by, "
    "fact_fingerprint, fingerprint_confidence, metadata, created_at, last_accessed"
)


def _to_blob(vector: Iterable[float] | np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).reshape(-1).tobytes()


def _from_blob(blob: bytes | None) -> np.ndarray | None:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32)


class MemoryStore:
    """Persistent memory records keyed by integer ids.

    Ids are assigned by SQLite and only ever increase; callers should treat
    them as opaque. All writes that must be atomic with respect to each
    other run inside ``BEGIN IMMEDIATE`` transactions.
    """

    def __init__(self, db_path: Path | str, config: SupersessionConfig | None = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.config = config or SupersessionConfig()
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=30000")
        self._init_schema()
        if self.config.enforce_unique_current:
            self.create_supersession_constraint()

    def _init_schema(self) -> None:
        for attempt in range(5):
            try:
                with self._lock:
                    self._conn.executescript(_SCHEMA)
                    self._conn.execute(
                        "INSERT OR IGNORE INTO meta(key, value) VALUES (?, ?)",
                        ("schema_version", str(SCHEMA_VERSION)),
                    )
                return
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < 4:
                    time.sleep(2 * (attempt + 1))
                    continue
                raise StorageError(f"schema init failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    # --- Writes ---

    def insert(self, record: MemoryRecord) -> int:
        with self._transaction() as conn:
            return self._insert_row(conn, record)

    def insert_superseding(
        self,
        record: MemoryRecord,
        supersede_ids: Iterable[int] = (),
        by_fingerprint: bool = False,
    ) -> tuple[int, list[int]]:
        """Insert ``record`` and retire the facts it replaces in one transaction.

        Replaced rows are the explicit ``supersede_ids`` plus, when
        ``by_fingerprint`` is set, every current row sharing the record's
        (user, mode, fingerprint). Retries on lock contention with linear
        backoff and raises SupersessionError once retries are exhausted.
        """
        explicit_ids = sorted({int(i) for i in supersede_ids})
        attempts = max(1, self.config.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                with self._transaction() as conn:
                    ids = set(self._current_ids(conn, record.user_id, explicit_ids))
                    if by_fingerprint and record.fact_fingerprint:
                        rows = conn.execute(
                            "SELECT id FROM memories WHERE user_id=? AND mode=? "
                            "AND fact_fingerprint=? AND is_current=1",
                            (record.user_id, record.mode, record.fact_fingerprint),
                        ).fetchall()
                        ids.update(int(r["id"]) for r in rows)
                    retired = sorted(ids)
                    now = iso_str(utcnow())
                    if retired:
                        marks = ",".join("?" for _ in retired)
                        conn.execute(
                            f"UPDATE memories SET is_current=0, superseded_at=? WHERE id IN ({marks})",
                            (now, *retired),
                        )
                    new_id = self._insert_row(conn, record)
                    if retired:
                        conn.execute(
                            f"UPDATE memories SET superseded_by=? WHERE id IN ({marks})",
                            (new_id, *retired),
                        )
                if retired:
                    logger.info(
                        "memories_superseded",
                        new_id=new_id,
                        superseded=retired,
                        fingerprint=record.fact_fingerprint,
                    )
                return new_id, retired
            except sqlite3.OperationalError as e:
                if "locked" in str(e) and attempt < attempts:
                    time.sleep(self.config.retry_delay * attempt)
                    continue
                raise SupersessionError(f"supersession failed after {attempt} attempt(s): {e}") from e
            except sqlite3.IntegrityError as e:
                raise SupersessionError(f"supersession rejected by constraint: {e}") from e
        raise SupersessionError("supersession retries exhausted")

    def boost(self, memory_id: int) -> bool:
        """Count one more use of a current record; single statement, no read-modify-write."""
        with self._lock:
            cur = self._conn.execute(
                "UPDATE memories SET usage_frequency = usage_frequency + 1, "
                "relevance_score = MIN(relevance_score + ?, 1.0), last_accessed = ? "
                "WHERE id = ? AND is_current = 1",
                (BOOST_STEP, iso_str(utcnow()), memory_id),
            )
        return cur.rowcount > 0

    def set_embedding(
        self,
        memory_id: int,
        vector: Iterable[float] | np.ndarray | None,
        status: EmbeddingStatus,
        model: str = "",
    ) -> bool:
        blob = _to_blob(vector) if vector is not None else None
        with self._lock:
            if blob is None:
                cur = self._conn.execute(
                    "UPDATE memories SET embedding_status=?, embedding_updated_at=? WHERE id=?",
                    (status.value, iso_str(utcnow()), memory_id),
                )
            else:
                cur = self._conn.execute(
                    "UPDATE memories SET embedding=?, embedding_status=?, embedding_model=?, "
                    "embedding_updated_at=? WHERE id=?",
                    (blob, status.value, model, iso_str(utcnow()), memory_id),
                )
        return cur.rowcount > 0

    # --- Reads ---

    def get(self, memory_id: int, with_embedding: bool = False) -> MemoryRecord | None:
        cols = "*" if with_embedding else _COLUMNS_NO_VECTOR
        with self._lock:
            row = self._conn.execute(f"SELECT {cols} FROM memories WHERE id=?", (memory_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def list_current(
        self,
        user_id: str,
        category: str | None = None,
        fingerprint: str | None = None,
        mode: str | None = None,
        limit: int = 100,
    ) -> list[MemoryRecord]:
        sql = f"SELECT {_COLUMNS_NO_VECTOR} FROM memories WHERE user_id=? AND is_current=1"
        params: list[Any] = [user_id]
        if category:
            sql += " AND category=?"
            params.append(category)
        if fingerprint:
            sql += " AND fact_fingerprint=?"
            params.append(fingerprint)
        if mode:
            sql += " AND mode=?"
            params.append(mode)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def candidates(
        self,
        user_id: str,
        category: str | None = None,
        mode: str | None = None,
        limit: int = 500,
        embedded_only: bool = False,
    ) -> list[tuple[MemoryRecord, np.ndarray | None]]:
        """Current records in scope, newest first, paired with their vectors."""
        sql = "SELECT * FROM memories WHERE user_id=? AND is_current=1"
        params: list[Any] = [user_id]
        if category:
            sql += " AND category=?"
            params.append(category)
        if mode:
            sql += " AND mode=?"
            params.append(mode)
        if embedded_only:
            sql += " AND embedding IS NOT NULL"
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [(self._row_to_record(r, include_vector=False), _from_blob(r["embedding"])) for r in rows]

    def nearest(
        self,
        user_id: str,
        category: str,
        vector: np.ndarray,
        limit: int = 5,
        max_candidates: int = 500,
    ) -> list[Neighbor]:
        """Closest current embedded records in (user, category), ascending distance."""
        pairs = [
            (rec, vec)
            for rec, vec in self.candidates(user_id, category, limit=max_candidates, embedded_only=True)
            if vec is not None and vec.shape[0] == np.asarray(vector).reshape(-1).shape[0]
        ]
        if not pairs:
            return []
        matrix = np.stack([vec for _, vec in pairs])
        dists = cosine_distances(vector, matrix)
        order = np.argsort(dists, kind="stable")[:limit]
        return [Neighbor(record=pairs[i][0], distance=float(dists[i])) for i in order]

    def pending_embeddings(self, limit: int = 20) -> list[MemoryRecord]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS_NO_VECTOR} FROM memories "
                "WHERE embedding IS NULL AND embedding_status IN ('pending', 'failed') "
                "ORDER BY id ASC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_record(r) for r in rows]

    def superseded_count(self, user_id: str, category: str | None = None, mode: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM memories WHERE user_id=? AND is_current=0"
        params: list[Any] = [user_id]
        if category:
            sql += " AND category=?"
            params.append(category)
        if mode:
            sql += " AND mode=?"
            params.append(mode)
        with self._lock:
            return int(self._conn.execute(sql, params).fetchone()[0])

    def stats(self, user_id: str | None = None) -> dict[str, Any]:
        where, params = ("WHERE user_id=?", (user_id,)) if user_id else ("", ())
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total, "
                "COALESCE(SUM(is_current), 0) AS current, "
                "COALESCE(SUM(embedding IS NOT NULL), 0) AS embedded, "
                "COALESCE(SUM(embedding_status='pending'), 0) AS pending, "
                "COALESCE(SUM(embedding_status='failed'), 0) AS failed, "
                f"COUNT(DISTINCT user_id) AS users FROM memories {where}",
                params,
            ).fetchone()
        total = int(row["total"])
        return {
            "memories": total,
            "current": int(row["current"]),
            "superseded": total - int(row["current"]),
            "users": int(row["users"]),
            "with_embeddings": int(row["embedded"]),
            "pending_embeddings": int(row["pending"]),
            "failed_embeddings": int(row["failed"]),
            "embedding_coverage": round(int(row["embedded"]) / total, 4) if total else 0.0,
            "unique_current_enforced": self.has_unique_current_index(),
        }

    # --- Supersession maintenance ---

    def cleanup_duplicate_current(self) -> list[int]:
        """Retire all but the newest current row per (user, mode, fingerprint)."""
        retired: list[int] = []
        with self._transaction() as conn:
            groups = conn.execute(
                "SELECT user_id, mode, fact_fingerprint, MAX(id) AS keep_id, COUNT(*) AS n "
                "FROM memories WHERE is_current=1 AND fact_fingerprint IS NOT NULL "
                "GROUP BY user_id, mode, fact_fingerprint HAVING n > 1"
            ).fetchall()
            now = iso_str(utcnow())
            for g in groups:
                rows = conn.execute(
                    "SELECT id FROM memories WHERE user_id=? AND mode=? AND fact_fingerprint=? "
                    "AND is_current=1 AND id<>?",
                    (g["user_id"], g["mode"], g["fact_fingerprint"], g["keep_id"]),
                ).fetchall()
                ids = [int(r["id"]) for r in rows]
                marks = ",".join("?" for _ in ids)
                conn.execute(
                    f"UPDATE memories SET is_current=0, superseded_at=?, superseded_by=? "
                    f"WHERE id IN ({marks})",
                    (now, g["keep_id"], *ids),
                )
                retired.extend(ids)
        if retired:
            logger.warning("duplicate_current_cleaned", retired=len(retired))
        return sorted(retired)

    def create_supersession_constraint(self) -> list[int]:
        """Clean existing duplicates, then install the partial unique index."""
        retired = self.cleanup_duplicate_current()
        with self._lock:
            self._conn.execute(_UNIQUE_CURRENT_SQL)
        logger.info("unique_current_enforced", index=UNIQUE_CURRENT_INDEX)
        return retired

    def has_unique_current_index(self) -> bool:
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM sqlite_master WHERE type='index' AND name=?",
                (UNIQUE_CURRENT_INDEX,),
            ).fetchone()
        return row is not None

    # --- Internals ---

    @staticmethod
    def _current_ids(conn: sqlite3.Connection, user_id: str, ids: list[int]) -> list[int]:
        if not ids:
            return []
        marks = ",".join("?" for _ in ids)
        rows = conn.execute(
            f"SELECT id FROM memories WHERE user_id=? AND is_current=1 AND id IN ({marks})",
            (user_id, *ids),
        ).fetchall()
        return [int(r["id"]) for r in rows]

    @staticmethod
    def _insert_row(conn: sqlite3.Connection, record: MemoryRecord) -> int:
        blob = _to_blob(record.embedding) if record.embedding is not None else None
        cur = conn.execute(
            """INSERT INTO memories(user_id, mode, category, subcategory, content, embedding,
               embedding_status, embedding_model, embedding_updated_at, token_count,
               relevance_score, usage_frequency, is_current, fact_fingerprint,
               fingerprint_confidence, metadata, created_at, last_accessed)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)""",
            (
                record.user_id, record.mode, record.category, record.subcategory,
                record.content, blob, record.embedding_status.value, record.embedding_model,
                iso_str(utcnow()) if blob is not None else None,
                record.token_count, record.relevance_score, record.usage_frequency,
                record.fact_fingerprint, record.fingerprint_confidence,
                json_dumps(record.metadata), iso_str(record.created_at),
                iso_str(record.last_accessed),
            ),
        )
        return int(cur.lastrowid)

    @staticmethod
    def _row_to_record(row: sqlite3.Row, include_vector: bool = True) -> MemoryRecord:
        vec = _from_blob(row["embedding"]) if include_vector and "embedding" in row.keys() else None
        return MemoryRecord(
            id=row["id"],
            user_id=row["user_id"],
            mode=row["mode"],
            category=row["category"],
            subcategory=row["subcategory"],
            content=row["content"],
            embedding=vec.tolist() if vec is not None else None,
            embedding_status=row["embedding_status"],
            embedding_model=row["embedding_model"],
            token_count=row["token_count"],
            relevance_score=row["relevance_score"],
            usage_frequency=row["usage_frequency"],
            is_current=bool(row["is_current"]),
            superseded_at=parse_iso(row["superseded_at"]) if row["superseded_at"] else None,
            superseded_by=row["superseded_by"],
            fact_fingerprint=row["fact_fingerprint"],
            fingerprint_confidence=row["fingerprint_confidence"],
            metadata=json_loads(row["metadata"]),
            created_at=parse_iso(row["created_at"]),
            last_accessed=parse_iso(row["last_accessed"]),
        )
