"""
agentmem SQLite Store -- durable memory entries with sqlite-vec similarity.

One SQLite database holds every agent's memories, their keyword index, the
conflict audit trail and the maintenance log. Embeddings are float32 BLOBs on
the ``memories`` row; similarity is computed in SQL with sqlite-vec's
``vec_distance_cosine``. When the extension cannot be loaded the store keeps
working and every vector operation returns nothing.

Usage:
    store = MemoryStore()
    mid = store.insert("alan-os", "schedule", "Dentist moved to Friday", ["dentist", "friday"])
    hits = store.keyword_candidates("alan-os", ["dentist"])
"""

import json
import logging
import sqlite3
import struct
import threading
import time as _time
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from agentmem.config import default_db_path
from agentmem.crypto import decrypt, encrypt, secure_connect
from agentmem.types import (
    IMPORTANCE_RANK,
    Importance,
    MemoryStatus,
    Visibility,
    coerce_importance,
    coerce_status,
    coerce_visibility,
)

logger = logging.getLogger("agentmem.sqlite_store")

SCHEMA_VERSION = 1

# ---------------------------------------------------------------------------
# SQLite retry -- WAL + busy_timeout absorb most contention between the MCP
# server, the HTTP server and the daily maintenance job. This retries the
# rest with exponential backoff before surfacing the error.
# ---------------------------------------------------------------------------
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 1.0  # seconds


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                _time.sleep(delay)
            else:
                raise


def _serialize_f32(vector: Sequence[float]) -> bytes:
    """Serialize a float32 vector to bytes for sqlite-vec."""
    return struct.pack(f"{len(vector)}f", *vector)


def _deserialize_f32(data: bytes) -> List[float]:
    return list(struct.unpack(f"{len(data) // 4}f", data))


def _iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string, so stored timestamps compare as text."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _iso(datetime.now(timezone.utc))


def _placeholders(n: int) -> str:
    return ",".join("?" * n)


_IMPORTANCE_ORDER_SQL = (
    "CASE importance WHEN 'critical' THEN 0 WHEN 'high' THEN 1 "
    "WHEN 'medium' THEN 2 ELSE 3 END"
)


# ---------------------------------------------------------------------------
# MemoryEntry
# ---------------------------------------------------------------------------


class MemoryEntry:
    """One stored fact, plus the scores attached to it by recall."""

    __slots__ = (
        "id",
        "agent_id",
        "category",
        "content",
        "keywords",
        "importance",
        "status",
        "superseded_by",
        "access_count",
        "last_accessed_at",
        "visibility",
        "source_agent",
        "created_at",
        "has_embedding",
        "embedding",
        "relevance",
        "lexical_score",
        "semantic_score",
    )

    def __init__(
        self,
        id: int,
        agent_id: str,
        category: str,
        content: str,
        keywords: Optional[List[str]] = None,
        importance: Importance = Importance.MEDIUM,
        status: MemoryStatus = MemoryStatus.ACTIVE,
        superseded_by: Optional[int] = None,
        access_count: int = 0,
        last_accessed_at: Optional[datetime] = None,
        visibility: Visibility = Visibility.PRIVATE,
        source_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
        has_embedding: bool = False,
        embedding: Optional[List[float]] = None,
    ):
        self.id = id
        self.agent_id = agent_id
        self.category = category
        self.content = content
        self.keywords = keywords or []
        self.importance = importance
        self.status = status
        self.superseded_by = superseded_by
        self.access_count = access_count
        self.last_accessed_at = last_accessed_at
        self.visibility = visibility
        self.source_agent = source_agent or agent_id
        self.created_at = created_at or datetime.now(timezone.utc)
        self.has_embedding = has_embedding
        self.embedding = embedding
        self.relevance = 0.0
        self.lexical_score = 0.0
        self.semantic_score = 0.0

    def age_days(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (now - self.created_at).total_seconds() / 86400.0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "category": self.category,
            "content": self.content,
            "keywords": list(self.keywords),
            "importance": self.importance.value,
            "status": self.status.value,
            "superseded_by": self.superseded_by,
            "access_count": self.access_count,
            "last_accessed_at": self.last_accessed_at.isoformat() if self.last_accessed_at else None,
            "visibility": self.visibility.value,
            "source_agent": self.source_agent,
            "created_at": self.created_at.isoformat(),
            "has_embedding": self.has_embedding,
            "relevance": round(self.relevance, 4),
        }

    def __repr__(self) -> str:
        return (
            f"MemoryEntry(id={self.id}, agent_id={self.agent_id!r}, category={self.category!r}, "
            f"importance={self.importance.value}, status={self.status.value})"
        )


_ENTRY_COLUMNS = (
    "id, agent_id, category, content, keywords, importance, status, superseded_by, "
    "access_count, last_accessed_at, visibility, source_agent, created_at, "
    "embedding IS NOT NULL"
)


def _prefixed_columns(alias: str) -> str:
    cols = [c.strip() for c in _ENTRY_COLUMNS.split(",")]
    return ", ".join(f"{alias}.{c}" for c in cols)


# ---------------------------------------------------------------------------
# MemoryStore
# ---------------------------------------------------------------------------


class MemoryStore:
    """SQLite-backed store for agent memories.

    A single connection is shared across threads behind ``self._lock``
    (``check_same_thread=False``). Every public write is one statement or one
    short transaction, committed before the lock is released.
    """

    def __init__(self, db_path=None):
        self.db_path = Path(db_path) if db_path else default_db_path()
        self.db_path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)

        self._lock = threading.Lock()
        self._vec_available = False
        self._conn = self._connect()
        self._init_schema()

    @property
    def vec_available(self) -> bool:
        return self._vec_available

    def _connect(self) -> sqlite3.Connection:
        conn = secure_connect(
            self.db_path,
            timeout=30,
            check_same_thread=False,
        )
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=30000")
        conn.execute("PRAGMA foreign_keys=ON")

        try:
            import sqlite_vec

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            self._vec_available = True
        except Exception as e:
            logger.warning("sqlite-vec not available, vector similarity disabled: %s", e)
            self._vec_available = False

        return conn

    def _init_schema(self) -> None:
        """Create tables, indexes and the superseded_by trigger if they don't exist."""
        c = self._conn

        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER NOT NULL
            )
        """)
        row = c.execute("SELECT version FROM schema_version LIMIT 1").fetchone()

        c.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                category TEXT NOT NULL,
                content TEXT NOT NULL,
                keywords TEXT NOT NULL DEFAULT '[]',
                importance TEXT NOT NULL DEFAULT 'medium'
                    CHECK (importance IN ('low', 'medium', 'high', 'critical')),
                embedding BLOB,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'archived', 'contradicted')),
                superseded_by INTEGER,
                access_count INTEGER NOT NULL DEFAULT 0,
                last_accessed_at TEXT,
                visibility TEXT NOT NULL DEFAULT 'private'
                    CHECK (visibility IN ('private', 'shared', 'broadcast')),
                source_agent TEXT,
                created_at TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_agent_status
            ON memories(agent_id, status)
        """)
        c.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_agent_category
            ON memories(agent_id, category, status)
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at)")
        c.execute("CREATE INDEX IF NOT EXISTS idx_memories_visibility ON memories(visibility)")

        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_keywords (
                memory_id INTEGER NOT NULL REFERENCES memories(id) ON DELETE CASCADE,
                keyword TEXT NOT NULL,
                PRIMARY KEY (memory_id, keyword)
            )
        """)
        c.execute("CREATE INDEX IF NOT EXISTS idx_memory_keywords_keyword ON memory_keywords(keyword)")

        # Audit rows outlive the entries they mention, so no foreign keys here
        c.execute("""
            CREATE TABLE IF NOT EXISTS memory_conflicts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                agent_id TEXT NOT NULL,
                winning_memory_id INTEGER,
                losing_memory_id INTEGER NOT NULL,
                similarity_score REAL,
                resolution TEXT NOT NULL,
                reason TEXT,
                created_at TEXT NOT NULL
            )
        """)

        c.execute("""
            CREATE TABLE IF NOT EXISTS maintenance_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_type TEXT NOT NULL,
                archived_count INTEGER NOT NULL DEFAULT 0,
                consolidated_count INTEGER NOT NULL DEFAULT 0,
                decayed_count INTEGER NOT NULL DEFAULT 0,
                details TEXT,
                created_at TEXT NOT NULL
            )
        """)

        if row is None:
            c.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))

        c.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_superseded_by_immutable
            BEFORE UPDATE OF superseded_by ON memories
            WHEN OLD.superseded_by IS NOT NULL
                 AND (NEW.superseded_by IS NULL OR NEW.superseded_by != OLD.superseded_by)
            BEGIN
                SELECT RAISE(ABORT, 'superseded_by is immutable once set');
            END
        """)

        c.commit()

    # ------------------------------------------------------------------
    # Resilient commit / execute
    # ------------------------------------------------------------------

    def _commit(self) -> None:
        _retry_on_locked(self._conn.commit)

    def _run_sql(self, sql, params=None):
        if params is not None:
            return _retry_on_locked(self._conn.execute, sql, params)
        return _retry_on_locked(self._conn.execute, sql)

    def _write(self, sql, params=None) -> sqlite3.Cursor:
        """Execute one write and commit; roll back before re-raising."""
        try:
            cur = self._run_sql(sql, params)
            self._commit()
            return cur
        except sqlite3.Error:
            self._conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_dt(value: Optional[str]) -> Optional[datetime]:
        """Parse an ISO datetime string to an aware UTC datetime."""
        if not value:
            return None
        if value.endswith("Z"):
            value = value[:-1] + "+00:00"
        dt = datetime.fromisoformat(value)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    def _row_to_entry(self, row: Sequence) -> MemoryEntry:
        (
            mem_id, agent_id, category, content, keywords_json, importance, status,
            superseded_by, access_count, last_accessed_at, visibility, source_agent,
            created_at, has_embedding,
        ) = row[:14]
        return MemoryEntry(
            id=mem_id,
            agent_id=agent_id,
            category=category,
            content=decrypt(content),
            keywords=json.loads(keywords_json) if keywords_json else [],
            importance=Importance(importance),
            status=MemoryStatus(status),
            superseded_by=superseded_by,
            access_count=access_count or 0,
            last_accessed_at=self._parse_dt(last_accessed_at),
            visibility=Visibility(visibility),
            source_agent=source_agent,
            created_at=self._parse_dt(created_at),
            has_embedding=bool(has_embedding),
        )

    # ------------------------------------------------------------------
    # Core CRUD
    # ------------------------------------------------------------------

    def insert(
        self,
        agent_id: str,
        category: str,
        content: str,
        keywords: Optional[Iterable[str]] = None,
        importance=Importance.MEDIUM,
        embedding: Optional[Sequence[float]] = None,
        visibility=Visibility.PRIVATE,
        source_agent: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> int:
        """Insert one active entry and its keyword index rows. Returns the new id."""
        if not agent_id:
            raise ValueError("agent_id is required")
        if not category:
            raise ValueError("category is required")
        if not content or not content.strip():
            raise ValueError("content must be non-empty")
        importance = coerce_importance(importance)
        visibility = coerce_visibility(visibility)

        kw: List[str] = []
        for k in keywords or []:
            k = str(k).strip().lower()
            if k and k not in kw:
                kw.append(k)

        blob = _serialize_f32(embedding) if embedding else None
        created = _iso(created_at) if created_at else _now_iso()

        with self._lock:
            try:
                cur = self._run_sql(
                    """INSERT INTO memories
                       (agent_id, category, content, keywords, importance, embedding,
                        status, visibility, source_agent, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, 'active', ?, ?, ?)""",
                    (
                        agent_id,
                        category,
                        encrypt(content),
                        json.dumps(kw),
                        importance.value,
                        blob,
                        visibility.value,
                        source_agent or agent_id,
                        created,
                    ),
                )
                mem_id = cur.lastrowid
                if kw:
                    self._conn.executemany(
                        "INSERT OR IGNORE INTO memory_keywords (memory_id, keyword) VALUES (?, ?)",
                        [(mem_id, k) for k in kw],
                    )
                self._commit()
            except sqlite3.Error:
                self._conn.rollback()
                raise

        logger.debug("Stored memory %d for %s/%s (%s)", mem_id, agent_id, category, importance.value)
        return mem_id

    def get(self, memory_id: int, with_embedding: bool = False) -> Optional[MemoryEntry]:
        """Fetch one entry by id regardless of status. No access tracking."""
        with self._lock:
            row = self._run_sql(
                f"SELECT {_ENTRY_COLUMNS}, embedding FROM memories WHERE id = ?",
                (memory_id,),
            ).fetchone()
        if not row:
            return None
        entry = self._row_to_entry(row)
        if with_embedding and row[14] is not None:
            entry.embedding = _deserialize_f32(row[14])
        return entry

    def list_active(self, agent_id: str, limit: int = 50) -> List[MemoryEntry]:
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_ENTRY_COLUMNS} FROM memories
                    WHERE agent_id = ? AND status = 'active'
                    ORDER BY created_at DESC, id DESC LIMIT ?""",
                (agent_id, limit),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def list_all(
        self,
        agent_id: Optional[str] = None,
        limit: int = 50,
        status=None,
    ) -> List[MemoryEntry]:
        """Entries of any status (administrative listing), newest first."""
        clauses, params = [], []
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(coerce_status(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(limit)
        with self._lock:
            rows = self._run_sql(
                f"SELECT {_ENTRY_COLUMNS} FROM memories {where} ORDER BY created_at DESC, id DESC LIMIT ?",
                params,
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def update_status(self, memory_id: int, status, superseded_by: Optional[int] = None) -> bool:
        """Set an entry's status, optionally linking the entry that replaced it.

        ``superseded_by`` can be set once; the schema trigger rejects any later
        change with ``sqlite3.IntegrityError``.
        """
        status = coerce_status(status)
        with self._lock:
            if superseded_by is None:
                cur = self._write(
                    "UPDATE memories SET status = ? WHERE id = ?",
                    (status.value, memory_id),
                )
            else:
                cur = self._write(
                    "UPDATE memories SET status = ?, superseded_by = ? WHERE id = ?",
                    (status.value, superseded_by, memory_id),
                )
        return cur.rowcount > 0

    def increment_access(self, ids: Sequence[int], now: Optional[datetime] = None) -> int:
        """Bump access_count and last_accessed_at for every id in one statement."""
        ids = list(dict.fromkeys(ids))
        if not ids:
            return 0
        stamp = _iso(now) if now else _now_iso()
        with self._lock:
            cur = self._write(
                f"""UPDATE memories
                    SET access_count = access_count + 1, last_accessed_at = ?
                    WHERE id IN ({_placeholders(len(ids))})""",
                [stamp, *ids],
            )
        return cur.rowcount

    def delete(self, memory_id: int) -> bool:
        """Administrative hard delete. Keyword rows cascade; audit rows stay."""
        with self._lock:
            cur = self._write("DELETE FROM memories WHERE id = ?", (memory_id,))
        deleted = cur.rowcount > 0
        if deleted:
            logger.info("Deleted memory %d", memory_id)
        return deleted

    def count(self, agent_id: Optional[str] = None, status=None) -> int:
        clauses, params = [], []
        if agent_id:
            clauses.append("agent_id = ?")
            params.append(agent_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(coerce_status(status).value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            row = self._run_sql(f"SELECT COUNT(*) FROM memories {where}", params).fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Recall candidates
    # ------------------------------------------------------------------

    def keyword_candidates(
        self,
        agent_id: str,
        tokens: Sequence[str],
        limit: int = 30,
        recent_days: int = 30,
        now: Optional[datetime] = None,
    ) -> List[Tuple[MemoryEntry, int]]:
        """Active entries of agent_id ranked by keyword overlap with tokens.

        Entries with no overlap are still included when they are high or
        critical and younger than ``recent_days``. Returns (entry, overlap).
        """
        tokens = list(dict.fromkeys(tokens))
        now = now or datetime.now(timezone.utc)
        recent_cutoff = _iso(now - timedelta(days=recent_days))
        kw_match = f"k.keyword IN ({_placeholders(len(tokens))})" if tokens else "0"
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_prefixed_columns('m')}, COUNT(k.keyword) AS overlap
                    FROM memories m
                    LEFT JOIN memory_keywords k ON k.memory_id = m.id AND {kw_match}
                    WHERE m.agent_id = ? AND m.status = 'active'
                    GROUP BY m.id
                    HAVING overlap > 0
                        OR (m.importance IN ('high', 'critical') AND m.created_at > ?)
                    ORDER BY overlap DESC, m.created_at DESC
                    LIMIT ?""",
                [*tokens, agent_id, recent_cutoff, limit],
            ).fetchall()
        return [(self._row_to_entry(r), r[14]) for r in rows]

    def peer_candidates(
        self,
        peers: Iterable[str],
        tokens: Sequence[str],
        limit: int = 5,
    ) -> List[MemoryEntry]:
        """Active shared/broadcast entries owned by peers, matching tokens or critical."""
        peers = sorted(set(peers))
        if not peers:
            return []
        tokens = list(dict.fromkeys(tokens))
        kw_match = f"k.keyword IN ({_placeholders(len(tokens))})" if tokens else "0"
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_prefixed_columns('m')}, COUNT(k.keyword) AS overlap
                    FROM memories m
                    LEFT JOIN memory_keywords k ON k.memory_id = m.id AND {kw_match}
                    WHERE m.agent_id IN ({_placeholders(len(peers))})
                      AND m.status = 'active'
                      AND m.visibility IN ('shared', 'broadcast')
                    GROUP BY m.id
                    HAVING overlap > 0 OR m.importance = 'critical'
                    ORDER BY overlap DESC, m.created_at DESC
                    LIMIT ?""",
                [*tokens, *peers, limit],
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def most_important(self, agent_id: str, limit: int = 8) -> List[MemoryEntry]:
        """Active entries ordered by importance rank, then newest first."""
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_ENTRY_COLUMNS} FROM memories
                    WHERE agent_id = ? AND status = 'active'
                    ORDER BY {_IMPORTANCE_ORDER_SQL}, created_at DESC, id DESC
                    LIMIT ?""",
                (agent_id, limit),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def vector_candidates(
        self,
        agent_id: str,
        embedding: Sequence[float],
        limit: int = 20,
    ) -> List[Tuple[MemoryEntry, float]]:
        """Active embedded entries of agent_id by cosine similarity, clamped to [0, 1]."""
        if not self._vec_available or not embedding:
            return []
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_ENTRY_COLUMNS}, vec_distance_cosine(embedding, ?) AS distance
                    FROM memories
                    WHERE agent_id = ? AND status = 'active'
                      AND embedding IS NOT NULL AND length(embedding) = ?
                    ORDER BY distance ASC
                    LIMIT ?""",
                (_serialize_f32(embedding), agent_id, 4 * len(embedding), limit),
            ).fetchall()
        return [(self._row_to_entry(r), min(1.0, max(0.0, 1.0 - r[14]))) for r in rows]

    def nearest_neighbors(
        self,
        agent_id: str,
        category: str,
        embedding: Sequence[float],
        limit: int = 1,
    ) -> List[Tuple[MemoryEntry, float]]:
        """Closest active same-agent same-category entries as (entry, distance)."""
        if not self._vec_available or not embedding:
            return []
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_ENTRY_COLUMNS}, vec_distance_cosine(embedding, ?) AS distance
                    FROM memories
                    WHERE agent_id = ? AND category = ? AND status = 'active'
                      AND embedding IS NOT NULL AND length(embedding) = ?
                    ORDER BY distance ASC, id ASC
                    LIMIT ?""",
                (_serialize_f32(embedding), agent_id, category, 4 * len(embedding), limit),
            ).fetchall()
        return [(self._row_to_entry(r), r[14]) for r in rows]

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stale_candidates(
        self,
        unaccessed_before: datetime,
        low_access_before: datetime,
        low_access_count: int,
    ) -> List[int]:
        """Ids of active non-critical entries eligible for stale archival."""
        with self._lock:
            rows = self._run_sql(
                """SELECT id FROM memories
                   WHERE status = 'active' AND importance != 'critical'
                     AND ((access_count = 0 AND created_at < ?)
                          OR (access_count < ? AND created_at < ?))
                   ORDER BY id""",
                (_iso(unaccessed_before), low_access_count, _iso(low_access_before)),
            ).fetchall()
        return [r[0] for r in rows]

    def decay_candidates(
        self,
        importance,
        created_before: datetime,
        idle_since: datetime,
    ) -> List[int]:
        """Ids of active entries at ``importance`` that are old and not accessed recently."""
        importance = coerce_importance(importance)
        with self._lock:
            rows = self._run_sql(
                """SELECT id FROM memories
                   WHERE status = 'active' AND importance = ?
                     AND created_at < ?
                     AND (last_accessed_at IS NULL OR last_accessed_at < ?)
                   ORDER BY id""",
                (importance.value, _iso(created_before), _iso(idle_since)),
            ).fetchall()
        return [r[0] for r in rows]

    def downgrade_importance(self, memory_id: int, from_importance, to_importance) -> bool:
        """Lower an active entry's importance one way only. False if it no longer matches."""
        src = coerce_importance(from_importance)
        dst = coerce_importance(to_importance)
        if src == Importance.CRITICAL:
            raise ValueError("critical entries never decay")
        if IMPORTANCE_RANK[dst] <= IMPORTANCE_RANK[src]:
            raise ValueError(f"cannot raise importance {src.value} -> {dst.value}")
        with self._lock:
            cur = self._write(
                "UPDATE memories SET importance = ? WHERE id = ? AND importance = ? AND status = 'active'",
                (dst.value, memory_id, src.value),
            )
        return cur.rowcount > 0

    def merge_access_count(self, memory_id: int, extra: int) -> bool:
        """Add ``extra`` accesses to an entry (consolidation keeper)."""
        with self._lock:
            cur = self._write(
                "UPDATE memories SET access_count = access_count + ? WHERE id = ?",
                (max(0, int(extra)), memory_id),
            )
        return cur.rowcount > 0

    def embedded_agent_categories(self) -> List[Tuple[str, str]]:
        """(agent_id, category) groups having at least two embedded active entries."""
        with self._lock:
            rows = self._run_sql(
                """SELECT agent_id, category FROM memories
                   WHERE status = 'active' AND embedding IS NOT NULL
                   GROUP BY agent_id, category
                   HAVING COUNT(*) > 1
                   ORDER BY agent_id, category"""
            ).fetchall()
        return [(r[0], r[1]) for r in rows]

    def near_duplicate_pairs(
        self,
        agent_id: str,
        category: str,
        max_distance: float,
        limit: int = 100,
    ) -> List[Tuple[MemoryEntry, MemoryEntry, float]]:
        """Pairs of active entries in one group closer than max_distance, closest first."""
        if not self._vec_available:
            return []
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_prefixed_columns('a')}, {_prefixed_columns('b')},
                           vec_distance_cosine(a.embedding, b.embedding) AS distance
                    FROM memories a
                    JOIN memories b
                      ON b.agent_id = a.agent_id AND b.category = a.category AND b.id > a.id
                    WHERE a.agent_id = ? AND a.category = ?
                      AND a.status = 'active' AND b.status = 'active'
                      AND a.embedding IS NOT NULL AND b.embedding IS NOT NULL
                      AND length(a.embedding) = length(b.embedding)
                      AND vec_distance_cosine(a.embedding, b.embedding) < ?
                    ORDER BY distance ASC, a.id ASC
                    LIMIT ?""",
                (agent_id, category, max_distance, limit),
            ).fetchall()
        return [(self._row_to_entry(r[:14]), self._row_to_entry(r[14:28]), r[28]) for r in rows]

    def record_conflict(
        self,
        agent_id: str,
        winning_id: Optional[int],
        losing_id: int,
        similarity: Optional[float],
        resolution: str,
        reason: str = "",
    ) -> int:
        """Append one audit row to memory_conflicts."""
        with self._lock:
            cur = self._write(
                """INSERT INTO memory_conflicts
                   (agent_id, winning_memory_id, losing_memory_id, similarity_score,
                    resolution, reason, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (agent_id, winning_id, losing_id, similarity, resolution, reason, _now_iso()),
            )
        return cur.lastrowid

    def conflicts(self, agent_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
        where = "WHERE agent_id = ?" if agent_id else ""
        params: List[Any] = [agent_id] if agent_id else []
        params.append(limit)
        with self._lock:
            rows = self._run_sql(
                f"""SELECT id, agent_id, winning_memory_id, losing_memory_id, similarity_score,
                           resolution, reason, created_at
                    FROM memory_conflicts {where} ORDER BY id DESC LIMIT ?""",
                params,
            ).fetchall()
        keys = ("id", "agent_id", "winning_memory_id", "losing_memory_id", "similarity_score",
                "resolution", "reason", "created_at")
        return [dict(zip(keys, r)) for r in rows]

    def log_maintenance(
        self,
        run_type: str,
        archived: int = 0,
        consolidated: int = 0,
        decayed: int = 0,
        details: Optional[Dict[str, Any]] = None,
    ) -> int:
        with self._lock:
            cur = self._write(
                """INSERT INTO maintenance_log
                   (run_type, archived_count, consolidated_count, decayed_count, details, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (run_type, archived, consolidated, decayed,
                 json.dumps(details or {}), _now_iso()),
            )
        return cur.lastrowid

    # ------------------------------------------------------------------
    # Embedding backfill
    # ------------------------------------------------------------------

    def missing_embeddings(self, limit: int = 100) -> List[MemoryEntry]:
        """Active entries stored without an embedding, oldest first."""
        with self._lock:
            rows = self._run_sql(
                f"""SELECT {_ENTRY_COLUMNS} FROM memories
                    WHERE status = 'active' AND embedding IS NULL
                    ORDER BY id ASC LIMIT ?""",
                (limit,),
            ).fetchall()
        return [self._row_to_entry(r) for r in rows]

    def set_embedding(self, memory_id: int, vector: Sequence[float]) -> bool:
        if not vector:
            raise ValueError("embedding must be non-empty")
        with self._lock:
            cur = self._write(
                "UPDATE memories SET embedding = ? WHERE id = ?",
                (_serialize_f32(vector), memory_id),
            )
        return cur.rowcount > 0

    # ------------------------------------------------------------------
    # Health aggregates (read-only)
    # ------------------------------------------------------------------

    def status_counts(self) -> Dict[str, int]:
        with self._lock:
            rows = self._run_sql("SELECT status, COUNT(*) FROM memories GROUP BY status").fetchall()
        counts = {s.value: 0 for s in MemoryStatus}
        counts.update({r[0]: r[1] for r in rows})
        return counts

    def embedded_count(self) -> int:
        with self._lock:
            row = self._run_sql(
                "SELECT COUNT(*) FROM memories WHERE status = 'active' AND embedding IS NOT NULL"
            ).fetchone()
        return row[0] if row else 0

    def agent_breakdown(self) -> List[Dict[str, Any]]:
        """Per-agent totals, active count and average access count."""
        with self._lock:
            rows = self._run_sql(
                """SELECT agent_id,
                          COUNT(*),
                          SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END),
                          AVG(access_count)
                   FROM memories GROUP BY agent_id ORDER BY agent_id"""
            ).fetchall()
        return [
            {"agent_id": r[0], "total": r[1], "active": r[2] or 0, "avg_access": round(r[3] or 0.0, 1)}
            for r in rows
        ]

    def category_breakdown(self) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._run_sql(
                """SELECT category, COUNT(*) FROM memories
                   WHERE status = 'active'
                   GROUP BY category ORDER BY COUNT(*) DESC, category"""
            ).fetchall()
        return [{"category": r[0], "count": r[1]} for r in rows]

    def stale_count(self, created_before: datetime) -> int:
        """Active entries never accessed and created before the cutoff."""
        with self._lock:
            row = self._run_sql(
                """SELECT COUNT(*) FROM memories
                   WHERE status = 'active' AND access_count = 0 AND created_at < ?""",
                (_iso(created_before),),
            ).fetchone()
        return row[0] if row else 0

    def maintenance_summary(self) -> Dict[str, Any]:
        with self._lock:
            last = self._run_sql(
                """SELECT run_type, archived_count, consolidated_count, decayed_count, details, created_at
                   FROM maintenance_log ORDER BY id DESC LIMIT 1"""
            ).fetchone()
            runs = self._run_sql("SELECT COUNT(*) FROM maintenance_log").fetchone()[0]
            last_conflict = self._run_sql(
                "SELECT created_at FROM memory_conflicts ORDER BY id DESC LIMIT 1"
            ).fetchone()
        last_run = None
        if last:
            last_run = {
                "run_type": last[0],
                "archived": last[1],
                "consolidated": last[2],
                "decayed": last[3],
                "details": json.loads(last[4]) if last[4] else {},
                "created_at": last[5],
            }
        return {
            "last_run": last_run,
            "last_conflict": last_conflict[0] if last_conflict else None,
            "total_runs": runs,
        }

    def close(self) -> None:
        with self._lock:
            try:
                self._conn.close()
            except sqlite3.Error as e:
                logger.debug("Error closing store: %s", e)
