"""
agentmem hybrid recall -- keyword + vector retrieval with a blended score.

    score = 0.4 * lexical + 0.3 * semantic + 0.2 * recency + 0.1 * importance

``lexical`` is keyword overlap normalised by the best overlap in the
candidate set, ``semantic`` is cosine similarity to the query embedding,
``recency`` is ``1 / (1 + age_days / 30)``. A branch that produced no signal
for a candidate contributes 0 (``UNSCORED``), so recall degrades to
keyword-only when no embedding provider is available.

The two retrieval branches run concurrently on a small thread pool. Access
tracking for the returned entries is submitted to the same pool and never
delays or fails the recall itself.
"""

import logging
import sqlite3
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from agentmem.config import AgentConfig, Tuning
from agentmem.keywords import extract_keywords
from agentmem.sqlite_store import MemoryEntry, MemoryStore
from agentmem.types import IMPORTANCE_WEIGHT

logger = logging.getLogger("agentmem.recall")


class Scored:
    """A signal a retrieval branch actually produced."""

    __slots__ = ("value",)

    def __init__(self, value: float):
        self.value = float(value)

    def __eq__(self, other):
        return isinstance(other, Scored) and other.value == self.value

    def __repr__(self) -> str:
        return f"Scored({self.value:.4f})"


class _Unscored:
    """No signal from a branch (no match, or branch unavailable)."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "UNSCORED"


UNSCORED = _Unscored()


def signal_value(signal) -> float:
    return signal.value if isinstance(signal, Scored) else 0.0


def recency_score(entry: MemoryEntry, now: datetime) -> float:
    return 1.0 / (1.0 + entry.age_days(now) / 30.0)


class RecallEngine:
    """Ranks an agent's active memories against a query."""

    LEXICAL_WEIGHT = 0.4
    SEMANTIC_WEIGHT = 0.3
    RECENCY_WEIGHT = 0.2
    IMPORTANCE_WEIGHT = 0.1

    LEXICAL_POOL = 30
    SEMANTIC_POOL = 20
    PEER_LIMIT = 5

    def __init__(
        self,
        store: MemoryStore,
        provider=None,
        agent_config: Optional[AgentConfig] = None,
        tuning: Optional[Tuning] = None,
        max_workers: int = 4,
    ):
        self.store = store
        self.provider = provider
        self.agent_config = agent_config or AgentConfig.defaults()
        self.tuning = tuning or Tuning()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="agentmem-recall")
        self._pending: List[Future] = []
        self._pending_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Branches
    # ------------------------------------------------------------------

    def _lexical(self, agent_id: str, tokens: Sequence[str], now: datetime) -> List[Tuple[MemoryEntry, Scored]]:
        rows = self.store.keyword_candidates(
            agent_id,
            tokens,
            limit=self.LEXICAL_POOL,
            recent_days=self.tuning.recent_important_days,
            now=now,
        )
        best = max((overlap for _, overlap in rows), default=0)
        return [(entry, Scored(overlap / best if best else 0.0)) for entry, overlap in rows]

    def _semantic(self, agent_id: str, query: str) -> List[Tuple[MemoryEntry, Scored]]:
        """Vector branch. Any failure yields no candidates, never an exception."""
        if self.provider is None or not self.provider.is_configured():
            return []
        try:
            vector = self.provider.embed(query)
            if not vector:
                return []
            rows = self.store.vector_candidates(agent_id, vector, limit=self.SEMANTIC_POOL)
        except Exception as e:
            logger.warning("Semantic recall branch failed, continuing keyword-only: %s", e)
            return []
        return [(entry, Scored(similarity)) for entry, similarity in rows]

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score(self, entry: MemoryEntry, lexical, semantic, now: datetime) -> float:
        return (
            self.LEXICAL_WEIGHT * signal_value(lexical)
            + self.SEMANTIC_WEIGHT * signal_value(semantic)
            + self.RECENCY_WEIGHT * recency_score(entry, now)
            + self.IMPORTANCE_WEIGHT * IMPORTANCE_WEIGHT[entry.importance]
        )

    def recall(
        self,
        agent_id: str,
        query: str,
        limit: int = 8,
        now: Optional[datetime] = None,
    ) -> List[MemoryEntry]:
        """Best ``limit`` entries for agent_id, plus up to 5 from cluster peers."""
        if limit <= 0:
            return []
        now = now or datetime.now(timezone.utc)
        tokens = extract_keywords(query)

        if not tokens:
            results = self.store.most_important(agent_id, limit)
            self._track(results)
            return results

        lex_future = self._executor.submit(self._lexical, agent_id, tokens, now)
        sem_future = self._executor.submit(self._semantic, agent_id, query)
        lexical_rows = lex_future.result()
        semantic_rows = sem_future.result()

        merged: Dict[int, list] = {}
        for entry, signal in lexical_rows:
            merged[entry.id] = [entry, signal, UNSCORED]
        for entry, signal in semantic_rows:
            if entry.id in merged:
                merged[entry.id][2] = signal
            else:
                merged[entry.id] = [entry, UNSCORED, signal]

        for entry, lexical, semantic in merged.values():
            entry.lexical_score = signal_value(lexical)
            entry.semantic_score = signal_value(semantic)
            entry.relevance = self.score(entry, lexical, semantic, now)

        ranked = sorted(
            (item[0] for item in merged.values()),
            key=lambda e: (e.relevance, e.created_at, e.id),
            reverse=True,
        )
        results = ranked[:limit]

        seen = {e.id for e in results}
        for peer_entry in self._peer_entries(agent_id, tokens):
            if peer_entry.id in seen:
                continue
            peer_entry.relevance = self.score(peer_entry, UNSCORED, UNSCORED, now)
            results.append(peer_entry)
            seen.add(peer_entry.id)

        self._track(results)
        logger.debug("Recall for %s: %d lexical, %d semantic, %d returned",
                     agent_id, len(lexical_rows), len(semantic_rows), len(results))
        return results

    def _peer_entries(self, agent_id: str, tokens: Sequence[str]) -> List[MemoryEntry]:
        peers = self.agent_config.peers_of(agent_id)
        if not peers:
            return []
        try:
            return self.store.peer_candidates(peers, tokens, limit=self.PEER_LIMIT)
        except sqlite3.Error as e:
            logger.warning("Cross-agent recall failed for %s: %s", agent_id, e)
            return []

    # ------------------------------------------------------------------
    # Access tracking
    # ------------------------------------------------------------------

    def _track(self, entries: Sequence[MemoryEntry]) -> None:
        ids = [e.id for e in entries]
        if not ids:
            return
        future = self._executor.submit(self._increment, ids)
        with self._pending_lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)

    def _increment(self, ids: List[int]) -> None:
        try:
            self.store.increment_access(ids)
        except Exception as e:
            logger.warning("Access tracking failed for %d memories: %s", len(ids), e)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for pending access-tracking updates."""
        with self._pending_lock:
            pending = list(self._pending)
            self._pending = []
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.drain()
        self._executor.shutdown(wait=True)
