"""
agentmem facade -- the object a conversational agent talks to.

``AgentMemory`` owns one store and wires the embedding provider, the judge,
the conflict resolver, recall and maintenance around it:

    mem = AgentMemory()
    mem.store("life-admin", "financial", "Car insurance renews on 3 March")
    entries = mem.recall("life-admin", "when does the insurance renew?")
    prompt_section = format_memories_as_context(entries)
"""

import logging
from typing import Any, Dict, Iterable, List, Optional

from agentmem.config import AgentConfig, Tuning
from agentmem.conflicts import ConflictResolver
from agentmem.decay import DecayEngine, DecayResult
from agentmem.health import health_report
from agentmem.keywords import classify_importance, extract_keywords, infer_category
from agentmem.recall import RecallEngine
from agentmem.sqlite_store import MemoryEntry, MemoryStore
from agentmem.types import (
    Importance,
    StoreAction,
    Visibility,
    coerce_importance,
    coerce_visibility,
)

logger = logging.getLogger("agentmem.memory")

USER_SUMMARY_CHARS = 500
AGENT_SUMMARY_CHARS = 1000


class StoreResult:
    __slots__ = ("id", "action", "reason")

    def __init__(self, id: int, action: StoreAction, reason: str = ""):
        self.id = id
        self.action = action
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "action": self.action.value, "reason": self.reason}

    def __repr__(self) -> str:
        return f"StoreResult(id={self.id}, action={self.action.value}, reason={self.reason!r})"


class AgentMemory:
    """Store, recall and maintain per-agent memories."""

    def __init__(
        self,
        db_path=None,
        store: Optional[MemoryStore] = None,
        provider=None,
        judge=None,
        agent_config: Optional[AgentConfig] = None,
        tuning: Optional[Tuning] = None,
    ):
        self.memory_store = store or MemoryStore(db_path)
        self.provider = provider
        self.judge = judge
        self.agent_config = agent_config or AgentConfig.defaults()
        self.tuning = tuning or Tuning()
        self.resolver = ConflictResolver(self.memory_store, judge=judge, tuning=self.tuning)
        self.recall_engine = RecallEngine(
            self.memory_store, provider=provider, agent_config=self.agent_config, tuning=self.tuning
        )
        self.decay = DecayEngine(self.memory_store, provider=provider, tuning=self.tuning)

    def _embed(self, text: str) -> List[float]:
        if self.provider is None or not self.provider.is_configured():
            return []
        return self.provider.embed(text)

    # ------------------------------------------------------------------
    # Store
    # ------------------------------------------------------------------

    def store(
        self,
        agent_id: str,
        category: str,
        content: str,
        keywords: Optional[Iterable[str]] = None,
        importance=None,
        visibility=None,
    ) -> StoreResult:
        """Store a fact after conflict resolution.

        Returns the id of the entry that now represents the fact: the new id
        for insert/replace, the existing id for skip.

        Raises ValueError for empty or oversized content and unknown
        importance/visibility values; sqlite3.Error on store failure.
        """
        if not content or not content.strip():
            raise ValueError("content must be non-empty")
        if len(content) > self.tuning.max_content_chars:
            raise ValueError(
                f"content is {len(content)} chars; limit is {self.tuning.max_content_chars}"
            )
        level = coerce_importance(importance) if importance is not None else Importance.MEDIUM
        if visibility is not None:
            vis = coerce_visibility(visibility)
        elif self.agent_config.is_broadcast_category(agent_id, category):
            vis = Visibility.BROADCAST
        else:
            vis = Visibility.PRIVATE

        kw = [k.strip().lower() for k in keywords if k and k.strip()] if keywords else []
        if not kw:
            kw = extract_keywords(content)

        embedding = self._embed(content)
        decision = self.resolver.check(agent_id, category, content, embedding)

        if decision.action == StoreAction.SKIP:
            logger.info("Skipped store for %s/%s: %s", agent_id, category, decision.reason)
            return StoreResult(decision.existing_id, StoreAction.SKIP, decision.reason)

        new_id = self.memory_store.insert(
            agent_id=agent_id,
            category=category,
            content=content,
            keywords=kw,
            importance=level,
            embedding=embedding or None,
            visibility=vis,
            source_agent=agent_id,
        )

        if decision.action == StoreAction.REPLACE:
            self.resolver.supersede(
                agent_id, decision.existing_id, new_id, decision.similarity, decision.reason
            )
            return StoreResult(new_id, StoreAction.REPLACE, decision.reason)

        return StoreResult(new_id, StoreAction.INSERT, decision.reason)

    def store_conversation_summary(
        self,
        agent_id: str,
        user_message: str,
        agent_response: str,
    ) -> StoreResult:
        """Store one exchange, with importance and category inferred from the user text."""
        keywords = extract_keywords(f"{user_message} {agent_response}")
        importance = classify_importance(
            user_message, self.agent_config.importance_keywords_for(agent_id)
        )
        summary = (
            f"USER: {user_message[:USER_SUMMARY_CHARS]}\n"
            f"AGENT: {agent_response[:AGENT_SUMMARY_CHARS]}"
        )
        return self.store(
            agent_id,
            infer_category(user_message),
            summary,
            keywords=keywords,
            importance=importance,
        )

    # ------------------------------------------------------------------
    # Recall
    # ------------------------------------------------------------------

    def recall(self, agent_id: str, query: str, limit: int = 8, now=None) -> List[MemoryEntry]:
        return self.recall_engine.recall(agent_id, query, limit=limit, now=now)

    # ------------------------------------------------------------------
    # Maintenance / admin
    # ------------------------------------------------------------------

    def run_maintenance(self, now=None) -> DecayResult:
        return self.decay.run(now=now)

    def health(self, now=None) -> Dict[str, Any]:
        return health_report(self.memory_store, provider=self.provider, tuning=self.tuning, now=now)

    def backfill_embeddings(self, batch_size: int = 32, limit: Optional[int] = None) -> Dict[str, int]:
        """Embed active entries stored while no provider was available."""
        stats = {"embedded": 0, "failed": 0, "skipped": 0}
        if self.provider is None or not self.provider.is_configured():
            logger.warning("Backfill skipped: embedding provider not configured")
            stats["skipped"] = self.memory_store.count(status="active") - self.memory_store.embedded_count()
            return stats

        failed_ids = set()
        while limit is None or stats["embedded"] + stats["failed"] < limit:
            want = batch_size if limit is None else min(batch_size, limit - stats["embedded"] - stats["failed"])
            batch = [
                e for e in self.memory_store.missing_embeddings(limit=want + len(failed_ids))
                if e.id not in failed_ids
            ][:want]
            if not batch:
                break
            vectors = self.provider.embed_batch([e.content for e in batch])
            for entry, vector in zip(batch, vectors):
                if not vector:
                    failed_ids.add(entry.id)
                    stats["failed"] += 1
                    continue
                try:
                    self.memory_store.set_embedding(entry.id, vector)
                    stats["embedded"] += 1
                except Exception as e:
                    logger.warning("Failed to save embedding for #%d: %s", entry.id, e)
                    failed_ids.add(entry.id)
                    stats["failed"] += 1
        logger.info("Backfill: %d embedded, %d failed", stats["embedded"], stats["failed"])
        return stats

    def list_memories(self, agent_id: Optional[str] = None, limit: int = 50, status=None) -> List[MemoryEntry]:
        return self.memory_store.list_all(agent_id=agent_id, limit=limit, status=status)

    def get(self, memory_id: int) -> Optional[MemoryEntry]:
        return self.memory_store.get(memory_id)

    def count(self, agent_id: Optional[str] = None) -> int:
        return self.memory_store.count(agent_id=agent_id)

    def delete_memory(self, memory_id: int) -> bool:
        return self.memory_store.delete(memory_id)

    def drain(self) -> None:
        self.recall_engine.drain()

    def close(self) -> None:
        self.recall_engine.close()
        self.memory_store.close()
