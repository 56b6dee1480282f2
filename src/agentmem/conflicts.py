"""
agentmem conflict resolution -- decide insert / skip / replace for a new fact.

Thresholds on similarity ``s = 1 - cosine_distance`` to the nearest active
entry of the same agent and category:

    s > duplicate_threshold (0.90)       -> skip, it is a duplicate
    conflict_threshold (0.70) < s <= 0.90 -> ask the judge
    s <= conflict_threshold              -> insert

Nothing here deletes an entry. A superseded entry is marked ``contradicted``
and linked to its replacement, and the change is written to the audit table.
"""

import logging
import sqlite3
from typing import Optional, Sequence

from agentmem.config import Tuning
from agentmem.judge import Verdict
from agentmem.sqlite_store import MemoryEntry, MemoryStore
from agentmem.types import MemoryStatus, StoreAction

logger = logging.getLogger("agentmem.conflicts")


class ConflictDecision:
    """Outcome of a conflict check for one prospective entry."""

    __slots__ = ("action", "existing_id", "similarity", "reason")

    def __init__(
        self,
        action: StoreAction,
        existing_id: Optional[int] = None,
        similarity: Optional[float] = None,
        reason: str = "",
    ):
        self.action = action
        self.existing_id = existing_id
        self.similarity = similarity
        self.reason = reason

    def __repr__(self) -> str:
        return (
            f"ConflictDecision(action={self.action.value}, existing_id={self.existing_id}, "
            f"similarity={self.similarity}, reason={self.reason!r})"
        )


class ConflictResolver:
    def __init__(self, store: MemoryStore, judge=None, tuning: Optional[Tuning] = None):
        self.store = store
        self.judge = judge
        self.tuning = tuning or Tuning()

    def check(
        self,
        agent_id: str,
        category: str,
        content: str,
        embedding: Optional[Sequence[float]],
    ) -> ConflictDecision:
        """Classify a prospective entry against its nearest active neighbour."""
        if not embedding:
            return ConflictDecision(StoreAction.INSERT, reason="no embedding")

        try:
            neighbours = self.store.nearest_neighbors(agent_id, category, embedding, limit=1)
        except sqlite3.Error as e:
            logger.warning("Similarity search failed, allowing insert: %s", e)
            return ConflictDecision(StoreAction.INSERT, reason="similarity search failed")

        if not neighbours:
            return ConflictDecision(StoreAction.INSERT, reason="no similar memory")

        closest, distance = neighbours[0]
        similarity = 1.0 - distance

        if similarity > self.tuning.duplicate_threshold:
            logger.info("Duplicate detected (similarity=%.3f) with memory #%d, skipping",
                        similarity, closest.id)
            return ConflictDecision(
                StoreAction.SKIP,
                existing_id=closest.id,
                similarity=similarity,
                reason=f"Duplicate ({similarity * 100:.1f}% similar)",
            )

        if similarity > self.tuning.conflict_threshold:
            logger.info("Potential conflict (similarity=%.3f) with memory #%d, arbitrating",
                        similarity, closest.id)
            return self._arbitrate(closest, content, similarity)

        return ConflictDecision(StoreAction.INSERT, similarity=similarity, reason="unrelated")

    def _arbitrate(self, existing: MemoryEntry, new_content: str, similarity: float) -> ConflictDecision:
        verdict = None
        if self.judge is not None:
            try:
                verdict = self.judge.judge(existing.content, new_content, existing.created_at)
            except Exception as e:
                logger.warning("Judge failed for #%d, inserting: %s", existing.id, e)
                verdict = None

        if verdict == Verdict.DUPLICATE:
            return ConflictDecision(
                StoreAction.SKIP, existing.id, similarity, "Judge determined duplicate"
            )
        if verdict == Verdict.CONTRADICTION_OLD_WINS:
            return ConflictDecision(
                StoreAction.SKIP, existing.id, similarity,
                "Existing memory more authoritative (judge)",
            )
        if verdict == Verdict.CONTRADICTION_NEW_WINS:
            return ConflictDecision(
                StoreAction.REPLACE, existing.id, similarity,
                "New memory supersedes existing (judge)",
            )
        if verdict == Verdict.COMPATIBLE:
            return ConflictDecision(StoreAction.INSERT, existing.id, similarity, "Compatible (judge)")
        return ConflictDecision(StoreAction.INSERT, existing.id, similarity, "Judge unavailable")

    def supersede(
        self,
        agent_id: str,
        old_id: int,
        new_id: int,
        similarity: Optional[float],
        reason: str,
    ) -> None:
        """Mark old_id contradicted by new_id and record the audit row."""
        self.store.update_status(old_id, MemoryStatus.CONTRADICTED, superseded_by=new_id)
        self.store.record_conflict(
            agent_id=agent_id,
            winning_id=new_id,
            losing_id=old_id,
            similarity=similarity,
            resolution="archived",
            reason=f"superseded: {reason}",
        )
        logger.info("Memory #%d superseded by #%d: %s", old_id, new_id, reason)
