"""
agentmem decay -- the daily maintenance pass.

Three independent steps, each isolated so a failure is recorded and the next
step still runs:

1. Archive stale entries (never accessed after 90 days, or fewer than 3
   accesses after 180 days).
2. Decay importance: high -> medium, then medium -> low, for old entries
   nobody has recalled lately.
3. Consolidate near-duplicates within one agent and category, keeping the
   more-used entry (the newer one on a tie).

Critical entries are exempt from every rule. Every run appends a row to
``maintenance_log``. Running the pass twice in a row changes nothing the
second time.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from agentmem.config import Tuning
from agentmem.sqlite_store import MemoryEntry, MemoryStore
from agentmem.types import Importance, MemoryStatus

logger = logging.getLogger("agentmem.decay")


class DecayResult:
    __slots__ = ("archived", "decayed", "consolidated", "errors")

    def __init__(self):
        self.archived = 0
        self.decayed = 0
        self.consolidated = 0
        self.errors: List[str] = []

    def to_dict(self) -> Dict[str, Any]:
        return {
            "archived": self.archived,
            "decayed": self.decayed,
            "consolidated": self.consolidated,
            "errors": list(self.errors),
        }

    def __repr__(self) -> str:
        return f"DecayResult({self.to_dict()})"


def _pick_keeper(a: MemoryEntry, b: MemoryEntry):
    """(keeper, loser): more accesses wins, the newer entry on a tie."""
    if a.access_count != b.access_count:
        return (a, b) if a.access_count > b.access_count else (b, a)
    if a.created_at != b.created_at:
        return (a, b) if a.created_at > b.created_at else (b, a)
    return (a, b) if a.id > b.id else (b, a)


class DecayEngine:
    def __init__(self, store: MemoryStore, provider=None, tuning: Optional[Tuning] = None):
        self.store = store
        self.provider = provider
        self.tuning = tuning or Tuning()

    def run(self, now: Optional[datetime] = None, run_type: str = "daily") -> DecayResult:
        """Run the full maintenance pass and log it."""
        now = now or datetime.now(timezone.utc)
        result = DecayResult()
        logger.info("Starting %s memory maintenance", run_type)

        try:
            result.archived = self.archive_stale(now)
        except Exception as e:
            msg = f"Archive step failed: {e}"
            logger.error(msg)
            result.errors.append(msg)

        try:
            result.decayed = self.decay_importance(now)
        except Exception as e:
            msg = f"Decay step failed: {e}"
            logger.error(msg)
            result.errors.append(msg)

        if self._can_consolidate():
            try:
                result.consolidated = self.consolidate()
            except Exception as e:
                msg = f"Consolidation step failed: {e}"
                logger.error(msg)
                result.errors.append(msg)
        else:
            logger.debug("Consolidation skipped: embeddings or vector search unavailable")

        try:
            self.store.log_maintenance(
                run_type,
                archived=result.archived,
                consolidated=result.consolidated,
                decayed=result.decayed,
                details={"errors": result.errors},
            )
        except Exception as e:
            logger.error("Failed to log maintenance results: %s", e)

        logger.info(
            "Maintenance complete: %d archived, %d decayed, %d consolidated",
            result.archived, result.decayed, result.consolidated,
        )
        return result

    def _can_consolidate(self) -> bool:
        return (
            self.provider is not None
            and self.provider.is_configured()
            and self.store.vec_available
        )

    # ------------------------------------------------------------------
    # Step 1: archive stale
    # ------------------------------------------------------------------

    def archive_stale(self, now: datetime) -> int:
        t = self.tuning
        ids = self.store.stale_candidates(
            unaccessed_before=now - timedelta(days=t.stale_days),
            low_access_before=now - timedelta(days=t.stale_low_access_days),
            low_access_count=t.stale_low_access_count,
        )
        archived = 0
        for mem_id in ids:
            try:
                if self.store.update_status(mem_id, MemoryStatus.ARCHIVED):
                    archived += 1
            except Exception as e:
                logger.warning("Failed to archive memory #%d: %s", mem_id, e)
        if archived:
            logger.info("Archived %d stale memories", archived)
        return archived

    # ------------------------------------------------------------------
    # Step 2: importance decay
    # ------------------------------------------------------------------

    def _decay_level(self, src: Importance, dst: Importance, age_days: int, idle_days: int,
                     now: datetime) -> int:
        ids = self.store.decay_candidates(
            src,
            created_before=now - timedelta(days=age_days),
            idle_since=now - timedelta(days=idle_days),
        )
        decayed = 0
        for mem_id in ids:
            try:
                if self.store.downgrade_importance(mem_id, src, dst):
                    decayed += 1
            except Exception as e:
                logger.warning("Failed to decay memory #%d: %s", mem_id, e)
        return decayed

    def decay_importance(self, now: datetime) -> int:
        t = self.tuning
        high = self._decay_level(Importance.HIGH, Importance.MEDIUM,
                                 t.high_decay_days, t.high_idle_days, now)
        medium = self._decay_level(Importance.MEDIUM, Importance.LOW,
                                   t.medium_decay_days, t.medium_idle_days, now)
        if high or medium:
            logger.info("Decayed %d memories (%d high->medium, %d medium->low)",
                        high + medium, high, medium)
        return high + medium

    # ------------------------------------------------------------------
    # Step 3: consolidation
    # ------------------------------------------------------------------

    def consolidate(self) -> int:
        consolidated = 0
        for agent_id, category in self.store.embedded_agent_categories():
            pairs = self.store.near_duplicate_pairs(
                agent_id, category, self.tuning.consolidation_distance
            )
            retired: Set[int] = set()
            for a, b, distance in pairs:
                if a.id in retired or b.id in retired:
                    continue
                # Counts in pairs are stale once an earlier merge touched either row
                try:
                    a, b = self.store.get(a.id), self.store.get(b.id)
                except Exception as e:
                    logger.warning("Failed to reload consolidation pair: %s", e)
                    continue
                if a is None or b is None:
                    continue
                if a.status != MemoryStatus.ACTIVE or b.status != MemoryStatus.ACTIVE:
                    continue
                keeper, loser = _pick_keeper(a, b)
                try:
                    self.store.update_status(loser.id, MemoryStatus.ARCHIVED, superseded_by=keeper.id)
                except Exception as e:
                    logger.warning("Failed to consolidate #%d into #%d: %s", loser.id, keeper.id, e)
                    continue
                retired.add(loser.id)
                try:
                    self.store.merge_access_count(keeper.id, loser.access_count)
                    self.store.record_conflict(
                        agent_id=agent_id,
                        winning_id=keeper.id,
                        losing_id=loser.id,
                        similarity=1.0 - distance,
                        resolution="consolidated",
                        reason=f"Near-duplicate (distance={distance:.4f}) consolidated",
                    )
                except Exception as e:
                    logger.warning("Consolidation bookkeeping failed for #%d: %s", keeper.id, e)
                consolidated += 1
        if consolidated:
            logger.info("Consolidated %d near-duplicate memories", consolidated)
        return consolidated
