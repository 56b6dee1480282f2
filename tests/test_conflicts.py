"""Tests for agentmem.conflicts -- the insert / skip / replace state machine."""
import sqlite3
from unittest.mock import patch

import pytest

from agentmem.conflicts import ConflictResolver
from agentmem.judge import Verdict
from agentmem.types import MemoryStatus, StoreAction

from conftest import BASE_VEC, ORTHO_VEC, SIM_80_VEC, SIM_95_VEC, FakeJudge


@pytest.fixture
def resolver(vec_store, fake_judge):
    return ConflictResolver(vec_store, judge=fake_judge)


class TestWithoutVectors:
    def test_no_embedding_inserts(self, store, fake_judge):
        resolver = ConflictResolver(store, judge=fake_judge)
        decision = resolver.check("a", "c", "content", [])
        assert decision.action == StoreAction.INSERT
        assert decision.existing_id is None
        assert fake_judge.calls == []

    def test_search_failure_inserts(self, store, fake_judge):
        resolver = ConflictResolver(store, judge=fake_judge)
        with patch.object(store, "nearest_neighbors", side_effect=sqlite3.OperationalError("disk I/O error")):
            decision = resolver.check("a", "c", "content", BASE_VEC)
        assert decision.action == StoreAction.INSERT
        assert "failed" in decision.reason


class TestThresholds:
    def test_no_neighbour_inserts(self, resolver):
        decision = resolver.check("a", "c", "content", BASE_VEC)
        assert decision.action == StoreAction.INSERT

    def test_duplicate_skips_without_judge(self, resolver, vec_store, fake_judge):
        existing = vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)
        decision = resolver.check("a", "schedule", "Pickup is at 3pm", SIM_95_VEC)
        assert decision.action == StoreAction.SKIP
        assert decision.existing_id == existing
        assert decision.similarity == pytest.approx(0.95, abs=1e-3)
        assert fake_judge.calls == []

    def test_unrelated_inserts(self, resolver, vec_store, fake_judge):
        vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)
        decision = resolver.check("a", "schedule", "Dinner reservation", ORTHO_VEC)
        assert decision.action == StoreAction.INSERT
        assert fake_judge.calls == []

    def test_other_category_not_compared(self, resolver, vec_store):
        vec_store.insert("a", "financial", "Pickup at 3pm", embedding=BASE_VEC)
        decision = resolver.check("a", "schedule", "Pickup is at 3pm", SIM_95_VEC)
        assert decision.action == StoreAction.INSERT
        assert decision.existing_id is None

    def test_inactive_not_compared(self, resolver, vec_store):
        old = vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)
        vec_store.update_status(old, MemoryStatus.ARCHIVED)
        decision = resolver.check("a", "schedule", "Pickup is at 3pm", SIM_95_VEC)
        assert decision.action == StoreAction.INSERT


class TestArbitration:
    @pytest.mark.parametrize("verdict,action", [
        (Verdict.COMPATIBLE, StoreAction.INSERT),
        (Verdict.DUPLICATE, StoreAction.SKIP),
        (Verdict.CONTRADICTION_NEW_WINS, StoreAction.REPLACE),
        (Verdict.CONTRADICTION_OLD_WINS, StoreAction.SKIP),
        (None, StoreAction.INSERT),
    ])
    def test_verdict_mapping(self, vec_store, verdict, action):
        judge = FakeJudge(verdict)
        resolver = ConflictResolver(vec_store, judge=judge)
        existing = vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)

        decision = resolver.check("a", "schedule", "Pickup moved to 4pm", SIM_80_VEC)
        assert decision.action == action
        assert decision.existing_id == existing
        assert judge.calls == [("Pickup at 3pm", "Pickup moved to 4pm")]
        # Deciding never writes
        assert vec_store.get(existing).status == MemoryStatus.ACTIVE

    def test_no_judge_inserts(self, vec_store):
        resolver = ConflictResolver(vec_store, judge=None)
        vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)
        decision = resolver.check("a", "schedule", "Pickup moved to 4pm", SIM_80_VEC)
        assert decision.action == StoreAction.INSERT
        assert decision.reason == "Judge unavailable"

    def test_judge_error_inserts(self, vec_store):
        class BrokenJudge:
            def judge(self, existing_text, new_text, existing_created_at):
                raise RuntimeError("judge transport down")

        resolver = ConflictResolver(vec_store, judge=BrokenJudge())
        existing = vec_store.insert("a", "schedule", "Pickup at 3pm", embedding=BASE_VEC)
        decision = resolver.check("a", "schedule", "Pickup moved to 4pm", SIM_80_VEC)
        assert decision.action == StoreAction.INSERT
        assert decision.existing_id == existing
        assert vec_store.get(existing).status == MemoryStatus.ACTIVE


class TestSupersede:
    def test_marks_contradicted_and_audits(self, store):
        resolver = ConflictResolver(store)
        old = store.insert("a", "schedule", "Pickup at 3pm")
        new = store.insert("a", "schedule", "Pickup moved to 4pm")
        resolver.supersede("a", old, new, 0.8, "New memory supersedes existing (judge)")

        entry = store.get(old)
        assert entry.status == MemoryStatus.CONTRADICTED
        assert entry.superseded_by == new
        conflicts = store.conflicts()
        assert len(conflicts) == 1
        assert conflicts[0]["winning_memory_id"] == new
        assert conflicts[0]["losing_memory_id"] == old
        assert conflicts[0]["similarity_score"] == pytest.approx(0.8)
        assert conflicts[0]["resolution"] == "archived"
        assert conflicts[0]["reason"].startswith("superseded:")
