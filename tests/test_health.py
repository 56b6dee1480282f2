"""Tests for agentmem.health -- the read-only health report."""
import json
from datetime import datetime, timedelta, timezone

from agentmem.health import format_health, health_report
from agentmem.types import MemoryStatus

from conftest import BASE_VEC, ORTHO_VEC, FakeProvider


def _days_ago(days):
    return datetime.now(timezone.utc) - timedelta(days=days)


class TestHealthReport:
    def test_empty_store(self, store):
        report = health_report(store)
        assert report["overview"] == {
            "total": 0,
            "active": 0,
            "archived": 0,
            "contradicted": 0,
            "embedded": 0,
            "embedding_coverage": 0.0,
        }
        assert report["staleness"] == {"stale_count": 0, "conflict_rate": 0.0}
        assert report["per_agent"] == []
        assert report["maintenance"]["last_run"] is None
        assert report["embeddings"] is None
        assert "Embedding provider not configured; recall is keyword-only" in report["warnings"]
        assert "Maintenance has never run" not in report["warnings"]

    def test_counts_and_coverage(self, store):
        store.insert("life-admin", "schedule", "one", embedding=BASE_VEC)
        store.insert("life-admin", "financial", "two", embedding=ORTHO_VEC)
        store.insert("gilfoyle", "development", "three")
        gone = store.insert("gilfoyle", "development", "four")
        store.update_status(gone, MemoryStatus.CONTRADICTED)

        report = health_report(store, provider=FakeProvider())
        ov = report["overview"]
        assert (ov["total"], ov["active"], ov["contradicted"], ov["embedded"]) == (4, 3, 1, 2)
        assert ov["embedding_coverage"] == 66.7
        assert report["staleness"]["conflict_rate"] == 25.0
        assert [row["agent_id"] for row in report["per_agent"]] == ["gilfoyle", "life-admin"]
        assert report["per_agent"][0]["active"] == 1
        assert {row["category"] for row in report["per_category"]} == {"schedule", "financial", "development"}
        assert report["embeddings"]["backend"] == "fake"
        assert "High contradiction rate (25.0%)" in report["warnings"]
        assert "Maintenance has never run" in report["warnings"]

    def test_low_coverage_warning(self, store):
        store.insert("a", "c", "one")
        store.insert("a", "c", "two")
        report = health_report(store, provider=FakeProvider())
        assert any("run backfill" in w for w in report["warnings"])

    def test_staleness(self, store):
        store.insert("a", "c", "old", created_at=_days_ago(100))
        used = store.insert("a", "c", "old but used", created_at=_days_ago(100))
        store.increment_access([used])
        store.insert("a", "c", "new")
        assert health_report(store)["staleness"]["stale_count"] == 1

    def test_vec_unavailable_warning(self, store):
        store._vec_available = False
        assert "sqlite-vec unavailable; vector similarity disabled" in health_report(store)["warnings"]

    def test_maintenance_history(self, store):
        store.insert("a", "c", "x")
        store.log_maintenance("daily", archived=1, details={"errors": ["Decay step failed: boom"]})
        store.record_conflict("a", 2, 1, 0.8, "archived", "superseded: test")

        report = health_report(store, now=datetime.now(timezone.utc) + timedelta(days=3, hours=12))
        mt = report["maintenance"]
        assert mt["total_runs"] == 1
        assert mt["last_run"]["archived"] == 1
        assert mt["last_conflict"] is not None
        assert "Last maintenance run was 3 days ago" in report["warnings"]
        assert "Last maintenance run reported errors" in report["warnings"]

    def test_read_only(self, store):
        mid = store.insert("a", "c", "old", created_at=_days_ago(200))
        health_report(store)
        entry = store.get(mid)
        assert entry.status == MemoryStatus.ACTIVE
        assert entry.access_count == 0
        assert store.maintenance_summary()["total_runs"] == 0

    def test_json_serializable(self, store):
        store.insert("a", "c", "x")
        store.log_maintenance("daily")
        json.dumps(health_report(store, provider=FakeProvider()))


class TestFormatHealth:
    def test_markdown(self, store):
        store.insert("life-admin", "schedule", "one")
        store.log_maintenance("daily", archived=2)
        text = format_health(health_report(store))
        assert text.startswith("# Memory Health")
        assert "**Total:** 1" in text
        assert "## Agents" in text
        assert "- life-admin: 1/1 active" in text
        assert "- schedule: 1" in text
        assert "Runs: 1" in text
        assert "2 archived" in text
        assert "## Warnings" in text
