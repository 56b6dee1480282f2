"""agentmem health -- read-only report on the memory store."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from agentmem.config import Tuning
from agentmem.sqlite_store import MemoryStore

logger = logging.getLogger("agentmem.health")

_LOW_COVERAGE_PCT = 50.0
_HIGH_CONFLICT_RATE_PCT = 20.0
_MAINTENANCE_OVERDUE_DAYS = 2


def _pct(part: int, whole: int) -> float:
    return round(100.0 * part / whole, 1) if whole else 0.0


def health_report(
    store: MemoryStore,
    provider=None,
    tuning: Optional[Tuning] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Counts, coverage, staleness and maintenance history. Never writes."""
    tuning = tuning or Tuning()
    now = now or datetime.now(timezone.utc)

    counts = store.status_counts()
    total = sum(counts.values())
    active = counts.get("active", 0)
    embedded = store.embedded_count()
    stale = store.stale_count(now - timedelta(days=tuning.stale_days))
    maintenance = store.maintenance_summary()

    overview = {
        "total": total,
        "active": active,
        "archived": counts.get("archived", 0),
        "contradicted": counts.get("contradicted", 0),
        "embedded": embedded,
        "embedding_coverage": _pct(embedded, active),
    }
    staleness = {
        "stale_count": stale,
        "conflict_rate": _pct(counts.get("contradicted", 0), total),
    }

    warnings: List[str] = []
    embeddings_on = provider is not None and provider.is_configured()
    if not embeddings_on:
        warnings.append("Embedding provider not configured; recall is keyword-only")
    elif active and overview["embedding_coverage"] < _LOW_COVERAGE_PCT:
        warnings.append(
            f"Only {overview['embedding_coverage']}% of active memories have embeddings; "
            "run backfill"
        )
    if not store.vec_available:
        warnings.append("sqlite-vec unavailable; vector similarity disabled")
    if staleness["conflict_rate"] > _HIGH_CONFLICT_RATE_PCT:
        warnings.append(f"High contradiction rate ({staleness['conflict_rate']}%)")

    last_run = maintenance["last_run"]
    if last_run is None:
        if total:
            warnings.append("Maintenance has never run")
    else:
        ran_at = MemoryStore._parse_dt(last_run["created_at"])
        if ran_at and now - ran_at > timedelta(days=_MAINTENANCE_OVERDUE_DAYS):
            warnings.append(f"Last maintenance run was {(now - ran_at).days} days ago")
        if last_run["details"].get("errors"):
            warnings.append("Last maintenance run reported errors")

    return {
        "overview": overview,
        "per_agent": store.agent_breakdown(),
        "per_category": store.category_breakdown(),
        "staleness": staleness,
        "maintenance": maintenance,
        "embeddings": provider.info() if provider is not None and hasattr(provider, "info") else None,
        "generated_at": now.isoformat(),
        "warnings": warnings,
    }


def format_health(report: Dict[str, Any]) -> str:
    """Human-readable rendering of a health report (CLI / MCP text)."""
    ov = report["overview"]
    st = report["staleness"]
    lines = [
        "# Memory Health",
        "",
        f"**Total:** {ov['total']}  **Active:** {ov['active']}  "
        f"**Archived:** {ov['archived']}  **Contradicted:** {ov['contradicted']}",
        f"**Embedding coverage:** {ov['embedding_coverage']}%",
        f"**Stale (never accessed):** {st['stale_count']}",
        f"**Contradiction rate:** {st['conflict_rate']}%",
    ]
    if report["per_agent"]:
        lines += ["", "## Agents"]
        for row in report["per_agent"]:
            lines.append(
                f"- {row['agent_id']}: {row['active']}/{row['total']} active, "
                f"avg access {row['avg_access']}"
            )
    if report["per_category"]:
        lines += ["", "## Categories"]
        for row in report["per_category"]:
            lines.append(f"- {row['category']}: {row['count']}")
    mt = report["maintenance"]
    lines += ["", "## Maintenance", f"Runs: {mt['total_runs']}"]
    if mt["last_run"]:
        lr = mt["last_run"]
        lines.append(
            f"Last run {lr['created_at']}: {lr['archived']} archived, "
            f"{lr['decayed']} decayed, {lr['consolidated']} consolidated"
        )
    if mt["last_conflict"]:
        lines.append(f"Last conflict: {mt['last_conflict']}")
    if report["warnings"]:
        lines += ["", "## Warnings"]
        lines += [f"- {w}" for w in report["warnings"]]
    return "\n".join(lines)
