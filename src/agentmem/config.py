"""
agentmem configuration -- home directory, tuning values, and agent clusters.

Everything here is loaded once and treated as read-only afterwards:

- ``agentmem_home()`` / ``default_db_path()`` resolve paths lazily so tests can
  point ``AGENTMEM_HOME`` at a temporary directory.
- ``Tuning`` holds the similarity thresholds and decay windows. They are
  product tuning values, overridable through ``AGENTMEM_*`` env vars.
- ``AgentConfig`` holds cluster membership, per-agent auto-broadcast
  categories and per-agent importance keywords, read from ``agents.json``.
"""

import json
import logging
import os
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger("agentmem.config")

DEFAULT_AGENT = "alan-os"


def agentmem_home() -> Path:
    """Resolve AGENTMEM_HOME lazily so tests can override via env var."""
    return Path(os.environ.get("AGENTMEM_HOME", str(Path.home() / ".agentmem")))


def default_db_path() -> Path:
    override = os.environ.get("AGENTMEM_DB_PATH")
    if override:
        return Path(override)
    return agentmem_home() / "agentmem.db"


def default_config_path() -> Path:
    override = os.environ.get("AGENTMEM_CONFIG")
    if override:
        return Path(override)
    return agentmem_home() / "agents.json"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %s", name, raw, default)
        return default


# ---------------------------------------------------------------------------
# Tuning
# ---------------------------------------------------------------------------


class Tuning:
    """Thresholds and windows used by conflict resolution and decay."""

    def __init__(
        self,
        duplicate_threshold: float = 0.90,
        conflict_threshold: float = 0.70,
        consolidation_distance: float = 0.08,
        max_content_chars: int = 4000,
        stale_days: int = 90,
        stale_low_access_days: int = 180,
        stale_low_access_count: int = 3,
        high_decay_days: int = 60,
        high_idle_days: int = 30,
        medium_decay_days: int = 120,
        medium_idle_days: int = 60,
        recent_important_days: int = 30,
    ):
        if not 0.0 <= conflict_threshold <= duplicate_threshold <= 1.0:
            raise ValueError(
                "thresholds must satisfy 0 <= conflict_threshold <= duplicate_threshold <= 1 "
                f"(got {conflict_threshold}, {duplicate_threshold})"
            )
        self.duplicate_threshold = duplicate_threshold
        self.conflict_threshold = conflict_threshold
        self.consolidation_distance = consolidation_distance
        self.max_content_chars = max_content_chars
        self.stale_days = stale_days
        self.stale_low_access_days = stale_low_access_days
        self.stale_low_access_count = stale_low_access_count
        self.high_decay_days = high_decay_days
        self.high_idle_days = high_idle_days
        self.medium_decay_days = medium_decay_days
        self.medium_idle_days = medium_idle_days
        self.recent_important_days = recent_important_days

    @classmethod
    def from_env(cls) -> "Tuning":
        return cls(
            duplicate_threshold=_env_float("AGENTMEM_DUPLICATE_THRESHOLD", 0.90),
            conflict_threshold=_env_float("AGENTMEM_CONFLICT_THRESHOLD", 0.70),
            consolidation_distance=_env_float("AGENTMEM_CONSOLIDATION_DISTANCE", 0.08),
            max_content_chars=_env_int("AGENTMEM_MAX_CONTENT_CHARS", 4000),
            stale_days=_env_int("AGENTMEM_STALE_DAYS", 90),
            stale_low_access_days=_env_int("AGENTMEM_STALE_LOW_ACCESS_DAYS", 180),
            stale_low_access_count=_env_int("AGENTMEM_STALE_LOW_ACCESS_COUNT", 3),
            high_decay_days=_env_int("AGENTMEM_HIGH_DECAY_DAYS", 60),
            high_idle_days=_env_int("AGENTMEM_HIGH_IDLE_DAYS", 30),
            medium_decay_days=_env_int("AGENTMEM_MEDIUM_DECAY_DAYS", 120),
            medium_idle_days=_env_int("AGENTMEM_MEDIUM_IDLE_DAYS", 60),
            recent_important_days=_env_int("AGENTMEM_RECENT_IMPORTANT_DAYS", 30),
        )


# ---------------------------------------------------------------------------
# Agent clusters
# ---------------------------------------------------------------------------

_DEFAULT_CLUSTERS: Dict[str, List[str]] = {
    "household": ["alan-os", "legal-advisor", "life-admin", "wedding-planner", "travel-agent"],
    "builders": ["ascend-builder", "gilfoyle", "research-analyst"],
    "content": ["social-media", "comms-drafter", "research-analyst"],
}

_DEFAULT_BROADCAST_CATEGORIES: Dict[str, List[str]] = {
    "legal-advisor": ["schedule"],
    "life-admin": ["schedule", "financial"],
    "wedding-planner": ["wedding"],
}

_DEFAULT_IMPORTANCE_KEYWORDS: Dict[str, Dict[str, List[str]]] = {
    "legal-advisor": {
        "critical": ["court", "attorney", "judge", "violation", "emergency", "police", "threatening"],
        "high": ["custody", "schedule", "parenting", "child support", "respond", "reply", "draft"],
    },
    "wedding-planner": {
        "critical": ["contract", "deadline", "deposit", "cancel"],
        "high": ["vendor", "budget", "venue", "florist", "caterer", "photographer", "rsvp", "guest list"],
    },
    "life-admin": {
        "critical": ["overdue", "final notice", "collections", "urgent"],
        "high": ["bill", "payment", "insurance", "child support", "mortgage", "rent", "tax", "medical"],
    },
    "social-media": {
        "critical": [],
        "high": ["strategy", "engagement", "analytics", "content plan", "thread", "viral", "audience"],
    },
    "research-analyst": {
        "critical": [],
        "high": ["finding", "conclusion", "recommendation", "competitor", "market", "trend", "data"],
    },
    "comms-drafter": {
        "critical": ["legal", "contract", "notice"],
        "high": ["proposal", "pitch", "email", "letter", "presentation", "stakeholder"],
    },
    "ascend-builder": {
        "critical": ["launch", "production", "outage"],
        "high": ["architecture", "feature", "roadmap", "sprint", "design"],
    },
    "gilfoyle": {
        "critical": ["deploy", "production", "outage", "security"],
        "high": ["bug", "feature", "refactor", "infrastructure", "database", "migration", "docker"],
    },
    DEFAULT_AGENT: {
        "critical": ["emergency", "urgent"],
        "high": ["priority", "important", "deadline", "reminder"],
    },
}


class AgentConfig:
    """Static per-agent configuration: clusters, broadcast categories, importance keywords."""

    def __init__(
        self,
        clusters: Optional[Dict[str, Iterable[str]]] = None,
        broadcast_categories: Optional[Dict[str, Iterable[str]]] = None,
        importance_keywords: Optional[Dict[str, Dict[str, Iterable[str]]]] = None,
    ):
        self.clusters: Dict[str, FrozenSet[str]] = {
            name: frozenset(members) for name, members in (clusters or {}).items()
        }
        self.broadcast_categories: Dict[str, FrozenSet[str]] = {
            agent: frozenset(c.lower() for c in cats)
            for agent, cats in (broadcast_categories or {}).items()
        }
        self.importance_keywords: Dict[str, Dict[str, List[str]]] = {
            agent: {
                "critical": [k.lower() for k in levels.get("critical", [])],
                "high": [k.lower() for k in levels.get("high", [])],
            }
            for agent, levels in (importance_keywords or {}).items()
        }
        self._peers: Dict[str, FrozenSet[str]] = {}
        for members in self.clusters.values():
            for agent in members:
                current = self._peers.get(agent, frozenset())
                self._peers[agent] = current | (members - {agent})

    @classmethod
    def defaults(cls) -> "AgentConfig":
        return cls(
            clusters=_DEFAULT_CLUSTERS,
            broadcast_categories=_DEFAULT_BROADCAST_CATEGORIES,
            importance_keywords=_DEFAULT_IMPORTANCE_KEYWORDS,
        )

    @classmethod
    def from_dict(cls, data: dict) -> "AgentConfig":
        """Build from the agents.json structure; absent sections fall back to defaults."""
        if not isinstance(data, dict):
            raise ValueError("agent config must be a JSON object")
        return cls(
            clusters=data.get("clusters", _DEFAULT_CLUSTERS),
            broadcast_categories=data.get("broadcast_categories", _DEFAULT_BROADCAST_CATEGORIES),
            importance_keywords=data.get("importance_keywords", _DEFAULT_IMPORTANCE_KEYWORDS),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "AgentConfig":
        """Load agents.json, or the built-in defaults when the file is missing."""
        path = Path(path) if path else default_config_path()
        if not path.exists():
            logger.debug("No agent config at %s, using defaults", path)
            return cls.defaults()
        try:
            data = json.loads(path.read_text())
        except json.JSONDecodeError as e:
            raise ValueError(f"Malformed agent config {path}: {e}") from e
        config = cls.from_dict(data)
        logger.info("Loaded agent config from %s (%d clusters)", path, len(config.clusters))
        return config

    def peers_of(self, agent_id: str) -> FrozenSet[str]:
        """Every agent sharing at least one cluster with agent_id (excluding itself)."""
        return self._peers.get(agent_id, frozenset())

    def clusters_of(self, agent_id: str) -> List[str]:
        return sorted(name for name, members in self.clusters.items() if agent_id in members)

    def is_broadcast_category(self, agent_id: str, category: str) -> bool:
        return category.lower() in self.broadcast_categories.get(agent_id, frozenset())

    def importance_keywords_for(self, agent_id: str) -> Dict[str, List[str]]:
        return self.importance_keywords.get(agent_id) or self.importance_keywords.get(
            DEFAULT_AGENT, {"critical": [], "high": []}
        )
