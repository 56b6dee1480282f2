"""agentmem shared enums for memory lifecycle fields."""

from enum import Enum


class Importance(str, Enum):
    """Importance levels, lowest to highest."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MemoryStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    CONTRADICTED = "contradicted"


class Visibility(str, Enum):
    """Who besides the owning agent may read an entry.

    PRIVATE entries are owner-only. SHARED and BROADCAST entries are readable
    by cluster peers; BROADCAST is what auto-broadcast categories produce.
    """

    PRIVATE = "private"
    SHARED = "shared"
    BROADCAST = "broadcast"


class StoreAction(str, Enum):
    """Outcome of a store call after conflict resolution."""

    INSERT = "insert"
    SKIP = "skip"
    REPLACE = "replace"


# Sort rank used by "most important first" listings (0 = first).
IMPORTANCE_RANK = {
    Importance.CRITICAL: 0,
    Importance.HIGH: 1,
    Importance.MEDIUM: 2,
    Importance.LOW: 3,
}

# Weight of each level inside the recall score.
IMPORTANCE_WEIGHT = {
    Importance.CRITICAL: 1.0,
    Importance.HIGH: 0.75,
    Importance.MEDIUM: 0.5,
    Importance.LOW: 0.25,
}


def coerce_importance(value) -> Importance:
    """Accept an Importance or its string value; raise ValueError otherwise."""
    if isinstance(value, Importance):
        return value
    try:
        return Importance(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown importance {value!r}; expected one of {[i.value for i in Importance]}"
        ) from None


def coerce_status(value) -> MemoryStatus:
    if isinstance(value, MemoryStatus):
        return value
    try:
        return MemoryStatus(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown status {value!r}; expected one of {[s.value for s in MemoryStatus]}"
        ) from None


def coerce_visibility(value) -> Visibility:
    if isinstance(value, Visibility):
        return value
    try:
        return Visibility(str(value).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown visibility {value!r}; expected one of {[v.value for v in Visibility]}"
        ) from None
