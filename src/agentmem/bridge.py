"""
agentmem Bridge -- process-wide API over a lazily created AgentMemory.

Used by the MCP handlers, the HTTP server and the CLI. All functions are thin
wrappers around the ``AgentMemory`` singleton.

Public API:
    Core:        store, store_conversation_summary, recall, recall_context
    Admin:       list_memories, count, delete_memory
    Maintenance: run_maintenance, backfill_embeddings
    Health:      health, check_health
    Testing:     reset_memory, set_memory
"""

import atexit
import logging
import sqlite3
import threading
from typing import Any, Dict, Iterable, List, Optional

from agentmem.keywords import format_memories_as_context

logger = logging.getLogger("agentmem.bridge")

__all__ = [
    "store",
    "store_detailed",
    "store_conversation_summary",
    "recall",
    "recall_context",
    "list_memories",
    "count",
    "delete_memory",
    "run_maintenance",
    "backfill_embeddings",
    "health",
    "check_health",
    "reset_memory",
    "set_memory",
]


# ---------------------------------------------------------------------------
# Lazy singleton
# ---------------------------------------------------------------------------

_memory_instance = None
_memory_lock = threading.Lock()


def _get_memory():
    """Get or create the AgentMemory singleton (thread-safe)."""
    global _memory_instance
    if _memory_instance is not None:
        return _memory_instance
    with _memory_lock:
        if _memory_instance is not None:
            return _memory_instance

        from agentmem.config import AgentConfig, Tuning
        from agentmem.embedding import get_provider
        from agentmem.judge import AnthropicJudge
        from agentmem.memory import AgentMemory

        judge = AnthropicJudge()
        if not judge.is_configured():
            logger.info("ANTHROPIC_API_KEY not set; conflict arbitration disabled")

        _memory_instance = AgentMemory(
            provider=get_provider(),
            judge=judge,
            agent_config=AgentConfig.load(),
            tuning=Tuning.from_env(),
        )
        atexit.register(_close_memory)
    return _memory_instance


def _close_memory():
    global _memory_instance
    if _memory_instance is not None:
        try:
            _memory_instance.close()
        except Exception as e:
            logger.debug("Memory close failed: %s", e)


def reset_memory():
    """Reset the singleton (useful for testing)."""
    global _memory_instance
    if _memory_instance is not None:
        try:
            _memory_instance.close()
        except Exception as e:
            logger.debug("Memory close failed during reset: %s", e)
    _memory_instance = None


def set_memory(memory) -> None:
    """Install a preconfigured AgentMemory as the singleton (tests, embedding hosts)."""
    global _memory_instance
    reset_memory()
    _memory_instance = memory


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------


def store(
    agent_id: str,
    category: str,
    content: str,
    keywords: Optional[Iterable[str]] = None,
    importance: Optional[str] = None,
    visibility: Optional[str] = None,
) -> int:
    """Store a fact; returns the id now representing it (existing id on skip)."""
    result = _get_memory().store(
        agent_id, category, content, keywords=keywords, importance=importance, visibility=visibility
    )
    return result.id


def store_detailed(
    agent_id: str,
    category: str,
    content: str,
    keywords: Optional[Iterable[str]] = None,
    importance: Optional[str] = None,
    visibility: Optional[str] = None,
) -> Dict[str, Any]:
    """Like store(), but reports the conflict-resolution action and reason."""
    result = _get_memory().store(
        agent_id, category, content, keywords=keywords, importance=importance, visibility=visibility
    )
    return result.to_dict()


def store_conversation_summary(agent_id: str, user_message: str, agent_response: str) -> Dict[str, Any]:
    return _get_memory().store_conversation_summary(agent_id, user_message, agent_response).to_dict()


def recall(agent_id: str, query: str, limit: int = 8) -> List:
    """Relevant memories for a turn. Store failures yield [] so the turn proceeds."""
    try:
        return _get_memory().recall(agent_id, query, limit=limit)
    except sqlite3.Error as e:
        logger.error("Recall failed for %s, continuing without memory: %s", agent_id, e)
        return []


def recall_context(agent_id: str, query: str, limit: int = 8) -> str:
    """Recall, rendered as a prompt section ('' when nothing is relevant)."""
    return format_memories_as_context(recall(agent_id, query, limit=limit))


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


def list_memories(agent_id: Optional[str] = None, limit: int = 50, status: Optional[str] = None) -> List:
    return _get_memory().list_memories(agent_id=agent_id, limit=limit, status=status)


def count(agent_id: Optional[str] = None) -> int:
    return _get_memory().count(agent_id)


def delete_memory(memory_id: int) -> Dict[str, Any]:
    """Administrative delete by id."""
    try:
        if _get_memory().delete_memory(memory_id):
            return {"success": True, "deleted_id": memory_id}
        return {"success": False, "error": f"Memory {memory_id} not found"}
    except sqlite3.Error as e:
        logger.error("Failed to delete memory %s: %s", memory_id, e)
        return {"success": False, "error": str(e)}


# ---------------------------------------------------------------------------
# Maintenance / health
# ---------------------------------------------------------------------------


def run_maintenance() -> Dict[str, Any]:
    return _get_memory().run_maintenance().to_dict()


def backfill_embeddings(batch_size: int = 32, limit: Optional[int] = None) -> Dict[str, int]:
    return _get_memory().backfill_embeddings(batch_size=batch_size, limit=limit)


def health() -> Dict[str, Any]:
    """Machine-readable health report."""
    return _get_memory().health()


def check_health() -> str:
    """Health report as markdown."""
    from agentmem.health import format_health

    return format_health(health())
