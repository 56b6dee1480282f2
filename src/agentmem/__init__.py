"""agentmem -- Persistent semantic memory for conversational agents.

Direct Python API -- no MCP server required::

    from agentmem import store, recall_context
    store("life-admin", "schedule", "Dentist appointment Thursday at 3pm", importance="high")
    context = recall_context("life-admin", "when is my dentist appointment?")

To serve the memory tools over MCP (stdio or Streamable HTTP), run
``agentmem serve``.
"""

__version__ = "0.1.0"

from agentmem.sqlite_store import MemoryEntry, MemoryStore
from agentmem.memory import AgentMemory, StoreResult
from agentmem.bridge import (
    store,
    store_detailed,
    store_conversation_summary,
    recall,
    recall_context,
    list_memories,
    count,
    delete_memory,
    run_maintenance,
    backfill_embeddings,
    health,
    check_health,
    reset_memory,
)

__all__ = [
    "MemoryStore",
    "MemoryEntry",
    "AgentMemory",
    "StoreResult",
    # Write
    "store",
    "store_detailed",
    "store_conversation_summary",
    # Read
    "recall",
    "recall_context",
    "list_memories",
    "count",
    # Admin
    "delete_memory",
    "run_maintenance",
    "backfill_embeddings",
    "health",
    "check_health",
    "reset_memory",
]
