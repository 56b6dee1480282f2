"""
agentmem MCP Handlers -- Maps tool names to async handler functions.

Each handler delegates to agentmem.bridge for actual operations and returns
MCP-compatible response dicts.
"""

import json
import logging
from typing import Any, Dict

logger = logging.getLogger("agentmem.server.handlers")


def _clamp_int(value, default: int, min_val: int = 1, max_val: int = 10000) -> int:
    """Clamp a numeric argument to safe bounds."""
    try:
        v = int(value)
        return max(min_val, min(v, max_val))
    except (TypeError, ValueError):
        return default


def _str_arg(arguments: dict, name: str) -> str:
    value = arguments.get(name)
    return value.strip() if isinstance(value, str) else ""


# ============================================================================
# Response Helpers
# ============================================================================


def mcp_response(text: str) -> dict:
    """Build a successful MCP response."""
    return {"content": [{"type": "text", "text": str(text)}]}


def mcp_error(text: str) -> dict:
    """Build an error MCP response."""
    return {"content": [{"type": "text", "text": f"Error: {text}"}], "isError": True}


# ============================================================================
# Handler: memory_store
# ============================================================================


async def handle_memory_store(arguments: dict) -> dict:
    """Store a fact after conflict resolution."""
    agent_id = _str_arg(arguments, "agent_id")
    category = _str_arg(arguments, "category")
    content = _str_arg(arguments, "content")
    if not agent_id or not category or not content:
        return mcp_error("agent_id, category and content are required")

    keywords = arguments.get("keywords")
    if keywords is not None and not isinstance(keywords, list):
        return mcp_error("keywords must be a list of strings")

    try:
        from agentmem.bridge import store_detailed

        result = store_detailed(
            agent_id,
            category,
            content,
            keywords=[str(k) for k in keywords] if keywords else None,
            importance=arguments.get("importance"),
            visibility=arguments.get("visibility"),
        )
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("memory_store failed: %s", e)
        return mcp_error(f"Failed to store memory: {e}")

    text = f"Memory #{result['id']} ({result['action']})"
    if result["reason"]:
        text += f": {result['reason']}"
    return mcp_response(text)


async def handle_memory_store_conversation(arguments: dict) -> dict:
    agent_id = _str_arg(arguments, "agent_id")
    user_message = _str_arg(arguments, "user_message")
    agent_response = _str_arg(arguments, "agent_response")
    if not agent_id or not user_message:
        return mcp_error("agent_id and user_message are required")

    try:
        from agentmem.bridge import store_conversation_summary

        result = store_conversation_summary(agent_id, user_message, agent_response)
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("memory_store_conversation failed: %s", e)
        return mcp_error(f"Failed to store conversation: {e}")
    return mcp_response(f"Memory #{result['id']} ({result['action']})")


# ============================================================================
# Handler: memory_recall
# ============================================================================


async def handle_memory_recall(arguments: dict) -> dict:
    """Recall memories relevant to a request."""
    agent_id = _str_arg(arguments, "agent_id")
    if not agent_id:
        return mcp_error("agent_id is required")
    query = arguments.get("query") or ""
    limit = _clamp_int(arguments.get("limit", 8), default=8, max_val=100)
    fmt = arguments.get("format", "context")

    try:
        from agentmem.bridge import recall
        from agentmem.keywords import format_memories_as_context

        entries = recall(agent_id, query, limit=limit)
    except Exception as e:
        logger.error("memory_recall failed: %s", e)
        return mcp_error("Recall failed")

    if fmt == "json":
        return mcp_response(json.dumps([e.to_dict() for e in entries], indent=2))
    if not entries:
        return mcp_response("No relevant memories.")
    return mcp_response(format_memories_as_context(entries))


# ============================================================================
# Handler: memory_list / memory_delete
# ============================================================================


async def handle_memory_list(arguments: dict) -> dict:
    agent_id = _str_arg(arguments, "agent_id") or None
    status = arguments.get("status")
    limit = _clamp_int(arguments.get("limit", 50), default=50, max_val=1000)

    try:
        from agentmem.bridge import list_memories

        entries = list_memories(agent_id=agent_id, limit=limit, status=status)
    except ValueError as e:
        return mcp_error(str(e))
    except Exception as e:
        logger.error("memory_list failed: %s", e)
        return mcp_error("List failed")

    if not entries:
        return mcp_response("No memories found.")
    lines = [f"# Memories ({len(entries)})", ""]
    for e in entries:
        preview = e.content if len(e.content) <= 120 else e.content[:117] + "..."
        lines.append(
            f"- #{e.id} [{e.agent_id}/{e.category}] {e.importance.value}, {e.status.value}: {preview}"
        )
    return mcp_response("\n".join(lines))


async def handle_memory_delete(arguments: dict) -> dict:
    """Delete a specific memory by its ID."""
    try:
        memory_id = int(arguments.get("memory_id"))
    except (TypeError, ValueError):
        return mcp_error("memory_id (integer) is required")

    try:
        from agentmem.bridge import delete_memory

        result = delete_memory(memory_id)
    except Exception as e:
        logger.error("memory_delete failed: %s", e)
        return mcp_error("Delete failed")
    if result.get("success"):
        return mcp_response(f"Deleted memory #{memory_id}")
    return mcp_error(result.get("error", f"Memory {memory_id} not found"))


# ============================================================================
# Handler: memory_maintain / memory_health / memory_backfill
# ============================================================================


async def handle_memory_maintain(arguments: dict) -> dict:
    try:
        from agentmem.bridge import run_maintenance

        result = run_maintenance()
    except Exception as e:
        logger.error("memory_maintain failed: %s", e)
        return mcp_error("Maintenance failed")

    text = (
        f"Maintenance complete: {result['archived']} archived, "
        f"{result['decayed']} decayed, {result['consolidated']} consolidated"
    )
    if result["errors"]:
        text += "\n\nErrors:\n" + "\n".join(f"- {err}" for err in result["errors"])
    return mcp_response(text)


async def handle_memory_health(arguments: dict) -> dict:
    try:
        from agentmem.bridge import health
        from agentmem.health import format_health

        report = health()
    except Exception as e:
        logger.error("memory_health failed: %s", e)
        return mcp_error("Health check failed")

    if arguments.get("format") == "json":
        return mcp_response(json.dumps(report, indent=2, default=str))
    return mcp_response(format_health(report))


async def handle_memory_backfill(arguments: dict) -> dict:
    batch_size = _clamp_int(arguments.get("batch_size", 32), default=32, max_val=256)
    limit = arguments.get("limit")
    limit = _clamp_int(limit, default=100, max_val=100000) if limit is not None else None

    try:
        from agentmem.bridge import backfill_embeddings

        stats = backfill_embeddings(batch_size=batch_size, limit=limit)
    except Exception as e:
        logger.error("memory_backfill failed: %s", e)
        return mcp_error("Backfill failed")

    if stats["skipped"]:
        return mcp_response(
            f"Embedding provider not configured; {stats['skipped']} memories still lack embeddings"
        )
    return mcp_response(f"Backfill complete: {stats['embedded']} embedded, {stats['failed']} failed")


# ============================================================================
# Handler Registry
# ============================================================================

HANDLERS: Dict[str, Any] = {
    "memory_store": handle_memory_store,
    "memory_store_conversation": handle_memory_store_conversation,
    "memory_recall": handle_memory_recall,
    "memory_list": handle_memory_list,
    "memory_delete": handle_memory_delete,
    "memory_maintain": handle_memory_maintain,
    "memory_health": handle_memory_health,
    "memory_backfill": handle_memory_backfill,
}
