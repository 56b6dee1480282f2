"""agentmem MCP Server -- stdio MCP server exposing the memory tools."""

import asyncio
import atexit
import collections
import logging
import os
import sys
import time
from typing import Optional

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from agentmem.server.handlers import HANDLERS
from agentmem.server.tool_schemas import TOOL_SCHEMAS

logger = logging.getLogger("agentmem.server")

server = Server("agentmem")


def _close_on_exit():
    """Close the memory store when the MCP server process exits."""
    try:
        from agentmem.bridge import reset_memory

        reset_memory()
    except Exception as e:
        logger.debug("Close on exit failed: %s", e)


atexit.register(_close_on_exit)


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------


class _SlidingWindow:
    """At most ``limit`` hits in any ``window_s`` seconds."""

    def __init__(self, limit: int, window_s: float = 60.0):
        self.limit = limit
        self.window_s = window_s
        self._hits: collections.deque = collections.deque()

    def allow(self, now: float) -> bool:
        cutoff = now - self.window_s
        while self._hits and self._hits[0] < cutoff:
            self._hits.popleft()
        if len(self._hits) >= self.limit:
            return False
        self._hits.append(now)
        return True


_global_window = _SlidingWindow(int(os.environ.get("AGENTMEM_RATE_LIMIT_GLOBAL", "300")))
_write_window = _SlidingWindow(int(os.environ.get("AGENTMEM_RATE_LIMIT_WRITE", "60")))

# Tools that change the store
_WRITE_TOOLS = frozenset({
    "memory_store",
    "memory_store_conversation",
    "memory_delete",
    "memory_maintain",
    "memory_backfill",
})


def _check_rate_limit(tool_name: str) -> Optional[str]:
    """Return an error message if a limit is hit, else None."""
    now = time.monotonic()
    if not _global_window.allow(now):
        return f"Rate limit exceeded: {_global_window.limit} calls/min globally. Try again shortly."
    if tool_name in _WRITE_TOOLS and not _write_window.allow(now):
        return f"Rate limit exceeded: {_write_window.limit} write calls/min. Try again shortly."
    return None


# ---------------------------------------------------------------------------
# MCP endpoints
# ---------------------------------------------------------------------------


@server.list_tools()
async def list_tools() -> list[Tool]:
    return [
        Tool(name=s["name"], description=s["description"], inputSchema=s["inputSchema"])
        for s in TOOL_SCHEMAS
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    rate_err = _check_rate_limit(name)
    if rate_err:
        logger.warning("Rejected %s: %s", name, rate_err)
        return [TextContent(type="text", text=rate_err)]

    handler = HANDLERS.get(name)
    if handler is None:
        return [TextContent(type="text", text=f"Unknown tool: {name}")]

    try:
        result = await handler(arguments or {})
    except Exception as e:
        logger.error("Tool %s failed: %s", name, e)
        return [TextContent(type="text", text=f"Error in {name}: {e}")]
    content = result.get("content") or [{}]
    return [TextContent(type="text", text=content[0].get("text", str(result)))]


async def main():
    """Entry point for the agentmem MCP server."""
    logging.basicConfig(level=logging.WARNING, stream=sys.stderr)
    logger.info("Starting agentmem MCP server (%d tools)", len(TOOL_SCHEMAS))

    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, server.create_initialization_options())


if __name__ == "__main__":
    asyncio.run(main())
