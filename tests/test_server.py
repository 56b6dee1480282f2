"""agentmem MCP Server tests -- schema registry and full handler coverage."""
import json
import os
from unittest.mock import patch

import pytest

from agentmem.server.handlers import HANDLERS
from agentmem.server.tool_schemas import TOOL_SCHEMAS


# ============================================================================
# Schema / Registry Tests
# ============================================================================

def test_all_tools_have_handlers():
    """Every tool in TOOL_SCHEMAS should have a handler."""
    for schema in TOOL_SCHEMAS:
        assert schema["name"] in HANDLERS, f"Missing handler for {schema['name']}"


def test_tool_schemas_valid():
    for schema in TOOL_SCHEMAS:
        assert "name" in schema
        assert "description" in schema
        assert schema["inputSchema"]["type"] == "object"
        assert schema["name"].startswith("memory_")


def test_handler_count():
    assert len(TOOL_SCHEMAS) == 8
    assert set(HANDLERS) == {s["name"] for s in TOOL_SCHEMAS}


# ============================================================================
# Fixture: reset bridge singleton between tests
# ============================================================================

@pytest.fixture(autouse=True)
def _fresh(_reset_bridge):
    yield


def _text(result):
    return result["content"][0]["text"]


async def _store(agent_id="life-admin", category="schedule", content="Dentist Thursday 3pm", **extra):
    result = await HANDLERS["memory_store"]({
        "agent_id": agent_id, "category": category, "content": content, **extra,
    })
    assert not result.get("isError"), result
    # "Memory #<id> (<action>)..."
    return int(_text(result).split("#")[1].split(" ")[0])


# ============================================================================
# memory_store
# ============================================================================

class TestStore:
    @pytest.mark.asyncio
    async def test_store(self):
        result = await HANDLERS["memory_store"]({
            "agent_id": "life-admin", "category": "financial", "content": "Car insurance renews on 3 March",
        })
        assert not result.get("isError")
        assert _text(result).startswith("Memory #")
        assert "(insert)" in _text(result)

    @pytest.mark.asyncio
    async def test_store_with_options(self):
        mid = await _store(keywords=["dentist"], importance="critical", visibility="shared")
        from agentmem.bridge import _get_memory

        entry = _get_memory().get(mid)
        assert entry.keywords == ["dentist"]
        assert entry.importance.value == "critical"
        assert entry.visibility.value == "shared"

    @pytest.mark.asyncio
    async def test_store_missing_args(self):
        result = await HANDLERS["memory_store"]({"agent_id": "a", "content": "x"})
        assert result["isError"]
        assert _text(result).startswith("Error: ")

    @pytest.mark.asyncio
    async def test_store_bad_keywords(self):
        result = await HANDLERS["memory_store"]({
            "agent_id": "a", "category": "c", "content": "x", "keywords": "not-a-list",
        })
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_store_unknown_importance(self):
        result = await HANDLERS["memory_store"]({
            "agent_id": "a", "category": "c", "content": "x", "importance": "extreme",
        })
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_store_conversation(self):
        result = await HANDLERS["memory_store_conversation"]({
            "agent_id": "gilfoyle",
            "user_message": "There is a bug in the deploy script",
            "agent_response": "Fixed it.",
        })
        assert not result.get("isError")
        assert "(insert)" in _text(result)

    @pytest.mark.asyncio
    async def test_store_conversation_missing_args(self):
        result = await HANDLERS["memory_store_conversation"]({"agent_id": "gilfoyle"})
        assert result["isError"]


# ============================================================================
# memory_recall
# ============================================================================

class TestRecall:
    @pytest.mark.asyncio
    async def test_recall_context(self):
        await _store()
        result = await HANDLERS["memory_recall"]({"agent_id": "life-admin", "query": "dentist"})
        text = _text(result)
        assert text.startswith("## RELEVANT CONTEXT FROM PREVIOUS CONVERSATIONS")
        assert "Dentist Thursday 3pm" in text

    @pytest.mark.asyncio
    async def test_recall_json(self):
        mid = await _store()
        result = await HANDLERS["memory_recall"]({
            "agent_id": "life-admin", "query": "dentist", "format": "json",
        })
        data = json.loads(_text(result))
        assert [d["id"] for d in data] == [mid]

    @pytest.mark.asyncio
    async def test_recall_peer_broadcast(self):
        await _store()
        result = await HANDLERS["memory_recall"]({"agent_id": "alan-os", "query": "dentist"})
        assert "Dentist Thursday 3pm" in _text(result)

    @pytest.mark.asyncio
    async def test_recall_empty(self):
        result = await HANDLERS["memory_recall"]({"agent_id": "life-admin", "query": "dentist"})
        assert _text(result) == "No relevant memories."

    @pytest.mark.asyncio
    async def test_recall_missing_agent(self):
        result = await HANDLERS["memory_recall"]({"query": "dentist"})
        assert result["isError"]


# ============================================================================
# memory_list / memory_delete
# ============================================================================

class TestAdmin:
    @pytest.mark.asyncio
    async def test_list(self):
        await _store()
        await _store(agent_id="gilfoyle", category="development", content="Deploy freeze Friday")
        text = _text(await HANDLERS["memory_list"]({}))
        assert text.startswith("# Memories (2)")

        text = _text(await HANDLERS["memory_list"]({"agent_id": "gilfoyle"}))
        assert text.startswith("# Memories (1)")
        assert "[gilfoyle/development] medium, active: Deploy freeze Friday" in text

    @pytest.mark.asyncio
    async def test_list_empty(self):
        assert _text(await HANDLERS["memory_list"]({})) == "No memories found."

    @pytest.mark.asyncio
    async def test_list_bad_status(self):
        result = await HANDLERS["memory_list"]({"status": "sleeping"})
        assert result["isError"]

    @pytest.mark.asyncio
    async def test_delete(self):
        mid = await _store()
        result = await HANDLERS["memory_delete"]({"memory_id": mid})
        assert _text(result) == f"Deleted memory #{mid}"

        again = await HANDLERS["memory_delete"]({"memory_id": mid})
        assert again["isError"]
        assert "not found" in _text(again)

    @pytest.mark.asyncio
    async def test_delete_missing_id(self):
        result = await HANDLERS["memory_delete"]({"memory_id": "abc"})
        assert result["isError"]


# ============================================================================
# memory_maintain / memory_health / memory_backfill
# ============================================================================

class TestMaintenance:
    @pytest.mark.asyncio
    async def test_maintain(self):
        await _store()
        result = await HANDLERS["memory_maintain"]({})
        assert _text(result) == "Maintenance complete: 0 archived, 0 decayed, 0 consolidated"

    @pytest.mark.asyncio
    async def test_health_markdown(self):
        await _store()
        text = _text(await HANDLERS["memory_health"]({}))
        assert text.startswith("# Memory Health")
        assert "life-admin" in text

    @pytest.mark.asyncio
    async def test_health_json(self):
        await _store()
        report = json.loads(_text(await HANDLERS["memory_health"]({"format": "json"})))
        assert report["overview"]["active"] == 1

    @pytest.mark.asyncio
    async def test_backfill_without_provider(self):
        assert os.environ["AGENTMEM_SKIP_EMBEDDINGS"] == "1"
        await _store()
        text = _text(await HANDLERS["memory_backfill"]({}))
        assert text == "Embedding provider not configured; 1 memories still lack embeddings"

    @pytest.mark.asyncio
    async def test_backfill_nothing_missing(self):
        text = _text(await HANDLERS["memory_backfill"]({}))
        assert text == "Backfill complete: 0 embedded, 0 failed"


# ============================================================================
# Rate limiting
# ============================================================================

class TestRateLimit:
    def test_sliding_window(self):
        from agentmem.server.mcp_server import _SlidingWindow

        window = _SlidingWindow(2, window_s=60.0)
        assert window.allow(0.0)
        assert window.allow(1.0)
        assert not window.allow(2.0)
        # The first hit has left the window
        assert window.allow(60.5)

    def test_write_limit(self):
        from agentmem.server import mcp_server

        with patch.object(mcp_server, "_global_window", mcp_server._SlidingWindow(100)), \
                patch.object(mcp_server, "_write_window", mcp_server._SlidingWindow(2)):
            assert mcp_server._check_rate_limit("memory_store") is None
            assert mcp_server._check_rate_limit("memory_delete") is None
            assert "write calls/min" in mcp_server._check_rate_limit("memory_store")
            # Reads are only subject to the global limit
            assert mcp_server._check_rate_limit("memory_recall") is None

    def test_global_limit(self):
        from agentmem.server import mcp_server

        with patch.object(mcp_server, "_global_window", mcp_server._SlidingWindow(1)):
            assert mcp_server._check_rate_limit("memory_recall") is None
            assert "globally" in mcp_server._check_rate_limit("memory_recall")

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        from agentmem.server import mcp_server

        with patch.object(mcp_server, "_global_window", mcp_server._SlidingWindow(100)):
            [content] = await mcp_server.call_tool("memory_nope", {})
        assert content.text == "Unknown tool: memory_nope"

    @pytest.mark.asyncio
    async def test_call_tool_dispatch(self):
        from agentmem.server import mcp_server

        with patch.object(mcp_server, "_global_window", mcp_server._SlidingWindow(100)), \
                patch.object(mcp_server, "_write_window", mcp_server._SlidingWindow(100)):
            [content] = await mcp_server.call_tool(
                "memory_store", {"agent_id": "a", "category": "c", "content": "Dentist Friday"},
            )
        assert content.text.startswith("Memory #")
