"""agentmem MCP Tool Schemas -- 8 tools for agent memory."""

_IMPORTANCE_ENUM = ["low", "medium", "high", "critical"]
_VISIBILITY_ENUM = ["private", "shared", "broadcast"]

TOOL_SCHEMAS = [
    {
        "name": "memory_store",
        "description": "Store a durable fact for an agent. Near-duplicates are skipped and contradicted facts are archived, never deleted. Returns the id representing the fact and the action taken (insert, skip, replace).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": {"type": "string", "description": "Owning agent, e.g. 'life-admin'"},
                "category": {"type": "string", "description": "Topic bucket, e.g. 'schedule', 'financial'"},
                "content": {"type": "string", "description": "The fact to remember"},
                "keywords": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "Match keywords. Extracted from content when omitted.",
                },
                "importance": {"type": "string", "enum": _IMPORTANCE_ENUM, "default": "medium"},
                "visibility": {
                    "type": "string",
                    "enum": _VISIBILITY_ENUM,
                    "description": "Defaults to 'broadcast' for the agent's broadcast categories, else 'private'.",
                },
            },
            "required": ["agent_id", "category", "content"],
        },
    },
    {
        "name": "memory_store_conversation",
        "description": "Store a user/agent exchange as a summary memory. Importance and category are inferred from the user message.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "user_message": {"type": "string"},
                "agent_response": {"type": "string"},
            },
            "required": ["agent_id", "user_message", "agent_response"],
        },
    },
    {
        "name": "memory_recall",
        "description": "Retrieve the memories most relevant to a request, blending keyword overlap, semantic similarity, recency and importance. Includes shared facts from the agent's cluster peers.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "query": {"type": "string", "description": "The incoming request text"},
                "limit": {"type": "integer", "default": 8},
                "format": {
                    "type": "string",
                    "enum": ["context", "json"],
                    "description": "'context' (default) renders a prompt section, 'json' returns entries",
                },
            },
            "required": ["agent_id", "query"],
        },
    },
    {
        "name": "memory_list",
        "description": "List stored memories, newest first, optionally filtered by agent and status.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "agent_id": {"type": "string"},
                "status": {"type": "string", "enum": ["active", "archived", "contradicted"]},
                "limit": {"type": "integer", "default": 50},
            },
        },
    },
    {
        "name": "memory_delete",
        "description": "Permanently delete one memory by id (administrative).",
        "inputSchema": {
            "type": "object",
            "properties": {
                "memory_id": {"type": "integer"},
            },
            "required": ["memory_id"],
        },
    },
    {
        "name": "memory_maintain",
        "description": "Run the maintenance pass now: archive stale memories, decay importance, consolidate near-duplicates.",
        "inputSchema": {"type": "object", "properties": {}},
    },
    {
        "name": "memory_health",
        "description": "Report memory counts by status, embedding coverage, per-agent and per-category breakdowns, staleness and maintenance history.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "format": {"type": "string", "enum": ["markdown", "json"], "default": "markdown"},
            },
        },
    },
    {
        "name": "memory_backfill",
        "description": "Compute embeddings for memories stored while the embedding model was unavailable.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "batch_size": {"type": "integer", "default": 32},
                "limit": {"type": "integer", "description": "Maximum memories to process"},
            },
        },
    },
]
