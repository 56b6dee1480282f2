"""agentmem MCP and HTTP servers."""
