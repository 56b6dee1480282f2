"""agentmem HTTP Server -- health endpoints plus the MCP Streamable HTTP transport.

Routes:
- ``GET /health``         liveness probe
- ``GET /memory/health``  full memory health report (JSON)
- ``/mcp``                MCP tools over Streamable HTTP

``/mcp`` and ``/memory/health`` require the API key (``x-api-key`` header or
``api_key`` query parameter) when one is configured.
"""

import contextlib
import logging
import secrets
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Optional

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Mount, Route
from starlette.types import Receive, Scope, Send

from mcp.server.streamable_http_manager import StreamableHTTPSessionManager

from agentmem.config import agentmem_home

logger = logging.getLogger("agentmem.server.http")


def api_key_path() -> Path:
    return agentmem_home() / "api_key"


def get_or_create_api_key() -> str:
    """Load the API key from $AGENTMEM_HOME/api_key, or generate one."""
    path = api_key_path()
    if path.exists():
        return path.read_text().strip()
    key = secrets.token_urlsafe(32)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(key + "\n")
    path.chmod(0o600)
    return key


def _authorized(request: Request, api_key: Optional[str]) -> bool:
    if not api_key:
        return True
    provided = request.headers.get("x-api-key") or request.query_params.get("api_key")
    return provided is not None and secrets.compare_digest(provided, api_key)


def create_http_app(server, api_key: Optional[str] = None) -> Starlette:
    """Create a Starlette ASGI app wrapping the MCP server.

    Args:
        server: The MCP Server instance from mcp_server.py.
        api_key: Optional API key for authentication. None disables auth.
    """
    session_manager = StreamableHTTPSessionManager(
        app=server,
        json_response=True,
        stateless=True,
    )

    async def mcp_asgi_app(scope: Scope, receive: Receive, send: Send) -> None:
        if not _authorized(Request(scope, receive), api_key):
            response = JSONResponse({"error": "Unauthorized"}, status_code=401)
            await response(scope, receive, send)
            return
        await session_manager.handle_request(scope, receive, send)

    async def health(request: Request):
        from agentmem import __version__

        return JSONResponse({"status": "ok", "server": "agentmem", "version": __version__})

    # Plain def: Starlette runs it in a worker thread, off the event loop.
    def memory_health(request: Request):
        if not _authorized(request, api_key):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        from agentmem.bridge import health as bridge_health

        try:
            report = bridge_health()
        except Exception as e:
            logger.error("Health report failed: %s", e)
            return JSONResponse({"error": "Health report failed"}, status_code=500)
        return JSONResponse(report)

    @contextlib.asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        async with session_manager.run():
            yield

    return Starlette(
        routes=[
            Mount("/mcp", app=mcp_asgi_app),
            Route("/health", endpoint=health),
            Route("/memory/health", endpoint=memory_health),
        ],
        lifespan=lifespan,
    )


async def run_http(host: str, port: int, api_key: Optional[str]) -> None:
    """Create the HTTP app around the MCP server and run uvicorn."""
    import uvicorn

    from agentmem.server.mcp_server import server

    app = create_http_app(server, api_key=api_key)
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    srv = uvicorn.Server(config)
    await srv.serve()
