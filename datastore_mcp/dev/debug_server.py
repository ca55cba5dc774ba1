"""FastAPI debug server – HTTP endpoints for manual tool testing.

This is NOT part of MCP.  It is a convenience tool for local development
without an MCP client (Claude Desktop, Cursor).

Run with:
    python -m datastore_mcp.main
    # → http://localhost:8000/health
    # → http://localhost:8000/docs  (Swagger UI)
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from datastore_mcp.config import Settings, settings
from datastore_mcp.mcp.tools import TOOL_REGISTRY, ToolDispatcher, build_dispatcher
from datastore_mcp.schemas.common import ToolRequest

logger = logging.getLogger("dev.debug_server")


def create_app(
    dispatcher: ToolDispatcher | None = None,
    config: Settings = settings,
    *,
    close_on_shutdown: bool | None = None,
) -> FastAPI:
    """Build the debug app.

    With no *dispatcher* one is built from *config* on startup.  The
    dispatcher is closed on shutdown when the app built it or when
    *close_on_shutdown* is true.
    """
    owned = dispatcher is None
    if close_on_shutdown is None:
        close_on_shutdown = owned

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.dispatcher = build_dispatcher(config) if owned else dispatcher
        logger.info("Debug server starting")
        try:
            yield
        finally:
            if close_on_shutdown:
                await app.state.dispatcher.aclose()
            logger.info("Debug server shutting down")

    app = FastAPI(
        title="Datastore MCP Server – Debug HTTP",
        description="Developer-only HTTP wrapper around the MCP tool dispatcher.",
        version=config.mcp_server_version,
        lifespan=lifespan,
    )
    if dispatcher is not None:
        app.state.dispatcher = dispatcher

    # ── Health ────────────────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": config.mcp_server_version,
            "backends": app.state.dispatcher.status(),
        }

    # ── Tools ─────────────────────────────────────────────────────────────

    @app.get("/tools")
    async def tools():
        return [
            {
                "name": spec.name,
                "backend": spec.backend.value,
                "description": spec.description,
                "input_schema": spec.input_schema,
            }
            for spec in TOOL_REGISTRY.values()
        ]

    @app.post("/debug/tools/{name}")
    async def call_tool(name: str, arguments: dict[str, Any] | None = Body(None)):
        response = await app.state.dispatcher.dispatch(
            ToolRequest(name=name, arguments=arguments or {})
        )
        return JSONResponse(content=response.model_dump(mode="json"))

    return app
