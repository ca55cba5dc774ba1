"""MCP server bootstrap – registers tools and runs the stdio transport."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import TextContent, Tool

from datastore_mcp.config import Settings, settings
from datastore_mcp.errors import ConfigurationError
from datastore_mcp.mcp.tools import TOOL_REGISTRY, ToolDispatcher, build_dispatcher
from datastore_mcp.schemas.common import ToolRequest

logger = logging.getLogger("mcp.server")

SERVER_INSTRUCTIONS = (
    "Read-only access to two data stores. "
    "SQL database (Azure SQL / SQL Server): list_tables to discover tables, then "
    "execute_query with T-SQL. "
    "Cosmos DB: list_databases and list_containers to discover containers, then "
    "query_items with Cosmos SQL (SELECT * FROM c ...). "
    "Every result carries rows and a truncated flag; raise max_rows (up to 10000) "
    "or narrow the query when truncated is true."
)

# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

TOOL_DEFINITIONS: list[Tool] = [
    Tool(name=spec.name, description=spec.description, inputSchema=spec.input_schema)
    for spec in TOOL_REGISTRY.values()
]

# ---------------------------------------------------------------------------
# Server factory
# ---------------------------------------------------------------------------


def create_mcp_server(dispatcher: ToolDispatcher, config: Settings = settings) -> Server:
    """Create the MCP server instance routing every tool call to *dispatcher*."""
    server = Server(
        config.mcp_server_name,
        version=config.mcp_server_version,
        instructions=SERVER_INSTRUCTIONS,
    )

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        return TOOL_DEFINITIONS

    # Arguments are validated (and max_rows clamped) by the dispatcher so that
    # failures come back in the standard envelope.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict | None) -> list[TextContent]:
        response = await dispatcher.dispatch(ToolRequest(name=name, arguments=arguments or {}))
        return [TextContent(type="text", text=json.dumps(response.model_dump(mode="json")))]

    return server


# ---------------------------------------------------------------------------
# Entry-point: run MCP server over stdio
# ---------------------------------------------------------------------------


async def run_mcp_server(dispatcher: ToolDispatcher, config: Settings = settings) -> None:
    """Serve MCP over stdio until the client disconnects, then close the backends."""
    server = create_mcp_server(dispatcher, config)
    logger.info(
        "Starting MCP server '%s' v%s (stdio)",
        config.mcp_server_name,
        config.mcp_server_version,
    )
    try:
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())
    finally:
        await dispatcher.aclose()
        logger.info("MCP server stopped")


def main() -> None:
    """CLI entry-point."""
    # stdout carries JSON-RPC; logs go to stderr.
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )
    try:
        dispatcher = build_dispatcher(settings)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    settings.log_summary()
    asyncio.run(run_mcp_server(dispatcher))


if __name__ == "__main__":
    main()
