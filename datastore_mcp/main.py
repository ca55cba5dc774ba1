"""Debug HTTP entry-point.

The primary interface is the MCP stdio server (``datastore-mcp``).
``python -m datastore_mcp.main`` serves the debug app from
``datastore_mcp.dev.debug_server`` instead.
"""

from __future__ import annotations

import logging

import uvicorn

from datastore_mcp.config import settings
from datastore_mcp.dev.debug_server import create_app
from datastore_mcp.errors import ConfigurationError
from datastore_mcp.mcp.tools import build_dispatcher

logger = logging.getLogger("main")


def main() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    try:
        dispatcher = build_dispatcher(settings)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        raise SystemExit(1) from exc
    settings.log_summary()
    uvicorn.run(
        create_app(dispatcher, close_on_shutdown=True),
        host=settings.debug_host,
        port=settings.debug_port,
    )


if __name__ == "__main__":
    main()
