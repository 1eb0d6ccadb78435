"""PostgreSQL MCP Metatool 入口。

组装 FastMCP server：按 DISABLE_CORE_TOOLS 注册内置工具，再加载全部保存的查询工具。

    pg-metatool                              # stdio
    MCP_TRANSPORT=streamable-http pg-metatool
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import NamedTuple, Optional, Union

from mcp.server.fastmcp import FastMCP

from config import settings
from tool_store import ToolStore
from tools.builtin import QUERY_TOOLS, build_builtin_specs
from tools.lifecycle import ToolLifecycle
from tools.registry import DYNAMIC, ToolRegistry

__all__ = ["SERVER_NAME", "CoreToolsMode", "ServerBundle", "core_tools_selection", "create_server", "main"]

_logger = logging.getLogger(__name__)

SERVER_NAME = "pg-metatool"
SERVER_INSTRUCTIONS = (
    "Query a PostgreSQL database, inspect its schemas, and save parameterized SQL queries as reusable tools."
)


class CoreToolsMode:
    ALL = "all"
    MANAGEMENT = "management"
    NONE = "none"


class ServerBundle(NamedTuple):
    server: FastMCP
    registry: ToolRegistry
    status: str


def core_tools_selection(mode: str) -> tuple[Optional[tuple[str, ...]], str]:
    """Map the DISABLE_CORE_TOOLS value to (tool names to register or None for all, status text)."""
    value = str(mode or "").strip().lower()
    if value == CoreToolsMode.ALL:
        return (), "all core tools disabled"
    if value == CoreToolsMode.MANAGEMENT:
        return QUERY_TOOLS, "management tools disabled, query and introspection tools enabled"
    return None, "all core tools enabled"


def create_server(
    data_dir: Union[str, Path, None] = None,
    disable_core_tools: Optional[str] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> ServerBundle:
    """Build the server, register core tools, then register every stored query.

    Raises:
        ToolStoreError: If the data directory cannot be created or a stored
            record is unreadable or corrupt.
    """
    store = ToolStore(data_dir if data_dir is not None else settings.MCP_PG_DATA_DIR)
    store.ensure_data_directory()

    server = FastMCP(
        SERVER_NAME,
        instructions=SERVER_INSTRUCTIONS,
        host=host or settings.MCP_HOST,
        port=port or settings.MCP_PORT,
    )
    registry = ToolRegistry(server)
    lifecycle = ToolLifecycle(registry, store)

    mode = settings.DISABLE_CORE_TOOLS if disable_core_tools is None else disable_core_tools
    names, status = core_tools_selection(mode)
    for spec in build_builtin_specs(lifecycle, names):
        registry.register(spec)

    lifecycle.load_saved_tools()
    return ServerBundle(server, registry, status)


def main() -> None:
    from logging_setup import setup_global_logging

    setup_global_logging(settings.LOG_LEVEL)

    try:
        server, registry, status = create_server()
    except Exception as exc:
        _logger.error("Failed to start PostgreSQL MCP server: %s", exc, exc_info=True)
        sys.exit(1)

    saved = len(registry.names(kind=DYNAMIC))
    _logger.info("Starting PostgreSQL MCP Metatool: %s, %d saved tools loaded", status, saved)

    transport = settings.MCP_TRANSPORT
    if transport != "stdio":
        _logger.info("serving on http://%s:%s (transport=%s)", settings.MCP_HOST, settings.MCP_PORT, transport)

    try:
        server.run(transport=transport)
    except KeyboardInterrupt:
        pass
    except Exception as exc:
        _logger.error("PostgreSQL MCP server stopped: %s", exc, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
