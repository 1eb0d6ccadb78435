"""FastMCP 工具表的集中访问层。

FastMCP 的 `add_tool` 只接受 Python 函数，入参声明取自函数签名；保存的查询
工具的入参名来自 JSON Schema，可能是 `from`、`in`、`_x` 这类无法作为 Python
形参的名字，而且 FastMCP 没有原地更新工具的接口。

因此这里：
  1. 用 pydantic `create_model` 生成参数模型：内部字段名 `arg_N`，
     对外名称（alias）即 schema 中的属性名
  2. 直接构造 `Tool`，写入 tool manager 的工具表

对 FastMCP 内部属性的访问只发生在本模块；内部结构变化时在此处抛出
`FastMCPCompatError`，而不是静默失效。
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.tools import Tool
from mcp.server.fastmcp.utilities.func_metadata import ArgModelBase, FuncMetadata
from pydantic import Field, create_model

__all__ = [
    "REQUIRED",
    "FastMCPCompatError",
    "build_argument_model",
    "build_tool",
    "install_tool",
]

_logger = logging.getLogger("mcp_compat")

REQUIRED: Any = ...


class FastMCPCompatError(RuntimeError):
    """The installed FastMCP does not expose the tool table this module relies on."""


def build_argument_model(
    model_name: str,
    inputs: Mapping[str, tuple[Any, Any]],
) -> type[ArgModelBase]:
    """Argument model whose external (alias) names are exactly the keys of ``inputs``.

    ``inputs`` maps input name -> (annotation, default); a default of REQUIRED
    makes the input mandatory.
    """
    definitions: dict[str, Any] = {}
    for index, (name, (annotation, default)) in enumerate(inputs.items()):
        field_info = Field(alias=name, title=name) if default is REQUIRED else Field(default, alias=name, title=name)
        definitions[f"arg_{index}"] = (annotation, field_info)
    return create_model(model_name, __base__=ArgModelBase, **definitions)


def build_tool(
    fn: Callable[..., Any],
    name: str,
    description: str,
    arg_model: type[ArgModelBase],
    title: Optional[str] = None,
) -> Tool:
    """Tool calling async ``fn(**arguments)`` with arguments keyed by input name."""
    return Tool(
        fn=fn,
        name=name,
        title=title,
        description=description or "",
        parameters=arg_model.model_json_schema(by_alias=True),
        fn_metadata=FuncMetadata(arg_model=arg_model),
        is_async=True,
        context_kwarg=None,
    )


def _tool_table(server: FastMCP) -> dict[str, Tool]:
    manager = getattr(server, "_tool_manager", None)
    tools = getattr(manager, "_tools", None)
    if not isinstance(tools, dict):
        raise FastMCPCompatError("unsupported FastMCP version: tool manager table not found")
    return tools


def install_tool(server: FastMCP, tool: Tool, replace: bool = False) -> None:
    """Add ``tool`` to the server, or swap the existing entry when ``replace`` is set.

    Raises:
        FastMCPCompatError: If the tool table is unavailable.
        ValueError: If the name is already taken (add) or absent (replace).
    """
    tools = _tool_table(server)
    exists = tool.name in tools
    if replace and not exists:
        raise ValueError(f"Unknown tool: {tool.name}")
    if not replace and exists:
        raise ValueError(f"Tool already exists: {tool.name}")
    tools[tool.name] = tool
    _logger.debug("%s tool %s", "replaced" if replace else "installed", tool.name)
