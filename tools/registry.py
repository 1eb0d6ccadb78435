"""工具注册表：名称 → FastMCP 上的在线工具句柄。

内置工具与保存的查询工具统一表示为 `ToolSpec`（名称 + 字段声明 + invoke）。
注册时为每个 spec 生成一个 async 包装函数：
- 入参模型由字段声明生成（mcp_compat），属性名原样作为协议入参名
- 同步的 invoke 在 `asyncio.to_thread` 中执行，避免阻塞事件循环
- `ToolResponse` 转换为 `CallToolResult`（错误时 isError=true）
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.tools import Tool
from mcp.types import CallToolResult, TextContent

import mcp_compat

from responses import ToolResponse
from schema_validator import MISSING, FieldValidator
from utils import as_float_env

__all__ = [
    "BUILTIN",
    "DYNAMIC",
    "RegistryError",
    "ToolSpec",
    "RegisteredTool",
    "ToolRegistry",
]

_logger = logging.getLogger(__name__)

BUILTIN = "builtin"
DYNAMIC = "dynamic"

_TOOL_SLOW_THRESHOLD_SEC = as_float_env("MCP_TOOL_SLOW_SEC", 5.0, min_value=0.1)


class RegistryError(RuntimeError):
    """Tool could not be registered, updated or removed on the protocol server."""


@dataclass
class ToolSpec:
    """A callable tool with its declared inputs.

    ``invoke`` receives the validated arguments, keyed by input name, as one dict and
    returns a ToolResponse; it runs in a worker thread.
    """

    name: str
    description: str
    invoke: Callable[[dict[str, Any]], ToolResponse]
    fields: Mapping[str, FieldValidator] = field(default_factory=dict)
    title: Optional[str] = None
    kind: str = BUILTIN
    changes_tool_list: bool = False


def _to_call_result(response: ToolResponse) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=response.text)],
        isError=response.is_error,
    )


class ToolRegistry:
    """Authoritative map of callable tools, mirrored onto one FastMCP server.

    Lifecycle operations hold ``lock`` across their multi-step sequences;
    single reads (get / names) take it only briefly.
    """

    def __init__(self, server: FastMCP):
        self.server = server
        self.lock = threading.RLock()
        self._tools: dict[str, RegisteredTool] = {}

    def __contains__(self, name: object) -> bool:
        with self.lock:
            return name in self._tools

    def __len__(self) -> int:
        with self.lock:
            return len(self._tools)

    def get(self, name: str) -> Optional["RegisteredTool"]:
        with self.lock:
            return self._tools.get(name)

    def names(self, kind: Optional[str] = None) -> list[str]:
        with self.lock:
            return [name for name, entry in self._tools.items() if kind is None or entry.spec.kind == kind]

    def pop(self, name: str) -> Optional["RegisteredTool"]:
        with self.lock:
            return self._tools.pop(name, None)

    def register(self, spec: ToolSpec) -> "RegisteredTool":
        with self.lock:
            if spec.name in self._tools:
                raise RegistryError(f"tool '{spec.name}' is already registered")
            try:
                mcp_compat.install_tool(self.server, self._build_tool(spec))
            except Exception as exc:
                raise RegistryError(f"cannot register tool '{spec.name}': {exc}") from exc
            entry = RegisteredTool(self, spec)
            self._tools[spec.name] = entry
            _logger.debug("registered %s tool %s", spec.kind, spec.name)
            return entry

    def _replace(self, entry: "RegisteredTool", spec: ToolSpec) -> None:
        if spec.name != entry.name:
            raise RegistryError(f"cannot rename tool '{entry.name}' to '{spec.name}'")
        with self.lock:
            if self._tools.get(entry.name) is not entry:
                raise RegistryError(f"Registered tool '{entry.name}' not found for update")
            try:
                mcp_compat.install_tool(self.server, self._build_tool(spec), replace=True)
            except Exception as exc:
                raise RegistryError(f"cannot update tool '{spec.name}': {exc}") from exc
            entry.spec = spec
            _logger.debug("updated %s tool %s", spec.kind, spec.name)

    def _remove(self, entry: "RegisteredTool") -> None:
        try:
            self.server.remove_tool(entry.name)
        except Exception as exc:
            raise RegistryError(f"cannot remove tool '{entry.name}': {exc}") from exc
        _logger.debug("removed tool %s from server", entry.name)

    async def notify_tool_list_changed(self) -> None:
        """Tell the calling client that tools/list changed; no-op outside a request."""
        try:
            await self.server.get_context().session.send_tool_list_changed()
        except Exception:
            _logger.debug("tools/list_changed notification not sent", exc_info=True)

    def _build_tool(self, spec: ToolSpec) -> Tool:
        invoke = spec.invoke
        tool_name = spec.name
        nullable = {name for name, fv in spec.fields.items() if not fv.required and not fv.has_default}
        notify = spec.changes_tool_list

        # kwargs are keyed by input name, which need not be a Python identifier
        async def wrapper(**kwargs: Any) -> CallToolResult:
            arguments = {k: v for k, v in kwargs.items() if not (k in nullable and v is None)}
            t0 = time.monotonic()
            response = await asyncio.to_thread(invoke, arguments)
            elapsed = time.monotonic() - t0
            if elapsed > _TOOL_SLOW_THRESHOLD_SEC:
                _logger.warning("slow tool %s  elapsed=%.1fs", tool_name, elapsed)
            if notify and not response.is_error:
                await self.notify_tool_list_changed()
            return _to_call_result(response)

        inputs = {}
        for name, fv in spec.fields.items():
            default = fv.protocol_default()
            inputs[name] = (fv.annotation(), mcp_compat.REQUIRED if default is MISSING else default)

        arg_model = mcp_compat.build_argument_model(f"{tool_name}Arguments", inputs)
        return mcp_compat.build_tool(
            wrapper, name=tool_name, title=spec.title, description=spec.description, arg_model=arg_model
        )


class RegisteredTool:
    """Live handle for one registered tool."""

    def __init__(self, registry: ToolRegistry, spec: ToolSpec):
        self._registry = registry
        self.spec = spec

    @property
    def name(self) -> str:
        return self.spec.name

    def update(self, spec: ToolSpec) -> None:
        """Swap the handler and input declaration in place.

        Calls already running keep the handler they started with.
        """
        self._registry._replace(self, spec)

    def remove(self) -> None:
        """Unregister from the protocol server; the registry map entry is left to the caller."""
        self._registry._remove(self)
