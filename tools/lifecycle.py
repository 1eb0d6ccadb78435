"""保存查询的生命周期：创建 / 更新 / 删除 / 启动加载。

顺序约定：
- 保存：先落盘，再注册（或原地更新）到 MCP server
- 删除：先从 MCP server 注销，成功后再删文件
每个操作在 registry.lock 内完成整段多步序列。
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from parameter_mapper import extract_named_parameters, parse_named_parameters
from responses import StageLogger, ToolResponse, with_error_handling
from schema_validator import is_valid_json_schema
from tool_store import ToolDefinition, ToolStore
from tools.dynamic import QueryExecutor, TypeResolver, build_dynamic_tool_spec
from tools.registry import DYNAMIC, ToolRegistry
from utils import plural

__all__ = [
    "PROTECTED_TOOLS",
    "TOOL_NAME_PATTERN",
    "ToolConflictError",
    "ProtectedToolError",
    "ToolNotFoundError",
    "validate_tool_name",
    "ToolLifecycle",
]

_logger = logging.getLogger(__name__)

PROTECTED_TOOLS = frozenset(
    {
        "execute_sql_query",
        "save_query",
        "delete_saved_query",
        "list_saved_queries",
        "show_saved_query",
        "list_schemas",
        "list_tables",
        "describe_table",
        "list_views",
        "describe_view",
    }
)

TOOL_NAME_PATTERN = r"^[a-z][a-z0-9_]*$"
_TOOL_NAME_RE = re.compile(TOOL_NAME_PATTERN)


class ToolConflictError(ValueError):
    """Save without overwrite against a name that is already registered."""


class ProtectedToolError(ValueError):
    """Attempt to delete or overwrite a built-in tool."""


class ToolNotFoundError(LookupError):
    """No saved query is registered under the requested name."""


def validate_tool_name(tool_name: Any) -> str:
    name = str(tool_name or "").strip()
    if not _TOOL_NAME_RE.match(name):
        raise ValueError("Tool name must be snake_case starting with a letter")
    return name


def _require_text(value: Any, message: str) -> str:
    text = str(value or "")
    if not text.strip():
        raise ValueError(message)
    return text


class ToolLifecycle:
    """Owns the save/delete/load sequences over one registry and one store."""

    def __init__(
        self,
        registry: ToolRegistry,
        store: ToolStore,
        executor: Optional[QueryExecutor] = None,
        type_resolver: Optional[TypeResolver] = None,
    ):
        self.registry = registry
        self.store = store
        self._executor = executor
        self._type_resolver = type_resolver

    def _spec_for(self, definition: ToolDefinition):
        return build_dynamic_tool_spec(definition, executor=self._executor, type_resolver=self._type_resolver)

    # ------------------------------------------------------------------
    # startup
    # ------------------------------------------------------------------

    def load_saved_tools(self) -> int:
        """Register every stored definition; returns the number registered.

        A corrupt record or a name clash aborts startup with the underlying error.
        """
        definitions = self.store.load_all()
        with self.registry.lock:
            for definition in definitions:
                self.registry.register(self._spec_for(definition))
        _logger.info("loaded %d saved tool(s) from %s", len(definitions), self.store.tools_dir)
        return len(definitions)

    # ------------------------------------------------------------------
    # save / delete
    # ------------------------------------------------------------------

    def save_tool(
        self,
        tool_name: str,
        description: str,
        sql_query: str,
        parameter_schema: Any,
        overwrite: bool = False,
    ) -> ToolResponse:
        def body(log: StageLogger) -> str:
            name = validate_tool_name(tool_name)
            text = _require_text(description, "Description is required")
            sql = _require_text(sql_query, "SQL query is required")

            with self.registry.lock:
                existing = self.registry.get(name)
                if existing is not None and not overwrite:
                    raise ToolConflictError(
                        f"Tool with name '{name}' already exists. Set overwrite=true to update it."
                    )
                if name in PROTECTED_TOOLS:
                    raise ProtectedToolError(f"Cannot overwrite core tool '{name}'")

                log("validating parameter schema")
                if not is_valid_json_schema(parameter_schema):
                    raise ValueError("Invalid parameter_schema: must be a valid JSON Schema object")

                log("parsing SQL parameters")
                mapping = parse_named_parameters(sql)
                named = extract_named_parameters(sql)
                definition = ToolDefinition(
                    name=name,
                    description=text,
                    sql_query=sql,
                    sql_prepared=mapping.sql,
                    parameter_schema=dict(parameter_schema),
                    parameter_order=mapping.parameter_order,
                )
                spec = self._spec_for(definition)

                log("persisting tool to file")
                self.store.save(definition)

                if existing is None:
                    log("registering new tool in MCP server")
                    self.registry.register(spec)
                    action = "created"
                else:
                    log("updating existing tool in MCP server")
                    existing.update(spec)
                    action = "updated"

            return (
                f"Successfully {action} tool '{name}' with {len(named)} "
                f"{plural(len(named), 'parameter')}: {', '.join(named) or 'none'}"
            )

        return with_error_handling(f"saving tool '{tool_name}'", body)

    def delete_tool(self, tool_name: str) -> ToolResponse:
        def body(log: StageLogger) -> str:
            name = str(tool_name or "").strip()
            if name in PROTECTED_TOOLS:
                raise ProtectedToolError(f"Cannot delete core tool '{name}'")

            with self.registry.lock:
                entry = self.registry.get(name)
                if entry is None or entry.spec.kind != DYNAMIC:
                    raise ToolNotFoundError(f"Saved query '{name}' not found")

                log("removing tool from MCP server")
                entry.remove()
                self.registry.pop(name)

                log("deleting tool file from storage")
                self.store.delete(name)

            return f"Successfully deleted saved query '{name}'"

        return with_error_handling(f"deleting tool '{tool_name}'", body)

    # ------------------------------------------------------------------
    # read-only views
    # ------------------------------------------------------------------

    def list_saved_queries(self) -> ToolResponse:
        def body(log: StageLogger) -> str:
            names = self.registry.names(kind=DYNAMIC)
            if not names:
                return "No saved queries found."

            saved = {definition.name: definition for definition in self.store.load_all()}
            lines = []
            for name in names:
                definition = saved.get(name)
                description = definition.description if definition is not None else "No description"
                lines.append(f"- **{name}**: {description}")

            count = len(names)
            return f"Found {count} saved {'query' if count == 1 else 'queries'}:\n\n" + "\n".join(lines)

        return with_error_handling("listing saved queries", body)

    def show_saved_query(self, tool_name: str) -> ToolResponse:
        def body(log: StageLogger) -> str:
            name = str(tool_name or "").strip()
            entry = self.registry.get(name)
            if entry is None or entry.spec.kind != DYNAMIC:
                raise ToolNotFoundError(f"Saved query '{name}' not found")

            definition = self.store.load(name)
            if definition is None:
                raise ToolNotFoundError(f"Tool configuration for '{name}' could not be loaded")

            rendered = json.dumps(definition.to_dict(), ensure_ascii=False, indent=2)
            return f"Tool definition for '{name}':\n\n```json\n{rendered}\n```"

        return with_error_handling(f"showing saved query '{tool_name}'", body)
