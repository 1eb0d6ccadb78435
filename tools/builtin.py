"""内置工具：临时 SQL 执行、保存查询管理、数据库元数据浏览。

入参用 JSON Schema 声明，经与保存查询相同的字段转换生成协议声明。
"""

from __future__ import annotations

from collections import OrderedDict
from typing import Any, Callable, Optional

from db import catalog
from responses import StageLogger, ToolResponse, with_error_handling
from schema_validator import build_field_validators
from tools.dynamic import execute_adhoc
from tools.lifecycle import ToolLifecycle
from tools.registry import BUILTIN, ToolSpec
from utils import plural

__all__ = [
    "QUERY_TOOLS",
    "MANAGEMENT_TOOLS",
    "list_schemas",
    "list_tables",
    "describe_table",
    "list_views",
    "describe_view",
    "build_builtin_specs",
]

DEFAULT_SCHEMA = catalog.DEFAULT_SCHEMA

QUERY_TOOLS = (
    "execute_sql_query",
    "list_schemas",
    "list_tables",
    "describe_table",
    "list_views",
    "describe_view",
)
MANAGEMENT_TOOLS = (
    "save_query",
    "delete_saved_query",
    "list_saved_queries",
    "show_saved_query",
)


# ============================================================
# 元数据浏览
# ============================================================


def list_schemas() -> ToolResponse:
    def body(log: StageLogger) -> str:
        log("querying schemas")
        schemas = catalog.list_schemas()
        if not schemas:
            return "No user schemas found."
        listing = "\n".join(f"- {row['schema_name']}" for row in schemas)
        return f"Found {len(schemas)} {plural(len(schemas), 'schema')}:\n\n{listing}"

    return with_error_handling("listing schemas", body)


def list_tables(schema_name: str = DEFAULT_SCHEMA) -> ToolResponse:
    schema = schema_name or DEFAULT_SCHEMA

    def body(log: StageLogger) -> str:
        log("querying tables")
        tables = catalog.list_tables(schema)
        if not tables:
            return f"No tables found in schema '{schema}'."
        listing = "\n".join(f"- {row['table_name']}" for row in tables)
        return f"Found {len(tables)} {plural(len(tables), 'table')} in schema '{schema}':\n\n{listing}"

    return with_error_handling(f"listing tables in schema '{schema}'", body)


def list_views(schema_name: str = DEFAULT_SCHEMA) -> ToolResponse:
    schema = schema_name or DEFAULT_SCHEMA

    def body(log: StageLogger) -> str:
        log("querying views")
        views = catalog.list_views(schema)
        if not views:
            return f"No views found in schema '{schema}'."
        listing = "\n".join(f"- {row['table_name']}" for row in views)
        return f"Found {len(views)} {plural(len(views), 'view')} in schema '{schema}':\n\n{listing}"

    return with_error_handling(f"listing views in schema '{schema}'", body)


def _format_column(col: dict[str, Any], with_default: bool = True) -> str:
    nullable = "NULL" if col.get("is_nullable") == "YES" else "NOT NULL"
    max_len = col.get("character_maximum_length")
    size = f"({max_len})" if max_len is not None else ""
    line = f"  {col['column_name']}: {col['data_type']}{size} {nullable}"
    if with_default and col.get("column_default") is not None:
        line += f" DEFAULT {col['column_default']}"
    return line


def describe_table(table_name: str, schema_name: str = DEFAULT_SCHEMA) -> ToolResponse:
    schema = schema_name or DEFAULT_SCHEMA

    def body(log: StageLogger) -> str:
        log("querying columns")
        columns = catalog.get_table_columns(table_name, schema)
        if not columns:
            raise LookupError(f"Table '{schema}.{table_name}' not found")

        log("querying constraints")
        constraints = catalog.get_table_constraints(table_name, schema)

        by_type: "OrderedDict[str, list[str]]" = OrderedDict()
        for row in constraints:
            by_type.setdefault(row["constraint_type"], []).append(
                f"{row['constraint_name']} ({row['column_name']})"
            )

        text = f"Table: {schema}.{table_name}\n\nColumns:\n" + "\n".join(_format_column(c) for c in columns)
        if by_type:
            text += "\n\nConstraints:"
            for constraint_type, names in by_type.items():
                text += f"\n  {constraint_type}:"
                for name in names:
                    text += f"\n    - {name}"
        return text

    return with_error_handling(f"describing table '{schema}.{table_name}'", body)


def describe_view(view_name: str, schema_name: str = DEFAULT_SCHEMA) -> ToolResponse:
    schema = schema_name or DEFAULT_SCHEMA

    def body(log: StageLogger) -> str:
        log("querying view definition")
        view = catalog.get_view_definition(view_name, schema)
        if not view:
            raise LookupError(f"View '{schema}.{view_name}' not found")

        columns = "\n".join(_format_column(c, with_default=False) for c in view["columns"])
        return (
            f"View: {schema}.{view_name}\n\nColumns:\n{columns}"
            f"\n\nDefinition:\n```sql\n{view['view_definition']}```"
        )

    return with_error_handling(f"describing view '{schema}.{view_name}'", body)


# ============================================================
# 工具声明
# ============================================================

_SCHEMA_NAME_PROP = {"type": "string", "default": DEFAULT_SCHEMA, "description": "The schema name (default: public)"}

_TOOL_NAME_PROP = {
    "type": "string",
    "description": "The saved query tool name in snake_case format",
}


def _object(properties: dict[str, Any], required: tuple[str, ...] = ()) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


def _spec(
    name: str,
    title: str,
    description: str,
    schema: dict[str, Any],
    invoke: Callable[..., ToolResponse],
    changes_tool_list: bool = False,
) -> ToolSpec:
    return ToolSpec(
        name=name,
        title=title,
        description=description,
        fields=build_field_validators(schema),
        invoke=lambda arguments: invoke(**arguments),
        kind=BUILTIN,
        changes_tool_list=changes_tool_list,
    )


def build_builtin_specs(lifecycle: ToolLifecycle, names: Optional[tuple[str, ...]] = None) -> list[ToolSpec]:
    """Built-in ToolSpecs in registration order, optionally limited to ``names``."""
    specs = [
        _spec(
            "execute_sql_query",
            "Execute SQL Query",
            "Execute arbitrary SQL queries against the PostgreSQL database. Use :param_name for parameters.",
            _object(
                {
                    "query": {
                        "type": "string",
                        "description": "The SQL query to execute (use :param_name for named parameters)",
                    },
                    "params": {"type": "object", "description": "Named parameters for the query"},
                },
                required=("query",),
            ),
            execute_adhoc,
        ),
        _spec(
            "save_query",
            "Save Query Tool",
            "Create or update an MCP tool from a SQL query",
            _object(
                {
                    "tool_name": {
                        "type": "string",
                        "description": "The unique name for this tool in snake_case format",
                    },
                    "description": {
                        "type": "string",
                        "description": "A human-readable description of what this tool does",
                    },
                    "sql_query": {
                        "type": "string",
                        "description": "The SQL query with :named parameters "
                        "(e.g., SELECT * FROM users WHERE id = :user_id)",
                    },
                    "parameter_schema": {"type": "object", "description": "JSON Schema defining tool parameters"},
                    "overwrite": {
                        "type": "boolean",
                        "default": False,
                        "description": "Whether to overwrite an existing tool with the same name",
                    },
                },
                required=("tool_name", "description", "sql_query", "parameter_schema"),
            ),
            lifecycle.save_tool,
            changes_tool_list=True,
        ),
        _spec(
            "delete_saved_query",
            "Delete Saved Query",
            "Remove a saved query tool from the system",
            _object({"tool_name": _TOOL_NAME_PROP}, required=("tool_name",)),
            lifecycle.delete_tool,
            changes_tool_list=True,
        ),
        _spec(
            "list_saved_queries",
            "List Saved Queries",
            "List all saved query tools and their descriptions",
            _object({}),
            lifecycle.list_saved_queries,
        ),
        _spec(
            "show_saved_query",
            "Show Saved Query",
            "Returns full tool definition for a saved query",
            _object({"tool_name": _TOOL_NAME_PROP}, required=("tool_name",)),
            lifecycle.show_saved_query,
        ),
        _spec(
            "list_schemas",
            "List Schemas",
            "List all schemas in the database",
            _object({}),
            list_schemas,
        ),
        _spec(
            "list_tables",
            "List Tables",
            "List all tables in a schema",
            _object({"schema_name": _SCHEMA_NAME_PROP}),
            list_tables,
        ),
        _spec(
            "describe_table",
            "Describe Table",
            "Get detailed schema information for a table including columns, types, and constraints",
            _object(
                {
                    "table_name": {"type": "string", "description": "The name of the table to describe"},
                    "schema_name": _SCHEMA_NAME_PROP,
                },
                required=("table_name",),
            ),
            describe_table,
        ),
        _spec(
            "list_views",
            "List Views",
            "List all views in a schema",
            _object({"schema_name": _SCHEMA_NAME_PROP}),
            list_views,
        ),
        _spec(
            "describe_view",
            "Describe View",
            "Get detailed information for a view including columns and definition",
            _object(
                {
                    "view_name": {"type": "string", "description": "The name of the view to describe"},
                    "schema_name": _SCHEMA_NAME_PROP,
                },
                required=("view_name",),
            ),
            describe_view,
        ),
    ]
    if names is None:
        return specs
    wanted = set(names)
    return [spec for spec in specs if spec.name in wanted]
