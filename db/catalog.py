"""PostgreSQL 元数据查询（schema / table / view / 类型名）。"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from db import postgres

__all__ = [
    "DEFAULT_SCHEMA",
    "list_schemas",
    "list_tables",
    "get_table_columns",
    "get_table_constraints",
    "list_views",
    "get_view_definition",
    "get_type_names",
]

DEFAULT_SCHEMA = "public"

_SYSTEM_SCHEMAS = ("pg_catalog", "information_schema", "pg_toast")


def list_schemas() -> list[dict[str, Any]]:
    """List all non-system schemas in the database."""
    return postgres.fetch_all(
        """
        SELECT schema_name
        FROM information_schema.schemata
        WHERE schema_name <> ALL($1::text[])
        ORDER BY schema_name
        """,
        [list(_SYSTEM_SCHEMAS)],
    )


def list_tables(schema_name: str = DEFAULT_SCHEMA) -> list[dict[str, Any]]:
    """List base tables in a schema."""
    return postgres.fetch_all(
        """
        SELECT table_schema, table_name, table_type
        FROM information_schema.tables
        WHERE table_schema = $1
          AND table_type = 'BASE TABLE'
        ORDER BY table_name
        """,
        [schema_name],
    )


def get_table_columns(table_name: str, schema_name: str = DEFAULT_SCHEMA) -> list[dict[str, Any]]:
    """Return column metadata for a table or view in ordinal order."""
    return postgres.fetch_all(
        """
        SELECT
          column_name,
          data_type,
          is_nullable,
          column_default,
          character_maximum_length
        FROM information_schema.columns
        WHERE table_schema = $1
          AND table_name = $2
        ORDER BY ordinal_position
        """,
        [schema_name, table_name],
    )


def get_table_constraints(table_name: str, schema_name: str = DEFAULT_SCHEMA) -> list[dict[str, Any]]:
    return postgres.fetch_all(
        """
        SELECT
          tc.constraint_name,
          tc.constraint_type,
          kcu.column_name
        FROM information_schema.table_constraints tc
        JOIN information_schema.key_column_usage kcu
          ON tc.constraint_name = kcu.constraint_name
          AND tc.table_schema = kcu.table_schema
        WHERE tc.table_schema = $1
          AND tc.table_name = $2
        ORDER BY tc.constraint_type, tc.constraint_name
        """,
        [schema_name, table_name],
    )


def list_views(schema_name: str = DEFAULT_SCHEMA) -> list[dict[str, Any]]:
    return postgres.fetch_all(
        """
        SELECT table_schema, table_name
        FROM information_schema.views
        WHERE table_schema = $1
        ORDER BY table_name
        """,
        [schema_name],
    )


def get_view_definition(view_name: str, schema_name: str = DEFAULT_SCHEMA) -> Optional[dict[str, Any]]:
    """Return the view definition plus its columns, or None if the view does not exist."""
    row = postgres.fetch_one(
        """
        SELECT schemaname AS table_schema, viewname AS table_name, definition AS view_definition
        FROM pg_views
        WHERE schemaname = $1
          AND viewname = $2
        """,
        [schema_name, view_name],
    )
    if not row:
        return None

    return {
        "table_schema": row["table_schema"],
        "table_name": row["table_name"],
        "view_definition": row["view_definition"],
        "columns": get_table_columns(view_name, schema_name),
    }


def get_type_names(oids: Iterable[int]) -> dict[int, str]:
    """Map type OIDs to `pg_type.typname`; unknown OIDs are omitted."""
    unique = sorted({int(oid) for oid in oids})
    if not unique:
        return {}

    rows = postgres.fetch_all(
        """
        SELECT oid, typname
        FROM pg_type
        WHERE oid = ANY($1::oid[])
        """,
        [unique],
    )
    return {int(row["oid"]): str(row["typname"]) for row in rows}
