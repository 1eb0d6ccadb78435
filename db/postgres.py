"""PostgreSQL 查询执行器（psycopg 3 + 连接池）。

SQL 统一使用 PostgreSQL 原生 `$N` 位置参数（psycopg RawCursor），
与 parameter_mapper 的输出保持一致。
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from utils import as_float_env, as_int_env, parse_bool_env

try:
    import psycopg
    from psycopg.conninfo import make_conninfo
    from psycopg.rows import dict_row
except ImportError:  # pragma: no cover
    psycopg = None  # type: ignore[assignment]
    make_conninfo = None  # type: ignore[assignment]
    dict_row = None  # type: ignore[assignment]

try:
    from psycopg_pool import ConnectionPool as PsycopgConnectionPool
except ImportError:  # pragma: no cover
    PsycopgConnectionPool = None

__all__ = [
    "ColumnMeta",
    "QueryResult",
    "get_connection_string",
    "close_pool",
    "connect",
    "query",
    "fetch_all",
    "fetch_one",
]

_logger = logging.getLogger(__name__)

_POOL_LOCK = threading.Lock()
_POOL: Optional[Any] = None
_POOL_KEY: Optional[str] = None


@dataclass(frozen=True)
class ColumnMeta:
    name: str
    type_oid: int


@dataclass
class QueryResult:
    """Rows, affected/returned row count and column metadata of one statement."""

    rows: list[dict[str, Any]] = field(default_factory=list)
    row_count: int = 0
    fields: list[ColumnMeta] = field(default_factory=list)


def _require_driver() -> None:
    if psycopg is None:
        raise RuntimeError("缺少 psycopg，请先安装: pip install 'psycopg[binary]'")


def get_connection_string() -> str:
    """Build the libpq connection string from the environment.

    DATABASE_URL wins when set; otherwise PGHOST/PGPORT/PGDATABASE/PGUSER/PGPASSWORD
    are combined. PGSSLMODE is applied to either form unless it is ``disable``.

    Raises:
        RuntimeError: If neither DATABASE_URL nor PGDATABASE is set.
    """
    _require_driver()
    sslmode = str(os.getenv("PGSSLMODE") or "").strip()
    extra: dict[str, Any] = {}
    if sslmode and sslmode.lower() != "disable":
        extra["sslmode"] = sslmode

    database_url = str(os.getenv("DATABASE_URL") or "").strip()
    if database_url:
        return make_conninfo(database_url, **extra)

    database = str(os.getenv("PGDATABASE") or "").strip()
    if not database:
        raise RuntimeError("未配置 DATABASE_URL 或 PGDATABASE")

    params: dict[str, Any] = {
        "host": str(os.getenv("PGHOST") or "localhost").strip(),
        "port": as_int_env("PGPORT", 5432, min_value=1),
        "dbname": database,
    }
    user = str(os.getenv("PGUSER") or "").strip()
    if user:
        params["user"] = user
    password = os.getenv("PGPASSWORD")
    if password:
        params["password"] = password
    params.update(extra)
    return make_conninfo("", **params)


def _pool_enabled() -> bool:
    if PsycopgConnectionPool is None:
        return False
    return parse_bool_env("PG_POOL_ENABLED") is not False


def close_pool() -> None:
    """Close the connection pool if active (atexit-safe)."""
    global _POOL, _POOL_KEY
    with _POOL_LOCK:
        if _POOL is not None:
            try:
                _POOL.close()
            except Exception:
                try:
                    _logger.debug("连接池关闭异常", exc_info=True)
                except Exception:
                    pass  # logging may be torn down at interpreter shutdown
            _POOL = None
            _POOL_KEY = None


def _get_pool() -> Optional[Any]:
    global _POOL, _POOL_KEY

    if not _pool_enabled():
        return None

    key = get_connection_string()
    with _POOL_LOCK:
        if _POOL is not None and _POOL_KEY == key:
            return _POOL

        if _POOL is not None:
            try:
                _POOL.close()
            except Exception:
                _logger.debug("连接池关闭异常(重建)", exc_info=True)
            _POOL = None
            _POOL_KEY = None

        min_size = as_int_env("PG_POOL_MIN", 1, min_value=1)
        max_size = as_int_env("PG_POOL_MAX", 10, min_value=min_size)
        timeout = as_float_env("PG_POOL_TIMEOUT_SEC", 10.0, min_value=0.1)

        pool = PsycopgConnectionPool(
            conninfo=key,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"autocommit": True},
            open=False,
        )
        pool.open(wait=False)
        _logger.info("connection pool opened (min=%s, max=%s)", min_size, max_size)

        _POOL = pool
        _POOL_KEY = key
        return _POOL


@contextmanager
def connect() -> Generator[Any, None, None]:
    """Yield an autocommit connection, pooled when psycopg_pool is available."""
    _require_driver()
    pool = _get_pool()

    if pool is not None:
        with pool.connection() as conn:
            yield conn
        return

    with psycopg.connect(get_connection_string(), autocommit=True) as conn:
        yield conn


def _describe(cur: Any) -> list[ColumnMeta]:
    if cur.description is None:
        return []
    return [ColumnMeta(name=str(col.name), type_oid=int(col.type_code)) for col in cur.description]


def query(sql_text: str, params: Optional[Iterable[Any]] = None) -> QueryResult:
    """Execute one statement with `$N` positional parameters.

    Statements without a result set (plain INSERT/UPDATE/DDL) return no rows,
    no fields and the affected row count.
    """
    with connect() as conn:
        with psycopg.RawCursor(conn, row_factory=dict_row) as cur:
            cur.execute(sql_text, list(params or ()))
            fields = _describe(cur)
            rows = cur.fetchall() if cur.description is not None else []
            row_count = cur.rowcount if cur.rowcount is not None and cur.rowcount >= 0 else len(rows)
            return QueryResult(rows=rows, row_count=row_count, fields=fields)


def fetch_all(sql_text: str, params: Optional[Iterable[Any]] = None) -> list[dict[str, Any]]:
    """Execute a query and return all rows as a list of dicts."""
    return query(sql_text, params).rows


def fetch_one(sql_text: str, params: Optional[Iterable[Any]] = None) -> Optional[dict[str, Any]]:
    """Execute a query and return the first row as a dict, or None."""
    rows = fetch_all(sql_text, params)
    return rows[0] if rows else None


atexit.register(close_pool)
