"""公共工具函数。"""

from __future__ import annotations

import json
import os
import uuid
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Optional

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool_env(name: str) -> Optional[bool]:
    raw = str(os.getenv(name, "") or "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    return None


def as_int_env(name: str, default: int, min_value: int = 0) -> int:
    """读取并规范化整型环境变量。"""
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except (TypeError, ValueError):
        value = default
    return max(min_value, value)


def as_float_env(name: str, default: float, min_value: float = 0.0) -> float:
    """读取并规范化浮点型环境变量。"""
    raw = os.getenv(name, str(default))
    try:
        value = float(raw)
    except (TypeError, ValueError):
        value = default
    return max(min_value, value)


def as_str_env(name: str, default: str = "") -> str:
    """读取字符串环境变量，空白值视为未设置。"""
    raw = str(os.getenv(name, "") or "").strip()
    return raw or default


class SafeEncoder(json.JSONEncoder):
    """JSON encoder for database rows (datetime, Decimal, UUID, bytes, ...)."""

    def default(self, o):
        if isinstance(o, (datetime, date, time)):
            return o.isoformat()
        if isinstance(o, timedelta):
            return str(o)
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, uuid.UUID):
            return str(o)
        if isinstance(o, (bytes, bytearray, memoryview)):
            return bytes(o).decode("utf-8", errors="replace")
        if isinstance(o, (set, frozenset)):
            return sorted(o, key=str)
        return super().default(o)


def safe_json(obj: Any, **kw: Any) -> str:
    """json.dumps with safe encoder for DB rows."""
    return json.dumps(obj, ensure_ascii=False, cls=SafeEncoder, **kw)


def plural(count: int, singular: str, plural_form: Optional[str] = None) -> str:
    """Return ``singular`` or its plural form depending on ``count``."""
    if count == 1:
        return singular
    return plural_form if plural_form is not None else f"{singular}s"
