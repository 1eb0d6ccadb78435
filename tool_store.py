"""保存查询（saved query）的文件存储。

每个工具一条 JSON 记录：`<data_dir>/tools/<name>.json`。
写入先落 tmp 文件再 os.replace，读者不会看到半写的记录。
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

__all__ = [
    "ToolDefinition",
    "ToolStore",
    "ToolStoreError",
    "CorruptToolError",
]

_logger = logging.getLogger(__name__)

TOOLS_SUBDIR = "tools"
RECORD_SUFFIX = ".json"


class ToolStoreError(RuntimeError):
    """Filesystem failure while reading or writing tool records."""


class CorruptToolError(ToolStoreError):
    """A tool record exists but is not valid JSON or lacks required fields."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"invalid tool record {self.path}: {reason}")


@dataclass
class ToolDefinition:
    """Persisted form of one saved query.

    ``sql_prepared`` is ``sql_query`` with `:name` placeholders rewritten to
    `$N`; ``parameter_order[i]`` is the name bound to ``$<i+1>``.
    """

    name: str
    description: str
    sql_query: str
    sql_prepared: str
    parameter_schema: dict[str, Any] = field(default_factory=dict)
    parameter_order: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "sql_query": self.sql_query,
            "sql_prepared": self.sql_prepared,
            "parameter_schema": self.parameter_schema,
            "parameter_order": list(self.parameter_order),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "ToolDefinition":
        """Build a definition from a decoded record; raises ValueError on bad shape."""
        if not isinstance(data, dict):
            raise ValueError("record must be a JSON object")

        for key in ("name", "description", "sql_query", "sql_prepared"):
            if not isinstance(data.get(key), str):
                raise ValueError(f"'{key}' must be a string")

        schema = data.get("parameter_schema")
        if not isinstance(schema, dict):
            raise ValueError("'parameter_schema' must be an object")

        order = data.get("parameter_order")
        if not isinstance(order, list) or not all(isinstance(item, str) for item in order):
            raise ValueError("'parameter_order' must be a list of strings")

        return cls(
            name=data["name"],
            description=data["description"],
            sql_query=data["sql_query"],
            sql_prepared=data["sql_prepared"],
            parameter_schema=schema,
            parameter_order=list(order),
        )


def _atomic_write_json(path: Path, data: Any) -> None:
    content = json.dumps(data, ensure_ascii=False, indent=2)
    tmp = path.with_name(f".{path.name}.tmp-{os.getpid()}")
    try:
        tmp.write_text(content, encoding="utf-8")
        os.replace(tmp, path)
    except BaseException:
        tmp.unlink(missing_ok=True)
        raise


class ToolStore:
    """Directory-backed store of ToolDefinition records keyed by tool name."""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.tools_dir = self.data_dir / TOOLS_SUBDIR

    def _record_path(self, name: str) -> Path:
        tool_name = str(name or "").strip()
        if not tool_name:
            raise ValueError("tool name 不能为空")
        if "/" in tool_name or "\\" in tool_name or tool_name.startswith("."):
            raise ValueError(f"invalid tool name for storage: {tool_name!r}")
        return self.tools_dir / f"{tool_name}{RECORD_SUFFIX}"

    def ensure_data_directory(self) -> None:
        try:
            self.tools_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ToolStoreError(f"cannot create tool directory {self.tools_dir}: {exc}") from exc

    def save(self, definition: ToolDefinition) -> Path:
        """Write (or overwrite) the record for ``definition.name``."""
        path = self._record_path(definition.name)
        self.ensure_data_directory()
        try:
            _atomic_write_json(path, definition.to_dict())
        except OSError as exc:
            raise ToolStoreError(f"cannot write tool record {path}: {exc}") from exc
        _logger.debug("saved tool record %s", path)
        return path

    def _read(self, path: Path) -> ToolDefinition:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ToolStoreError(f"cannot read tool record {path}: {exc}") from exc
        try:
            return ToolDefinition.from_dict(json.loads(raw))
        except json.JSONDecodeError as exc:
            raise CorruptToolError(path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc
        except ValueError as exc:
            raise CorruptToolError(path, str(exc)) from exc

    def load(self, name: str) -> Optional[ToolDefinition]:
        """Return the stored definition, or None if no record exists."""
        path = self._record_path(name)
        if not path.is_file():
            return None
        return self._read(path)

    def load_all(self) -> list[ToolDefinition]:
        """Load every `*.json` record, sorted by file name.

        Other files in the directory are ignored; a corrupt record raises
        CorruptToolError rather than being skipped.
        """
        self.ensure_data_directory()
        try:
            paths = sorted(p for p in self.tools_dir.iterdir() if p.is_file() and p.suffix == RECORD_SUFFIX)
        except OSError as exc:
            raise ToolStoreError(f"cannot list tool directory {self.tools_dir}: {exc}") from exc
        return [self._read(path) for path in paths]

    def delete(self, name: str) -> bool:
        """Remove the record; returns False when it was already absent."""
        path = self._record_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise ToolStoreError(f"cannot delete tool record {path}: {exc}") from exc
        _logger.debug("deleted tool record %s", path)
        return True
