"""命名参数 SQL (`:name`) 与 PostgreSQL 位置参数 (`$N`) 之间的转换。

    >>> parse_named_parameters("SELECT * FROM users WHERE id = :user_id AND status = :status")
    ParameterMapping(sql='SELECT * FROM users WHERE id = $1 AND status = $2', parameter_order=['user_id', 'status'])

A colon preceded by another colon is a type cast (`created_at::date`), not a
placeholder. The scanner does not understand string literals or comments:
`':not_a_param'` inside quotes is rewritten like any other placeholder, so
SQL templates must not contain colon-identifier text in literals (bind such
values as parameters instead).
"""

from __future__ import annotations

import re
from typing import Any, Mapping, NamedTuple, Sequence

__all__ = [
    "ParameterMapping",
    "parse_named_parameters",
    "extract_named_parameters",
    "map_to_positional",
]

_NAMED_PARAM_RE = re.compile(r"(?<!:):([A-Za-z_][A-Za-z0-9_]*)")


class ParameterMapping(NamedTuple):
    sql: str
    parameter_order: list[str]


def parse_named_parameters(sql_text: str) -> ParameterMapping:
    """Rewrite `:name` placeholders to `$N`.

    The first occurrence of a name takes the next position; repeated
    occurrences reuse it, so ``parameter_order[i]`` binds ``$<i+1>``.
    """
    parameter_order: list[str] = []
    positions: dict[str, int] = {}

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in positions:
            parameter_order.append(name)
            positions[name] = len(parameter_order)
        return f"${positions[name]}"

    sql = _NAMED_PARAM_RE.sub(_replace, sql_text)
    return ParameterMapping(sql=sql, parameter_order=parameter_order)


def extract_named_parameters(sql_text: str) -> list[str]:
    """Return the unique placeholder names in first-occurrence order."""
    return list(dict.fromkeys(_NAMED_PARAM_RE.findall(sql_text)))


def map_to_positional(params: Mapping[str, Any], parameter_order: Sequence[str]) -> list[Any]:
    """Order named values for `$N` binding.

    Names missing from ``params`` map to None (bound as SQL NULL); rejecting
    missing required values is the caller's validator's job.
    """
    return [params.get(name) for name in parameter_order]
