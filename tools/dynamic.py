"""保存查询的执行：校验入参 → 位置参数 → 执行 SQL → 解析类型名 → 结果。

同一流程同时服务于 `execute_sql_query`（临时 SQL）与每个保存的查询工具，
两者只在 SQL / 参数 schema / 阶段名上不同。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional, Sequence

from db import catalog, postgres
from parameter_mapper import map_to_positional, parse_named_parameters
from responses import StageLogger, ToolResponse, with_error_handling
from schema_validator import ObjectValidator, build_field_validators, build_value_validator
from tool_store import ToolDefinition
from tools.registry import DYNAMIC, ToolSpec
from utils import safe_json

__all__ = [
    "UNKNOWN_TYPE",
    "ExecutionStages",
    "DYNAMIC_STAGES",
    "ADHOC_STAGES",
    "execute_prepared",
    "execute_adhoc",
    "create_dynamic_tool_handler",
    "build_dynamic_tool_spec",
]

UNKNOWN_TYPE = "unknown"

QueryExecutor = Callable[[str, Sequence[Any]], postgres.QueryResult]
TypeResolver = Callable[[Iterable[int]], Mapping[int, str]]


@dataclass(frozen=True)
class ExecutionStages:
    validate: str
    execute: str
    resolve: str


DYNAMIC_STAGES = ExecutionStages("validating parameters", "executing SQL query", "resolving type names")
ADHOC_STAGES = ExecutionStages("parsing parameters", "executing query", "resolving type names")


def execute_prepared(
    sql_prepared: str,
    parameter_order: Sequence[str],
    validator: ObjectValidator,
    arguments: Optional[Mapping[str, Any]],
    log: StageLogger,
    stages: ExecutionStages = DYNAMIC_STAGES,
    executor: Optional[QueryExecutor] = None,
    type_resolver: Optional[TypeResolver] = None,
) -> dict[str, Any]:
    """Run one prepared statement and build the result payload.

    Raises:
        SchemaValidationError: If ``arguments`` fail ``validator`` (all failing
            fields are reported together).
    """
    run_query = executor or postgres.query
    resolve_types = type_resolver or catalog.get_type_names

    log(stages.validate)
    values = validator.validate(arguments or {}).unwrap()
    positional = map_to_positional(values, parameter_order)

    log(stages.execute)
    result = run_query(sql_prepared, positional)

    log(stages.resolve)
    type_names = resolve_types([col.type_oid for col in result.fields]) if result.fields else {}

    return {
        "rows": result.rows,
        "rowCount": result.row_count,
        "fields": [
            {
                "name": col.name,
                "dataType": type_names.get(col.type_oid, UNKNOWN_TYPE),
                "dataTypeID": col.type_oid,
            }
            for col in result.fields
        ],
    }


def _passthrough_schema(parameter_order: Sequence[str]) -> dict[str, Any]:
    return {"type": "object", "properties": {name: {} for name in parameter_order}}


def execute_adhoc(
    query: str,
    params: Optional[Mapping[str, Any]] = None,
    executor: Optional[QueryExecutor] = None,
    type_resolver: Optional[TypeResolver] = None,
) -> ToolResponse:
    """Execute request SQL with `:name` placeholders; absent names bind NULL."""

    def body(log: StageLogger) -> str:
        mapping = parse_named_parameters(query)
        validator = build_value_validator(_passthrough_schema(mapping.parameter_order))
        payload = execute_prepared(
            mapping.sql,
            mapping.parameter_order,
            validator,
            params,
            log,
            stages=ADHOC_STAGES,
            executor=executor,
            type_resolver=type_resolver,
        )
        return safe_json(payload, indent=2)

    return with_error_handling("executing SQL query", body)


def create_dynamic_tool_handler(
    definition: ToolDefinition,
    executor: Optional[QueryExecutor] = None,
    type_resolver: Optional[TypeResolver] = None,
) -> Callable[[Mapping[str, Any]], ToolResponse]:
    """Build the invoke function for a saved query.

    The validator is built once here; later edits to ``definition`` do not
    affect a handler that already exists.
    """
    validator = build_value_validator(definition.parameter_schema)
    sql_prepared = definition.sql_prepared
    parameter_order = tuple(definition.parameter_order)
    operation = f"executing tool '{definition.name}'"

    def handler(arguments: Mapping[str, Any]) -> ToolResponse:
        def body(log: StageLogger) -> str:
            payload = execute_prepared(
                sql_prepared,
                parameter_order,
                validator,
                arguments,
                log,
                stages=DYNAMIC_STAGES,
                executor=executor,
                type_resolver=type_resolver,
            )
            return safe_json(payload, indent=2)

        return with_error_handling(operation, body)

    return handler


def build_dynamic_tool_spec(
    definition: ToolDefinition,
    executor: Optional[QueryExecutor] = None,
    type_resolver: Optional[TypeResolver] = None,
) -> ToolSpec:
    """ToolSpec for a saved query: inputs come from its parameter schema."""
    fields = build_field_validators(definition.parameter_schema)
    return ToolSpec(
        name=definition.name,
        title=definition.description,
        description=definition.description,
        fields=fields,
        invoke=create_dynamic_tool_handler(definition, executor=executor, type_resolver=type_resolver),
        kind=DYNAMIC,
    )
