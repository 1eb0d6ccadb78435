"""参数 JSON Schema 的校验与运行时转换。

- `is_valid_json_schema`: 结构校验（jsonschema 元模式检查）
- `build_value_validator`: 整体入参校验器（默认值 / 必填 / 类型）
- `build_field_validators`: 按字段拆分的校验器，供 MCP 工具声明入参

Supported property types: string, number, integer, boolean and array (with an
optional homogeneous ``items`` schema). Any other declared type, including a
missing one, is accepted without checks.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Annotated, Any, Mapping, Optional, Union

from jsonschema.exceptions import SchemaError
from jsonschema.validators import Draft202012Validator, validator_for
from pydantic import Field, StrictBool, StrictFloat, StrictInt, StrictStr, WithJsonSchema

__all__ = [
    "MISSING",
    "FieldError",
    "SchemaValidationError",
    "ValidationResult",
    "FieldValidator",
    "ObjectValidator",
    "is_valid_json_schema",
    "build_value_validator",
    "build_field_validators",
]

_logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


@dataclass(frozen=True)
class FieldError:
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class SchemaValidationError(ValueError):
    """Input rejected by a value validator; carries every failing field."""

    def __init__(self, errors: list[FieldError]):
        self.errors = list(errors)
        super().__init__("Parameter validation error: " + ", ".join(str(err) for err in self.errors))


@dataclass
class ValidationResult:
    value: Any = None
    errors: list[FieldError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def unwrap(self) -> Any:
        if self.errors:
            raise SchemaValidationError(self.errors)
        return self.value


def _json_type_name(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _join(path: str, key: Any) -> str:
    return f"{path}.{key}" if path else str(key)


def _mismatch(path: str, expected: str, value: Any) -> ValidationResult:
    return ValidationResult(errors=[FieldError(path, f"Expected {expected}, received {_json_type_name(value)}")])


class _TypeValidator:
    """Validates one value against a declared JSON type."""

    json_type = "any"

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        return ValidationResult(value=value)

    def annotation(self) -> Any:
        return Any


class _StringValidator(_TypeValidator):
    json_type = "string"

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        if not isinstance(value, str):
            return _mismatch(path, "string", value)
        return ValidationResult(value=value)

    def annotation(self) -> Any:
        return StrictStr


class _NumberValidator(_TypeValidator):
    json_type = "number"

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return _mismatch(path, "number", value)
        return ValidationResult(value=value)

    def annotation(self) -> Any:
        return Union[StrictInt, StrictFloat]


class _IntegerValidator(_TypeValidator):
    json_type = "integer"

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return _mismatch(path, "integer", value)
        if isinstance(value, float):
            if not value.is_integer():
                return ValidationResult(errors=[FieldError(path, "Expected integer, received float")])
            return ValidationResult(value=int(value))
        return ValidationResult(value=value)

    def annotation(self) -> Any:
        # whole floats such as 7.0 reach validate(), which does the whole-value check
        return Annotated[Union[StrictInt, StrictFloat], WithJsonSchema({"type": "integer"})]


class _BooleanValidator(_TypeValidator):
    json_type = "boolean"

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        if not isinstance(value, bool):
            return _mismatch(path, "boolean", value)
        return ValidationResult(value=value)

    def annotation(self) -> Any:
        return StrictBool


class _ArrayValidator(_TypeValidator):
    json_type = "array"

    def __init__(self, items: Optional[_TypeValidator] = None):
        self.items = items

    def validate(self, value: Any, path: str = "") -> ValidationResult:
        if not isinstance(value, (list, tuple)):
            return _mismatch(path, "array", value)
        if self.items is None:
            return ValidationResult(value=list(value))

        coerced: list[Any] = []
        errors: list[FieldError] = []
        for index, item in enumerate(value):
            result = self.items.validate(item, _join(path, index))
            errors.extend(result.errors)
            coerced.append(result.value)
        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value=coerced)

    def annotation(self) -> Any:
        item_annotation = self.items.annotation() if self.items is not None else Any
        return list[item_annotation]  # type: ignore[valid-type]


def _type_validator(prop_schema: Any) -> _TypeValidator:
    if not isinstance(prop_schema, Mapping):
        return _TypeValidator()

    declared = prop_schema.get("type")
    if declared == "string":
        return _StringValidator()
    if declared == "number":
        return _NumberValidator()
    if declared == "integer":
        return _IntegerValidator()
    if declared == "boolean":
        return _BooleanValidator()
    if declared == "array":
        items = prop_schema.get("items")
        return _ArrayValidator(_type_validator(items) if isinstance(items, Mapping) else None)
    return _TypeValidator()


@dataclass
class FieldValidator:
    """Validator for one named property, including required/default handling.

    `validate(MISSING)` yields the default when one is declared, an absent
    value (`MISSING`) for optional fields and a "Required" error otherwise.
    """

    name: str
    schema: Mapping[str, Any]
    type_validator: _TypeValidator
    required: bool = True
    default: Any = MISSING

    @property
    def has_default(self) -> bool:
        return self.default is not MISSING

    @property
    def description(self) -> Optional[str]:
        text = self.schema.get("description") if isinstance(self.schema, Mapping) else None
        return str(text) if text is not None else None

    @property
    def json_type(self) -> str:
        return self.type_validator.json_type

    def validate(self, value: Any = MISSING, path: Optional[str] = None) -> ValidationResult:
        field_path = self.name if path is None else path
        if value is MISSING:
            if self.has_default:
                return self.type_validator.validate(self.default, field_path)
            if self.required:
                return ValidationResult(errors=[FieldError(field_path, "Required")])
            return ValidationResult(value=MISSING)
        return self.type_validator.validate(value, field_path)

    def annotation(self) -> Any:
        """Pydantic annotation used to declare this field as a protocol input."""
        base = self.type_validator.annotation()
        if not self.required and not self.has_default:
            base = Optional[base]
        return Annotated[base, Field(description=self.description)]

    def protocol_default(self) -> Any:
        """Default declared to the protocol layer; MISSING means the input is required."""
        if self.has_default:
            return self.default
        if not self.required:
            return None
        return MISSING


class ObjectValidator:
    """Aggregate validator for a named-parameter object.

    Undeclared keys are dropped from the coerced output; errors from every
    field are collected before returning.
    """

    def __init__(self, fields: Mapping[str, FieldValidator]):
        self.fields = dict(fields)

    def validate(self, value: Any) -> ValidationResult:
        if value is None:
            value = {}
        if not isinstance(value, Mapping):
            return _mismatch("", "object", value)

        coerced: dict[str, Any] = {}
        errors: list[FieldError] = []
        for name, validator in self.fields.items():
            result = validator.validate(value.get(name, MISSING))
            if result.errors:
                errors.extend(result.errors)
                continue
            if result.value is not MISSING:
                coerced[name] = result.value

        if errors:
            return ValidationResult(errors=errors)
        return ValidationResult(value=coerced)


def is_valid_json_schema(candidate: Any) -> bool:
    """Return True if ``candidate`` is an object accepted by the JSON Schema meta-schema."""
    if not isinstance(candidate, Mapping):
        return False

    cls = validator_for(candidate, default=Draft202012Validator)
    try:
        cls.check_schema(candidate)
    except SchemaError as exc:
        _logger.debug("invalid JSON schema: %s", exc.message)
        return False
    return True


def build_field_validators(schema: Mapping[str, Any]) -> dict[str, FieldValidator]:
    """Per-property validators for an object schema; other schemas declare no inputs."""
    if not isinstance(schema, Mapping) or schema.get("type") != "object":
        return {}
    properties = schema.get("properties")
    if not isinstance(properties, Mapping) or not properties:
        return {}

    raw_required = schema.get("required")
    required_names = set(raw_required) if isinstance(raw_required, (list, tuple)) else set()

    fields: dict[str, FieldValidator] = {}
    for name, prop_schema in properties.items():
        prop = prop_schema if isinstance(prop_schema, Mapping) else {}
        fields[str(name)] = FieldValidator(
            name=str(name),
            schema=prop,
            type_validator=_type_validator(prop),
            required=name in required_names,
            default=prop.get("default", MISSING),
        )
    return fields


def build_value_validator(schema: Mapping[str, Any]) -> ObjectValidator:
    return ObjectValidator(build_field_validators(schema))
