from __future__ import annotations

from typing import Any, Mapping

from ..core.exceptions import InputValidationError
from ..schemas.agents import AgentSpecification, FieldType, InputField

__all__ = ["format_parameters_for", "validate_input"]


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    return isinstance(value, float) and value.is_integer()


_TYPE_CHECKS = {
    FieldType.STRING: lambda value: isinstance(value, str),
    FieldType.ENUM: lambda value: isinstance(value, str),
    FieldType.OBJECT: lambda value: isinstance(value, Mapping),
    FieldType.ARRAY: lambda value: isinstance(value, (list, tuple)),
    FieldType.BOOLEAN: lambda value: isinstance(value, bool),
    FieldType.INTEGER: _is_integer,
}


def validate_input(spec: AgentSpecification, parameters: Mapping[str, Any]) -> None:
    """Check parameters against the declared schema; raises on the first offending field."""
    for field in spec.input_schema:
        if field.required and parameters.get(field.name) is None:
            raise InputValidationError(field.name, "required field is missing")

    for name, value in parameters.items():
        field = spec.field(name)
        if field is None or value is None:
            continue
        if not _TYPE_CHECKS[field.type](value):
            raise InputValidationError(name, f"expected {field.type.value}, got {type(value).__name__}")
        if field.enum and value not in field.enum:
            allowed = ", ".join(field.enum)
            raise InputValidationError(name, f"value '{value}' is not one of: {allowed}")


def _default_value(field: InputField) -> Any:
    if field.default is not None:
        return field.default
    if field.enum:
        return field.enum[0]
    return {
        FieldType.STRING: "not_specified",
        FieldType.ENUM: "not_specified",
        FieldType.OBJECT: {},
        FieldType.ARRAY: [],
        FieldType.BOOLEAN: False,
        FieldType.INTEGER: 0,
    }[field.type]


def _similar_value(name: str, parameters: Mapping[str, Any]) -> Any:
    variants = {name, name.replace("_", ""), name.replace("_", "-")}
    for key, value in parameters.items():
        if key in variants or key.lower().replace("-", "_") == name.lower():
            return value
    tokens = [token for token in name.lower().split("_") if len(token) > 3]
    for key, value in parameters.items():
        lowered = key.lower()
        if tokens and any(token in lowered for token in tokens):
            return value
    return None


def format_parameters_for(spec: AgentSpecification, parameters: Mapping[str, Any]) -> dict[str, Any]:
    """Adapt another agent's parameters to ``spec``'s schema.

    Matching names are carried over, near matches are borrowed when they
    type-check, and missing required fields get a type-appropriate default.
    """
    adapted: dict[str, Any] = {}
    for field in spec.input_schema:
        value = parameters.get(field.name)
        if value is None:
            value = _similar_value(field.name, parameters)
        if value is not None and (
            not _TYPE_CHECKS[field.type](value) or (field.enum and value not in field.enum)
        ):
            value = None
        if value is None and field.required:
            value = _default_value(field)
        if value is not None:
            adapted[field.name] = value
    return adapted
