from __future__ import annotations

from enum import Enum
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field


class FieldType(str, Enum):
    STRING = "string"
    ENUM = "enum"
    OBJECT = "object"
    ARRAY = "array"
    BOOLEAN = "boolean"
    INTEGER = "integer"


class InputField(BaseModel):
    """One named field of an agent's declared input schema."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    type: FieldType = FieldType.STRING
    required: bool = True
    enum: tuple[str, ...] = ()
    description: str = ""
    default: Any = None


class AgentSpecification(BaseModel):
    """Declarative record of one agent role, loaded once and never mutated."""

    model_config = ConfigDict(frozen=True)

    agent_id: str = Field(..., min_length=1)
    input_schema: tuple[InputField, ...] = ()
    algorithm: dict[str, Any] = Field(default_factory=dict)
    tools: dict[str, tuple[str, ...]] = Field(default_factory=dict)

    @property
    def requires_action(self) -> bool:
        return bool(self.algorithm.get("requires_action", True))

    @property
    def required_fields(self) -> tuple[str, ...]:
        return tuple(field.name for field in self.input_schema if field.required)

    def field(self, name: str) -> InputField | None:
        for candidate in self.input_schema:
            if candidate.name == name:
                return candidate
        return None

    def tools_for(self, mode: str) -> tuple[str, ...]:
        return self.tools.get(mode, ())

    @classmethod
    def from_descriptor(cls, payload: Mapping[str, Any]) -> "AgentSpecification":
        """Build a specification from a ``{agent_id, input_schema, algorithm, tools}`` descriptor.

        ``input_schema`` may be a list of field objects, or a mapping from field
        name to either a bare type string or a field object without ``name``.
        """
        raw_schema = payload.get("input_schema") or []
        fields: list[InputField] = []
        if isinstance(raw_schema, Mapping):
            for name, definition in raw_schema.items():
                if isinstance(definition, str):
                    fields.append(InputField(name=name, type=FieldType(definition)))
                else:
                    fields.append(InputField(name=name, **dict(definition)))
        else:
            for definition in raw_schema:
                fields.append(InputField(**dict(definition)))

        raw_tools = payload.get("tools") or {}
        if not isinstance(raw_tools, Mapping):
            # A flat list applies to every mode.
            raw_tools = {"default": list(raw_tools)}
        tools = {str(mode): tuple(str(name) for name in names) for mode, names in raw_tools.items()}

        return cls(
            agent_id=str(payload["agent_id"]),
            input_schema=tuple(fields),
            algorithm=dict(payload.get("algorithm") or {}),
            tools=tools,
        )


class ExecutionRequest(BaseModel):
    agent_id: str = Field(..., min_length=1)
    input_parameters: dict[str, Any] = Field(default_factory=dict)
    execution_context: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = None


class ExecutionResult(BaseModel):
    """Outcome of one execution cycle; treated as immutable once returned."""

    model_config = ConfigDict(frozen=True)

    agent_id: str
    output_data: dict[str, Any] = Field(default_factory=dict)
    execution_metadata: dict[str, Any] = Field(default_factory=dict)
    quality_score: float = Field(0.0, ge=0.0, le=1.0)
