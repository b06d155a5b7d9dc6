from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class DiscoveredTool(BaseModel):
    """A tool advertised by a provider's catalog.

    ``name`` is the routing key; it equals ``tool_name`` unless another
    provider already exposes the same name, in which case it is prefixed with
    the provider id.
    """

    name: str
    tool_name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=dict)
    provider_id: str
    safe: bool = True

    def as_function_spec(self) -> dict[str, Any]:
        parameters = self.input_schema or {"type": "object", "properties": {}}
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description or self.tool_name,
                "parameters": parameters,
            },
        }


class ToolInvocation(BaseModel):
    tool: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    provider_id: str | None = None
    success: bool = False
    content: str = ""
    error: str | None = None
    error_kind: str | None = None
    duration_ms: float = 0.0
