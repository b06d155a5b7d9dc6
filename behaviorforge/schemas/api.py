from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class ExecuteRequestBody(BaseModel):
    input_parameters: dict[str, Any] = Field(default_factory=dict)
    execution_context: dict[str, Any] = Field(default_factory=dict)
    session_id: str | None = Field(default=None, description="Resume an active session instead of starting one.")


class ExecuteResponse(BaseModel):
    agent_id: str
    output_data: dict[str, Any]
    execution_metadata: dict[str, Any]
    quality_score: float


class AgentSummary(BaseModel):
    agent_id: str
    required_fields: list[str] = Field(default_factory=list)
    optional_fields: list[str] = Field(default_factory=list)
    modes: dict[str, list[str]] = Field(default_factory=dict)
    requires_action: bool = True


class SessionResponse(BaseModel):
    id: str
    agent_id: str
    completed: bool
    total_calls: int
    messages: list[dict[str, Any]] = Field(default_factory=list)
    created_at: str
    updated_at: str
