from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field

TurnRole = Literal["system", "user", "assistant", "tool"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    role: TurnRole
    content: str
    timestamp: datetime = Field(default_factory=utcnow)


class ConversationSession(BaseModel):
    id: str
    agent_id: str
    messages: list[Turn] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed: bool = False
    total_calls: int = Field(0, ge=0)
    refinement_counts: dict[str, int] = Field(default_factory=dict)

    @property
    def last_timestamp(self) -> datetime | None:
        if not self.messages:
            return None
        return self.messages[-1].timestamp

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "turns": len(self.messages),
            "total_calls": self.total_calls,
            "refinements": sum(self.refinement_counts.values()),
            "completed": self.completed,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
