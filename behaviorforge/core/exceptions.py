from __future__ import annotations

from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from ..schemas.quality import HonestyAssessment, QualityAssessment


class BehaviorForgeError(RuntimeError):
    """Base class for every error the engine surfaces to callers.

    Each subclass sets ``kind`` and stores the offending field or name as an
    attribute so that callers can render the failure without log access.
    """

    kind = "behaviorforge_error"

    def details(self) -> dict[str, Any]:
        return {}

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"kind": self.kind, "message": str(self)}
        payload.update(self.details())
        return payload


class SpecNotFoundError(BehaviorForgeError):
    kind = "spec_not_found"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"No agent specification registered for '{agent_id}'")
        self.agent_id = agent_id

    def details(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id}


class InputValidationError(BehaviorForgeError):
    kind = "validation_error"

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid input field '{field}': {reason}")
        self.field = field
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"field": self.field, "reason": self.reason}


class BackendError(BehaviorForgeError):
    """Raised when the language-model backend times out or returns nothing usable."""

    kind = "backend_error"

    def __init__(self, reason: str, *, backend: str | None = None) -> None:
        super().__init__(f"Backend call failed: {reason}")
        self.reason = reason
        self.backend = backend

    def details(self) -> dict[str, Any]:
        return {"reason": self.reason, "backend": self.backend}


class NoActionProducedError(BehaviorForgeError):
    kind = "no_action_produced"

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent '{agent_id}' must execute tools but returned no tool calls")
        self.agent_id = agent_id

    def details(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id}


class QualityRejectedError(BehaviorForgeError):
    kind = "quality_rejected"

    def __init__(self, agent_id: str, assessment: "QualityAssessment") -> None:
        reasons = ", ".join(assessment.failure_reasons) or "below threshold"
        super().__init__(
            f"Output of '{agent_id}' scored {assessment.overall_score:.2f} "
            f"(threshold {assessment.threshold:.2f}): {reasons}"
        )
        self.agent_id = agent_id
        self.assessment = assessment

    def details(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id, "assessment": self.assessment.model_dump(mode="json")}


class HonestyRejectedError(BehaviorForgeError):
    kind = "honesty_rejected"

    def __init__(self, agent_id: str, assessment: "HonestyAssessment") -> None:
        violations = ", ".join(assessment.violations) or "insufficient disclosure or evidence"
        super().__init__(f"Output of '{agent_id}' is not honesty compliant: {violations}")
        self.agent_id = agent_id
        self.assessment = assessment

    def details(self) -> dict[str, Any]:
        return {"agent_id": self.agent_id, "assessment": self.assessment.model_dump(mode="json")}


class SessionNotFoundError(BehaviorForgeError):
    kind = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Unknown session '{session_id}'")
        self.session_id = session_id

    def details(self) -> dict[str, Any]:
        return {"session_id": self.session_id}


class SessionClosedError(BehaviorForgeError):
    kind = "session_closed"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session '{session_id}' is completed and cannot be modified")
        self.session_id = session_id

    def details(self) -> dict[str, Any]:
        return {"session_id": self.session_id}


class SessionLimitExceededError(BehaviorForgeError):
    kind = "session_limit_exceeded"

    def __init__(self, limit_kind: Literal["calls", "refinements"], *, session_id: str, limit: int) -> None:
        super().__init__(f"Session '{session_id}' exceeded its {limit_kind} ceiling of {limit}")
        self.limit_kind = limit_kind
        self.session_id = session_id
        self.limit = limit

    def details(self) -> dict[str, Any]:
        return {"limit_kind": self.limit_kind, "session_id": self.session_id, "limit": self.limit}


class PersistenceError(BehaviorForgeError):
    kind = "persistence_error"

    def __init__(self, session_id: str, path: str, reason: str) -> None:
        super().__init__(f"Failed to persist session '{session_id}' to {path}: {reason}")
        self.session_id = session_id
        self.path = path
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "path": self.path, "reason": self.reason}
