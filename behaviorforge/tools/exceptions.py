from __future__ import annotations

from typing import Any

from ..core.exceptions import BehaviorForgeError


class ToolError(BehaviorForgeError):
    """Base class for tooling-related failures."""

    kind = "tool_error"

    def __init__(self, message: str, *, tool: str | None = None) -> None:
        super().__init__(message)
        self.tool = tool

    def details(self) -> dict[str, Any]:
        return {"tool": self.tool}


class ToolNotFoundError(ToolError):
    """Raised when no provider can resolve the requested tool."""

    kind = "tool_not_found"

    def __init__(self, tool: str) -> None:
        super().__init__(f"Tool '{tool}' is not available from any provider", tool=tool)


class ToolUnsafeError(ToolError):
    """Raised when a tool flagged unsafe is requested; it is never invoked."""

    kind = "tool_unsafe"

    def __init__(self, tool: str) -> None:
        super().__init__(f"Tool '{tool}' is flagged unsafe and was refused", tool=tool)


class ToolPolicyViolationError(ToolError):
    """Raised when an agent calls a tool outside the list permitted for its mode."""

    kind = "tool_not_permitted"

    def __init__(self, tool: str, *, agent_id: str, mode: str) -> None:
        super().__init__(f"Tool '{tool}' is not permitted for agent '{agent_id}' in mode '{mode}'", tool=tool)
        self.agent_id = agent_id
        self.mode = mode

    def details(self) -> dict[str, Any]:
        return {"tool": self.tool, "agent_id": self.agent_id, "mode": self.mode}


class ToolExecutionError(ToolError):
    """Raised when a provider fails to execute a tool call."""

    kind = "tool_execution_error"

    def __init__(self, tool: str, *, provider_id: str | None, reason: str) -> None:
        where = f" on provider '{provider_id}'" if provider_id else ""
        super().__init__(f"Tool '{tool}' failed{where}: {reason}", tool=tool)
        self.provider_id = provider_id
        self.reason = reason

    def details(self) -> dict[str, Any]:
        return {"tool": self.tool, "provider_id": self.provider_id, "reason": self.reason}


class ToolTimeoutError(ToolExecutionError):
    """Raised when a provider request exceeds its timeout."""


class ProviderProtocolError(ToolError):
    """Raised when a provider answers a request with an error or a malformed message."""

    kind = "protocol_error"

    def __init__(self, provider_id: str, method: str, reason: str, *, code: int | None = None) -> None:
        super().__init__(f"Provider '{provider_id}' rejected '{method}': {reason}")
        self.provider_id = provider_id
        self.method = method
        self.reason = reason
        self.code = code

    def details(self) -> dict[str, Any]:
        return {"provider_id": self.provider_id, "method": self.method, "reason": self.reason, "code": self.code}


class CircuitBreakerTrippedError(ToolError):
    """Raised after too many consecutive tool failures; aborts the whole run."""

    kind = "circuit_breaker_tripped"

    def __init__(self, failures: int, *, tool: str | None = None) -> None:
        super().__init__(
            f"Tool circuit breaker tripped after {failures} consecutive failures",
            tool=tool,
        )
        self.failures = failures

    def details(self) -> dict[str, Any]:
        return {"failures": self.failures, "tool": self.tool}
