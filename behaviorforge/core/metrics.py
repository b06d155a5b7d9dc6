from __future__ import annotations

from prometheus_client import Counter, Histogram

AGENT_EXECUTIONS_TOTAL = Counter(
    "behaviorforge_agent_executions_total",
    "Agent executions by final outcome",
    labelnames=("agent", "outcome"),
)

AGENT_LATENCY_SECONDS = Histogram(
    "behaviorforge_agent_latency_seconds",
    "Wall-clock latency of a full agent execution",
    labelnames=("agent",),
)

BACKEND_TOKENS_TOTAL = Counter(
    "behaviorforge_backend_tokens_total",
    "Tokens reported by the language-model backend",
    labelnames=("agent", "direction"),
)

QUALITY_SCORE = Histogram(
    "behaviorforge_quality_score",
    "Overall quality scores assigned to agent results",
    labelnames=("agent",),
    buckets=(0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0),
)

HONESTY_VIOLATIONS_TOTAL = Counter(
    "behaviorforge_honesty_violations_total",
    "Honesty violations detected in agent results",
    labelnames=("agent", "violation"),
)

REFINEMENT_ATTEMPTS_TOTAL = Counter(
    "behaviorforge_refinement_attempts_total",
    "Refinement attempts grouped by observed score trend",
    labelnames=("agent", "trend"),
)

TOOL_INVOCATIONS_TOTAL = Counter(
    "behaviorforge_tool_invocations_total",
    "Tool invocations by provider and outcome",
    labelnames=("tool", "provider", "outcome"),
)

TOOL_LATENCY_SECONDS = Histogram(
    "behaviorforge_tool_latency_seconds",
    "Latency for tool invocations",
    labelnames=("tool",),
)

CIRCUIT_BREAKER_TRIPS_TOTAL = Counter(
    "behaviorforge_circuit_breaker_trips_total",
    "Runs aborted by the tool circuit breaker",
)

COORDINATOR_CHILDREN_TOTAL = Counter(
    "behaviorforge_coordinator_children_total",
    "Child agent executions dispatched by the coordinator",
    labelnames=("agent", "status"),
)

SESSION_LIMIT_TOTAL = Counter(
    "behaviorforge_session_limit_total",
    "Session ceilings hit",
    labelnames=("kind",),
)

SESSION_PERSIST_FAILURES_TOTAL = Counter(
    "behaviorforge_session_persist_failures_total",
    "Session writes that failed and were kept in memory only",
)


def record_agent_execution(*, agent: str, outcome: str, latency: float) -> None:
    AGENT_EXECUTIONS_TOTAL.labels(agent=agent, outcome=outcome).inc()
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(max(0.0, latency))


def record_backend_tokens(*, agent: str, prompt_tokens: int, completion_tokens: int) -> None:
    if prompt_tokens:
        BACKEND_TOKENS_TOTAL.labels(agent=agent, direction="prompt").inc(prompt_tokens)
    if completion_tokens:
        BACKEND_TOKENS_TOTAL.labels(agent=agent, direction="completion").inc(completion_tokens)


def observe_quality_score(*, agent: str, score: float) -> None:
    QUALITY_SCORE.labels(agent=agent).observe(max(0.0, min(1.0, score)))


def increment_honesty_violation(*, agent: str, violation: str) -> None:
    HONESTY_VIOLATIONS_TOTAL.labels(agent=agent, violation=violation).inc()


def record_refinement_attempt(*, agent: str, trend: str) -> None:
    REFINEMENT_ATTEMPTS_TOTAL.labels(agent=agent, trend=trend).inc()


def observe_tool_invocation(*, tool: str, provider: str | None, outcome: str, latency: float) -> None:
    TOOL_INVOCATIONS_TOTAL.labels(tool=tool, provider=provider or "none", outcome=outcome).inc()
    TOOL_LATENCY_SECONDS.labels(tool=tool).observe(max(0.0, latency))


def increment_circuit_breaker_trip() -> None:
    CIRCUIT_BREAKER_TRIPS_TOTAL.inc()


def record_coordinator_child(*, agent: str, status: str) -> None:
    COORDINATOR_CHILDREN_TOTAL.labels(agent=agent, status=status).inc()


def increment_session_limit(*, kind: str) -> None:
    SESSION_LIMIT_TOTAL.labels(kind=kind).inc()


def increment_session_persist_failure() -> None:
    SESSION_PERSIST_FAILURES_TOTAL.inc()
