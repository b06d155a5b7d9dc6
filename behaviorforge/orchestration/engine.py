from __future__ import annotations

import asyncio
import contextvars
import json
import re
import time
from enum import Enum
from typing import Any, Mapping, Sequence

from ..agents.registry import SpecificationRegistry
from ..agents.validation import validate_input
from ..core import metrics
from ..core.config import EngineSettings
from ..core.exceptions import (
    BackendError,
    BehaviorForgeError,
    HonestyRejectedError,
    NoActionProducedError,
    QualityRejectedError,
)
from ..core.logging import get_logger
from ..schemas.agents import AgentSpecification, ExecutionRequest, ExecutionResult
from ..schemas.quality import HonestyAssessment, QualityAssessment
from ..schemas.tools import DiscoveredTool, ToolInvocation
from ..services.honesty import HonestyValidator
from ..services.llm import BackendResponse, BackendToolCall, ChatBackend
from ..services.quality import QualityValidator
from ..services.refinement import RefinementContext, RefinementManager
from ..services.sessions import SessionManager
from ..tools.aliases import canonical_tool_name
from ..tools.exceptions import CircuitBreakerTrippedError, ToolError, ToolPolicyViolationError
from ..tools.router import CircuitBreaker, ToolRouter
from .coordinator import MultiAgentCoordinator
from .prompts import build_system_prompt, format_user_input, truncate_content

__all__ = ["BehavioralEngine", "QualityPolicy"]

logger = get_logger(name=__name__)

_JSON_BLOCK = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)

# Shared by a top-level execute and the coordinator children it spawns.
_run_breaker: contextvars.ContextVar[CircuitBreaker | None] = contextvars.ContextVar("run_breaker", default=None)


class QualityPolicy(str, Enum):
    STRICT = "strict"
    GATED = "gated"


def _extract_json_object(text: str) -> dict[str, Any] | None:
    candidates = [text.strip()]
    candidates.extend(match.group(1) for match in _JSON_BLOCK.finditer(text))
    start, end = text.find("{"), text.rfind("}")
    if 0 <= start < end:
        candidates.append(text[start : end + 1])
    for candidate in candidates:
        if not candidate.startswith("{"):
            continue
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _describe_calls(calls: Sequence[BackendToolCall]) -> str:
    return "Requested tools: " + ", ".join(call.name for call in calls)


class BehavioralEngine:
    """Runs agent invocations end to end.

    One ``execute`` validates the request, performs a backend round trip,
    executes the emitted tool calls, scores the result and, under the gated
    policy, re-invokes the agent with corrective feedback until it passes or
    refinement stops. The orchestrator agent additionally fans out to the
    specialists it names through the coordinator.
    """

    def __init__(
        self,
        *,
        registry: SpecificationRegistry,
        backend: ChatBackend,
        router: ToolRouter,
        sessions: SessionManager,
        settings: EngineSettings | None = None,
        quality: QualityValidator | None = None,
        honesty: HonestyValidator | None = None,
        refinement: RefinementManager | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._registry = registry
        self._backend = backend
        self._router = router
        self._sessions = sessions
        self._quality = quality or QualityValidator()
        self._honesty = honesty or HonestyValidator()
        self._refinement = refinement or RefinementManager(sessions=sessions)
        self._policy = QualityPolicy(self._settings.quality_policy)
        self._coordinator = MultiAgentCoordinator(
            registry=registry,
            executor=self._execute_child,
            orchestrator_id=self._settings.orchestrator_agent_id,
            max_parallel=self._settings.max_parallel_agents,
            per_call_timeout=self._settings.child_timeout_seconds,
            sessions=sessions,
        )

    @property
    def coordinator(self) -> MultiAgentCoordinator:
        return self._coordinator

    @property
    def policy(self) -> QualityPolicy:
        return self._policy

    async def execute(
        self,
        agent_id: str,
        input_parameters: Mapping[str, Any] | None = None,
        execution_context: Mapping[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> ExecutionResult:
        spec = self._registry.get(agent_id)
        params = dict(input_parameters or {})
        validate_input(spec, params)
        request = ExecutionRequest(
            agent_id=spec.agent_id,
            input_parameters=params,
            execution_context=dict(execution_context or {}),
            session_id=session_id,
        )

        started = time.perf_counter()
        token = _run_breaker.set(self._router.new_breaker()) if _run_breaker.get() is None else None
        try:
            result = await self._run(spec, request)
        except BehaviorForgeError as exc:
            metrics.record_agent_execution(agent=spec.agent_id, outcome=exc.kind, latency=time.perf_counter() - started)
            raise
        finally:
            if token is not None:
                _run_breaker.reset(token)
        outcome = "passed" if result.execution_metadata.get("quality_passed") else "returned_unpassed"
        metrics.record_agent_execution(agent=spec.agent_id, outcome=outcome, latency=time.perf_counter() - started)
        return result

    async def _execute_child(
        self,
        agent_id: str,
        input_parameters: dict[str, Any],
        execution_context: dict[str, Any],
    ) -> ExecutionResult:
        return await self.execute(agent_id, input_parameters, execution_context)

    async def _run(self, spec: AgentSpecification, request: ExecutionRequest) -> ExecutionResult:
        mode = str(request.execution_context.get("execution_mode") or self._settings.default_mode)
        if request.session_id is not None:
            session = self._sessions.get_session(request.session_id)
        else:
            session = self._sessions.create_session(spec.agent_id)
        session_id = session.id
        log = logger.bind(agent=spec.agent_id, session_id=session_id, mode=mode)
        self._sessions.track_call(session_id)

        tools = self._router.available_tools(spec.tools_for(mode) or None)
        task = format_user_input(request)
        if not session.messages:
            system_prompt = build_system_prompt(
                spec, mode=mode, tools=tools, workspace_root=self._settings.workspace_root
            )
            self._sessions.append_turn(session_id, "system", system_prompt)
        self._sessions.append_turn(session_id, "user", task)

        attempt = 1
        result = await self._attempt(spec, request, session_id=session_id, mode=mode, tools=tools, attempt=attempt)
        quality, honesty = self._assess(result)
        refinement: dict[str, Any] = {"attempts": 0, "status": "not_required"}

        while not (quality.passed and honesty.compliant):
            if self._policy is QualityPolicy.STRICT:
                log.warning("result_rejected", score=quality.overall_score, reasons=quality.failure_reasons)
                if not quality.passed:
                    raise QualityRejectedError(spec.agent_id, quality)
                raise HonestyRejectedError(spec.agent_id, honesty)

            if not self._refinement.needs_refinement(
                quality, session_id=session_id, agent_type=spec.agent_id, honesty=honesty
            ):
                refinement["status"] = "not_refinable" if refinement["attempts"] == 0 else "exhausted"
                self._refinement.abandon(session_id, spec.agent_id)
                break

            prompt = self._refinement.generate_prompt(
                quality,
                context=RefinementContext(
                    agent_type=spec.agent_id,
                    requirements=tuple(spec.algorithm.get("requirements") or ()),
                    quality_criteria=tuple(spec.algorithm.get("quality_criteria") or ()),
                ),
                original_task=task,
                prior_response=str(result.output_data.get("analysis") or ""),
                honesty=honesty,
            )
            reason = ", ".join(quality.failure_reasons or honesty.violations or ["honesty_non_compliant"])
            self._refinement.track_attempt(session_id, spec.agent_id, quality.overall_score, reason, task=task)
            self._sessions.track_call(session_id)
            self._sessions.append_turn(session_id, "user", prompt)
            log.info("refinement_requested", attempt=attempt, score=quality.overall_score, reason=reason)

            attempt += 1
            prior = quality
            result = await self._attempt(spec, request, session_id=session_id, mode=mode, tools=tools, attempt=attempt)
            quality, honesty = self._assess(result)
            outcome = self._refinement.assess_success(
                session_id, spec.agent_id, prior, quality, honesty=honesty
            )
            refinement = outcome.as_dict()
            if quality.passed and honesty.compliant:
                break
            if not outcome.should_continue:
                break

        metadata = {
            **result.execution_metadata,
            "quality_passed": quality.passed,
            "honesty_compliant": honesty.compliant,
            "quality_assessment": quality.model_dump(mode="json"),
            "honesty_assessment": honesty.model_dump(mode="json"),
            "refinement": refinement,
            "quality_policy": self._policy.value,
        }
        final = result.model_copy(update={"quality_score": quality.overall_score, "execution_metadata": metadata})
        self._sessions.complete(session_id)
        log.info(
            "agent_execution_completed",
            attempts=attempt,
            score=quality.overall_score,
            passed=quality.passed,
            compliant=honesty.compliant,
        )
        return final

    async def _attempt(
        self,
        spec: AgentSpecification,
        request: ExecutionRequest,
        *,
        session_id: str,
        mode: str,
        tools: Sequence[DiscoveredTool],
        attempt: int,
    ) -> ExecutionResult:
        result = await self._round_trip(spec, session_id=session_id, mode=mode, tools=tools, attempt=attempt)
        if spec.agent_id == self._coordinator.orchestrator_id:
            result = await self._coordinator.coordinate(result, request, session_id=session_id)
        return result

    async def _round_trip(
        self,
        spec: AgentSpecification,
        *,
        session_id: str,
        mode: str,
        tools: Sequence[DiscoveredTool],
        attempt: int,
    ) -> ExecutionResult:
        session = self._sessions.get_session(session_id)
        timeout = self._settings.request_timeout_seconds
        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(self._backend.complete(session.messages, tools=tools), timeout=timeout)
        except asyncio.TimeoutError:
            raise BackendError(f"no response within {timeout}s", backend=self._backend.name) from None
        except BehaviorForgeError:
            raise
        except Exception as exc:
            logger.exception("backend_call_failed", agent=spec.agent_id, backend=self._backend.name)
            raise BackendError(str(exc) or type(exc).__name__, backend=self._backend.name) from exc
        if response.is_empty:
            raise BackendError("empty response", backend=self._backend.name)

        self._sessions.append_turn(session_id, "assistant", response.content or _describe_calls(response.tool_calls))
        metrics.record_backend_tokens(
            agent=spec.agent_id,
            prompt_tokens=response.prompt_tokens,
            completion_tokens=response.completion_tokens,
        )
        if spec.requires_action and not response.tool_calls:
            raise NoActionProducedError(spec.agent_id)

        permitted = {canonical_tool_name(name) for name in spec.tools_for(mode)}
        invocations: list[ToolInvocation] = []
        for call in response.tool_calls:
            invocation = await self._invoke_tool(spec, call, mode=mode, permitted=permitted)
            invocations.append(invocation)
            body = invocation.content if invocation.success else f"error: {invocation.error}"
            self._sessions.append_turn(session_id, "tool", f"[{invocation.tool}] {body}")

        failures = sum(1 for invocation in invocations if not invocation.success)
        metadata = {
            "backend": self._backend.name,
            "model": response.model,
            "response_id": response.response_id,
            "prompt_tokens": response.prompt_tokens,
            "completion_tokens": response.completion_tokens,
            "total_tokens": response.total_tokens,
            "tool_call_count": len(invocations),
            "tool_failures": failures,
            "duration_ms": (time.perf_counter() - started) * 1000,
            "execution_mode": mode,
            "session_id": session_id,
            "attempt": attempt,
            "timeout_seconds": timeout,
        }
        return ExecutionResult(
            agent_id=spec.agent_id,
            output_data=self._build_output(spec, response, invocations),
            execution_metadata=metadata,
        )

    async def _invoke_tool(
        self,
        spec: AgentSpecification,
        call: BackendToolCall,
        *,
        mode: str,
        permitted: set[str],
    ) -> ToolInvocation:
        canonical = canonical_tool_name(call.name)
        if permitted and canonical not in permitted:
            violation = ToolPolicyViolationError(call.name, agent_id=spec.agent_id, mode=mode)
            logger.warning("tool_not_permitted", agent=spec.agent_id, tool=call.name, mode=mode)
            return ToolInvocation(
                tool=canonical,
                arguments=call.arguments,
                error=str(violation),
                error_kind=violation.kind,
            )
        try:
            return await self._router.invoke(call.name, call.arguments, breaker=_run_breaker.get())
        except CircuitBreakerTrippedError:
            raise
        except ToolError as exc:
            return ToolInvocation(
                tool=canonical,
                arguments=call.arguments,
                provider_id=getattr(exc, "provider_id", None),
                error=str(exc),
                error_kind=exc.kind,
            )

    def _build_output(
        self,
        spec: AgentSpecification,
        response: BackendResponse,
        invocations: Sequence[ToolInvocation],
    ) -> dict[str, Any]:
        limit = self._settings.max_context_size
        succeeded = sum(1 for invocation in invocations if invocation.success)
        output: dict[str, Any] = {
            "analysis": truncate_content(response.content, limit),
            "tool_results": {
                f"tool_call_{index}_{invocation.tool}": truncate_content(
                    invocation.content if invocation.success else f"error: {invocation.error}", limit
                )
                for index, invocation in enumerate(invocations, start=1)
            },
            "actions_taken": [
                {
                    "tool": invocation.tool,
                    "arguments": invocation.arguments,
                    "provider": invocation.provider_id,
                    "success": invocation.success,
                }
                for invocation in invocations
            ],
            "execution_summary": (
                f"{spec.agent_id} executed {len(invocations)} tool call(s): "
                f"{succeeded} succeeded, {len(invocations) - succeeded} failed"
            ),
        }

        parsed = _extract_json_object(response.content)
        if parsed is not None:
            output["result"] = parsed
            if "recommendations" in parsed:
                output["recommendations"] = parsed["recommendations"]

        steps = spec.algorithm.get("steps")
        if isinstance(steps, list) and steps:
            haystack = " ".join([response.content, *(invocation.tool for invocation in invocations)]).lower()
            analysis = []
            for index, step in enumerate(steps, start=1):
                action = step.get("action") if isinstance(step, Mapping) else step
                action_text = str(action or "")
                analysis.append(
                    {
                        "step": index,
                        "action": action_text,
                        "addressed": bool(action_text) and action_text.lower() in haystack,
                    }
                )
            output["algorithm_step_analysis"] = analysis
        return output

    def _assess(self, result: ExecutionResult) -> tuple[QualityAssessment, HonestyAssessment]:
        quality = self._quality.validate(result)
        honesty = self._honesty.validate(result)
        metrics.observe_quality_score(agent=result.agent_id, score=quality.overall_score)
        for violation in honesty.violations:
            metrics.increment_honesty_violation(agent=result.agent_id, violation=violation)
        logger.info(
            "result_assessed",
            agent=result.agent_id,
            score=quality.overall_score,
            passed=quality.passed,
            honesty_compliant=honesty.compliant,
        )
        return quality, honesty
