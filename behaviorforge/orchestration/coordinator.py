"""
Multi-Agent Coordination

The orchestrator agent names the specialists it needs in its own reply;
the coordinator finds those mentions, runs every named child through the
engine under a bounded worker pool, and folds the results back into the
orchestrator's result.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Iterable, Literal, Sequence

from ..agents.registry import SpecificationRegistry
from ..agents.validation import format_parameters_for
from ..core import metrics
from ..core.exceptions import BehaviorForgeError
from ..core.logging import get_logger
from ..schemas.agents import ExecutionRequest, ExecutionResult
from ..services.sessions import SessionManager
from ..tools.exceptions import CircuitBreakerTrippedError

__all__ = ["ChildExecutor", "ChildResult", "MultiAgentCoordinator"]

logger = get_logger(name=__name__)

ChildExecutor = Callable[[str, dict[str, Any], dict[str, Any]], Awaitable[ExecutionResult]]

SUMMARY_CHARS = 240


@dataclass(slots=True)
class ChildResult:
    """Tagged outcome of one child execution."""

    agent_id: str
    status: Literal["success", "failed"]
    output_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    quality_score: float = 0.0
    error: str | None = None
    error_kind: str | None = None
    execution_time_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.status == "success"

    def as_dict(self) -> dict[str, Any]:
        if self.success:
            return {
                "agent_id": self.agent_id,
                "status": self.status,
                "output_data": self.output_data,
                "metadata": self.metadata,
                "quality_score": self.quality_score,
                "execution_time_ms": self.execution_time_ms,
            }
        return {
            "agent_id": self.agent_id,
            "status": self.status,
            "error": self.error,
            "error_kind": self.error_kind,
            "execution_time_ms": self.execution_time_ms,
        }


def _summarize(output: dict[str, Any]) -> str:
    for key in ("summary", "execution_summary", "analysis"):
        value = output.get(key)
        if isinstance(value, str) and value.strip():
            text = " ".join(value.split())
            return text if len(text) <= SUMMARY_CHARS else text[: SUMMARY_CHARS - 3] + "..."
    return "completed without a textual summary"


class MultiAgentCoordinator:
    def __init__(
        self,
        *,
        registry: SpecificationRegistry,
        executor: ChildExecutor,
        orchestrator_id: str,
        max_parallel: int = 3,
        per_call_timeout: float = 300.0,
        sessions: SessionManager | None = None,
    ) -> None:
        self._registry = registry
        self._executor = executor
        self._orchestrator_id = orchestrator_id
        self._max_parallel = max(1, max_parallel)
        self._per_call_timeout = per_call_timeout
        self._sessions = sessions
        self._semaphore = asyncio.Semaphore(self._max_parallel)

    @property
    def orchestrator_id(self) -> str:
        return self._orchestrator_id

    def detect_required_agents(self, texts: Iterable[str]) -> list[str]:
        """Agents mentioned by id (or id with separators as spaces), in registry order."""
        haystack = "\n".join(text for text in texts if text).lower()
        required: list[str] = []
        for agent_id in self._registry.agent_ids:
            if agent_id == self._orchestrator_id:
                continue
            literal = agent_id.lower()
            spaced = re.sub(r"[_\-]+", " ", literal)
            for needle in {literal, spaced}:
                if re.search(rf"(?<!\w){re.escape(needle)}(?!\w)", haystack):
                    required.append(agent_id)
                    break
        return required

    async def dispatch(
        self,
        children: Sequence[str],
        request: ExecutionRequest,
        *,
        parent_session_id: str | None = None,
    ) -> list[ChildResult]:
        tasks = [
            asyncio.create_task(self._run_child(agent_id, request, parent_session_id), name=f"child-{agent_id}")
            for agent_id in children
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except CircuitBreakerTrippedError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_child(
        self,
        agent_id: str,
        request: ExecutionRequest,
        parent_session_id: str | None,
    ) -> ChildResult:
        async with self._semaphore:
            start = time.perf_counter()
            try:
                if self._sessions is not None and parent_session_id is not None:
                    self._sessions.track_call(parent_session_id)
                spec = self._registry.get(agent_id)
                params = format_parameters_for(spec, request.input_parameters)
                context = {
                    **request.execution_context,
                    "coordinator": self._orchestrator_id,
                    "parent_session_id": parent_session_id,
                }
                result = await asyncio.wait_for(
                    self._executor(agent_id, params, context),
                    timeout=self._per_call_timeout,
                )
            except CircuitBreakerTrippedError:
                raise
            except asyncio.TimeoutError:
                logger.warning("coordinator_child_timeout", agent=agent_id, timeout=self._per_call_timeout)
                return self._failed(agent_id, start, f"timed out after {self._per_call_timeout}s", "timeout")
            except BehaviorForgeError as exc:
                logger.warning("coordinator_child_failed", agent=agent_id, kind=exc.kind, error=str(exc))
                return self._failed(agent_id, start, str(exc), exc.kind)
            except Exception as exc:
                logger.exception("coordinator_child_crashed", agent=agent_id)
                return self._failed(agent_id, start, str(exc) or type(exc).__name__, type(exc).__name__)

            metrics.record_coordinator_child(agent=agent_id, status="success")
            return ChildResult(
                agent_id=agent_id,
                status="success",
                output_data=dict(result.output_data),
                metadata=dict(result.execution_metadata),
                quality_score=result.quality_score,
                execution_time_ms=(time.perf_counter() - start) * 1000,
            )

    @staticmethod
    def _failed(agent_id: str, start: float, error: str, kind: str) -> ChildResult:
        metrics.record_coordinator_child(agent=agent_id, status="failed")
        return ChildResult(
            agent_id=agent_id,
            status="failed",
            error=error,
            error_kind=kind,
            execution_time_ms=(time.perf_counter() - start) * 1000,
        )

    def synthesize(
        self,
        plan: ExecutionResult,
        children: Sequence[str],
        results: Sequence[ChildResult],
    ) -> dict[str, Any]:
        by_agent = {result.agent_id: result for result in results}
        ordered = [by_agent[agent_id] for agent_id in children if agent_id in by_agent]
        successful = [result for result in ordered if result.success]
        failed = [result for result in ordered if not result.success]

        if not ordered:
            status = "no_agents_required"
        elif not failed:
            status = "completed"
        elif successful:
            status = "partial"
        else:
            status = "failed"

        return {
            "agent_contributions": [result.as_dict() for result in ordered],
            "coordinated_result": {
                "coordination_status": status,
                "agents_executed": len(ordered),
                "successful_agents": len(successful),
                "failed_agents": len(failed),
                "successful_agent_ids": [result.agent_id for result in successful],
                "failed_agent_ids": [result.agent_id for result in failed],
                "combined_insights": [f"[{result.agent_id}]: {_summarize(result.output_data)}" for result in successful],
                "synthesis_summary": (
                    f"Coordinated {len(ordered)} agent(s): {len(successful)} succeeded, {len(failed)} failed."
                ),
                "configuration_used": {
                    "orchestrator": self._orchestrator_id,
                    "max_parallel_agents": self._max_parallel,
                    "per_call_timeout_seconds": self._per_call_timeout,
                },
            },
            "coordination_plan": _summarize(plan.output_data),
        }

    async def coordinate(
        self,
        result: ExecutionResult,
        request: ExecutionRequest,
        *,
        session_id: str | None = None,
    ) -> ExecutionResult:
        texts = [str(result.output_data.get("analysis") or "")]
        tool_results = result.output_data.get("tool_results") or {}
        texts.extend(str(value) for value in tool_results.values())
        children = self.detect_required_agents(texts)
        logger.info("coordinator_agents_detected", agents=children, session_id=session_id)

        start = time.perf_counter()
        child_results = await self.dispatch(children, request, parent_session_id=session_id) if children else []
        synthesis = self.synthesize(result, children, child_results)
        summary = synthesis["coordinated_result"]
        if self._sessions is not None and session_id is not None:
            insights = "\n".join(summary["combined_insights"])
            self._sessions.append_turn(session_id, "assistant", f"{summary['synthesis_summary']}\n{insights}".strip())

        metadata = {
            **result.execution_metadata,
            "coordination": {
                "agents_executed": summary["agents_executed"],
                "successful_agents": summary["successful_agents"],
                "failed_agents": summary["failed_agents"],
                "duration_ms": (time.perf_counter() - start) * 1000,
            },
        }
        return result.model_copy(update={"output_data": {**result.output_data, **synthesis}, "execution_metadata": metadata})
