from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Sequence

from ..core import metrics
from ..core.config import RefinementSettings
from ..core.logging import get_logger
from ..schemas.quality import HonestyAssessment, QualityAssessment
from .sessions import SessionManager

__all__ = [
    "RefinementContext",
    "RefinementManager",
    "RefinementOutcome",
    "RefinementState",
    "RefinementStatus",
    "Trend",
]

logger = get_logger(name=__name__)


class Trend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"


class RefinementStatus(str, Enum):
    ACTIVE = "active"
    RETRYING = "retrying"
    PASSED = "passed"
    EXHAUSTED = "exhausted"
    DECLINING_STOP = "declining_stop"


@dataclass(slots=True)
class RefinementState:
    session_id: str
    agent_type: str
    attempt: int = 0
    score_history: list[float] = field(default_factory=list)
    trend: Trend = Trend.STABLE
    reason: str = ""
    status: RefinementStatus = RefinementStatus.ACTIVE
    improvements: list[float] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "agent_type": self.agent_type,
            "attempt": self.attempt,
            "score_history": list(self.score_history),
            "trend": self.trend.value,
            "reason": self.reason,
            "status": self.status.value,
        }


@dataclass(slots=True)
class RefinementOutcome:
    successful: bool
    improvement: float
    trend: Trend
    should_continue: bool
    attempts: int
    status: RefinementStatus

    def as_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "improvement": self.improvement,
            "trend": self.trend.value,
            "should_continue": self.should_continue,
            "attempts": self.attempts,
            "status": self.status.value,
        }


@dataclass(slots=True)
class RefinementContext:
    agent_type: str
    requirements: Sequence[str] = ()
    quality_criteria: Sequence[str] = ()


def _trend(previous: float | None, current: float) -> Trend:
    if previous is None or current == previous:
        return Trend.STABLE
    return Trend.IMPROVING if current > previous else Trend.DECLINING


def _summary(state: RefinementState) -> dict[str, Any]:
    average = sum(state.improvements) / len(state.improvements) if state.improvements else 0.0
    return {**state.as_dict(), "average_improvement": average}


class RefinementManager:
    """Retry policy for failing assessments, tracked per (session, agent type).

    A state is created on the first failing assessment, advanced on every
    attempt and discarded once it reaches a terminal status. Only a summary
    of finished states is kept, bounded by ``finished_history``.
    """

    def __init__(self, settings: RefinementSettings | None = None, *, sessions: SessionManager | None = None) -> None:
        self._settings = settings or RefinementSettings()
        self._sessions = sessions
        self._states: dict[tuple[str, str], RefinementState] = {}
        self._finished: OrderedDict[tuple[str, str], dict[str, Any]] = OrderedDict()

    def max_attempts(self, agent_type: str) -> int:
        return self._settings.max_attempts_for(agent_type)

    def state(self, session_id: str, agent_type: str) -> RefinementState | None:
        return self._states.get((session_id, agent_type))

    def attempts(self, session_id: str, agent_type: str) -> int:
        state = self._states.get((session_id, agent_type))
        return state.attempt if state else 0

    def needs_refinement(
        self,
        assessment: QualityAssessment,
        *,
        session_id: str,
        agent_type: str,
        honesty: HonestyAssessment | None = None,
    ) -> bool:
        honest = honesty is None or honesty.compliant
        if assessment.passed and honest:
            return False
        if assessment.critical_issues:
            return False
        if self.attempts(session_id, agent_type) >= self.max_attempts(agent_type):
            return False
        if not assessment.passed and not assessment.can_refine:
            return False
        return True

    def generate_prompt(
        self,
        assessment: QualityAssessment,
        *,
        context: RefinementContext,
        original_task: str,
        prior_response: str = "",
        honesty: HonestyAssessment | None = None,
    ) -> str:
        lines = [
            "REFINEMENT REQUEST",
            "",
            f"Your previous response for {context.agent_type} scored {assessment.overall_score:.2f} "
            f"against a required quality threshold of {assessment.threshold:.2f}.",
            "",
            "AREAS NEEDING IMPROVEMENT:",
        ]
        failed = assessment.failed_rules
        for rule in failed:
            lines.append(f"- {rule.category} (score {rule.score:.2f}, {rule.severity.value})")
        if not failed:
            lines.append("- overall quality below threshold")

        lines.extend(["", "SPECIFIC FEEDBACK:"])
        feedback = [rule.feedback for rule in failed if rule.feedback]
        lines.extend(f"- {text}" for text in feedback or ["Increase the depth and precision of the response."])

        lines.extend(["", "REFINEMENT SUGGESTIONS:"])
        suggestions = list(assessment.refinement_suggestions)
        if honesty is not None and not honesty.compliant:
            if honesty.violations:
                suggestions.append("Remove speculative language; state only what the tool results show.")
            if honesty.limitation_score < 0.5:
                suggestions.append("Disclose the scope and limits of your analysis explicitly.")
            if honesty.evidence_score < 0.5:
                suggestions.append("Cite where each finding was observed or verified.")
        lines.extend(f"{index}. {text}" for index, text in enumerate(suggestions or ["Address every failed area above."], start=1))

        if honesty is not None and honesty.violations:
            lines.extend(["", "HONESTY VIOLATIONS:"])
            lines.extend(f"- {violation}" for violation in honesty.violations)

        lines.extend(["", "ORIGINAL TASK:", original_task])
        if prior_response:
            excerpt = prior_response[: self._settings.prior_response_chars]
            lines.extend(["", "PREVIOUS RESPONSE (excerpt):", excerpt])

        if context.requirements:
            lines.extend(["", "REQUIREMENTS:"])
            lines.extend(f"- {requirement}" for requirement in context.requirements)

        lines.extend(["", "QUALITY REQUIREMENTS:"])
        criteria = list(context.quality_criteria) or [
            "Reference specific file paths as evidence.",
            "Describe concrete, actionable steps.",
            "Return structured output (result, analysis, recommendations).",
        ]
        lines.extend(f"- {criterion}" for criterion in criteria)
        lines.extend(["", "Please provide an improved response that addresses all feedback above."])
        return "\n".join(lines)

    def track_attempt(
        self,
        session_id: str,
        agent_type: str,
        score: float,
        reason: str,
        *,
        task: str | None = None,
    ) -> RefinementState:
        key = (session_id, agent_type)
        if task is not None and self._sessions is not None:
            self._sessions.track_refinement(session_id, agent_type, task)
        state = self._states.get(key)
        if state is None:
            state = RefinementState(session_id=session_id, agent_type=agent_type)
            self._states[key] = state
        previous = state.score_history[-1] if state.score_history else None
        state.attempt += 1
        state.score_history.append(score)
        state.trend = _trend(previous, score)
        state.reason = reason
        state.status = RefinementStatus.RETRYING
        metrics.record_refinement_attempt(agent=agent_type, trend=state.trend.value)
        logger.info(
            "refinement_attempt_tracked",
            session_id=session_id,
            agent=agent_type,
            attempt=state.attempt,
            score=score,
            trend=state.trend.value,
        )
        return state

    def assess_success(
        self,
        session_id: str,
        agent_type: str,
        prior: QualityAssessment,
        new: QualityAssessment,
        *,
        honesty: HonestyAssessment | None = None,
    ) -> RefinementOutcome:
        accepted = new.passed and (honesty is None or honesty.compliant)
        key = (session_id, agent_type)
        state = self._states.get(key)
        if state is None:
            state = RefinementState(session_id=session_id, agent_type=agent_type)
            self._states[key] = state
        improvement = new.overall_score - prior.overall_score
        state.improvements.append(improvement)
        state.trend = _trend(prior.overall_score, new.overall_score)

        maximum = self.max_attempts(agent_type)
        should_continue = not accepted and state.trend != Trend.DECLINING and state.attempt < maximum

        if accepted:
            state.status = RefinementStatus.PASSED
        elif state.trend == Trend.DECLINING:
            state.status = RefinementStatus.DECLINING_STOP
        elif state.attempt >= maximum:
            state.status = RefinementStatus.EXHAUSTED
        if not should_continue:
            # Retry scores are recorded by track_attempt, the terminal one here.
            state.score_history.append(new.overall_score)
            self._finish(key, state)

        return RefinementOutcome(
            successful=accepted,
            improvement=improvement,
            trend=state.trend,
            should_continue=should_continue,
            attempts=state.attempt,
            status=state.status,
        )

    def abandon(self, session_id: str, agent_type: str) -> RefinementState | None:
        """Finish a state the caller stopped retrying before assess_success did."""
        key = (session_id, agent_type)
        state = self._states.get(key)
        if state is None:
            return None
        state.status = RefinementStatus.EXHAUSTED
        self._finish(key, state)
        return state

    def _finish(self, key: tuple[str, str], state: RefinementState) -> None:
        self._states.pop(key, None)
        self._finished.pop(key, None)
        self._finished[key] = _summary(state)
        while len(self._finished) > self._settings.finished_history:
            self._finished.popitem(last=False)
        logger.info(
            "refinement_finished",
            session_id=state.session_id,
            agent=state.agent_type,
            status=state.status.value,
            attempts=state.attempt,
        )

    @property
    def active_count(self) -> int:
        return len(self._states)

    @property
    def finished_count(self) -> int:
        return len(self._finished)

    def stats(self, session_id: str) -> dict[str, Any]:
        agents: dict[str, Any] = {}
        for (sid, agent_type), summary in self._finished.items():
            if sid == session_id:
                agents[agent_type] = dict(summary)
        for (sid, agent_type), state in self._states.items():
            if sid == session_id:
                agents[agent_type] = _summary(state)
        return {
            "session_id": session_id,
            "total_refinements": sum(entry["attempt"] for entry in agents.values()),
            "agents": agents,
        }
