from __future__ import annotations

from pathlib import Path

import pytest

from behaviorforge.core.config import RefinementSettings
from behaviorforge.core.exceptions import SessionLimitExceededError
from behaviorforge.schemas.quality import HonestyAssessment, QualityAssessment, RuleResult, RuleSeverity
from behaviorforge.services.refinement import (
    RefinementContext,
    RefinementManager,
    RefinementStatus,
    Trend,
)
from behaviorforge.services.sessions import SessionManager

AGENT = "security_reviewer"


def _assessment(score: float, *, passed: bool = False, can_refine: bool = True, critical: bool = False) -> QualityAssessment:
    rules = [] if passed else [
        RuleResult(
            category="evidence",
            score=0.0,
            passed=False,
            severity=RuleSeverity.IMPORTANT,
            feedback="The output cites too few concrete files or paths.",
            suggestion="Reference the specific files and directories you inspected, using their paths.",
        )
    ]
    return QualityAssessment(
        overall_score=score,
        category_scores={"evidence": 0.0, "actionability": score, "structuredness": score},
        passed=passed,
        threshold=0.7,
        failure_reasons=[] if passed else ["insufficient_file_path_references"],
        rule_results=rules,
        critical_issues=["empty_output"] if critical else [],
        can_refine=can_refine and not passed,
        refinement_suggestions=[] if passed else [rules[0].suggestion],
    )


def _dishonest() -> HonestyAssessment:
    return HonestyAssessment(
        limitation_score=0.2,
        evidence_score=0.15,
        violations=["contains_prohibited_speculation"],
        compliant=False,
        prohibited_phrases=["probably"],
    )


def test_needs_refinement_rules() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=1))

    assert manager.needs_refinement(_assessment(0.9, passed=True), session_id="s", agent_type=AGENT) is False
    assert manager.needs_refinement(_assessment(0.4), session_id="s", agent_type=AGENT) is True
    assert manager.needs_refinement(_assessment(0.0, critical=True), session_id="s", agent_type=AGENT) is False
    assert manager.needs_refinement(_assessment(0.2, can_refine=False), session_id="s", agent_type=AGENT) is False
    assert (
        manager.needs_refinement(_assessment(0.9, passed=True), session_id="s", agent_type=AGENT, honesty=_dishonest())
        is True
    )

    manager.track_attempt("s", AGENT, 0.4, "insufficient_file_path_references")
    assert manager.needs_refinement(_assessment(0.4), session_id="s", agent_type=AGENT) is False


def test_refinement_prompt_sections() -> None:
    manager = RefinementManager(RefinementSettings(prior_response_chars=10))

    prompt = manager.generate_prompt(
        _assessment(0.35),
        context=RefinementContext(agent_type=AGENT, requirements=("Cite every inspected file",)),
        original_task="Agent: security_reviewer\n\nInput Parameters:\n- analysis_scope: full",
        prior_response="0123456789abcdef",
        honesty=_dishonest(),
    )

    assert prompt.startswith("REFINEMENT REQUEST")
    assert "scored 0.35 against a required quality threshold of 0.70" in prompt
    assert "- evidence (score 0.00, important)" in prompt
    assert "The output cites too few concrete files or paths." in prompt
    assert "1. Reference the specific files and directories you inspected, using their paths." in prompt
    assert "Remove speculative language" in prompt
    assert "HONESTY VIOLATIONS:\n- contains_prohibited_speculation" in prompt
    assert "ORIGINAL TASK:\nAgent: security_reviewer" in prompt
    assert "PREVIOUS RESPONSE (excerpt):\n0123456789\n" in prompt
    assert "REQUIREMENTS:\n- Cite every inspected file" in prompt
    assert "QUALITY REQUIREMENTS:" in prompt


def test_track_attempt_records_history_and_trend() -> None:
    manager = RefinementManager()

    first = manager.track_attempt("s", AGENT, 0.4, "low evidence")
    assert first.trend is Trend.STABLE
    second = manager.track_attempt("s", AGENT, 0.55, "low evidence")

    assert second.attempt == 2
    assert second.score_history == [0.4, 0.55]
    assert second.trend is Trend.IMPROVING
    assert second.status is RefinementStatus.RETRYING
    assert manager.attempts("s", AGENT) == 2


def test_successful_refinement_finishes_state() -> None:
    manager = RefinementManager()
    manager.track_attempt("s", AGENT, 0.4, "low evidence")

    outcome = manager.assess_success("s", AGENT, _assessment(0.4), _assessment(0.85, passed=True))

    assert outcome.successful is True
    assert outcome.improvement == pytest.approx(0.45)
    assert outcome.trend is Trend.IMPROVING
    assert outcome.should_continue is False
    assert outcome.status is RefinementStatus.PASSED
    assert manager.state("s", AGENT) is None

    stats = manager.stats("s")
    assert stats["total_refinements"] == 1
    assert stats["agents"][AGENT]["status"] == "passed"
    assert stats["agents"][AGENT]["score_history"] == [0.4, 0.85]
    assert stats["agents"][AGENT]["average_improvement"] == pytest.approx(0.45)


def test_declining_score_stops_refinement() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=3))
    manager.track_attempt("s", AGENT, 0.5, "low evidence")

    outcome = manager.assess_success("s", AGENT, _assessment(0.5), _assessment(0.3))

    assert outcome.trend is Trend.DECLINING
    assert outcome.should_continue is False
    assert outcome.status is RefinementStatus.DECLINING_STOP


def test_improving_but_failing_continues_until_exhausted() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=2))

    manager.track_attempt("s", AGENT, 0.3, "low evidence")
    first = manager.assess_success("s", AGENT, _assessment(0.3), _assessment(0.45))
    assert first.should_continue is True
    assert first.status is RefinementStatus.RETRYING

    manager.track_attempt("s", AGENT, 0.45, "low evidence")
    second = manager.assess_success("s", AGENT, _assessment(0.45), _assessment(0.6))
    assert second.should_continue is False
    assert second.status is RefinementStatus.EXHAUSTED
    assert second.attempts == 2


def test_per_agent_attempt_ceiling() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=3, per_agent_max_attempts={"code_implementer": 0}))

    assert manager.max_attempts("code_implementer") == 0
    assert manager.needs_refinement(_assessment(0.4), session_id="s", agent_type="code_implementer") is False
    assert manager.needs_refinement(_assessment(0.4), session_id="s", agent_type=AGENT) is True


def test_task_refinements_are_bounded_by_session(tmp_path: Path) -> None:
    sessions = SessionManager(tmp_path, max_refinement_iterations=2)
    session = sessions.create_session(AGENT)
    manager = RefinementManager(RefinementSettings(max_attempts=5), sessions=sessions)

    manager.track_attempt(session.id, AGENT, 0.3, "low evidence", task="review api")
    manager.track_attempt(session.id, AGENT, 0.4, "low evidence", task="review api")
    with pytest.raises(SessionLimitExceededError) as excinfo:
        manager.track_attempt(session.id, AGENT, 0.5, "low evidence", task="review api")

    assert excinfo.value.limit_kind == "refinements"
    assert sessions.refinement_count(session.id, AGENT, "review api") == 2
    assert manager.attempts(session.id, AGENT) == 2


def test_passing_quality_with_dishonest_output_keeps_refining() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=2))
    manager.track_attempt("s", AGENT, 0.9, "contains_prohibited_speculation")

    outcome = manager.assess_success(
        "s", AGENT, _assessment(0.9, passed=True), _assessment(0.9, passed=True), honesty=_dishonest()
    )

    assert outcome.successful is False
    assert outcome.should_continue is True
    assert outcome.status is RefinementStatus.RETRYING
    assert manager.state("s", AGENT) is not None

    manager.track_attempt("s", AGENT, 0.9, "contains_prohibited_speculation")
    final = manager.assess_success(
        "s", AGENT, _assessment(0.9, passed=True), _assessment(0.9, passed=True), honesty=_dishonest()
    )
    assert final.should_continue is False
    assert final.status is RefinementStatus.EXHAUSTED
    assert final.attempts == 2


def test_finished_states_are_discarded_and_summaries_bounded() -> None:
    manager = RefinementManager(RefinementSettings(max_attempts=1, finished_history=3))

    for index in range(5):
        session_id = f"s{index}"
        manager.track_attempt(session_id, AGENT, 0.3, "low evidence")
        manager.assess_success(session_id, AGENT, _assessment(0.3), _assessment(0.4))

    assert manager.active_count == 0
    assert manager.finished_count == 3
    assert manager.stats("s0")["agents"] == {}
    assert manager.stats("s4")["agents"][AGENT]["status"] == "exhausted"


def test_abandon_finishes_an_open_state() -> None:
    manager = RefinementManager()
    manager.track_attempt("s", AGENT, 0.3, "low evidence")

    state = manager.abandon("s", AGENT)

    assert state is not None and state.status is RefinementStatus.EXHAUSTED
    assert manager.active_count == 0
    assert manager.stats("s")["agents"][AGENT]["attempt"] == 1
    assert manager.abandon("s", AGENT) is None
