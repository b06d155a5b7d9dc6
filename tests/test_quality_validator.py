from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from behaviorforge.core.config import QualitySettings
from behaviorforge.schemas.agents import ExecutionResult
from behaviorforge.schemas.quality import RuleSeverity
from behaviorforge.services.quality import QualityValidator

STRONG_OUTPUT = {
    "result": {"files": ["src/api/routes.py", "src/api/schemas.py", "src/core/config.py"]},
    "analysis": "Reviewed src/api/routes.py, src/api/schemas.py and src/core/config.py.",
    "recommendations": [
        "Create a request validator",
        "Modify the router registration",
        "Configure the timeout",
        "Test the error paths",
        "Deploy behind the gateway",
    ],
    "metadata": {"reviewer": "security"},
}


def _result(output: dict, agent_id: str = "security_reviewer") -> ExecutionResult:
    return ExecutionResult(agent_id=agent_id, output_data=output)


def test_strong_output_passes_without_failures() -> None:
    assessment = QualityValidator().validate(_result(STRONG_OUTPUT))

    assert assessment.category_scores == pytest.approx({"evidence": 1.0, "actionability": 1.0, "structuredness": 0.9})
    assert assessment.overall_score == pytest.approx(0.97)
    assert assessment.passed is True
    assert assessment.failure_reasons == []
    assert assessment.can_refine is False
    assert assessment.threshold == pytest.approx(0.70)


def test_overall_score_is_weighted_sum_of_categories() -> None:
    settings = QualitySettings(evidence_weight=0.5, actionability_weight=0.25, structure_weight=0.25)
    validator = QualityValidator(settings)

    for output in (STRONG_OUTPUT, {"analysis": "create main.py", "details": {}}, {"analysis": "nothing"}):
        assessment = validator.validate(_result(output))
        scores = assessment.category_scores
        expected = 0.5 * scores["evidence"] + 0.25 * scores["actionability"] + 0.25 * scores["structuredness"]
        assert assessment.overall_score == pytest.approx(expected)


def test_empty_output_is_a_critical_issue() -> None:
    assessment = QualityValidator().validate(_result({}))

    assert assessment.overall_score == 0.0
    assert assessment.critical_issues == ["empty_output"]
    assert "empty_output" in assessment.failure_reasons
    assert assessment.passed is False
    assert assessment.can_refine is False
    completeness = [rule for rule in assessment.rule_results if rule.category == "completeness"]
    assert completeness and completeness[0].severity is RuleSeverity.CRITICAL


def test_failed_rules_carry_feedback_and_suggestions() -> None:
    assessment = QualityValidator().validate(_result({"analysis": "Looked around."}))

    failed = {rule.category: rule for rule in assessment.failed_rules}
    assert set(failed) == {"evidence", "actionability", "structuredness"}
    assert failed["evidence"].severity is RuleSeverity.IMPORTANT
    assert failed["actionability"].severity is RuleSeverity.MINOR
    assert all(rule.feedback and rule.suggestion for rule in failed.values())
    assert assessment.failure_reasons == [
        "insufficient_file_path_references",
        "insufficient_actionable_steps",
        "insufficient_structured_output",
    ]
    assert len(assessment.refinement_suggestions) == 3
    assert assessment.can_refine is True


def test_near_miss_without_failed_rules_is_refinable() -> None:
    assessment = QualityValidator().validate(_result(STRONG_OUTPUT), threshold=0.99)

    assert assessment.passed is False
    assert assessment.failed_rules == []
    assert assessment.failure_reasons == ["below_quality_threshold"]
    assert assessment.can_refine is True


def test_far_miss_without_failed_rules_is_not_refinable() -> None:
    assessment = QualityValidator().validate(_result({"analysis": "create main.py", "details": {}}), threshold=1.0)

    assert assessment.overall_score == pytest.approx(0.60)
    assert assessment.failed_rules == []
    assert assessment.can_refine is False


def test_per_agent_threshold_overrides_default() -> None:
    validator = QualityValidator(QualitySettings(per_agent_thresholds={"lenient": 0.3}))
    output = {"analysis": "Updated src/app/main.py"}

    lenient = validator.validate(_result(output, agent_id="lenient"))
    strict = validator.validate(_result(output, agent_id="security_reviewer"))

    assert lenient.overall_score == pytest.approx(strict.overall_score)
    assert lenient.threshold == pytest.approx(0.3)
    assert lenient.passed is True
    assert strict.passed is False


def test_evidence_counts_file_names_and_paths() -> None:
    assert QualityValidator.count_evidence("see main.py and src/app/util.py") == 3
    assert QualityValidator.count_evidence("no references here") == 0


def test_action_verbs_match_word_prefixes() -> None:
    assert QualityValidator.action_verbs("we will create and test the build") == ["create", "build", "test"]
    assert QualityValidator.action_verbs("recreated nothing") == []


def test_structure_score_rewards_nesting_and_standard_keys() -> None:
    assert QualityValidator.structure_score({}) == 0.0
    assert QualityValidator.structure_score({"analysis": "x"}) == pytest.approx(0.4)
    assert QualityValidator.structure_score(
        {"result": {}, "analysis": "", "recommendations": [], "metadata": {}}
    ) == pytest.approx(0.9)


def test_identical_content_scores_identically() -> None:
    validator = QualityValidator()
    result = _result(STRONG_OUTPUT)
    copy = _result(json.loads(json.dumps(STRONG_OUTPUT)))

    first = validator.validate(result)
    second = validator.validate(result)
    third = validator.validate(copy)

    for other in (second, third):
        assert other.overall_score == first.overall_score
        assert other.category_scores == first.category_scores
        assert other.rule_results == first.rule_results


def test_weights_must_sum_to_one() -> None:
    with pytest.raises(ValidationError, match="must sum to 1.0"):
        QualitySettings(evidence_weight=0.6, actionability_weight=0.3, structure_weight=0.3)
    with pytest.raises(ValidationError, match="must sum to 1.0"):
        QualitySettings(evidence_weight=0.2, actionability_weight=0.2, structure_weight=0.2)

    settings = QualitySettings(evidence_weight=0.2, actionability_weight=0.3, structure_weight=0.5)
    assert settings.structure_weight == pytest.approx(0.5)
