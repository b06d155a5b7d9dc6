from __future__ import annotations

import pytest

from behaviorforge.core.config import HonestySettings
from behaviorforge.schemas.agents import ExecutionResult
from behaviorforge.services.honesty import HonestyValidator, honesty_text

from tests.helpers.stubs import GOOD_CONTENT, SPECULATIVE_CONTENT


def _result(output: dict) -> ExecutionResult:
    return ExecutionResult(agent_id="security_reviewer", output_data=output)


def test_disclosed_and_evidenced_analysis_is_compliant() -> None:
    assessment = HonestyValidator().validate(_result({"analysis": GOOD_CONTENT}))

    assert assessment.compliant is True
    assert assessment.violations == []
    assert assessment.limitation_score == pytest.approx(0.8)
    assert assessment.evidence_score == pytest.approx(0.9)
    assert "analysis scope" in assessment.limitation_phrases
    assert "verified" in assessment.evidence_phrases


def test_speculation_is_a_violation() -> None:
    assessment = HonestyValidator().validate(_result({"analysis": SPECULATIVE_CONTENT}))

    assert assessment.violations == ["contains_prohibited_speculation"]
    assert assessment.prohibited_phrases == ["assuming", "probably"]
    assert assessment.compliant is False


def test_scores_step_per_phrase_and_cap_at_one() -> None:
    validator = HonestyValidator(HonestySettings(limitation_step=0.5, evidence_step=0.15))

    partial = validator.validate(_result({"analysis": "Cannot verify the deploy step; based on the logs."}))
    assert partial.limitation_score == pytest.approx(0.5)
    assert partial.evidence_score == pytest.approx(0.15)
    assert partial.compliant is False

    capped = validator.validate(
        _result({"analysis": "Cannot verify anything beyond the analysis scope, limited to scope."})
    )
    assert capped.limitation_score == 1.0


def test_structured_output_without_analysis_uses_all_strings() -> None:
    output = {"result": {"notes": ["cannot_verify the build", {"detail": "Found in src/app.py"}]}}

    text = honesty_text(output)
    assessment = HonestyValidator().validate(_result(output))

    assert "cannot verify the build" in text
    assert assessment.limitation_phrases == ["cannot verify"]
    assert assessment.evidence_phrases == ["found in"]


def test_custom_compliance_threshold() -> None:
    output = {"analysis": "Cannot verify the runtime; analyzed and verified the config."}
    lenient = HonestyValidator(HonestySettings(compliance_threshold=0.2))

    assessment = lenient.validate(_result(output))

    assert assessment.limitation_score == pytest.approx(0.2)
    assert assessment.evidence_score == pytest.approx(0.3)
    assert assessment.compliant is True
    assert HonestyValidator().validate(_result(output)).compliant is False


def test_blank_analysis_falls_back_to_other_strings() -> None:
    output = {
        "analysis": "   ",
        "result": {"summary": "Cannot verify the runtime; analyzed and verified src/app.py"},
    }

    text = honesty_text(output)
    assessment = HonestyValidator().validate(_result(output))

    assert "cannot verify the runtime" in text
    assert assessment.limitation_phrases == ["cannot verify"]
    assert assessment.evidence_phrases == ["analyzed", "verified"]
