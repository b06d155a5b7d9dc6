from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class RuleSeverity(str, Enum):
    CRITICAL = "critical"
    IMPORTANT = "important"
    MINOR = "minor"


class RuleResult(BaseModel):
    """Outcome of one scoring rule, with the feedback used to build refinement prompts."""

    category: str
    score: float = Field(..., ge=0.0, le=1.0)
    passed: bool
    severity: RuleSeverity = RuleSeverity.IMPORTANT
    feedback: str = ""
    suggestion: str = ""


class QualityAssessment(BaseModel):
    overall_score: float = Field(..., ge=0.0, le=1.0)
    category_scores: dict[str, float] = Field(default_factory=dict)
    passed: bool
    threshold: float = Field(..., ge=0.0, le=1.0)
    failure_reasons: list[str] = Field(default_factory=list)
    rule_results: list[RuleResult] = Field(default_factory=list)
    critical_issues: list[str] = Field(default_factory=list)
    can_refine: bool = False
    refinement_suggestions: list[str] = Field(default_factory=list)

    @property
    def failed_rules(self) -> list[RuleResult]:
        return [rule for rule in self.rule_results if not rule.passed]


class HonestyAssessment(BaseModel):
    limitation_score: float = Field(..., ge=0.0, le=1.0)
    evidence_score: float = Field(..., ge=0.0, le=1.0)
    violations: list[str] = Field(default_factory=list)
    compliant: bool
    limitation_phrases: list[str] = Field(default_factory=list)
    evidence_phrases: list[str] = Field(default_factory=list)
    prohibited_phrases: list[str] = Field(default_factory=list)
