from __future__ import annotations

import json
import re
from typing import Any, Mapping

from ..core.config import QualitySettings
from ..schemas.agents import ExecutionResult
from ..schemas.quality import QualityAssessment, RuleResult, RuleSeverity

__all__ = ["ACTION_VERBS", "STRUCTURE_KEYS", "QualityValidator"]

FILE_EXTENSIONS = (
    "py", "pyi", "go", "rs", "ts", "tsx", "js", "jsx", "java", "kt", "rb", "php", "c", "h", "cpp", "hpp",
    "cs", "swift", "json", "md", "yaml", "yml", "toml", "ini", "cfg", "txt", "sql", "sh", "html", "css",
    "xml", "lock", "mod", "sum", "proto", "env",
)
_FILE_TOKEN = re.compile(r"[A-Za-z0-9_.-]*[A-Za-z0-9_-]\.(?:%s)\b" % "|".join(FILE_EXTENSIONS))
_PATH_TOKEN = re.compile(r"(?:[A-Za-z0-9_.-]+/)+[A-Za-z0-9_.-]+")

ACTION_VERBS: tuple[str, ...] = (
    "create",
    "modify",
    "execute",
    "implement",
    "configure",
    "install",
    "setup",
    "build",
    "deploy",
    "test",
    "validate",
    "analyze",
    "generate",
    "process",
    "initialize",
)
_VERB_PATTERNS = {verb: re.compile(rf"\b{verb}") for verb in ACTION_VERBS}

STRUCTURE_KEYS: tuple[str, ...] = ("result", "metadata", "analysis", "recommendations")

_CATEGORY_FEEDBACK = {
    "evidence": (
        "insufficient_file_path_references",
        "The output cites too few concrete files or paths.",
        "Reference the specific files and directories you inspected, using their paths.",
    ),
    "actionability": (
        "insufficient_actionable_steps",
        "The output contains too few concrete actions.",
        "State the concrete steps taken or recommended (create, modify, configure, test...).",
    ),
    "structuredness": (
        "insufficient_structured_output",
        "The output lacks structure.",
        "Return structured output with result, analysis and recommendations sections.",
    ),
}


def _serialize(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


class QualityValidator:
    """Rule-based, deterministic scoring of an execution result's content."""

    def __init__(self, settings: QualitySettings | None = None) -> None:
        self._settings = settings or QualitySettings()

    @property
    def settings(self) -> QualitySettings:
        return self._settings

    def validate(self, result: ExecutionResult, *, threshold: float | None = None) -> QualityAssessment:
        settings = self._settings
        limit = threshold if threshold is not None else settings.threshold_for(result.agent_id)

        serialized_result = _serialize(result.model_dump(mode="json"))
        serialized_output = _serialize(result.output_data).lower()

        evidence = self._bucket(self.count_evidence(serialized_result))
        actionability = self._bucket(len(self.action_verbs(serialized_output)))
        structuredness = self.structure_score(result.output_data)

        overall = (
            settings.evidence_weight * evidence
            + settings.actionability_weight * actionability
            + settings.structure_weight * structuredness
        )
        # Weights are validated to sum to 1.0; this only absorbs float rounding.
        overall = min(1.0, overall)
        categories = {"evidence": evidence, "actionability": actionability, "structuredness": structuredness}

        rules: list[RuleResult] = []
        failure_reasons: list[str] = []
        suggestions: list[str] = []
        for category, score in categories.items():
            reason, feedback, suggestion = _CATEGORY_FEEDBACK[category]
            passed = score >= settings.category_pass_score
            rules.append(
                RuleResult(
                    category=category,
                    score=score,
                    passed=passed,
                    severity=RuleSeverity.IMPORTANT if category == "evidence" else RuleSeverity.MINOR,
                    feedback="" if passed else feedback,
                    suggestion="" if passed else suggestion,
                )
            )
            if not passed:
                failure_reasons.append(reason)
                suggestions.append(suggestion)

        critical_issues: list[str] = []
        if not result.output_data:
            critical_issues.append("empty_output")
            failure_reasons.append("empty_output")
            rules.append(
                RuleResult(
                    category="completeness",
                    score=0.0,
                    passed=False,
                    severity=RuleSeverity.CRITICAL,
                    feedback="The agent produced no output data.",
                )
            )

        passed = overall >= limit and not critical_issues
        improvable = any(not rule.passed and rule.severity != RuleSeverity.CRITICAL for rule in rules)
        can_refine = not critical_issues and (improvable or overall > limit * settings.refinable_fraction)

        return QualityAssessment(
            overall_score=overall,
            category_scores=categories,
            passed=passed,
            threshold=limit,
            failure_reasons=[] if passed else failure_reasons or ["below_quality_threshold"],
            rule_results=rules,
            critical_issues=critical_issues,
            can_refine=False if passed else can_refine,
            refinement_suggestions=[] if passed else suggestions,
        )

    def _bucket(self, count: int) -> float:
        s = self._settings
        if count >= s.high_count:
            return s.high_score
        if count >= s.medium_count:
            return s.medium_score
        if count >= s.low_count:
            return s.low_score
        return 0.0

    @staticmethod
    def count_evidence(text: str) -> int:
        return len(_FILE_TOKEN.findall(text)) + len(_PATH_TOKEN.findall(text))

    @staticmethod
    def action_verbs(text: str) -> list[str]:
        return [verb for verb, pattern in _VERB_PATTERNS.items() if pattern.search(text)]

    @staticmethod
    def structure_score(output: Mapping[str, Any]) -> float:
        if not output:
            return 0.0
        score = 0.3
        if any(isinstance(value, (Mapping, list)) for value in output.values()):
            score += 0.2
        score += 0.1 * sum(1 for key in STRUCTURE_KEYS if key in output)
        return min(1.0, score)
