from __future__ import annotations

from typing import Any, Mapping

from ..core.config import HonestySettings
from ..schemas.agents import ExecutionResult
from ..schemas.quality import HonestyAssessment

__all__ = ["EVIDENCE_PHRASES", "LIMITATION_PHRASES", "PROHIBITED_PHRASES", "HonestyValidator"]

LIMITATION_PHRASES: tuple[str, ...] = (
    "analyzed available files",
    "cannot verify",
    "limited to scope",
    "based on available information",
    "analysis scope",
)

EVIDENCE_PHRASES: tuple[str, ...] = (
    "file path",
    "analyzed",
    "found in",
    "based on",
    "verified",
    "confirmed",
    "observed",
    "identified",
)

PROHIBITED_PHRASES: tuple[str, ...] = (
    "assuming",
    "probably",
    "might be",
    "speculation",
    "without verification",
)

SPECULATION_VIOLATION = "contains_prohibited_speculation"


def _collect_strings(value: Any, into: list[str]) -> None:
    if isinstance(value, str):
        into.append(value)
    elif isinstance(value, Mapping):
        for item in value.values():
            _collect_strings(item, into)
    elif isinstance(value, (list, tuple)):
        for item in value:
            _collect_strings(item, into)


def honesty_text(output: Mapping[str, Any]) -> str:
    """Text the honesty rules read: the analysis prose, else every string value.

    A blank analysis counts as missing, so tool-call-only responses are judged
    on the rest of their output.
    """
    analysis = output.get("analysis")
    if isinstance(analysis, str) and analysis.strip():
        text = analysis
    else:
        parts: list[str] = []
        _collect_strings(output, parts)
        text = " ".join(parts)
    return text.lower().replace("_", " ")


class HonestyValidator:
    def __init__(self, settings: HonestySettings | None = None) -> None:
        self._settings = settings or HonestySettings()

    def validate(self, result: ExecutionResult) -> HonestyAssessment:
        text = honesty_text(result.output_data)
        limitations = [phrase for phrase in LIMITATION_PHRASES if phrase in text]
        evidence = [phrase for phrase in EVIDENCE_PHRASES if phrase in text]
        prohibited = [phrase for phrase in PROHIBITED_PHRASES if phrase in text]

        limitation_score = min(1.0, self._settings.limitation_step * len(limitations))
        evidence_score = min(1.0, self._settings.evidence_step * len(evidence))
        violations = [SPECULATION_VIOLATION] if prohibited else []
        threshold = self._settings.compliance_threshold

        return HonestyAssessment(
            limitation_score=limitation_score,
            evidence_score=evidence_score,
            violations=violations,
            compliant=limitation_score >= threshold and evidence_score >= threshold and not violations,
            limitation_phrases=limitations,
            evidence_phrases=evidence,
            prohibited_phrases=prohibited,
        )
