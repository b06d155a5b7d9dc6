from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from behaviorforge.core.metrics import (
    increment_circuit_breaker_trip,
    observe_quality_score,
    record_agent_execution,
    record_backend_tokens,
)


def test_agent_execution_records_outcome_and_latency():
    labels = {"agent": "metrics_probe", "outcome": "passed"}
    count_before = REGISTRY.get_sample_value("behaviorforge_agent_executions_total", labels) or 0.0
    latency_before = REGISTRY.get_sample_value("behaviorforge_agent_latency_seconds_sum", {"agent": "metrics_probe"}) or 0.0

    record_agent_execution(agent="metrics_probe", outcome="passed", latency=1.25)

    assert REGISTRY.get_sample_value("behaviorforge_agent_executions_total", labels) == pytest.approx(count_before + 1)
    assert REGISTRY.get_sample_value(
        "behaviorforge_agent_latency_seconds_sum", {"agent": "metrics_probe"}
    ) == pytest.approx(latency_before + 1.25)


def test_backend_tokens_skip_zero_directions():
    prompt = {"agent": "token_probe", "direction": "prompt"}
    completion = {"agent": "token_probe", "direction": "completion"}
    prompt_before = REGISTRY.get_sample_value("behaviorforge_backend_tokens_total", prompt) or 0.0

    record_backend_tokens(agent="token_probe", prompt_tokens=30, completion_tokens=0)

    assert REGISTRY.get_sample_value("behaviorforge_backend_tokens_total", prompt) == pytest.approx(prompt_before + 30)
    assert REGISTRY.get_sample_value("behaviorforge_backend_tokens_total", completion) is None


def test_quality_score_is_clamped_into_unit_interval():
    labels = {"agent": "clamp_probe"}
    before = REGISTRY.get_sample_value("behaviorforge_quality_score_sum", labels) or 0.0

    observe_quality_score(agent="clamp_probe", score=1.7)

    assert REGISTRY.get_sample_value("behaviorforge_quality_score_sum", labels) == pytest.approx(before + 1.0)


def test_circuit_breaker_trip_counter_increments():
    before = REGISTRY.get_sample_value("behaviorforge_circuit_breaker_trips_total") or 0.0

    increment_circuit_breaker_trip()

    assert REGISTRY.get_sample_value("behaviorforge_circuit_breaker_trips_total") == pytest.approx(before + 1)
