from __future__ import annotations

from functools import lru_cache
from typing import Any, Literal, Mapping

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseModel):
    workspace_root: str = Field(".", description="Root directory agents operate on.")
    max_parallel_agents: int = Field(3, ge=1, description="Worker pool size for coordinator fan-out.")
    request_timeout_seconds: float = Field(120.0, gt=0, description="Timeout applied to each backend round trip.")
    child_timeout_seconds: float = Field(300.0, gt=0, description="Deadline for one coordinated child execution.")
    max_context_size: int = Field(50_000, ge=256, description="Maximum characters of model prose kept in results.")
    orchestrator_agent_id: str = Field("project_orchestrator", min_length=1)
    quality_policy: Literal["strict", "gated"] = Field(
        "gated",
        description="strict aborts on a failing assessment, gated routes it into refinement.",
    )
    default_mode: str = Field("default", min_length=1, description="Execution mode used when the context names none.")


class QualitySettings(BaseModel):
    evidence_weight: float = Field(0.40, ge=0.0, le=1.0)
    actionability_weight: float = Field(0.30, ge=0.0, le=1.0)
    structure_weight: float = Field(0.30, ge=0.0, le=1.0)
    pass_threshold: float = Field(0.70, ge=0.0, le=1.0)
    per_agent_thresholds: dict[str, float] = Field(default_factory=dict)
    low_count: int = Field(1, ge=1, description="Occurrences needed for the lowest non-zero bucket.")
    medium_count: int = Field(3, ge=1)
    high_count: int = Field(5, ge=1)
    low_score: float = Field(0.6, ge=0.0, le=1.0)
    medium_score: float = Field(0.8, ge=0.0, le=1.0)
    high_score: float = Field(1.0, ge=0.0, le=1.0)
    category_pass_score: float = Field(0.5, ge=0.0, le=1.0)
    refinable_fraction: float = Field(
        0.8,
        ge=0.0,
        le=1.0,
        description="Fraction of the threshold above which refinement is considered worthwhile.",
    )

    @model_validator(mode="after")
    def ensure_weights_sum_to_one(self) -> "QualitySettings":
        total = self.evidence_weight + self.actionability_weight + self.structure_weight
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Quality category weights must sum to 1.0, got {total:.4f}")
        return self

    def threshold_for(self, agent_type: str | None) -> float:
        if agent_type and agent_type in self.per_agent_thresholds:
            return self.per_agent_thresholds[agent_type]
        return self.pass_threshold


class HonestySettings(BaseModel):
    limitation_step: float = Field(0.2, gt=0.0, le=1.0)
    evidence_step: float = Field(0.15, gt=0.0, le=1.0)
    compliance_threshold: float = Field(0.5, ge=0.0, le=1.0)


class RefinementSettings(BaseModel):
    max_attempts: int = Field(2, ge=0)
    per_agent_max_attempts: dict[str, int] = Field(default_factory=dict)
    prior_response_chars: int = Field(1_000, ge=0, description="Excerpt of the prior response quoted in prompts.")
    finished_history: int = Field(256, ge=0, description="Finished refinement summaries kept for stats.")

    def max_attempts_for(self, agent_type: str | None) -> int:
        if agent_type and agent_type in self.per_agent_max_attempts:
            return self.per_agent_max_attempts[agent_type]
        return self.max_attempts


class SessionSettings(BaseModel):
    store_path: str = Field(".behaviorforge/sessions", description="Directory holding active/ and completed/ records.")
    max_total_calls: int = Field(25, ge=1)
    max_refinement_iterations: int = Field(2, ge=0)
    fsync_every_write: bool = Field(False, description="Flush every session write to disk, not only completions.")


class ProviderSettings(BaseModel):
    command: str = Field(..., min_length=1, description="Executable that starts the tool provider.")
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)
    enabled: bool = True


class ToolSettings(BaseModel):
    request_timeout_seconds: float = Field(30.0, gt=0)
    circuit_breaker_threshold: int = Field(5, ge=1)
    client_name: str = Field("behaviorforge")
    client_version: str = Field("0.1.0")
    providers: dict[str, ProviderSettings] = Field(default_factory=dict)


class BackendSettings(BaseModel):
    provider: Literal["ollama"] = "ollama"
    host: str = Field("http://localhost", description="Base URL where Ollama is running.")
    port: int = Field(11434, ge=1, le=65535)
    model: str = Field("llama3", description="Default chat model.")
    temperature: float = Field(0.1, ge=0.0, le=2.0)
    max_tokens: int = Field(4_096, ge=1)


class RegistrySettings(BaseModel):
    spec_dir: str = Field("agent_specs", description="Directory of agent specification descriptors (*.json).")


class ObservabilitySettings(BaseModel):
    prometheus_enabled: bool = Field(True)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"


class Settings(BaseSettings):
    environment: Literal["local", "test", "production"] = Field("local")
    api_v1_prefix: str = Field("/api/v1")

    engine: EngineSettings = Field(default_factory=EngineSettings)  # type: ignore[arg-type]
    quality: QualitySettings = Field(default_factory=QualitySettings)  # type: ignore[arg-type]
    honesty: HonestySettings = Field(default_factory=HonestySettings)  # type: ignore[arg-type]
    refinement: RefinementSettings = Field(default_factory=RefinementSettings)  # type: ignore[arg-type]
    sessions: SessionSettings = Field(default_factory=SessionSettings)  # type: ignore[arg-type]
    tools: ToolSettings = Field(default_factory=ToolSettings)  # type: ignore[arg-type]
    backend: BackendSettings = Field(default_factory=BackendSettings)  # type: ignore[arg-type]
    registry: RegistrySettings = Field(default_factory=RegistrySettings)  # type: ignore[arg-type]
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)  # type: ignore[arg-type]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BEHAVIORFORGE_",
        env_nested_delimiter="__",
    )


@lru_cache(maxsize=1)
def _get_cached_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]


def get_settings(overrides: Mapping[str, Any] | None = None) -> Settings:
    """Return settings, using cached defaults unless overrides are provided."""
    if overrides:
        return Settings(**dict(overrides))
    return _get_cached_settings()
