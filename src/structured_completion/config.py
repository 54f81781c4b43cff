from __future__ import annotations

import os
from typing import Literal

from pydantic import BaseModel, Field, field_validator

ProviderName = Literal["groq", "openai", "anthropic", "gemini", "ollama"]
FeatureType = Literal["research", "quick", "chat", "summary", "filing"]


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class FeatureModel(BaseModel):
    provider: ProviderName = "groq"
    model: str = "llama-3.3-70b-versatile"
    max_tokens: int | None = None
    temperature: float | None = None


def _default_features() -> dict[str, FeatureModel]:
    return {
        "research": FeatureModel(max_tokens=2000, temperature=0.3),
        "quick": FeatureModel(max_tokens=400, temperature=0.3),
        "chat": FeatureModel(max_tokens=1024, temperature=0.7),
        "summary": FeatureModel(max_tokens=512, temperature=0.3),
        "filing": FeatureModel(max_tokens=1500, temperature=0.3),
    }


class ProviderSettings(BaseModel):
    """Pure connection settings for one vendor; `connect()` turns this into a session."""

    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 60
    max_attempts: int = 3
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 8.0
    circuit_breaker_failures: int = 5
    circuit_breaker_reset_seconds: float = 30.0


class PipelineConfig(BaseModel):
    # Credentials (explicit value wins over the environment)
    groq_api_key: str | None = Field(default_factory=lambda: os.getenv("GROQ_API_KEY"))
    openai_api_key: str | None = Field(default_factory=lambda: os.getenv("OPENAI_API_KEY"))
    anthropic_api_key: str | None = Field(default_factory=lambda: os.getenv("ANTHROPIC_API_KEY"))
    google_api_key: str | None = Field(default_factory=lambda: os.getenv("GOOGLE_API_KEY"))
    ollama_url: str = Field(default_factory=lambda: os.getenv("OLLAMA_URL", "http://localhost:11434"))

    # Model selection
    features: dict[str, FeatureModel] = Field(default_factory=_default_features)
    fallback_chain: list[ProviderName] = Field(
        default_factory=lambda: _parse_csv(os.getenv("AI_FALLBACK_CHAIN")) or ["groq", "openai", "anthropic", "ollama"]
    )
    default_temperature: float = 0.3
    default_max_tokens: int = 1024

    # Upstream HTTP behavior
    upstream_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_TIMEOUT_SECONDS", "60"))
    )
    upstream_max_attempts: int = Field(default_factory=lambda: int(os.getenv("UPSTREAM_MAX_ATTEMPTS", "3")))
    upstream_backoff_initial_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_INITIAL_SECONDS", "0.5"))
    )
    upstream_backoff_max_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_BACKOFF_MAX_SECONDS", "8.0"))
    )
    upstream_circuit_breaker_failures: int = Field(
        default_factory=lambda: int(os.getenv("UPSTREAM_CIRCUIT_BREAKER_FAILURES", "5"))
    )
    upstream_circuit_breaker_reset_seconds: float = Field(
        default_factory=lambda: float(os.getenv("UPSTREAM_CIRCUIT_BREAKER_RESET_SECONDS", "30"))
    )

    # Call budget against the shared upstream
    rate_limit_per_minute: int = Field(default_factory=lambda: int(os.getenv("RATE_LIMIT_PER_MINUTE", "100")))
    rate_limit_warning_pct: int = 70
    rate_limit_critical_pct: int = 85
    rate_limit_hard_pct: int = 95

    # Agent loop
    agent_feature: FeatureType = "chat"
    agent_decision_max_tokens: int = 1024
    agent_narration_max_tokens: int = 256
    agent_step_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("AGENT_STEP_TIMEOUT_SECONDS", "90"))
    )
    agent_max_history_messages: int = Field(
        default_factory=lambda: int(os.getenv("AGENT_MAX_HISTORY_MESSAGES", "40"))
    )
    agent_max_transcript_chars: int = Field(
        default_factory=lambda: int(os.getenv("AGENT_MAX_TRANSCRIPT_CHARS", "48000"))
    )

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    @field_validator("rate_limit_per_minute")
    @classmethod
    def _validate_budget(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("rate_limit_per_minute must be > 0.")
        return v

    def feature(self, name: str) -> FeatureModel:
        try:
            return self.features[name]
        except KeyError:
            return self.features["chat"]

    def api_key_for(self, provider: str) -> str | None:
        return {
            "groq": self.groq_api_key,
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "gemini": self.google_api_key,
        }.get(provider)

    def settings_for(self, provider: str) -> ProviderSettings:
        return ProviderSettings(
            api_key=self.api_key_for(provider),
            base_url=self.ollama_url if provider == "ollama" else None,
            timeout_seconds=self.upstream_timeout_seconds,
            max_attempts=self.upstream_max_attempts,
            backoff_initial_seconds=self.upstream_backoff_initial_seconds,
            backoff_max_seconds=self.upstream_backoff_max_seconds,
            circuit_breaker_failures=self.upstream_circuit_breaker_failures,
            circuit_breaker_reset_seconds=self.upstream_circuit_breaker_reset_seconds,
        )

    def secrets(self) -> list[str]:
        return [s for s in (self.groq_api_key, self.openai_api_key, self.anthropic_api_key, self.google_api_key) if s]
