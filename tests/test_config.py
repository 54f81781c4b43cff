from unittest.mock import patch

import pytest
from pydantic import ValidationError

from structured_completion import context as context_module
from structured_completion.config import PipelineConfig
from structured_completion.context import PipelineContext


def test_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("GROQ_API_KEY", "gsk_fromenv")
    monkeypatch.setenv("AI_FALLBACK_CHAIN", "openai, ollama")
    monkeypatch.setenv("RATE_LIMIT_PER_MINUTE", "50")
    monkeypatch.delenv("OLLAMA_URL", raising=False)

    cfg = PipelineConfig()
    assert cfg.groq_api_key == "gsk_fromenv"
    assert cfg.fallback_chain == ["openai", "ollama"]
    assert cfg.rate_limit_per_minute == 50
    assert cfg.ollama_url == "http://localhost:11434"
    assert "gsk_fromenv" in cfg.secrets()


def test_explicit_values_win_over_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env")
    cfg = PipelineConfig(openai_api_key="sk-explicit")
    assert cfg.settings_for("openai").api_key == "sk-explicit"


def test_settings_for_carries_upstream_knobs():
    cfg = PipelineConfig(upstream_max_attempts=7, upstream_timeout_seconds=5, ollama_url="http://box:11434")
    s = cfg.settings_for("anthropic")
    assert s.max_attempts == 7
    assert s.timeout_seconds == 5
    assert s.base_url is None
    assert cfg.settings_for("ollama").base_url == "http://box:11434"
    assert cfg.settings_for("ollama").api_key is None


def test_unknown_feature_falls_back_to_chat():
    cfg = PipelineConfig()
    assert cfg.feature("research").max_tokens == 2000
    assert cfg.feature("nope") == cfg.features["chat"]


def test_rejects_non_positive_budget():
    with pytest.raises(ValidationError):
        PipelineConfig(rate_limit_per_minute=0)


def test_rejects_unknown_provider_in_chain():
    with pytest.raises(ValidationError):
        PipelineConfig(fallback_chain=["groq", "bogus"])


def test_context_wires_limiter_to_config_and_resets():
    ctx = PipelineContext(PipelineConfig(rate_limit_per_minute=20, rate_limit_warning_pct=50))
    assert ctx.rate_limiter.limit_per_minute == 20
    assert ctx.rate_limiter.deduplicator is ctx.deduplicator

    for _ in range(10):
        ctx.rate_limiter.record("x")
    assert ctx.rate_limiter.should_throttle()
    ctx.active_session_id = "s1"
    ctx.usage.record(provider="groq", feature="chat", model="m", prompt_tokens=1, completion_tokens=1, estimated_cost=0)

    ctx.reset()
    assert ctx.rate_limiter.calls_per_minute() == 0
    assert ctx.usage.entries() == []
    assert ctx.active_session_id is None


def test_configure_observability_applies_log_and_metrics_settings():
    cfg = PipelineConfig(
        groq_api_key="gsk_secret",
        openai_api_key=None,
        anthropic_api_key=None,
        google_api_key=None,
        log_level="DEBUG",
        log_format="console",
        enable_metrics=True,
        metrics_bind="0.0.0.0",
        metrics_port=9200,
    )
    with patch.object(context_module, "configure_logging") as logging_setup, patch.object(
        context_module, "maybe_start_metrics"
    ) as metrics_setup:
        PipelineContext(cfg).configure_observability()

    logging_setup.assert_called_once_with(level="DEBUG", fmt="console", secrets=["gsk_secret"])
    metrics_setup.assert_called_once_with(enable=True, bind="0.0.0.0", port=9200)
