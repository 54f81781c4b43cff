from __future__ import annotations

from ..config import PipelineConfig
from .anthropic import AnthropicAdapter
from .base import ModelPrice, ProviderAdapter, estimate_cost_from_table
from .gemini import GeminiAdapter
from .groq import GroqAdapter
from .ollama import OllamaAdapter
from .openai import OpenAIAdapter

ADAPTERS: dict[str, type] = {
    "groq": GroqAdapter,
    "openai": OpenAIAdapter,
    "anthropic": AnthropicAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
}


def build_providers(cfg: PipelineConfig) -> dict[str, ProviderAdapter]:
    """One adapter per vendor. Nothing is connected yet."""
    return {name: cls(cfg.settings_for(name)) for name, cls in ADAPTERS.items()}


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "GeminiAdapter",
    "GroqAdapter",
    "ModelPrice",
    "OllamaAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "build_providers",
    "estimate_cost_from_table",
]
