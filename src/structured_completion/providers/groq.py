from __future__ import annotations

from .base import ModelPrice
from .openai import OpenAIAdapter

GROQ_PRICING: dict[str, ModelPrice] = {
    "llama-3.3-70b-versatile": ModelPrice(0.59, 0.79),
    "llama-3.1-70b-versatile": ModelPrice(0.59, 0.79),
    "llama-3.1-8b-instant": ModelPrice(0.05, 0.08),
    "mixtral-8x7b-32768": ModelPrice(0.24, 0.24),
    "gemma2-9b-it": ModelPrice(0.20, 0.20),
}


class GroqAdapter(OpenAIAdapter):
    """Groq speaks the OpenAI chat-completions dialect on its own endpoint."""

    name = "groq"
    default_model = "llama-3.3-70b-versatile"

    base_url = "https://api.groq.com/openai/v1"
    credential_env = "GROQ_API_KEY"
    pricing = GROQ_PRICING
