from __future__ import annotations

from .openai_adapter import OpenAIAdapter

DEFAULT_GROQ_MODELS = ["llama-3.3-70b-versatile", "llama-3.1-8b-instant"]


class GroqAdapter(OpenAIAdapter):
    """Groq through its OpenAI-compatible endpoint."""

    name = "groq"
    api_key_env = "GROQ_API_KEY"
    models_env = "GROQ_MODELS"
    default_models = DEFAULT_GROQ_MODELS
    base_url = "https://api.groq.com/openai/v1"
