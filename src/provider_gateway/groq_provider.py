from __future__ import annotations

from .catalog import GROQ_MODELS
from .openai_provider import OpenAIProvider

GROQ_API_BASE = "https://api.groq.com/openai/v1"


class GroqProvider(OpenAIProvider):
    """Groq speaks the OpenAI chat format; no embeddings, no penalty fields."""

    name = "groq"
    display_name = "Groq"
    default_base_url = GROQ_API_BASE
    catalog = GROQ_MODELS
    supports_embeddings = False
    default_embedding_model = None
    sends_penalties = False
