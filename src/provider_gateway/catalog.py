"""Static per-provider model tables and token cost accounting.

Prices are USD per 1K tokens. Each provider owns one ``ModelCatalog``; lookups
by an unknown id fall back to the catalog default so a call is still billed
(at the default model's price) rather than rejected.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from decimal import Decimal

import structlog

log = structlog.get_logger()

_THOUSAND = Decimal(1000)


@dataclass(frozen=True)
class ModelDescriptor:
    id: str
    display_name: str
    context_window: int
    input_price_per_k_tokens: Decimal
    output_price_per_k_tokens: Decimal
    description: str = ""

    def cost(self, prompt_tokens: int, completion_tokens: int) -> Decimal:
        input_cost = Decimal(max(0, prompt_tokens)) / _THOUSAND * self.input_price_per_k_tokens
        output_cost = Decimal(max(0, completion_tokens)) / _THOUSAND * self.output_price_per_k_tokens
        return input_cost + output_cost

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "context_window": self.context_window,
            "input_price_per_k_tokens": str(self.input_price_per_k_tokens),
            "output_price_per_k_tokens": str(self.output_price_per_k_tokens),
            "description": self.description,
        }


def _model(
    model_id: str, name: str, context_window: int, input_price: str, output_price: str, description: str
) -> ModelDescriptor:
    return ModelDescriptor(
        id=model_id,
        display_name=name,
        context_window=context_window,
        input_price_per_k_tokens=Decimal(input_price),
        output_price_per_k_tokens=Decimal(output_price),
        description=description,
    )


class ModelCatalog:
    def __init__(self, models: Sequence[ModelDescriptor], default_model: str):
        if not models:
            raise ValueError("A model catalog needs at least one model.")
        self._models = tuple(models)
        self._by_id = {m.id: m for m in self._models}
        if default_model not in self._by_id:
            raise ValueError(f"Default model {default_model!r} is not in the catalog.")
        self.default_model = default_model

    def __iter__(self) -> Iterator[ModelDescriptor]:
        return iter(self._models)

    def __len__(self) -> int:
        return len(self._models)

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._by_id

    @property
    def default(self) -> ModelDescriptor:
        return self._by_id[self.default_model]

    def find(self, model_id: str | None) -> ModelDescriptor | None:
        """Exact id, else the longest id that ``model_id`` is a dated snapshot of."""
        if not model_id:
            return None
        exact = self._by_id.get(model_id)
        if exact is not None:
            return exact
        # Vendors report e.g. "gpt-4o-mini-2024-07-18" for "gpt-4o-mini".
        prefixed = [m for m in self._models if model_id.startswith(f"{m.id}-")]
        if prefixed:
            return max(prefixed, key=lambda m: len(m.id))
        return None

    def resolve(self, *candidates: str | None) -> ModelDescriptor:
        for candidate in candidates:
            found = self.find(candidate)
            if found is not None:
                return found
        if any(candidates):
            log.warning(
                "model_pricing_fallback",
                requested=[c for c in candidates if c],
                fallback=self.default_model,
            )
        return self.default

    def cost(self, prompt_tokens: int, completion_tokens: int, *model_ids: str | None) -> Decimal:
        return self.resolve(*model_ids).cost(prompt_tokens, completion_tokens)


OPENAI_MODELS = ModelCatalog(
    [
        _model("gpt-4o", "GPT-4o", 128000, "0.0025", "0.01", "Most advanced model, multimodal"),
        _model("gpt-4o-mini", "GPT-4o Mini", 128000, "0.00015", "0.0006", "Fast and affordable"),
        _model("gpt-4-turbo", "GPT-4 Turbo", 128000, "0.01", "0.03", "128K context window"),
        _model("gpt-4", "GPT-4", 8192, "0.03", "0.06", "Original GPT-4"),
        _model("gpt-3.5-turbo", "GPT-3.5 Turbo", 16385, "0.0005", "0.0015", "Fast and cheap"),
    ],
    default_model="gpt-4o-mini",
)

ANTHROPIC_MODELS = ModelCatalog(
    [
        _model(
            "claude-3-5-sonnet-20241022",
            "Claude 3.5 Sonnet",
            200000,
            "0.003",
            "0.015",
            "Best balance of intelligence and speed",
        ),
        _model("claude-3-5-haiku-20241022", "Claude 3.5 Haiku", 200000, "0.001", "0.005", "Fastest Claude model"),
        _model("claude-3-opus-20240229", "Claude 3 Opus", 200000, "0.015", "0.075", "Most capable Claude model"),
        _model(
            "claude-3-sonnet-20240229", "Claude 3 Sonnet", 200000, "0.003", "0.015", "Previous generation Sonnet"
        ),
        _model("claude-3-haiku-20240307", "Claude 3 Haiku", 200000, "0.00025", "0.00125", "Previous generation Haiku"),
    ],
    default_model="claude-3-5-sonnet-20241022",
)

GROQ_MODELS = ModelCatalog(
    [
        _model("llama-3.3-70b-versatile", "Llama 3.3 70B", 128000, "0.00059", "0.00079", "Most capable Llama model"),
        _model("llama-3.1-70b-versatile", "Llama 3.1 70B", 128000, "0.00059", "0.00079", "Previous generation 70B"),
        _model("llama-3.1-8b-instant", "Llama 3.1 8B", 128000, "0.00005", "0.00008", "Fastest model"),
        _model("mixtral-8x7b-32768", "Mixtral 8x7B", 32768, "0.00024", "0.00024", "Mixture of Experts"),
        _model("gemma2-9b-it", "Gemma 2 9B", 8192, "0.0002", "0.0002", "Google Gemma 2"),
    ],
    default_model="llama-3.3-70b-versatile",
)

GEMINI_MODELS = ModelCatalog(
    [
        _model("gemini-1.5-flash", "Gemini 1.5 Flash", 1048576, "0.000075", "0.0003", "Fast multimodal model"),
        _model("gemini-1.5-pro", "Gemini 1.5 Pro", 2097152, "0.00125", "0.005", "Long-context reasoning"),
        _model("gemini-2.0-flash", "Gemini 2.0 Flash", 1048576, "0.0001", "0.0004", "Next generation Flash"),
    ],
    default_model="gemini-1.5-flash",
)
