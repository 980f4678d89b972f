from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Literal

Role = Literal["system", "user", "assistant"]


@dataclass(frozen=True)
class Message:
    role: Role
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    messages: Sequence[Message]
    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop: Sequence[str] | None = None

    @classmethod
    def from_dicts(cls, messages: Sequence[dict[str, str]], **kwargs: Any) -> "CompletionRequest":
        return cls(messages=tuple(Message(role=m["role"], content=m.get("content", "")) for m in messages), **kwargs)


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class ParsedCompletion:
    """Vendor response mapped onto the normalized shape, before cost/latency."""

    content: str
    model: str
    usage: Usage
    finish_reason: str


@dataclass(frozen=True)
class CompletionResult:
    content: str
    model: str
    usage: Usage
    finish_reason: str
    latency_ms: int
    provider_name: str
    cost: Decimal


@dataclass(frozen=True)
class StreamChunk:
    content: str
    provider: str
    model: str


@dataclass(frozen=True)
class StreamDelta:
    text: str = ""
    done: bool = False


STREAM_DONE = StreamDelta(done=True)


@dataclass(frozen=True)
class EmbeddingResult:
    embeddings: list[list[float]]
    model: str
    usage: Usage = field(default_factory=Usage)


@dataclass(frozen=True)
class HealthStatus:
    healthy: bool
    latency_ms: int | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"healthy": self.healthy}
        if self.latency_ms is not None:
            out["latency_ms"] = self.latency_ms
        if self.error is not None:
            out["error"] = self.error
        return out
