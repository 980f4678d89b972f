from __future__ import annotations

import time
import uuid
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .contracts import CompletionRequest, CompletionResult, EmbeddingResult, Message


class ChatCompletionMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str | None = None
    provider: str | None = None
    messages: list[ChatCompletionMessage]
    stream: bool = False

    temperature: float | None = None
    max_tokens: int | None = None
    max_completion_tokens: int | None = None
    top_p: float | None = None
    stop: str | list[str] | None = None

    @model_validator(mode="after")
    def _validate_max_tokens_alias(self) -> "ChatCompletionRequest":
        if self.max_tokens is not None and self.max_completion_tokens is not None:
            if self.max_tokens != self.max_completion_tokens:
                raise ValueError("Provide only one of max_tokens or max_completion_tokens.")
        return self

    @field_validator("messages")
    @classmethod
    def _validate_messages(cls, v: list[ChatCompletionMessage]) -> list[ChatCompletionMessage]:
        if not v:
            raise ValueError("messages must be non-empty.")
        return v

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @field_validator("top_p")
    @classmethod
    def _validate_top_p(cls, v: float | None) -> float | None:
        if v is not None and not (0.0 < v <= 1.0):
            raise ValueError("top_p must be > 0 and <= 1.")
        return v

    @field_validator("max_tokens", "max_completion_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is not None and v <= 0:
            raise ValueError("max_tokens must be > 0.")
        return v

    @field_validator("stop")
    @classmethod
    def _validate_stop(cls, v: str | list[str] | None) -> str | list[str] | None:
        if v is None:
            return None
        if isinstance(v, str):
            if not v:
                raise ValueError("stop must be non-empty.")
            return v
        if not v or any(not s for s in v):
            raise ValueError("stop sequences must be non-empty strings.")
        return v

    def effective_max_tokens(self) -> int | None:
        return self.max_tokens if self.max_tokens is not None else self.max_completion_tokens

    def to_completion_request(self) -> CompletionRequest:
        stop = [self.stop] if isinstance(self.stop, str) else self.stop
        return CompletionRequest(
            messages=tuple(Message(role=m.role, content=m.content) for m in self.messages),
            model=self.model,
            max_tokens=self.effective_max_tokens(),
            temperature=self.temperature,
            top_p=self.top_p,
            stop=tuple(stop) if stop else None,
        )


class ChatCompletionAssistantMessage(BaseModel):
    role: Literal["assistant"] = "assistant"
    content: str


class ChatCompletionChoice(BaseModel):
    index: int = 0
    message: ChatCompletionAssistantMessage
    finish_reason: str = "stop"


class ChatCompletionUsage(BaseModel):
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class ChatCompletionResponse(BaseModel):
    id: str = Field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    object: Literal["chat.completion"] = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: list[ChatCompletionChoice]
    usage: ChatCompletionUsage
    provider: str
    cost: float
    latency_ms: int


def make_chat_completion_response(result: CompletionResult) -> ChatCompletionResponse:
    return ChatCompletionResponse(
        model=result.model,
        choices=[
            ChatCompletionChoice(
                message=ChatCompletionAssistantMessage(content=result.content),
                finish_reason=result.finish_reason,
            )
        ],
        usage=ChatCompletionUsage(**result.usage.to_dict()),
        provider=result.provider_name,
        cost=float(result.cost),
        latency_ms=result.latency_ms,
    )


class EmbeddingsRequest(BaseModel):
    input: str | list[str]
    model: str | None = None
    provider: str | None = None


class EmbeddingItem(BaseModel):
    object: Literal["embedding"] = "embedding"
    index: int
    embedding: list[float]


class EmbeddingsResponse(BaseModel):
    object: Literal["list"] = "list"
    data: list[EmbeddingItem]
    model: str
    usage: dict[str, int]


def make_embeddings_response(result: EmbeddingResult) -> EmbeddingsResponse:
    return EmbeddingsResponse(
        data=[EmbeddingItem(index=i, embedding=e) for i, e in enumerate(result.embeddings)],
        model=result.model,
        usage={"prompt_tokens": result.usage.prompt_tokens, "total_tokens": result.usage.total_tokens},
    )


class OpenAIError(BaseModel):
    message: str
    type: str = "api_error"
    param: str | None = None
    code: str | None = None


class OpenAIErrorResponse(BaseModel):
    error: OpenAIError


def make_openai_error_response(
    *,
    message: str,
    type: str = "api_error",
    param: str | None = None,
    code: str | None = None,
) -> dict[str, Any]:
    return OpenAIErrorResponse(error=OpenAIError(message=message, type=type, param=param, code=code)).model_dump()
