from __future__ import annotations

from typing import Any

from .catalog import OPENAI_MODELS
from .contracts import STREAM_DONE, CompletionRequest, EmbeddingResult, ParsedCompletion, StreamDelta, Usage
from .errors import UpstreamProtocolError
from .provider import (
    DEFAULT_MAX_TOKENS,
    DEFAULT_TEMPERATURE,
    DEFAULT_TOP_P,
    BaseProvider,
    json_loads_event,
    json_object,
    token_count,
)

OPENAI_API_BASE = "https://api.openai.com/v1"


class OpenAIProvider(BaseProvider):
    """OpenAI chat completions wire format; also the base for compatible vendors."""

    name = "openai"
    display_name = "OpenAI"
    default_base_url = OPENAI_API_BASE
    catalog = OPENAI_MODELS
    supports_embeddings = True
    default_embedding_model = "text-embedding-3-small"
    sends_penalties = True

    def completion_url(self, model: str) -> str:
        return f"{self.base_url}/chat/completions"

    def request_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key}",
        }

    def build_payload(self, request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": self.format_messages(request.messages),
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "top_p": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
        }
        if self.sends_penalties:
            payload["presence_penalty"] = 0
            payload["frequency_penalty"] = 0
        if request.stop:
            payload["stop"] = list(request.stop)
        if stream:
            payload["stream"] = True
        return payload

    def parse_response(self, data: dict[str, Any], requested_model: str) -> ParsedCompletion:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            raise UpstreamProtocolError(f"{self.name}: missing choices in upstream response")
        choice = choices[0]
        message = json_object(self.name, choice.get("message"), "message")
        content = message.get("content")
        usage = json_object(self.name, data.get("usage"), "usage")
        return ParsedCompletion(
            content=content if isinstance(content, str) else "",
            model=data.get("model") or requested_model,
            usage=Usage(
                prompt_tokens=token_count(usage.get("prompt_tokens")),
                completion_tokens=token_count(usage.get("completion_tokens")),
            ),
            finish_reason=choice.get("finish_reason") or "stop",
        )

    def parse_stream_data(self, data: str) -> StreamDelta | None:
        if data.strip() == "[DONE]":
            return STREAM_DONE
        event = json_loads_event(self.name, data)
        choices = event.get("choices")
        if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
            return None
        delta = choices[0].get("delta")
        if not isinstance(delta, dict):
            return None
        content = delta.get("content")
        if isinstance(content, str) and content:
            return StreamDelta(text=content)
        return None

    async def _embed_call(self, texts: list[str], model: str) -> EmbeddingResult:
        data = await self._post_json(f"{self.base_url}/embeddings", {"model": model, "input": texts})
        items = data.get("data")
        if not isinstance(items, list):
            raise UpstreamProtocolError(f"{self.name}: missing data in embeddings response")
        ordered = sorted((d for d in items if isinstance(d, dict)), key=lambda d: d.get("index", 0))
        usage = json_object(self.name, data.get("usage"), "usage")
        return EmbeddingResult(
            embeddings=[list(d.get("embedding") or []) for d in ordered],
            model=data.get("model") or model,
            usage=Usage(prompt_tokens=token_count(usage.get("prompt_tokens") or usage.get("total_tokens"))),
        )
