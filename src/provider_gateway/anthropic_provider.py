from __future__ import annotations

from typing import Any

from .catalog import ANTHROPIC_MODELS
from .contracts import STREAM_DONE, CompletionRequest, ParsedCompletion, StreamDelta, Usage
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

ANTHROPIC_API_BASE = "https://api.anthropic.com/v1"
ANTHROPIC_API_VERSION = "2023-06-01"


class AnthropicProvider(BaseProvider):
    name = "anthropic"
    display_name = "Anthropic (Claude)"
    default_base_url = ANTHROPIC_API_BASE
    catalog = ANTHROPIC_MODELS
    api_version = ANTHROPIC_API_VERSION

    def completion_url(self, model: str) -> str:
        return f"{self.base_url}/messages"

    def request_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": self.api_version,
        }

    def split_system(self, request: CompletionRequest) -> tuple[str | None, list[dict[str, str]]]:
        """System prompts travel in a top-level field, not in ``messages``."""
        system_parts: list[str] = []
        chat: list[dict[str, str]] = []
        for msg in self.format_messages(request.messages):
            if msg["role"] == "system":
                if msg["content"]:
                    system_parts.append(msg["content"])
                continue
            chat.append({"role": "assistant" if msg["role"] == "assistant" else "user", "content": msg["content"]})
        system = "\n\n".join(system_parts).strip() or None
        return system, chat

    def build_payload(self, request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]:
        system, messages = self.split_system(request)
        payload: dict[str, Any] = {
            "model": model,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "top_p": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
            "messages": messages,
        }
        if system:
            payload["system"] = system
        if request.stop:
            payload["stop_sequences"] = list(request.stop)
        if stream:
            payload["stream"] = True
        return payload

    def parse_response(self, data: dict[str, Any], requested_model: str) -> ParsedCompletion:
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise UpstreamProtocolError(f"{self.name}: missing content in upstream response")
        text = "".join(
            b["text"]
            for b in blocks
            if isinstance(b, dict) and b.get("type", "text") == "text" and isinstance(b.get("text"), str)
        )
        usage = json_object(self.name, data.get("usage"), "usage")
        return ParsedCompletion(
            content=text,
            model=data.get("model") or requested_model,
            usage=Usage(
                prompt_tokens=token_count(usage.get("input_tokens")),
                completion_tokens=token_count(usage.get("output_tokens")),
            ),
            finish_reason=data.get("stop_reason") or "end_turn",
        )

    def parse_stream_data(self, data: str) -> StreamDelta | None:
        event = json_loads_event(self.name, data)
        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta")
            text = delta.get("text") if isinstance(delta, dict) else None
            if isinstance(text, str) and text:
                return StreamDelta(text=text)
            return None
        if event_type == "message_stop":
            return STREAM_DONE
        if event_type == "error":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else None
            raise UpstreamProtocolError(f"{self.name}: stream error: {message or 'unknown'}")
        return None
