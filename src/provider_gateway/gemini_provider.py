from __future__ import annotations

from typing import Any

from .catalog import GEMINI_MODELS
from .contracts import CompletionRequest, EmbeddingResult, ParsedCompletion, StreamDelta, Usage
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

GEMINI_DEV_API_BASE = "https://generativelanguage.googleapis.com/v1beta"


def _candidate_text(candidate: Any) -> str:
    if not isinstance(candidate, dict):
        return ""
    content = candidate.get("content")
    if not isinstance(content, dict):
        return ""
    parts = content.get("parts")
    if not isinstance(parts, list):
        return ""
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))


class GeminiProvider(BaseProvider):
    """Gemini Developer API (API key in the query string)."""

    name = "gemini"
    display_name = "Google Gemini"
    default_base_url = GEMINI_DEV_API_BASE
    catalog = GEMINI_MODELS
    supports_embeddings = True
    default_embedding_model = "text-embedding-004"

    def completion_url(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:generateContent"

    def stream_url(self, model: str) -> str:
        return f"{self.base_url}/models/{model}:streamGenerateContent?alt=sse"

    def request_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    def request_params(self) -> dict[str, str]:
        return {"key": self.config.api_key or ""}

    def build_payload(self, request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for msg in self.format_messages(request.messages):
            if msg["role"] == "system":
                if msg["content"]:
                    system_parts.append(msg["content"])
                continue
            gemini_role = "model" if msg["role"] == "assistant" else "user"
            contents.append({"role": gemini_role, "parts": [{"text": msg["content"]}]})

        payload: dict[str, Any] = {"contents": contents}
        system_instruction = "\n\n".join(system_parts).strip()
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        generation_config: dict[str, Any] = {
            "maxOutputTokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
            "topP": request.top_p if request.top_p is not None else DEFAULT_TOP_P,
        }
        if request.stop:
            generation_config["stopSequences"] = list(request.stop)
        payload["generationConfig"] = generation_config
        return payload

    def parse_response(self, data: dict[str, Any], requested_model: str) -> ParsedCompletion:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            raise UpstreamProtocolError(f"{self.name}: missing candidates in upstream response")
        candidate = json_object(self.name, candidates[0], "candidate")
        usage = json_object(self.name, data.get("usageMetadata"), "usageMetadata")
        finish_reason = candidate.get("finishReason")
        return ParsedCompletion(
            content=_candidate_text(candidate),
            model=data.get("modelVersion") or requested_model,
            usage=Usage(
                prompt_tokens=token_count(usage.get("promptTokenCount")),
                completion_tokens=token_count(usage.get("candidatesTokenCount")),
            ),
            finish_reason=(finish_reason or "STOP").lower(),
        )

    def parse_stream_data(self, data: str) -> StreamDelta | None:
        # No terminal marker: the stream ends with the response body.
        event = json_loads_event(self.name, data)
        candidates = event.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            return None
        text = _candidate_text(candidates[0])
        return StreamDelta(text=text) if text else None

    async def _embed_call(self, texts: list[str], model: str) -> EmbeddingResult:
        payload = {
            "requests": [{"model": f"models/{model}", "content": {"parts": [{"text": t}]}} for t in texts]
        }
        data = await self._post_json(f"{self.base_url}/models/{model}:batchEmbedContents", payload)
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise UpstreamProtocolError(f"{self.name}: missing embeddings in upstream response")
        return EmbeddingResult(
            embeddings=[list(e.get("values") or []) for e in embeddings if isinstance(e, dict)],
            model=model,
        )
