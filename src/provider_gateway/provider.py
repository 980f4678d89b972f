from __future__ import annotations

import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from decimal import Decimal
from typing import Any

import httpx
import structlog

from .catalog import ModelCatalog, ModelDescriptor
from .circuit_breaker import CircuitBreaker
from .config import ProviderConfig, resolve_api_key
from .contracts import (
    CompletionRequest,
    CompletionResult,
    EmbeddingResult,
    HealthStatus,
    Message,
    ParsedCompletion,
    StreamChunk,
    StreamDelta,
)
from .errors import (
    CircuitOpenError,
    InvalidRequestError,
    NotConfiguredError,
    ProviderError,
    StreamParseError,
    UnsupportedFeatureError,
    UpstreamProtocolError,
    VendorHTTPError,
    VendorTimeoutError,
    VendorTransportError,
)
from .metrics import ProviderMetrics
from .retry import RetryPolicy
from .streaming import aiter_sse_data

log = structlog.get_logger()

DEFAULT_MAX_TOKENS = 2048
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0

_ROLES = ("system", "user", "assistant")


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


def _retry_after(resp: httpx.Response) -> int | None:
    raw = resp.headers.get("retry-after")
    return int(raw) if raw and raw.isdigit() else None


class BaseProvider(ABC):
    """Normalized contract over one vendor's HTTP API.

    Subclasses supply the wire format (URLs, headers, payload, response and
    stream parsing). This class owns the shared flow: credential and breaker
    checks, retries, latency, cost, and breaker/metrics bookkeeping.

    Each instance owns its breaker and metrics; nothing is shared between
    providers.
    """

    name: str = "base"
    display_name: str = "Base Provider"
    default_base_url: str = ""
    catalog: ModelCatalog
    supports_embeddings: bool = False
    default_embedding_model: str | None = None

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        circuit_breaker: CircuitBreaker | None = None,
        retry_policy: RetryPolicy | None = None,
        metrics: ProviderMetrics | None = None,
        sleeper: Callable[[float], Awaitable[None]] | None = None,
        clock: Callable[[], float] | None = None,
    ):
        cfg = config or ProviderConfig()
        self.config = cfg.model_copy(update={"api_key": resolve_api_key(self.name, cfg.api_key)})
        self.base_url = (self.config.base_url or self.default_base_url).rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=self.config.timeout_seconds)
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.name, clock=clock)
        self.metrics = metrics or ProviderMetrics(self.name)
        self.retry_policy = retry_policy or RetryPolicy(self.config.max_retries, sleeper=sleeper, name=self.name)
        if self.retry_policy.on_retry is None:
            self.retry_policy.on_retry = lambda *_: self.metrics.record_retry()

    # -- vendor wire contract -------------------------------------------------

    @abstractmethod
    def completion_url(self, model: str) -> str: ...

    def stream_url(self, model: str) -> str:
        return self.completion_url(model)

    @abstractmethod
    def request_headers(self) -> dict[str, str]: ...

    def request_params(self) -> dict[str, str]:
        return {}

    @abstractmethod
    def build_payload(self, request: CompletionRequest, model: str, *, stream: bool = False) -> dict[str, Any]: ...

    @abstractmethod
    def parse_response(self, data: dict[str, Any], requested_model: str) -> ParsedCompletion: ...

    @abstractmethod
    def parse_stream_data(self, data: str) -> StreamDelta | None:
        """Map one SSE ``data:`` payload to a delta.

        Return ``None`` to skip the event; raise ``StreamParseError`` for a
        malformed payload (it is skipped too).
        """

    async def _embed_call(self, texts: list[str], model: str) -> EmbeddingResult:
        raise UnsupportedFeatureError(f"{self.name}: embed() not implemented")

    # -- catalog ----------------------------------------------------------------

    @property
    def models(self) -> list[ModelDescriptor]:
        return list(self.catalog)

    @property
    def default_model(self) -> str:
        return self.catalog.default_model

    def has_model(self, model_id: str) -> bool:
        return model_id in self.catalog

    def calculate_cost(self, prompt_tokens: int, completion_tokens: int, *model_ids: str | None) -> Decimal:
        return self.catalog.cost(prompt_tokens, completion_tokens, *model_ids)

    # -- state --------------------------------------------------------------------

    def is_configured(self) -> bool:
        return bool(self.config.api_key)

    def is_available(self) -> bool:
        return self.circuit_breaker.is_available()

    def _ensure_ready(self) -> None:
        if not self.is_configured():
            raise NotConfiguredError(f"{self.name}: API key not configured")
        if not self.circuit_breaker.is_available():
            raise CircuitOpenError(
                provider=self.name,
                retry_after_seconds=self.circuit_breaker.retry_after_seconds(),
            )

    def _record_failure(self, operation: str, exc: BaseException) -> None:
        self.circuit_breaker.record_failure()
        self.metrics.record_failure(operation=operation)
        log.warning(
            "provider_error",
            provider=self.name,
            operation=operation,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    def get_metrics(self) -> dict[str, Any]:
        breaker = self.circuit_breaker.snapshot()
        return {
            **self.metrics.snapshot().to_dict(),
            "circuit_state": breaker["state"],
            "failure_count": breaker["failure_count"],
            "is_available": self.is_available(),
            "is_configured": self.is_configured(),
        }

    # -- shared helpers -------------------------------------------------------------

    def format_messages(self, messages: Sequence[Message]) -> list[dict[str, str]]:
        if not messages:
            raise InvalidRequestError("At least one message is required.")
        out: list[dict[str, str]] = []
        for msg in messages:
            if msg.role not in _ROLES:
                raise InvalidRequestError(f"Unsupported message role: {msg.role!r}")
            if not isinstance(msg.content, str):
                raise InvalidRequestError("Message content must be a string.")
            out.append({"role": msg.role, "content": msg.content})
        return out

    def _transport_error(self, exc: httpx.HTTPError) -> ProviderError:
        if isinstance(exc, httpx.TimeoutException):
            return VendorTimeoutError(f"{self.name}: upstream request timed out")
        return VendorTransportError(f"{self.name}: upstream request failed ({type(exc).__name__})")

    async def _raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        await resp.aread()
        message: str | None = None
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            err = body.get("error")
            if isinstance(err, dict) and isinstance(err.get("message"), str):
                message = err["message"]
            elif isinstance(err, str):
                message = err
        log.warning(
            "vendor_http_error",
            provider=self.name,
            status_code=resp.status_code,
            body=resp.text[:500],
        )
        raise VendorHTTPError(
            resp.status_code,
            message,
            provider=self.name,
            retry_after_seconds=_retry_after(resp),
        )

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self._client.post(
                url,
                params=self.request_params() or None,
                headers=self.request_headers(),
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise self._transport_error(e) from e
        await self._raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamProtocolError(f"{self.name}: response is not valid JSON") from e
        if not isinstance(data, dict):
            raise UpstreamProtocolError(f"{self.name}: response is not a JSON object")
        return data

    # -- operations ---------------------------------------------------------------------

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self._ensure_ready()
        model = request.model or self.default_model
        payload = self.build_payload(request, model)
        url = self.completion_url(model)

        started = time.perf_counter()
        try:
            data = await self.retry_policy.run(lambda: self._post_json(url, payload))
            parsed = self.parse_response(data, model)
        except Exception as e:
            self._record_failure("complete", e)
            raise

        latency_ms = _elapsed_ms(started)
        usage = parsed.usage
        # Bill the model the vendor actually served, not just the one requested.
        cost = self.calculate_cost(usage.prompt_tokens, usage.completion_tokens, parsed.model, model)
        self.circuit_breaker.record_success()
        self.metrics.record_success(
            operation="complete",
            latency_ms=latency_ms,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            cost=cost,
        )
        log.debug(
            "provider_complete_ok",
            provider=self.name,
            model=parsed.model,
            latency_ms=latency_ms,
            total_tokens=usage.total_tokens,
        )
        return CompletionResult(
            content=parsed.content,
            model=parsed.model,
            usage=usage,
            finish_reason=parsed.finish_reason,
            latency_ms=latency_ms,
            provider_name=self.name,
            cost=cost,
        )

    async def stream(self, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        """Yield normalized chunks from one streaming vendor connection.

        Single pass and not restartable. The connection is released when the
        stream ends, fails, or the caller calls ``aclose()``.
        """
        self._ensure_ready()
        model = request.model or self.default_model
        payload = self.build_payload(request, model, stream=True)

        started = time.perf_counter()
        try:
            async with self._client.stream(
                "POST",
                self.stream_url(model),
                params=self.request_params() or None,
                headers=self.request_headers(),
                json=payload,
                timeout=self.config.timeout_seconds * 2,
            ) as resp:
                await self._raise_for_status(resp)
                async for data in aiter_sse_data(resp.aiter_bytes()):
                    try:
                        delta = self.parse_stream_data(data)
                    except StreamParseError as e:
                        log.debug("stream_line_skipped", provider=self.name, reason=str(e))
                        continue
                    if delta is None:
                        continue
                    if delta.done:
                        break
                    if delta.text:
                        yield StreamChunk(content=delta.text, provider=self.name, model=model)
        except httpx.HTTPError as e:
            err = self._transport_error(e)
            self._record_failure("stream", err)
            raise err from e
        except Exception as e:
            self._record_failure("stream", e)
            raise

        self.circuit_breaker.record_success()
        self.metrics.record_success(operation="stream", latency_ms=_elapsed_ms(started))

    async def embed(self, text: str | Sequence[str], model: str | None = None) -> EmbeddingResult:
        if not self.supports_embeddings:
            raise UnsupportedFeatureError(f"{self.name}: embed() not implemented")
        self._ensure_ready()
        texts = [text] if isinstance(text, str) else list(text)
        if not texts:
            raise InvalidRequestError("At least one input text is required.")
        embedding_model = model or self.default_embedding_model or self.default_model

        started = time.perf_counter()
        try:
            result = await self.retry_policy.run(lambda: self._embed_call(texts, embedding_model))
        except Exception as e:
            self._record_failure("embed", e)
            raise

        self.circuit_breaker.record_success()
        self.metrics.record_success(
            operation="embed",
            latency_ms=_elapsed_ms(started),
            prompt_tokens=result.usage.prompt_tokens,
        )
        return result

    async def health_check(self) -> HealthStatus:
        """Minimal real completion; failures are reported, not raised."""
        started = time.perf_counter()
        try:
            await self.complete(CompletionRequest(messages=(Message(role="user", content="Hi"),), max_tokens=5))
        except Exception as e:
            log.warning("provider_health_check_failed", provider=self.name, error_type=type(e).__name__, error=str(e))
            return HealthStatus(healthy=False, error=str(e) or type(e).__name__)
        return HealthStatus(healthy=True, latency_ms=_elapsed_ms(started))

    async def aclose(self) -> None:
        await self._client.aclose()


def json_loads_event(provider: str, data: str) -> dict[str, Any]:
    """Decode a stream event payload, raising ``StreamParseError`` when malformed."""
    try:
        event = json.loads(data)
    except json.JSONDecodeError as e:
        raise StreamParseError(f"{provider}: invalid JSON in stream event") from e
    if not isinstance(event, dict):
        raise StreamParseError(f"{provider}: stream event is not an object")
    return event


def token_count(value: Any) -> int:
    return value if isinstance(value, int) and value > 0 else 0


def json_object(provider: str, value: Any, field: str) -> dict[str, Any]:
    """Optional nested object of a vendor response; absent is empty, any other shape is a protocol error."""
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise UpstreamProtocolError(f"{provider}: {field} is not an object in upstream response")
    return value
