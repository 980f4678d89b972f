from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from .config import GatewayConfig
from .contracts import StreamChunk
from .errors import (
    CircuitOpenError,
    ConfigurationError,
    InvalidRequestError,
    NoProviderAvailableError,
    ProviderError,
    UnknownProviderError,
    UnsupportedFeatureError,
    UpstreamProtocolError,
    VendorHTTPError,
    VendorTimeoutError,
    VendorTransportError,
)
from .gateway import ProviderGateway
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total
from .openai_compat import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    EmbeddingsRequest,
    EmbeddingsResponse,
    make_chat_completion_response,
    make_embeddings_response,
    make_openai_error_response,
)
from .streaming import openai_sse_from_chunks

log = structlog.get_logger()


def error_status(exc: ProviderError) -> tuple[int, str]:
    """HTTP status and OpenAI error type for a gateway error."""
    if isinstance(exc, UnknownProviderError):
        return 404, "invalid_request_error"
    if isinstance(exc, (ConfigurationError, NoProviderAvailableError, CircuitOpenError)):
        return 503, "upstream_error"
    if isinstance(exc, (InvalidRequestError, UnsupportedFeatureError)):
        return 400, "invalid_request_error"
    if isinstance(exc, VendorHTTPError):
        if exc.status_code == 400:
            return 400, "invalid_request_error"
        return 502, "upstream_error"
    if isinstance(exc, VendorTimeoutError):
        return 504, "upstream_error"
    if isinstance(exc, (VendorTransportError, UpstreamProtocolError)):
        return 502, "upstream_error"
    return 500, "api_error"


async def _primed(stream: AsyncIterator[StreamChunk]) -> AsyncIterator[StreamChunk]:
    # Pulls the first chunk before the response starts, so provider selection,
    # breaker and vendor status errors still map to a proper HTTP status.
    try:
        first = await anext(stream)
    except StopAsyncIteration:
        await stream.aclose()

        async def _empty() -> AsyncIterator[StreamChunk]:
            return
            yield

        return _empty()

    async def _rest() -> AsyncIterator[StreamChunk]:
        try:
            yield first
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    return _rest()


def create_app(cfg: GatewayConfig | None = None, gateway: ProviderGateway | None = None):
    try:
        from fastapi import FastAPI, Request
        from fastapi.responses import JSONResponse, StreamingResponse
    except ImportError as e:  # pragma: no cover
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    cfg = cfg or GatewayConfig()
    configure_logging(level=cfg.log_level, fmt=cfg.log_format, secrets=cfg.known_secrets())
    gateway = gateway or ProviderGateway.from_config(cfg)

    def _request_id(request) -> str | None:
        return getattr(getattr(request, "state", None), "request_id", None)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        try:
            yield
        finally:
            await gateway.aclose()

    app = FastAPI(
        title="provider-gateway",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg)

    @app.exception_handler(ProviderError)
    async def _provider_error_handler(request: Request, exc: ProviderError):
        status_code, error_type = error_status(exc)
        server_errors_total.labels(type=error_type).inc()
        log.warning(
            "request_failed",
            path=request.url.path,
            status=status_code,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        headers = {}
        if isinstance(exc, CircuitOpenError) and exc.retry_after_seconds is not None:
            headers["Retry-After"] = str(exc.retry_after_seconds)
        return JSONResponse(
            status_code=status_code,
            content=make_openai_error_response(message=str(exc), type=error_type, code=_request_id(request)),
            headers=headers,
        )

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/v1/chat/completions", response_model=ChatCompletionResponse)
    async def chat_completions(req: ChatCompletionRequest):
        request = req.to_completion_request()

        if req.stream:
            if not cfg.enable_streaming:
                raise UnsupportedFeatureError("Streaming is disabled (set ENABLE_STREAMING=true).")
            chunks = await _primed(gateway.stream(req.provider, request))
            byte_stream = openai_sse_from_chunks(model=req.model or "", chunks=chunks)
            return StreamingResponse(byte_stream, media_type="text/event-stream")

        result = await gateway.complete(req.provider, request)
        return make_chat_completion_response(result)

    @app.post("/v1/embeddings", response_model=EmbeddingsResponse)
    async def embeddings(req: EmbeddingsRequest):
        result = await gateway.embed(req.input, provider_name=req.provider, model=req.model)
        return make_embeddings_response(result)

    @app.get("/v1/providers")
    async def providers():
        return {"strategy": gateway.strategy.value, "providers": gateway.configured_providers()}

    @app.get("/v1/providers/health")
    async def providers_health():
        statuses = await gateway.health_check_all()
        return {name: status.to_dict() for name, status in statuses.items()}

    @app.get("/v1/models")
    async def models():
        return {
            "object": "list",
            "data": [
                {"id": m["id"], "object": "model", "owned_by": m["provider"], **m}
                for m in gateway.list_models()
            ],
        }

    return app


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("provider_gateway.server:create_app", factory=True, host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
