from __future__ import annotations

import re
import secrets as secrets_module
import time
import uuid
from collections.abc import Mapping

_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")

# Routes that reach a vendor; /healthz and docs stay open.
GATEWAY_PATH_PREFIX = "/v1/"


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def client_token(headers: Mapping[str, str]) -> str | None:
    """Token a gateway client presented, as ``Authorization: Bearer`` or ``x-api-key``."""
    scheme, _, token = (headers.get("authorization") or "").partition(" ")
    if scheme.lower() == "bearer" and token.strip():
        return token.strip()
    return headers.get("x-api-key") or None


def is_authorized(headers: Mapping[str, str], expected: str | None) -> bool:
    if not expected:
        return True
    token = client_token(headers)
    if not token:
        return False
    return secrets_module.compare_digest(token.encode("utf-8"), expected.encode("utf-8"))


def install_middlewares(app, *, cfg) -> None:
    """Tag each request with an id, gate ``/v1/*`` on the server token and count responses."""
    import structlog
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .metrics import server_errors_total, server_request_latency_seconds, server_requests_total
    from .openai_compat import make_openai_error_response

    class GatewayRequestMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            started_at = time.monotonic()
            path = request.url.path
            route_label = path if path.startswith(GATEWAY_PATH_PREFIX) or path == "/healthz" else "other"
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog.contextvars.bind_contextvars(request_id=request_id)
            try:
                gated = path.startswith(GATEWAY_PATH_PREFIX) and request.method != "OPTIONS"
                if gated and not is_authorized(request.headers, cfg.server_auth_token):
                    server_errors_total.labels(type="authentication_error").inc()
                    response = JSONResponse(
                        status_code=401,
                        headers={"WWW-Authenticate": 'Bearer realm="provider-gateway"'},
                        content=make_openai_error_response(
                            message="Missing or invalid gateway token.",
                            type="authentication_error",
                            code=request_id,
                        ),
                    )
                else:
                    response = await call_next(request)
            finally:
                structlog.contextvars.clear_contextvars()

            response.headers.setdefault("X-Request-Id", request_id)
            # Streaming bodies are still in flight here; latency covers time to headers.
            server_requests_total.labels(path=route_label, status=str(response.status_code)).inc()
            server_request_latency_seconds.labels(path=route_label).observe(max(0.0, time.monotonic() - started_at))
            return response

    app.add_middleware(GatewayRequestMiddleware)
