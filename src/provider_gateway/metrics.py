from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from prometheus_client import Counter, Histogram, start_http_server

RECENT_LATENCY_WINDOW = 100

server_requests_total = Counter(
    "gateway_server_requests_total",
    "Total HTTP requests handled by the gateway server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "gateway_server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "gateway_server_errors_total",
    "Total errors returned by the gateway server",
    labelnames=["type"],
)

circuit_breaker_events_total = Counter(
    "provider_circuit_breaker_events_total",
    "Circuit breaker events",
    labelnames=["provider", "event"],
)

requests_total = Counter(
    "provider_requests_total",
    "Total vendor calls made by provider",
    labelnames=["provider", "operation", "status"],
)

request_latency_seconds = Histogram(
    "provider_request_latency_seconds",
    "Vendor call latency",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60],
    labelnames=["provider", "operation"],
)

retries_total = Counter(
    "provider_retries_total",
    "Vendor call retries",
    labelnames=["provider"],
)

tokens_total = Counter(
    "provider_tokens_total",
    "Tokens consumed",
    labelnames=["provider", "kind"],
)

cost_usd_total = Counter(
    "provider_cost_usd_total",
    "Estimated spend in USD",
    labelnames=["provider"],
)


@dataclass(frozen=True)
class MetricsSnapshot:
    total_requests: int
    successful_requests: int
    failed_requests: int
    total_tokens: int
    total_cost: Decimal
    recent_latencies: tuple[int, ...]
    avg_latency: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "total_tokens": self.total_tokens,
            "total_cost": float(self.total_cost),
            "recent_latencies": list(self.recent_latencies),
            "avg_latency": self.avg_latency,
        }


class ProviderMetrics:
    """In-process counters for one provider; also feeds the Prometheus series.

    Only the owning provider mutates it. Totals are never reset.
    """

    def __init__(self, provider: str, *, window: int = RECENT_LATENCY_WINDOW):
        self.provider = provider
        self._lock = threading.Lock()
        self._total_requests = 0
        self._successful = 0
        self._failed = 0
        self._total_tokens = 0
        self._total_cost = Decimal(0)
        self._latencies: deque[int] = deque(maxlen=window)

    def record_success(
        self,
        *,
        operation: str,
        latency_ms: int,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        cost: Decimal = Decimal(0),
    ) -> None:
        with self._lock:
            self._total_requests += 1
            self._successful += 1
            self._total_tokens += prompt_tokens + completion_tokens
            self._total_cost += cost
            self._latencies.append(latency_ms)

        requests_total.labels(provider=self.provider, operation=operation, status="success").inc()
        request_latency_seconds.labels(provider=self.provider, operation=operation).observe(latency_ms / 1000.0)
        if prompt_tokens:
            tokens_total.labels(provider=self.provider, kind="prompt").inc(prompt_tokens)
        if completion_tokens:
            tokens_total.labels(provider=self.provider, kind="completion").inc(completion_tokens)
        if cost:
            cost_usd_total.labels(provider=self.provider).inc(float(cost))

    def record_failure(self, *, operation: str) -> None:
        with self._lock:
            self._total_requests += 1
            self._failed += 1
        requests_total.labels(provider=self.provider, operation=operation, status="error").inc()

    def record_retry(self) -> None:
        retries_total.labels(provider=self.provider).inc()

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            latencies = tuple(self._latencies)
            return MetricsSnapshot(
                total_requests=self._total_requests,
                successful_requests=self._successful,
                failed_requests=self._failed,
                total_tokens=self._total_tokens,
                total_cost=self._total_cost,
                recent_latencies=latencies,
                avg_latency=(sum(latencies) / len(latencies)) if latencies else 0.0,
            )


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
