"""Composition root: a registry of provider instances plus provider selection.

Example:
    gateway = ProviderGateway.from_config(GatewayConfig())
    result = await gateway.complete("openai", CompletionRequest.from_dicts(
        [{"role": "user", "content": "Hello"}]
    ))

Each registered provider owns its breaker and metrics. There is no
cross-provider failover: a failed call surfaces to the caller, and a caller
that wants a second opinion picks another provider explicitly.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator, Iterable, Sequence
from typing import Any

import structlog

from .anthropic_provider import AnthropicProvider
from .circuit_breaker import CircuitBreaker
from .config import GatewayConfig, RoutingStrategy
from .contracts import CompletionRequest, CompletionResult, EmbeddingResult, HealthStatus, StreamChunk
from .errors import NoProviderAvailableError, UnknownProviderError, UnsupportedFeatureError
from .gemini_provider import GeminiProvider
from .groq_provider import GroqProvider
from .openai_provider import OpenAIProvider
from .provider import BaseProvider
from .retry import RetryPolicy

log = structlog.get_logger()

PROVIDER_CLASSES: dict[str, type[BaseProvider]] = {
    OpenAIProvider.name: OpenAIProvider,
    AnthropicProvider.name: AnthropicProvider,
    GroqProvider.name: GroqProvider,
    GeminiProvider.name: GeminiProvider,
}


STRATEGY_PRIORITY: dict[RoutingStrategy, tuple[str, ...]] = {
    RoutingStrategy.COST_OPTIMIZED: ("groq", "gemini", "openai", "anthropic"),
    RoutingStrategy.SPEED_OPTIMIZED: ("groq", "gemini", "openai", "anthropic"),
    RoutingStrategy.QUALITY_OPTIMIZED: ("anthropic", "openai", "gemini", "groq"),
    RoutingStrategy.BALANCED: ("openai", "anthropic", "gemini", "groq"),
    RoutingStrategy.FAILOVER: ("openai", "anthropic", "gemini", "groq"),
    RoutingStrategy.ROUND_ROBIN: ("openai", "anthropic", "gemini", "groq"),
}


def _build_provider(name: str, cfg: GatewayConfig) -> BaseProvider:
    cls = PROVIDER_CLASSES[name]
    provider_cfg = cfg.provider_config(name)
    return cls(
        provider_cfg,
        circuit_breaker=CircuitBreaker(
            name,
            failure_threshold=cfg.circuit_breaker_failures,
            reset_timeout_seconds=cfg.circuit_breaker_reset_seconds,
        ),
        retry_policy=RetryPolicy(
            provider_cfg.max_retries,
            max_delay_seconds=cfg.retry_max_delay_seconds,
            jitter=cfg.retry_jitter,
            name=name,
        ),
    )


class ProviderGateway:
    def __init__(
        self,
        providers: Iterable[BaseProvider] = (),
        *,
        strategy: RoutingStrategy | str = RoutingStrategy.BALANCED,
    ):
        self._providers: dict[str, BaseProvider] = {}
        self._strategy = RoutingStrategy(strategy)
        self._round_robin_index = 0
        self._rr_lock = threading.Lock()
        for provider in providers:
            self.register(provider)

    @classmethod
    def from_config(cls, cfg: GatewayConfig | None = None) -> "ProviderGateway":
        """Register every enabled vendor whose API key resolves."""
        cfg = cfg or GatewayConfig()
        gateway = cls(strategy=cfg.routing_strategy)
        for name in cfg.providers:
            if name not in PROVIDER_CLASSES:
                log.warning("gateway_unknown_provider_skipped", provider=name)
                continue
            if not cfg.provider_config(name).api_key:
                log.info("gateway_provider_not_configured", provider=name)
                continue
            gateway.register(_build_provider(name, cfg))
        log.info("gateway_initialized", providers=gateway.provider_names, strategy=gateway.strategy.value)
        return gateway

    # -- registry -----------------------------------------------------------------

    def register(self, provider: BaseProvider) -> BaseProvider:
        self._providers[provider.name] = provider
        return provider

    @property
    def provider_names(self) -> list[str]:
        return list(self._providers)

    def get_provider(self, name: str) -> BaseProvider:
        provider = self._providers.get(name)
        if provider is None or not provider.is_configured():
            raise UnknownProviderError(name)
        return provider

    @property
    def strategy(self) -> RoutingStrategy:
        return self._strategy

    def set_strategy(self, strategy: RoutingStrategy | str) -> None:
        self._strategy = RoutingStrategy(strategy)

    def _priority(self) -> list[str]:
        ordered = [n for n in STRATEGY_PRIORITY[self._strategy] if n in self._providers]
        # Providers registered outside the built-in vendor set go last.
        ordered.extend(n for n in self._providers if n not in ordered)
        return ordered

    def select_provider(self, preferred: str | None = None) -> BaseProvider:
        """Pick a configured provider whose breaker currently admits calls."""
        if preferred:
            provider = self._providers.get(preferred)
            if provider is not None and provider.is_configured() and provider.is_available():
                return provider

        candidates = [
            self._providers[n]
            for n in self._priority()
            if self._providers[n].is_configured() and self._providers[n].is_available()
        ]
        if not candidates:
            raise NoProviderAvailableError("No AI provider available")

        if self._strategy is RoutingStrategy.ROUND_ROBIN:
            with self._rr_lock:
                provider = candidates[self._round_robin_index % len(candidates)]
                self._round_robin_index += 1
            return provider
        return candidates[0]

    def _resolve(self, provider_name: str | None) -> BaseProvider:
        if provider_name is None:
            return self.select_provider()
        return self.get_provider(provider_name)

    # -- operations ---------------------------------------------------------------

    async def complete(self, provider_name: str | None, request: CompletionRequest) -> CompletionResult:
        provider = self._resolve(provider_name)
        return await provider.complete(request)

    async def stream(self, provider_name: str | None, request: CompletionRequest) -> AsyncIterator[StreamChunk]:
        provider = self._resolve(provider_name)
        stream = provider.stream(request)
        try:
            async for chunk in stream:
                yield chunk
        finally:
            await stream.aclose()

    async def embed(
        self,
        text: str | Sequence[str],
        *,
        provider_name: str | None = None,
        model: str | None = None,
    ) -> EmbeddingResult:
        if provider_name is not None:
            return await self.get_provider(provider_name).embed(text, model=model)
        capable = [
            self._providers[n]
            for n in self._priority()
            if self._providers[n].supports_embeddings and self._providers[n].is_configured()
        ]
        if not capable:
            raise UnsupportedFeatureError("No embedding provider configured")
        for provider in capable:
            if provider.is_available():
                return await provider.embed(text, model=model)
        raise NoProviderAvailableError("No embedding provider available")

    async def health_check_all(self) -> dict[str, HealthStatus]:
        names = list(self._providers)
        results = await asyncio.gather(*(self._health(n) for n in names), return_exceptions=True)
        statuses: dict[str, HealthStatus] = {}
        for name, result in zip(names, results):
            if isinstance(result, Exception):
                log.warning("gateway_health_check_failed", provider=name, error_type=type(result).__name__)
                result = HealthStatus(healthy=False, error=str(result) or type(result).__name__)
            elif isinstance(result, BaseException):
                raise result
            statuses[name] = result
        return statuses

    async def _health(self, name: str) -> HealthStatus:
        provider = self._providers[name]
        if not provider.is_configured():
            return HealthStatus(healthy=False, error="Not configured")
        return await provider.health_check()

    # -- observability ---------------------------------------------------------------

    def configured_providers(self) -> list[dict[str, Any]]:
        return [
            {
                "name": name,
                "display_name": p.display_name,
                "models": [m.to_dict() for m in p.models],
                "default_model": p.default_model,
                "supports_embeddings": p.supports_embeddings,
                "is_available": p.is_available(),
                "metrics": p.get_metrics(),
            }
            for name, p in self._providers.items()
            if p.is_configured()
        ]

    def list_models(self) -> list[dict[str, Any]]:
        models: list[dict[str, Any]] = []
        for name, p in self._providers.items():
            if not p.is_configured():
                continue
            for m in p.models:
                models.append({**m.to_dict(), "provider": name, "provider_display_name": p.display_name})
        return models

    def get_metrics(self) -> dict[str, Any]:
        return {
            "strategy": self._strategy.value,
            "providers": {name: p.get_metrics() for name, p in self._providers.items()},
        }

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
