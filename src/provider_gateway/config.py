from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class RoutingStrategy(str, Enum):
    COST_OPTIMIZED = "cost_optimized"
    SPEED_OPTIMIZED = "speed_optimized"
    QUALITY_OPTIMIZED = "quality_optimized"
    BALANCED = "balanced"
    FAILOVER = "failover"
    ROUND_ROBIN = "round_robin"


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip().lower() for v in value.split(",") if v.strip()]


def _optional_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return float(raw)


def api_key_env_var(provider_name: str) -> str:
    return f"{provider_name.upper()}_API_KEY"


def resolve_api_key(provider_name: str, explicit: str | None = None) -> str | None:
    """Explicit key wins, else ``{NAME}_API_KEY`` from the environment."""
    if explicit:
        return explicit
    return os.getenv(api_key_env_var(provider_name)) or None


class ProviderConfig(BaseModel):
    api_key: str | None = None
    base_url: str | None = None
    max_retries: int = Field(default=3, ge=0)
    timeout_ms: int = Field(default=60000, gt=0)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


class GatewayConfig(BaseModel):
    # Providers
    providers: list[str] = Field(
        default_factory=lambda: _parse_csv(os.getenv("GATEWAY_PROVIDERS", "openai,anthropic,groq,gemini"))
    )
    provider_overrides: dict[str, ProviderConfig] = Field(default_factory=dict)
    routing_strategy: str = Field(
        default_factory=lambda: os.getenv("GATEWAY_ROUTING_STRATEGY", "balanced"), validate_default=True
    )

    # Failure isolation
    circuit_breaker_failures: int = Field(
        default_factory=lambda: int(os.getenv("CIRCUIT_BREAKER_FAILURES", "5")), validate_default=True
    )
    circuit_breaker_reset_seconds: float = Field(
        default_factory=lambda: float(os.getenv("CIRCUIT_BREAKER_RESET_SECONDS", "30"))
    )
    retry_max_delay_seconds: float | None = Field(
        default_factory=lambda: _optional_float("RETRY_MAX_DELAY_SECONDS")
    )
    retry_jitter: bool = Field(default_factory=lambda: os.getenv("RETRY_JITTER", "false").lower() == "true")

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))

    # HTTP surface
    server_auth_token: str | None = Field(default_factory=lambda: os.getenv("SERVER_AUTH_TOKEN"))
    enable_streaming: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_STREAMING", "true").lower() == "true"
    )
    enable_api_docs: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_API_DOCS", "false").lower() == "true"
    )

    @field_validator("circuit_breaker_failures")
    @classmethod
    def _validate_failures(cls, v: int) -> int:
        if v < 1:
            raise ValueError("circuit_breaker_failures must be >= 1.")
        return v

    @field_validator("routing_strategy")
    @classmethod
    def _validate_routing_strategy(cls, v: str) -> str:
        normalized = v.strip().lower()
        allowed = [s.value for s in RoutingStrategy]
        if normalized not in allowed:
            raise ValueError(f"routing_strategy must be one of: {', '.join(allowed)}.")
        return normalized

    def provider_config(self, name: str) -> ProviderConfig:
        """Per-provider settings with the API key resolved from the environment."""
        base = self.provider_overrides.get(name) or ProviderConfig()
        return base.model_copy(update={"api_key": resolve_api_key(name, base.api_key)})

    def known_secrets(self) -> list[str]:
        secrets = [self.server_auth_token] if self.server_auth_token else []
        for name in self.providers:
            key = self.provider_config(name).api_key
            if key:
                secrets.append(key)
        return secrets
