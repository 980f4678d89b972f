import pytest
from pydantic import ValidationError

from provider_gateway.config import GatewayConfig, ProviderConfig, api_key_env_var, resolve_api_key


def test_defaults(monkeypatch):
    for name in ("GATEWAY_PROVIDERS", "GATEWAY_ROUTING_STRATEGY", "CIRCUIT_BREAKER_FAILURES", "RETRY_MAX_DELAY_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    cfg = GatewayConfig()
    assert cfg.providers == ["openai", "anthropic", "groq", "gemini"]
    assert cfg.routing_strategy == "balanced"
    assert cfg.circuit_breaker_failures == 5
    assert cfg.circuit_breaker_reset_seconds == 30
    assert cfg.retry_max_delay_seconds is None
    assert cfg.retry_jitter is False

    provider = ProviderConfig()
    assert provider.max_retries == 3
    assert provider.timeout_ms == 60000
    assert provider.timeout_seconds == 60.0


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("GATEWAY_PROVIDERS", " OpenAI ,groq,,")
    monkeypatch.setenv("CIRCUIT_BREAKER_FAILURES", "3")
    monkeypatch.setenv("RETRY_MAX_DELAY_SECONDS", "10")
    monkeypatch.setenv("RETRY_JITTER", "true")
    cfg = GatewayConfig()
    assert cfg.providers == ["openai", "groq"]
    assert cfg.circuit_breaker_failures == 3
    assert cfg.retry_max_delay_seconds == 10.0
    assert cfg.retry_jitter is True


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        GatewayConfig(circuit_breaker_failures=0)
    with pytest.raises(ValidationError):
        ProviderConfig(max_retries=-1)
    with pytest.raises(ValidationError):
        ProviderConfig(timeout_ms=0)


def test_routing_strategy_is_validated_at_load(monkeypatch):
    assert GatewayConfig(routing_strategy=" Round_Robin ").routing_strategy == "round_robin"
    with pytest.raises(ValidationError, match="routing_strategy"):
        GatewayConfig(routing_strategy="fastest")

    monkeypatch.setenv("GATEWAY_ROUTING_STRATEGY", "bogus")
    with pytest.raises(ValidationError):
        GatewayConfig()

    monkeypatch.setenv("GATEWAY_ROUTING_STRATEGY", "failover")
    monkeypatch.setenv("CIRCUIT_BREAKER_FAILURES", "0")
    with pytest.raises(ValidationError, match="circuit_breaker_failures"):
        GatewayConfig()


def test_api_key_resolution(monkeypatch):
    assert api_key_env_var("gemini") == "GEMINI_API_KEY"
    monkeypatch.setenv("GEMINI_API_KEY", "AIza-env")
    assert resolve_api_key("gemini") == "AIza-env"
    assert resolve_api_key("gemini", "explicit") == "explicit"
    monkeypatch.setenv("GEMINI_API_KEY", "")
    assert resolve_api_key("gemini") is None


def test_provider_config_and_known_secrets(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-env-openai")
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    cfg = GatewayConfig(
        providers=["openai", "anthropic"],
        provider_overrides={"anthropic": ProviderConfig(api_key="sk-ant-override", timeout_ms=5000)},
        server_auth_token="sekret",
    )
    assert cfg.provider_config("openai").api_key == "sk-env-openai"
    anthropic = cfg.provider_config("anthropic")
    assert anthropic.api_key == "sk-ant-override"
    assert anthropic.timeout_seconds == 5.0
    assert set(cfg.known_secrets()) == {"sekret", "sk-env-openai", "sk-ant-override"}
