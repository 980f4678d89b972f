import httpx
import pytest

from provider_gateway.anthropic_provider import AnthropicProvider
from provider_gateway.circuit_breaker import CircuitBreaker
from provider_gateway.config import GatewayConfig, ProviderConfig
from provider_gateway.contracts import CompletionRequest
from provider_gateway.errors import (
    NoProviderAvailableError,
    UnknownProviderError,
    UnsupportedFeatureError,
    VendorHTTPError,
)
from provider_gateway.gateway import ProviderGateway, RoutingStrategy
from provider_gateway.gemini_provider import GeminiProvider
from provider_gateway.groq_provider import GroqProvider
from provider_gateway.openai_provider import OpenAIProvider

_ALL_KEYS = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GROQ_API_KEY", "GEMINI_API_KEY")


def _openai_reply(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "model": "gpt-4o-mini",
            "choices": [{"message": {"content": "from openai"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 5, "completion_tokens": 2},
        },
    )


def _anthropic_reply(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "model": "claude-3-5-sonnet-20241022",
            "content": [{"type": "text", "text": "from anthropic"}],
            "usage": {"input_tokens": 5, "output_tokens": 2},
        },
    )


def _fail(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500)


def _make(cls, handler, *, api_key="test-key-123456", breaker=None):
    async def _sleep(_delay: float) -> None:
        return None

    return cls(
        ProviderConfig(api_key=api_key, max_retries=0),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        circuit_breaker=breaker,
        sleeper=_sleep,
    )


def _request():
    return CompletionRequest.from_dicts([{"role": "user", "content": "Hello"}])


@pytest.fixture
def no_env_keys(monkeypatch):
    for key in _ALL_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_from_config_registers_only_providers_with_keys(monkeypatch, no_env_keys):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-openai-1234")
    monkeypatch.setenv("GEMINI_API_KEY", "AIza-test-gemini-1234")
    gateway = ProviderGateway.from_config(GatewayConfig(enable_metrics=False))

    assert sorted(gateway.provider_names) == ["gemini", "openai"]
    assert isinstance(gateway.get_provider("openai"), OpenAIProvider)
    with pytest.raises(UnknownProviderError):
        gateway.get_provider("anthropic")


def test_from_config_respects_enabled_list_and_overrides(monkeypatch, no_env_keys):
    monkeypatch.setenv("GATEWAY_PROVIDERS", "groq, nope")
    cfg = GatewayConfig(provider_overrides={"groq": ProviderConfig(api_key="gsk_override_1234", max_retries=1)})
    gateway = ProviderGateway.from_config(cfg)

    assert gateway.provider_names == ["groq"]
    groq = gateway.get_provider("groq")
    assert groq.config.api_key == "gsk_override_1234"
    assert groq.retry_policy.max_retries == 1


def test_from_config_applies_breaker_settings(monkeypatch, no_env_keys):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test-1234")
    gateway = ProviderGateway.from_config(
        GatewayConfig(circuit_breaker_failures=2, circuit_breaker_reset_seconds=5, routing_strategy="cost_optimized")
    )
    breaker = gateway.get_provider("anthropic").circuit_breaker
    assert breaker.failure_threshold == 2
    assert breaker.reset_timeout_seconds == 5
    assert gateway.strategy is RoutingStrategy.COST_OPTIMIZED


@pytest.mark.asyncio
async def test_complete_routes_to_named_provider():
    gateway = ProviderGateway(
        [_make(OpenAIProvider, _openai_reply), _make(AnthropicProvider, _anthropic_reply)]
    )
    result = await gateway.complete("anthropic", _request())
    assert result.content == "from anthropic"
    assert result.provider_name == "anthropic"


@pytest.mark.asyncio
async def test_unknown_provider_is_rejected():
    gateway = ProviderGateway([_make(OpenAIProvider, _openai_reply)])
    with pytest.raises(UnknownProviderError):
        await gateway.complete("mistral", _request())


@pytest.mark.asyncio
async def test_unconfigured_provider_is_treated_as_unknown(monkeypatch):
    monkeypatch.delenv("GROQ_API_KEY", raising=False)
    gateway = ProviderGateway([_make(GroqProvider, _openai_reply, api_key=None)])
    with pytest.raises(UnknownProviderError):
        await gateway.complete("groq", _request())
    assert gateway.configured_providers() == []


@pytest.mark.asyncio
async def test_failed_call_surfaces_without_failover():
    gateway = ProviderGateway([_make(OpenAIProvider, _fail), _make(AnthropicProvider, _anthropic_reply)])
    with pytest.raises(VendorHTTPError) as ei:
        await gateway.complete(None, _request())
    assert ei.value.status_code == 500
    assert gateway.get_provider("anthropic").get_metrics()["total_requests"] == 0


def test_select_provider_follows_strategy_priority():
    gateway = ProviderGateway(
        [
            _make(OpenAIProvider, _openai_reply),
            _make(AnthropicProvider, _anthropic_reply),
            _make(GroqProvider, _openai_reply),
        ]
    )
    assert gateway.select_provider().name == "openai"

    gateway.set_strategy("cost_optimized")
    assert gateway.select_provider().name == "groq"

    gateway.set_strategy(RoutingStrategy.QUALITY_OPTIMIZED)
    assert gateway.select_provider().name == "anthropic"

    assert gateway.select_provider(preferred="openai").name == "openai"


def test_select_provider_skips_open_breakers():
    tripped = CircuitBreaker("openai", failure_threshold=1)
    tripped.record_failure()
    gateway = ProviderGateway(
        [_make(OpenAIProvider, _openai_reply, breaker=tripped), _make(AnthropicProvider, _anthropic_reply)]
    )
    assert gateway.select_provider().name == "anthropic"
    assert gateway.select_provider(preferred="openai").name == "anthropic"


def test_select_provider_raises_when_nothing_available():
    tripped = CircuitBreaker("openai", failure_threshold=1)
    tripped.record_failure()
    with pytest.raises(NoProviderAvailableError):
        ProviderGateway([_make(OpenAIProvider, _openai_reply, breaker=tripped)]).select_provider()
    with pytest.raises(NoProviderAvailableError):
        ProviderGateway().select_provider()


def test_round_robin_cycles_available_providers():
    gateway = ProviderGateway(
        [_make(OpenAIProvider, _openai_reply), _make(AnthropicProvider, _anthropic_reply)],
        strategy="round_robin",
    )
    picks = [gateway.select_provider().name for _ in range(4)]
    assert picks == ["openai", "anthropic", "openai", "anthropic"]


@pytest.mark.asyncio
async def test_stream_through_gateway():
    def handler(request: httpx.Request) -> httpx.Response:
        body = b'data: {"choices":[{"delta":{"content":"Hi"}}]}\n\ndata: [DONE]\n\n'
        return httpx.Response(200, content=body)

    gateway = ProviderGateway([_make(OpenAIProvider, handler)])
    chunks = [c async for c in gateway.stream("openai", _request())]
    assert [c.content for c in chunks] == ["Hi"]


@pytest.mark.asyncio
async def test_embed_picks_first_provider_that_supports_it():
    def gemini_embed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"embeddings": [{"values": [1.0, 2.0]}]})

    gateway = ProviderGateway(
        [_make(AnthropicProvider, _anthropic_reply), _make(GroqProvider, _openai_reply), _make(GeminiProvider, gemini_embed)]
    )
    result = await gateway.embed("hello")
    assert result.embeddings == [[1.0, 2.0]]

    with pytest.raises(UnsupportedFeatureError):
        await gateway.embed("hello", provider_name="anthropic")


@pytest.mark.asyncio
async def test_embed_skips_provider_with_open_breaker():
    def gemini_embed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"embeddings": [{"values": [0.1]}]})

    def openai_embed(request: httpx.Request) -> httpx.Response:
        raise AssertionError("openai breaker is open; no request expected")

    breaker = CircuitBreaker("openai", failure_threshold=1)
    breaker.record_failure()
    gateway = ProviderGateway([_make(OpenAIProvider, openai_embed, breaker=breaker), _make(GeminiProvider, gemini_embed)])

    result = await gateway.embed("hello")
    assert result.embeddings == [[0.1]]


@pytest.mark.asyncio
async def test_embed_with_every_capable_breaker_open():
    breaker = CircuitBreaker("openai", failure_threshold=1)
    breaker.record_failure()
    gateway = ProviderGateway([_make(OpenAIProvider, _fail, breaker=breaker), _make(AnthropicProvider, _anthropic_reply)])
    with pytest.raises(NoProviderAvailableError):
        await gateway.embed("hello")


@pytest.mark.asyncio
async def test_embed_without_capable_provider():
    gateway = ProviderGateway([_make(AnthropicProvider, _anthropic_reply)])
    with pytest.raises(UnsupportedFeatureError):
        await gateway.embed("hello")


@pytest.mark.asyncio
async def test_health_check_all_reports_each_provider():
    gateway = ProviderGateway([_make(OpenAIProvider, _openai_reply), _make(AnthropicProvider, _fail)])
    statuses = await gateway.health_check_all()
    assert statuses["openai"].healthy
    assert not statuses["anthropic"].healthy


@pytest.mark.asyncio
async def test_health_check_all_survives_a_malformed_provider(monkeypatch):
    def malformed(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": "oops"}], "usage": []})

    broken = _make(OpenAIProvider, malformed)
    gemini = _make(GeminiProvider, _fail)

    async def crash():
        raise RuntimeError("health check crashed")

    monkeypatch.setattr(gemini, "health_check", crash)
    gateway = ProviderGateway([broken, _make(AnthropicProvider, _anthropic_reply), gemini])
    statuses = await gateway.health_check_all()

    assert set(statuses) == {"openai", "anthropic", "gemini"}
    assert not statuses["openai"].healthy
    assert statuses["anthropic"].healthy
    assert not statuses["gemini"].healthy
    assert statuses["gemini"].error == "health check crashed"


@pytest.mark.asyncio
async def test_listing_and_metrics():
    gateway = ProviderGateway([_make(OpenAIProvider, _openai_reply), _make(GroqProvider, _openai_reply)])
    await gateway.complete("openai", _request())

    listed = {p["name"]: p for p in gateway.configured_providers()}
    assert set(listed) == {"openai", "groq"}
    assert listed["openai"]["supports_embeddings"] is True
    assert listed["groq"]["default_model"] == "llama-3.3-70b-versatile"

    models = gateway.list_models()
    mini = next(m for m in models if m["id"] == "gpt-4o-mini")
    assert mini["provider"] == "openai"
    assert mini["provider_display_name"] == "OpenAI"

    metrics = gateway.get_metrics()
    assert metrics["strategy"] == "balanced"
    assert metrics["providers"]["openai"]["successful_requests"] == 1
    assert metrics["providers"]["groq"]["total_requests"] == 0

    await gateway.aclose()
