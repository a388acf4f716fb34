"""Gateway routing, downgrade and telemetry tests with in-memory providers."""

import httpx
import pytest

from devtrack.config import AIConfigStore, DevTrackConfig
from devtrack.gateway import CompletionGateway, build_clients
from devtrack.llm_client import (
    CompletionOptions, CompletionResult, Message, ProviderClient, ProviderError,
    ProviderUnavailableError, RateLimitError, RetryExhaustedError, StreamEvent, TokenUsage, ToolCall,
)
from devtrack.rate_limit import TokenRateTracker
from devtrack.router import ModelRouter


class FakeProvider(ProviderClient):

    def __init__(self, provider: str, results=None, stream_events=None, streams_tools: bool = False):
        self.provider = provider
        self.supports_tool_streaming = streams_tools
        self.results = list(results or [])
        self.stream_events = list(stream_events or [])
        self.calls = []
        self.closed = False

    async def complete(self, messages, model, options, headers=None):
        self.calls.append({"model": model, "headers": headers})
        item = self.results.pop(0) if self.results else CompletionResult("ok", model, self.provider)
        if isinstance(item, Exception):
            raise item
        return item

    async def stream(self, messages, model, options, headers=None):
        self.calls.append({"model": model, "headers": headers, "stream": True})
        for item in self.stream_events:
            if isinstance(item, Exception):
                raise item
            yield item

    async def close(self):
        self.closed = True


class Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def config(data_dir):
    return DevTrackConfig(data_dir=data_dir, anthropic_api_key="sk-ant", project_name="acme")


def make_gateway(config, clients, sleep=None):
    sleep = sleep or Sleeps()
    return CompletionGateway(
        config,
        clients=clients,
        tracker=TokenRateTracker(sleep=sleep),
        sleep=sleep,
    )


# =============================================================================
# Routing and availability
# =============================================================================

class TestRouting:

    def test_router_prefers_task_tier_order(self):
        router = ModelRouter({"anthropic", "openai"})

        assert router.route("deep_audit") == "claude-opus-4-6"
        assert router.route("project_init", "budget") == "claude-haiku-4-5-20251001"
        assert router.route("change_analysis") == "gpt-5.2"

    def test_router_only_routes_to_available_providers(self):
        router = ModelRouter({"google"})

        assert router.route("chat") == "gemini-3-pro-preview"
        assert router.route("chat", "budget") == "gemini-3-flash-preview"

    def test_model_override_from_ai_config(self, ai_config):
        ai_config.update("features", deep_audit={"model_override": "gpt-5-pro"})
        router = ModelRouter({"anthropic"}, config_loader=ai_config.load)

        assert router.route("deep_audit") == "gpt-5-pro"

    def test_no_providers_raises(self):
        from devtrack.llm_client import NoModelsAvailableError

        with pytest.raises(NoModelsAvailableError):
            ModelRouter(set()).route("chat")

    @pytest.mark.asyncio
    async def test_unconfigured_provider_is_unavailable(self, config):
        gateway = make_gateway(config, {"anthropic": FakeProvider("anthropic")})

        with pytest.raises(ProviderUnavailableError) as exc_info:
            await gateway.complete([Message("user", "hi")], CompletionOptions(model="gpt-5.2"))

        assert exc_info.value.provider == "openai"
        assert "OpenAI" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_explicit_model_reaches_its_provider(self, config):
        anthropic = FakeProvider("anthropic")
        gateway = make_gateway(config, {"anthropic": anthropic})

        result = await gateway.complete(
            [Message("user", "hi")], CompletionOptions(model="claude-haiku-4-5-20251001"),
        )

        assert result.content == "ok"
        assert anthropic.calls[0]["model"] == "claude-haiku-4-5-20251001"

    def test_build_clients_skips_missing_keys(self, data_dir):
        clients = build_clients(DevTrackConfig(data_dir=data_dir, google_api_key="g"))

        assert set(clients) == {"google"}

    @pytest.mark.asyncio
    async def test_close_closes_every_client(self, config):
        clients = {"anthropic": FakeProvider("anthropic"), "google": FakeProvider("google")}
        gateway = make_gateway(config, clients)

        await gateway.close()

        assert all(c.closed for c in clients.values())


# =============================================================================
# Retries
# =============================================================================

class TestRetry:

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, config):
        sleeps = Sleeps()
        provider = FakeProvider("anthropic", results=[
            RateLimitError("429", provider="anthropic", status_code=429),
            CompletionResult("second time", "claude-opus-4-6", "anthropic"),
        ])
        gateway = make_gateway(config, {"anthropic": provider}, sleep=sleeps)

        result = await gateway.complete([Message("user", "hi")])

        assert result.content == "second time"
        assert sleeps.delays == [5.0]

    @pytest.mark.asyncio
    async def test_other_errors_propagate_immediately(self, config):
        provider = FakeProvider("anthropic", results=[ProviderError("bad request", status_code=400)])
        gateway = make_gateway(config, {"anthropic": provider})

        with pytest.raises(ProviderError) as exc_info:
            await gateway.complete([Message("user", "hi")])

        assert not isinstance(exc_info.value, RetryExhaustedError)
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_name_the_model(self, config):
        provider = FakeProvider("anthropic", results=[RateLimitError("429", status_code=429)] * 4)
        gateway = make_gateway(config, {"anthropic": provider})

        with pytest.raises(RetryExhaustedError) as exc_info:
            await gateway.complete([Message("user", "hi")], CompletionOptions(model="claude-opus-4-6"))

        assert "claude-opus-4-6" in str(exc_info.value)
        assert len(provider.calls) == 4

    @pytest.mark.asyncio
    async def test_complete_throttles_on_recorded_usage(self, config):
        sleeps = Sleeps()
        tracker = TokenRateTracker(limits={"anthropic": 100}, clock=lambda: 1000.0, sleep=sleeps)
        provider = FakeProvider("anthropic", results=[
            CompletionResult("first", "claude-opus-4-6", "anthropic", usage=TokenUsage(95, 5, 100)),
            CompletionResult("second", "claude-opus-4-6", "anthropic", usage=TokenUsage(95, 5, 100)),
        ])
        gateway = CompletionGateway(config, clients={"anthropic": provider}, tracker=tracker, sleep=sleeps)
        messages = [Message("user", "x" * 40)]

        await gateway.complete(messages)
        assert sleeps.delays == []
        assert tracker.recent_tokens("anthropic") == 95

        await gateway.complete(messages)
        assert sleeps.delays == [30.0]
        assert tracker.recent_tokens("anthropic") == 190


# =============================================================================
# Streaming
# =============================================================================

class TestStreaming:

    @pytest.mark.asyncio
    async def test_downgraded_stream_replays_tool_calls(self, data_dir):
        config = DevTrackConfig(data_dir=data_dir, google_api_key="g")
        call = ToolCall("call_x", "read_file", '{"file_path": "a.py"}')
        google = FakeProvider("google", results=[CompletionResult(
            "", "gemini-3-pro-preview", "google",
            tool_calls=[call],
            usage=TokenUsage(10, 2, 12),
            estimated_cost_usd=0.001,
        )])
        gateway = make_gateway(config, {"google": google})

        events = [e async for e in gateway.stream([Message("user", "hi")])]

        assert [e.type for e in events] == ["tool_call_start", "tool_call_end", "done"]
        assert events[0].tool_call is call
        assert events[-1].usage.total_tokens == 12
        assert events[-1].estimated_cost_usd == 0.001
        assert "stream" not in google.calls[0]

    @pytest.mark.asyncio
    async def test_native_stream_passes_events_through(self, config):
        provider = FakeProvider("anthropic", streams_tools=True, stream_events=[
            StreamEvent(type="text_delta", content="Hel"),
            StreamEvent(type="text_delta", content="lo"),
            StreamEvent(type="done", usage=TokenUsage(5, 1, 6)),
        ])
        gateway = make_gateway(config, {"anthropic": provider})

        events = [e async for e in gateway.stream([Message("user", "hi")])]

        assert [e.content for e in events[:2]] == ["Hel", "lo"]
        assert events[-1].type == "done"
        assert gateway.tracker.recent_tokens("anthropic") == 5

    @pytest.mark.asyncio
    async def test_mid_stream_failure_becomes_error_event(self, config):
        provider = FakeProvider("anthropic", streams_tools=True, stream_events=[
            StreamEvent(type="text_delta", content="partial"),
            ProviderError("connection reset", provider="anthropic"),
        ])
        gateway = make_gateway(config, {"anthropic": provider})

        events = [e async for e in gateway.stream([Message("user", "hi")])]

        assert [e.type for e in events] == ["text_delta", "error"]
        assert "connection reset" in events[-1].error


# =============================================================================
# Telemetry proxy
# =============================================================================

class TestTelemetry:

    @pytest.mark.asyncio
    async def test_no_headers_when_proxy_disabled(self, config):
        config.helicone_api_key = "sk-helicone"
        provider = FakeProvider("anthropic")
        gateway = make_gateway(config, {"anthropic": provider})

        await gateway.complete([Message("user", "hi")], CompletionOptions(task="deep_audit"))

        assert provider.calls[0]["headers"] is None

    @pytest.mark.asyncio
    async def test_tracking_headers_when_proxy_enabled(self, config):
        config.helicone_api_key = "sk-helicone"
        AIConfigStore(config.data_dir).update("providers", helicone={"enabled": True})
        provider = FakeProvider("anthropic")
        gateway = make_gateway(config, {"anthropic": provider})

        await gateway.complete(
            [Message("user", "hi")],
            CompletionOptions(task="deep_audit", properties={"User": "dana", "Automation": "auto-1"}),
        )

        headers = provider.calls[0]["headers"]
        assert headers["Helicone-User-Id"] == "dana"
        assert headers["Helicone-Property-Automation"] == "auto-1"
        assert headers["Helicone-Property-Task"] == "deep_audit"
        assert headers["Helicone-Property-Project"] == "acme"

    def test_proxy_rewrites_base_urls(self, data_dir):
        store = AIConfigStore(data_dir)
        store.update("providers", helicone={"enabled": True})
        config = DevTrackConfig(
            data_dir=data_dir, openai_api_key="sk", anthropic_api_key="sk-ant", helicone_api_key="sk-h",
        )

        clients = build_clients(config, store.load(), transport=httpx.MockTransport(lambda r: httpx.Response(200)))

        assert clients["openai"].base_url == "https://oai.helicone.ai/v1"
        assert clients["anthropic"].base_url == "https://anthropic.helicone.ai"
        assert clients["anthropic"].default_headers["Helicone-Auth"] == "Bearer sk-h"
