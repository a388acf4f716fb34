"""
Completion Gateway

One entry point for every model call in the system:

    gateway = CompletionGateway(get_config())
    result = await gateway.complete(messages, CompletionOptions(task="deep_audit"))

    async for event in gateway.stream(messages, CompletionOptions(tools=defs)):
        ...

The gateway resolves the model (explicit override or router), picks the
provider adapter from the model id, and wraps the call in the rate governor
(preemptive token window + reactive retry). Providers without credentials are
reported unavailable and are never routed to.

Adapters that cannot stream tool calls (``supports_tool_streaming`` False) are
downgraded here: ``stream()`` performs one ``complete()`` and replays it as a
burst of synthetic events, so callers never branch on provider.
"""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

import httpx

from .anthropic_client import AnthropicClient, ANTHROPIC_API_URL, HELICONE_ANTHROPIC_URL
from .config import AIConfig, AIConfigStore, DevTrackConfig
from .google_client import GoogleClient
from .llm_client import (
    ProviderClient, Message, CompletionOptions, CompletionResult, StreamEvent,
    ProviderError, ProviderUnavailableError,
)
from .openai_client import OpenAIClient, OPENAI_API_URL, HELICONE_OPENAI_URL
from .rate_limit import TokenRateTracker, estimate_tokens, with_retry
from .router import ModelInfo, ModelRouter, provider_for_model

logger = logging.getLogger(__name__)

PROVIDER_LABELS = {
    "openai": "OpenAI",
    "anthropic": "Anthropic",
    "google": "Google",
}


def build_clients(
    config: DevTrackConfig,
    ai_config: Optional[AIConfig] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> dict[str, ProviderClient]:
    """
    Create one adapter per provider that has a credential.

    When the telemetry proxy is enabled (and keyed), OpenAI and Anthropic are
    pointed at the proxy base URLs with its auth headers.
    """
    ai_config = ai_config or AIConfig()
    use_proxy = bool(config.helicone_api_key and ai_config.helicone_enabled)
    proxy_headers: dict[str, str] = {}
    if use_proxy:
        proxy_headers["Helicone-Auth"] = f"Bearer {config.helicone_api_key}"
        if config.helicone_org_id:
            proxy_headers["Helicone-Organization-Id"] = config.helicone_org_id

    logger.info("Initializing providers (helicone: %s)", "ON" if use_proxy else "OFF")

    clients: dict[str, ProviderClient] = {}
    if config.openai_api_key:
        clients["openai"] = OpenAIClient(
            api_key=config.openai_api_key,
            base_url=HELICONE_OPENAI_URL if use_proxy else OPENAI_API_URL,
            default_headers=proxy_headers,
            transport=transport,
        )
        logger.info("  OpenAI: configured")
    if config.anthropic_api_key:
        clients["anthropic"] = AnthropicClient(
            api_key=config.anthropic_api_key,
            base_url=HELICONE_ANTHROPIC_URL if use_proxy else ANTHROPIC_API_URL,
            default_headers=proxy_headers,
            transport=transport,
        )
        logger.info("  Anthropic: configured")
    if config.google_api_key:
        clients["google"] = GoogleClient(api_key=config.google_api_key, transport=transport)
        logger.info("  Google: configured")
    return clients


def replay_as_stream(result: CompletionResult) -> list[StreamEvent]:
    """The synthetic event burst for a provider without tool-call streaming."""
    events: list[StreamEvent] = []
    for idx, tc in enumerate(result.tool_calls or []):
        events.append(StreamEvent(type="tool_call_start", tool_call=tc, tool_call_index=idx))
        events.append(StreamEvent(type="tool_call_end", tool_call=tc, tool_call_index=idx))
    if result.content:
        events.append(StreamEvent(type="text_delta", content=result.content))
    events.append(StreamEvent(
        type="done",
        model=result.model,
        provider=result.provider,
        usage=result.usage,
        estimated_cost_usd=result.estimated_cost_usd,
    ))
    return events


class CompletionGateway:
    """
    Provider-agnostic completion service.

    Everything stateful is constructor-injected so tests (and alternative
    process layouts) can supply their own clients, tracker and sleep.
    """

    def __init__(
        self,
        config: DevTrackConfig,
        ai_config_store: Optional[AIConfigStore] = None,
        clients: Optional[dict[str, ProviderClient]] = None,
        tracker: Optional[TokenRateTracker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.ai_config_store = ai_config_store or AIConfigStore(config.data_dir)
        self.clients = clients if clients is not None else build_clients(
            config, self.ai_config_store.load(), transport=transport,
        )
        self.tracker = tracker or TokenRateTracker(sleep=sleep)
        self._sleep = sleep
        self.router = ModelRouter(set(self.clients), config_loader=self.ai_config_store.load)

    # =========================================================================
    # Availability
    # =========================================================================

    @property
    def available_providers(self) -> set[str]:
        return set(self.clients)

    def is_configured(self) -> bool:
        """True when at least one provider has a credential."""
        return bool(self.clients)

    def is_available(self, provider: str) -> bool:
        return provider in self.clients

    def get_available_models(self) -> list[ModelInfo]:
        return self.router.get_available_models()

    async def discover(self) -> list[ModelInfo]:
        """Refresh the router's model list from the configured providers."""
        return await self.router.discover_models(self.clients)

    def resolve(self, options: CompletionOptions) -> tuple[str, str]:
        """(model, provider) for a call."""
        model = options.model or self.router.route(options.task or "chat", options.tier)
        return model, provider_for_model(model)

    def _client_for(self, provider: str) -> ProviderClient:
        client = self.clients.get(provider)
        if client is None:
            raise ProviderUnavailableError(
                f"{PROVIDER_LABELS.get(provider, provider)} not configured",
                provider=provider,
            )
        return client

    def _telemetry_headers(self, options: CompletionOptions) -> dict[str, str]:
        """Per-call tracking headers for the telemetry proxy (empty when it is off)."""
        if not (self.config.helicone_api_key and self.ai_config_store.load().helicone_enabled):
            return {}

        headers: dict[str, str] = {}
        if options.properties.get("User"):
            headers["Helicone-User-Id"] = options.properties["User"]
        for key, value in options.properties.items():
            headers[f"Helicone-Property-{key}"] = str(value)
        if options.task:
            headers["Helicone-Property-Task"] = options.task
        headers["Helicone-Property-Project"] = self.config.project_name or "unknown"
        return headers

    # =========================================================================
    # Public API
    # =========================================================================

    async def complete(
        self,
        messages: list[Message],
        options: Optional[CompletionOptions] = None,
    ) -> CompletionResult:
        """Non-streaming completion."""
        options = options or CompletionOptions()
        model, provider = self.resolve(options)
        client = self._client_for(provider)
        headers = self._telemetry_headers(options) or None

        await self.tracker.wait_if_needed(provider, estimate_tokens(messages))

        result = await with_retry(
            lambda: client.complete(messages, model, options, headers),
            f"{PROVIDER_LABELS.get(provider, provider)} {model}",
            sleep=self._sleep,
        )

        self.tracker.record_usage(provider, result.usage.input_tokens)
        return result

    async def stream(
        self,
        messages: list[Message],
        options: Optional[CompletionOptions] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Streaming completion yielding normalized StreamEvents.

        Rate-limit retries cover opening the stream (up to its first event);
        a provider failure after that is reported as an ``error`` event.
        """
        options = options or CompletionOptions()
        model, provider = self.resolve(options)
        client = self._client_for(provider)
        headers = self._telemetry_headers(options) or None
        label = f"{PROVIDER_LABELS.get(provider, provider)} stream {model}"

        await self.tracker.wait_if_needed(provider, estimate_tokens(messages))

        if not client.supports_tool_streaming:
            result = await with_retry(
                lambda: client.complete(messages, model, options, headers),
                label,
                sleep=self._sleep,
            )
            self.tracker.record_usage(provider, result.usage.input_tokens)
            for event in replay_as_stream(result):
                yield event
            return

        async def open_stream():
            events = client.stream(messages, model, options, headers).__aiter__()
            try:
                first = await events.__anext__()
            except StopAsyncIteration:
                first = None
            return events, first

        events, first = await with_retry(open_stream, label, sleep=self._sleep)

        try:
            pending = [first] if first is not None else []
            while True:
                if pending:
                    event = pending.pop()
                else:
                    try:
                        event = await events.__anext__()
                    except StopAsyncIteration:
                        break
                    except ProviderError as e:
                        logger.error("%s failed mid-stream: %s", label, e)
                        yield StreamEvent(type="error", error=str(e), model=model, provider=provider)
                        return

                if event.type == "done" and event.usage is not None:
                    self.tracker.record_usage(provider, event.usage.input_tokens)
                yield event
        finally:
            await events.aclose()

    async def close(self):
        """Close all provider clients."""
        for client in self.clients.values():
            await client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
