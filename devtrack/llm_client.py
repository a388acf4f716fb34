"""
Normalized Completion Contract

Every provider adapter speaks this contract. Callers (the agent loop, the
automation engine, the phase orchestrator) only ever see these shapes and never
branch on which vendor produced them.

Implementing a new provider:

    from devtrack.llm_client import ProviderClient, CompletionResult

    class MyProvider(ProviderClient):
        provider = "mine"

        async def complete(self, messages, model, options, headers=None):
            ...
            return CompletionResult(content="...", model=model, provider=self.provider)

        async def close(self):
            pass
"""

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from typing import AsyncIterator, Optional


# =============================================================================
# Errors
# =============================================================================

class ProviderError(Exception):
    """A provider call failed."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code
        self.retry_after = retry_after


class RateLimitError(ProviderError):
    """The provider rejected the call because of rate limiting (retryable)."""
    pass


class ProviderUnavailableError(ProviderError):
    """No credential is configured for the provider."""
    pass


class RetryExhaustedError(ProviderError):
    """Rate-limit retries were exhausted for an operation."""
    pass


class NoModelsAvailableError(RuntimeError):
    """The router could not find any usable model."""
    pass


# =============================================================================
# Messages and tools
# =============================================================================

@dataclass
class ToolCall:
    """A tool invocation requested by the model. ``arguments`` is raw JSON text."""
    id: str
    name: str
    arguments: str = "{}"

    def parsed_arguments(self) -> dict:
        """Decode ``arguments``. Raises ValueError on malformed JSON."""
        if not self.arguments:
            return {}
        value = json.loads(self.arguments)
        if not isinstance(value, dict):
            raise ValueError("tool arguments must be a JSON object")
        return value

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Message:
    """A chat message."""
    role: str  # "system", "user", "assistant" or "tool"
    content: str = ""
    tool_call_id: Optional[str] = None
    tool_calls: Optional[list[ToolCall]] = None


@dataclass
class ToolDefinition:
    """A JSON-schema described callable the model may request."""
    name: str
    description: str
    parameters: dict = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class TokenUsage:
    """Token usage statistics."""
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: 'TokenUsage') -> 'TokenUsage':
        """Add another TokenUsage to this one."""
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CompletionOptions:
    """
    Per-call options.

    Attributes:
        task: Routing hint (e.g. "chat", "deep_audit", "project_init")
        tier: Preferred model tier ("premium", "standard", "budget")
        model: Explicit model override; skips routing entirely
        temperature: Sampling temperature
        max_tokens: Maximum tokens in the response
        tools: Tool definitions the model may call
        properties: Tracking properties forwarded to the telemetry proxy
    """
    task: Optional[str] = None
    tier: Optional[str] = None
    model: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    tools: Optional[list[ToolDefinition]] = None
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class CompletionResult:
    """Response from a non-streaming completion."""
    content: str
    model: str
    provider: str
    tool_calls: Optional[list[ToolCall]] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    estimated_cost_usd: float = 0.0
    finish_reason: Optional[str] = None


@dataclass
class StreamEvent:
    """
    One event of a normalized stream.

    ``type`` is one of: text_delta, tool_call_start, tool_call_delta,
    tool_call_end, done, error.
    """
    type: str
    content: Optional[str] = None
    tool_call: Optional[ToolCall] = None
    tool_call_index: Optional[int] = None
    model: Optional[str] = None
    provider: Optional[str] = None
    usage: Optional[TokenUsage] = None
    estimated_cost_usd: Optional[float] = None
    error: Optional[str] = None


# =============================================================================
# Provider protocol
# =============================================================================

class ProviderClient(ABC):
    """
    Abstract base class for vendor adapters.

    Required methods:
    - complete(): one normalized request -> one normalized result
    - close(): release HTTP resources

    Optional:
    - stream(): native streaming. Adapters whose backend cannot stream tool
      calls leave ``supports_tool_streaming`` False and the gateway replays
      ``complete()`` as a burst of synthetic events instead.
    """

    provider: str = ""
    supports_tool_streaming: bool = False

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        headers: Optional[dict[str, str]] = None,
    ) -> CompletionResult:
        """Send a non-streaming completion request."""
        pass

    async def stream(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        headers: Optional[dict[str, str]] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Send a streaming completion request."""
        raise NotImplementedError(f"{self.provider} does not support native streaming")
        yield  # pragma: no cover

    async def list_models(self) -> list[str]:
        """Model ids the backend advertises. Empty when unsupported."""
        return []

    @abstractmethod
    async def close(self):
        """Clean up resources (close HTTP clients, etc.)"""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def raise_for_provider_status(response, provider: str):
    """
    Convert an error HTTP response into the provider error taxonomy.

    ``response`` is an ``httpx.Response``.
    """
    if response.status_code < 400:
        return

    detail = response.text[:500]
    retry_after = parse_retry_after(response.headers.get("retry-after"))
    message = f"{provider} request failed: {response.status_code} - {detail}"

    if response.status_code == 429 or "rate_limit" in detail or "RESOURCE_EXHAUSTED" in detail:
        raise RateLimitError(message, provider=provider, status_code=response.status_code, retry_after=retry_after)
    raise ProviderError(message, provider=provider, status_code=response.status_code, retry_after=retry_after)
