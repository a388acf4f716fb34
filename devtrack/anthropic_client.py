"""
Anthropic API Client

Async httpx adapter for the Anthropic Messages API.

Differences from the normalized contract handled here:
- the system prompt is a top-level field, not a message
- tool results are ``tool_result`` content blocks inside a ``user`` message
- assistant tool calls are ``tool_use`` content blocks with decoded JSON input
"""

import json
from typing import AsyncIterator, Optional

import httpx

from .llm_client import (
    ProviderClient, Message, ToolCall, ToolDefinition, TokenUsage,
    CompletionOptions, CompletionResult, StreamEvent, ProviderError,
    raise_for_provider_status,
)
from .router import estimate_cost

ANTHROPIC_API_URL = "https://api.anthropic.com"
HELICONE_ANTHROPIC_URL = "https://anthropic.helicone.ai"
ANTHROPIC_VERSION = "2023-06-01"


def _decode_input(arguments: str) -> dict:
    try:
        value = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


def to_anthropic_message(msg: Message) -> dict:
    """Translate a normalized (non-system) message to the Anthropic wire shape."""
    if msg.role == "tool":
        return {
            "role": "user",
            "content": [{
                "type": "tool_result",
                "tool_use_id": msg.tool_call_id,
                "content": msg.content,
            }],
        }
    if msg.role == "assistant" and msg.tool_calls:
        content: list[dict] = []
        if msg.content:
            content.append({"type": "text", "text": msg.content})
        for tc in msg.tool_calls:
            content.append({
                "type": "tool_use",
                "id": tc.id,
                "name": tc.name,
                "input": _decode_input(tc.arguments),
            })
        return {"role": "assistant", "content": content}
    return {"role": "user" if msg.role == "user" else "assistant", "content": msg.content}


def merge_tool_results(messages: list[dict]) -> list[dict]:
    """
    Fold consecutive tool_result user messages into one user turn.

    The API requires strictly alternating roles, and one assistant turn may
    produce several tool calls.
    """
    merged: list[dict] = []
    for msg in messages:
        prev = merged[-1] if merged else None
        if (
            prev is not None
            and prev["role"] == "user" and msg["role"] == "user"
            and isinstance(prev["content"], list) and isinstance(msg["content"], list)
        ):
            prev["content"] = prev["content"] + msg["content"]
        else:
            merged.append(msg)
    return merged


def to_anthropic_tool(tool: ToolDefinition) -> dict:
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": tool.parameters,
    }


class AnthropicClient(ProviderClient):
    """
    Async client for the Anthropic Messages API.

    Usage:
        client = AnthropicClient(api_key="sk-ant-...")
        result = await client.complete(messages, "claude-sonnet-4-5-20250929", CompletionOptions())
    """

    provider = "anthropic"
    supports_tool_streaming = True

    def __init__(
        self,
        api_key: str,
        base_url: str = ANTHROPIC_API_URL,
        default_headers: Optional[dict[str, str]] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.default_headers = default_headers or {}
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def headers(self) -> dict:
        """Get request headers."""
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "Content-Type": "application/json",
            **self.default_headers,
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _build_payload(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        stream: bool = False,
    ) -> dict:
        """Build the request payload."""
        system = next((m.content for m in messages if m.role == "system"), "")
        conversation = merge_tool_results([to_anthropic_message(m) for m in messages if m.role != "system"])

        payload = {
            "model": model,
            "messages": conversation,
            "max_tokens": options.max_tokens,
            "temperature": options.temperature,
        }
        if system:
            payload["system"] = system
        if options.tools:
            payload["tools"] = [to_anthropic_tool(t) for t in options.tools]
        if stream:
            payload["stream"] = True
        return payload

    async def complete(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        headers: Optional[dict[str, str]] = None,
    ) -> CompletionResult:
        client = await self._get_client()
        payload = self._build_payload(messages, model, options)

        try:
            response = await client.post(f"{self.base_url}/v1/messages", json=payload, headers=headers)
        except httpx.RequestError as e:
            raise ProviderError(f"Network error: {e}", provider=self.provider)
        raise_for_provider_status(response, self.provider)

        data = response.json()
        if data.get("type") == "error":
            raise ProviderError(f"API error: {data.get('error')}", provider=self.provider)

        content = ""
        tool_calls: list[ToolCall] = []
        for block in data.get("content", []):
            if block.get("type") == "text":
                content += block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block["id"],
                    name=block["name"],
                    arguments=json.dumps(block.get("input") or {}),
                ))

        usage = data.get("usage") or {}
        input_tokens = usage.get("input_tokens", 0)
        output_tokens = usage.get("output_tokens", 0)

        return CompletionResult(
            content=content,
            tool_calls=tool_calls or None,
            model=model,
            provider=self.provider,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
            estimated_cost_usd=estimate_cost(model, input_tokens, output_tokens),
            finish_reason=data.get("stop_reason"),
        )

    async def stream(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        headers: Optional[dict[str, str]] = None,
    ) -> AsyncIterator[StreamEvent]:
        client = await self._get_client()
        payload = self._build_payload(messages, model, options, stream=True)
        current: Optional[ToolCall] = None
        index = -1
        usage = TokenUsage()

        try:
            async with client.stream("POST", f"{self.base_url}/v1/messages", json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_provider_status(response, self.provider)

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        event = json.loads(line[6:])
                    except json.JSONDecodeError:
                        continue

                    kind = event.get("type")
                    if kind == "error":
                        raise ProviderError(f"Stream error: {event.get('error')}", provider=self.provider)

                    if kind == "message_start":
                        u = (event.get("message") or {}).get("usage") or {}
                        usage.input_tokens = u.get("input_tokens", 0)

                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        if block.get("type") == "tool_use":
                            index += 1
                            current = ToolCall(id=block["id"], name=block["name"], arguments="")
                            yield StreamEvent(type="tool_call_start", tool_call=current, tool_call_index=index)

                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        if delta.get("type") == "text_delta":
                            yield StreamEvent(type="text_delta", content=delta.get("text", ""))
                        elif delta.get("type") == "input_json_delta" and current is not None:
                            current.arguments += delta.get("partial_json", "")
                            yield StreamEvent(
                                type="tool_call_delta",
                                tool_call=current,
                                tool_call_index=index,
                                content=delta.get("partial_json", ""),
                            )

                    elif kind == "content_block_stop":
                        if current is not None:
                            if not current.arguments:
                                current.arguments = "{}"
                            yield StreamEvent(type="tool_call_end", tool_call=current, tool_call_index=index)
                            current = None

                    elif kind == "message_delta":
                        u = event.get("usage") or {}
                        usage.output_tokens = u.get("output_tokens", usage.output_tokens)
        except httpx.RequestError as e:
            raise ProviderError(f"Network error during stream: {e}", provider=self.provider)

        usage.total_tokens = usage.input_tokens + usage.output_tokens
        yield StreamEvent(
            type="done",
            model=model,
            provider=self.provider,
            usage=usage,
            estimated_cost_usd=estimate_cost(model, usage.input_tokens, usage.output_tokens),
        )

    async def list_models(self) -> list[str]:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/v1/models", params={"limit": 30})
        raise_for_provider_status(response, self.provider)
        return [m["id"] for m in response.json().get("data", [])]
