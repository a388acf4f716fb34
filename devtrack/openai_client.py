"""
OpenAI API Client

Async httpx adapter for the OpenAI chat-completions API. Tool results travel as
their own ``tool`` role message, which is exactly the normalized shape, so the
translation here is mostly one-to-one.
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

OPENAI_API_URL = "https://api.openai.com/v1"
HELICONE_OPENAI_URL = "https://oai.helicone.ai/v1"


def to_openai_message(msg: Message) -> dict:
    """Translate a normalized message to the OpenAI wire shape."""
    data: dict = {"role": msg.role, "content": msg.content}
    if msg.tool_call_id:
        data["tool_call_id"] = msg.tool_call_id
    if msg.tool_calls:
        data["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {"name": tc.name, "arguments": tc.arguments},
            }
            for tc in msg.tool_calls
        ]
    return data


def to_openai_tool(tool: ToolDefinition) -> dict:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


class OpenAIClient(ProviderClient):
    """
    Async client for the OpenAI API.

    Usage:
        client = OpenAIClient(api_key="sk-...")
        result = await client.complete([Message("user", "Hello!")], "gpt-5.2", CompletionOptions())
    """

    provider = "openai"
    supports_tool_streaming = True

    def __init__(
        self,
        api_key: str,
        base_url: str = OPENAI_API_URL,
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
            "Authorization": f"Bearer {self.api_key}",
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
        payload = {
            "model": model,
            "messages": [to_openai_message(m) for m in messages],
            "temperature": options.temperature,
            "max_tokens": options.max_tokens,
        }
        if options.tools:
            payload["tools"] = [to_openai_tool(t) for t in options.tools]
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
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
            response = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.RequestError as e:
            raise ProviderError(f"Network error: {e}", provider=self.provider)
        raise_for_provider_status(response, self.provider)

        data = response.json()
        if "choices" not in data or not data["choices"]:
            raise ProviderError(f"Invalid API response: no choices returned. Response: {data}", provider=self.provider)

        choice = data["choices"][0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc["id"],
                name=tc["function"]["name"],
                arguments=tc["function"].get("arguments") or "{}",
            )
            for tc in message.get("tool_calls") or []
        ]
        usage = data.get("usage") or {}
        input_tokens = usage.get("prompt_tokens", 0)
        output_tokens = usage.get("completion_tokens", 0)

        return CompletionResult(
            content=message.get("content") or "",
            tool_calls=tool_calls or None,
            model=model,
            provider=self.provider,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=usage.get("total_tokens", input_tokens + output_tokens),
            ),
            estimated_cost_usd=estimate_cost(model, input_tokens, output_tokens),
            finish_reason=choice.get("finish_reason"),
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
        tool_calls: dict[int, ToolCall] = {}
        usage = TokenUsage()

        try:
            async with client.stream("POST", f"{self.base_url}/chat/completions", json=payload, headers=headers) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise_for_provider_status(response, self.provider)

                async for line in response.aiter_lines():
                    if not line or not line.startswith("data: "):
                        continue

                    data_str = line[6:]  # Remove "data: " prefix
                    if data_str == "[DONE]":
                        break

                    try:
                        chunk = json.loads(data_str)
                    except json.JSONDecodeError:
                        continue

                    if "error" in chunk:
                        raise ProviderError(f"Stream error: {chunk['error']}", provider=self.provider)

                    if chunk.get("usage"):
                        u = chunk["usage"]
                        usage = TokenUsage(
                            input_tokens=u.get("prompt_tokens", 0),
                            output_tokens=u.get("completion_tokens", 0),
                            total_tokens=u.get("total_tokens", 0),
                        )

                    choices = chunk.get("choices") or []
                    if not choices:
                        continue
                    delta = choices[0].get("delta") or {}

                    if delta.get("content"):
                        yield StreamEvent(type="text_delta", content=delta["content"])

                    for tc in delta.get("tool_calls") or []:
                        idx = tc.get("index", 0)
                        fn = tc.get("function") or {}
                        if tc.get("id"):
                            call = ToolCall(id=tc["id"], name=fn.get("name", ""), arguments=fn.get("arguments") or "")
                            tool_calls[idx] = call
                            yield StreamEvent(type="tool_call_start", tool_call=call, tool_call_index=idx)
                        elif idx in tool_calls and fn.get("arguments"):
                            tool_calls[idx].arguments += fn["arguments"]
                            yield StreamEvent(
                                type="tool_call_delta",
                                tool_call=tool_calls[idx],
                                tool_call_index=idx,
                                content=fn["arguments"],
                            )

                    if choices[0].get("finish_reason"):
                        for idx, call in tool_calls.items():
                            yield StreamEvent(type="tool_call_end", tool_call=call, tool_call_index=idx)
        except httpx.RequestError as e:
            raise ProviderError(f"Network error during stream: {e}", provider=self.provider)

        yield StreamEvent(
            type="done",
            model=model,
            provider=self.provider,
            usage=usage,
            estimated_cost_usd=estimate_cost(model, usage.input_tokens, usage.output_tokens),
        )

    async def list_models(self) -> list[str]:
        client = await self._get_client()
        response = await client.get(f"{self.base_url}/models")
        raise_for_provider_status(response, self.provider)
        # skip embeddings, whisper, dall-e, ...
        return [m["id"] for m in response.json().get("data", []) if m.get("id", "").startswith("gpt-")]
