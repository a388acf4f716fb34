"""
Google AI (Gemini) API Client

Async httpx adapter for the Gemini ``generateContent`` REST endpoint.

Gemini has no usable tool-call streaming, so this adapter leaves
``supports_tool_streaming`` False and the gateway downgrades ``stream()`` to a
replay of ``complete()``.

Wire differences handled here:
- assistant turns use role ``model``
- tool calls are ``functionCall`` parts and carry no id; ids are synthesized
- tool results are ``functionResponse`` parts keyed by function *name*, so the
  name is recovered from the assistant turn that issued the call
"""

import json
import uuid
from typing import Optional

import httpx

from .llm_client import (
    ProviderClient, Message, ToolCall, ToolDefinition, TokenUsage,
    CompletionOptions, CompletionResult, ProviderError,
    raise_for_provider_status,
)
from .router import estimate_cost, SEED_MODELS

GOOGLE_API_URL = "https://generativelanguage.googleapis.com/v1beta"

KNOWN_MODELS = SEED_MODELS["google"] + [
    "gemini-2.5-pro-preview-06-05",
    "gemini-2.5-flash-preview-05-20",
]


def to_google_contents(messages: list[Message]) -> list[dict]:
    """Translate normalized (non-system) messages to Gemini ``contents``."""
    call_names: dict[str, str] = {}
    contents: list[dict] = []

    for msg in messages:
        if msg.role == "system":
            continue

        if msg.role == "tool":
            try:
                response = json.loads(msg.content)
            except json.JSONDecodeError:
                response = None
            if not isinstance(response, dict):
                response = {"result": msg.content}
            part = {"functionResponse": {
                "name": call_names.get(msg.tool_call_id or "", "tool"),
                "response": response,
            }}
            # consecutive tool results share one user turn
            if contents and contents[-1]["role"] == "user" and "functionResponse" in contents[-1]["parts"][0]:
                contents[-1]["parts"].append(part)
            else:
                contents.append({"role": "user", "parts": [part]})
            continue

        if msg.role == "assistant":
            parts: list[dict] = []
            if msg.content:
                parts.append({"text": msg.content})
            for tc in msg.tool_calls or []:
                call_names[tc.id] = tc.name
                try:
                    args = json.loads(tc.arguments or "{}")
                except json.JSONDecodeError:
                    args = {}
                parts.append({"functionCall": {"name": tc.name, "args": args}})
            contents.append({"role": "model", "parts": parts or [{"text": ""}]})
            continue

        contents.append({"role": "user", "parts": [{"text": msg.content}]})

    return contents


def to_google_tools(tools: list[ToolDefinition]) -> list[dict]:
    return [{
        "functionDeclarations": [
            {"name": t.name, "description": t.description, "parameters": t.parameters}
            for t in tools
        ]
    }]


class GoogleClient(ProviderClient):
    """
    Async client for the Gemini API.

    Usage:
        client = GoogleClient(api_key="...")
        result = await client.complete(messages, "gemini-3-flash-preview", CompletionOptions())
    """

    provider = "google"
    supports_tool_streaming = False

    def __init__(
        self,
        api_key: str,
        base_url: str = GOOGLE_API_URL,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                headers={"x-goog-api-key": self.api_key, "Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def _build_payload(self, messages: list[Message], options: CompletionOptions) -> dict:
        contents = to_google_contents(messages)
        if not contents:
            raise ProviderError("No user message", provider=self.provider)

        payload: dict = {
            "contents": contents,
            "generationConfig": {
                "temperature": options.temperature,
                "maxOutputTokens": options.max_tokens,
            },
        }
        system = next((m.content for m in messages if m.role == "system"), "")
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if options.tools:
            payload["tools"] = to_google_tools(options.tools)
        return payload

    async def complete(
        self,
        messages: list[Message],
        model: str,
        options: CompletionOptions,
        headers: Optional[dict[str, str]] = None,
    ) -> CompletionResult:
        client = await self._get_client()
        payload = self._build_payload(messages, options)

        try:
            response = await client.post(
                f"{self.base_url}/models/{model}:generateContent",
                json=payload,
                headers=headers,
            )
        except httpx.RequestError as e:
            raise ProviderError(f"Network error: {e}", provider=self.provider)
        raise_for_provider_status(response, self.provider)

        data = response.json()
        candidates = data.get("candidates") or []
        parts = ((candidates[0].get("content") or {}).get("parts") or []) if candidates else []

        content = ""
        tool_calls: list[ToolCall] = []
        for part in parts:
            if "text" in part:
                content += part["text"]
            elif "functionCall" in part:
                fn = part["functionCall"]
                tool_calls.append(ToolCall(
                    id=f"call_{uuid.uuid4().hex[:12]}",
                    name=fn.get("name", ""),
                    arguments=json.dumps(fn.get("args") or {}),
                ))

        meta = data.get("usageMetadata") or {}
        input_tokens = meta.get("promptTokenCount", 0)
        output_tokens = meta.get("candidatesTokenCount", 0)

        return CompletionResult(
            content=content,
            tool_calls=tool_calls or None,
            model=model,
            provider=self.provider,
            usage=TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                total_tokens=meta.get("totalTokenCount", input_tokens + output_tokens),
            ),
            estimated_cost_usd=estimate_cost(model, input_tokens, output_tokens),
            finish_reason=candidates[0].get("finishReason") if candidates else None,
        )

    async def list_models(self) -> list[str]:
        # the list API shape differs from the others; known ids are enough to route
        return list(KNOWN_MODELS)
