"""Shared fixtures: a scripted gateway stand-in and per-test data directories."""

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from devtrack.config import AIConfigStore
from devtrack.llm_client import CompletionResult, TokenUsage, ToolCall


def make_result(
    content: str = "",
    tool_calls: Optional[list[ToolCall]] = None,
    cost: float = 0.01,
    input_tokens: int = 100,
    output_tokens: int = 20,
    model: str = "claude-sonnet-4-5-20250929",
) -> CompletionResult:
    return CompletionResult(
        content=content,
        model=model,
        provider="anthropic",
        tool_calls=tool_calls,
        usage=TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens),
        estimated_cost_usd=cost,
    )


def tool_call(name: str, args: Optional[dict] = None, call_id: str = "call_1") -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=json.dumps(args or {}))


class ScriptedGateway:
    """
    Returns queued results in order and records every call.

    When the script runs out it keeps answering with a plain text result, so a
    loop that should have stopped shows up as extra calls rather than a hang.
    """

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = []

    def queue(self, *results):
        self.results.extend(results)

    async def complete(self, messages, options=None):
        self.calls.append((list(messages), options))
        if not self.results:
            return make_result("done")
        item = self.results.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeClock:
    """Mutable UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 6, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def data_dir(tmp_path):
    path = tmp_path / ".devtrack"
    path.mkdir()
    return path


@pytest.fixture
def ai_config(data_dir):
    return AIConfigStore(data_dir)


@pytest.fixture
def gateway():
    return ScriptedGateway()
