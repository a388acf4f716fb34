"""
Headless Agent Runner

Drives one conversation to completion without any UI:

    call gateway -> no tool calls?  -> done
                 -> tool calls      -> execute each, append results, loop

The loop ends early when the iteration ceiling is reached (best-effort content
is returned, not an error) or when a cancellation token is set before the next
gateway call. Used by automations, project initialization and documentation
generation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, TYPE_CHECKING

from .llm_client import CompletionOptions, Message, ToolCall

if TYPE_CHECKING:
    from .audit import AuditRecorder
    from .gateway import CompletionGateway
    from .tools import ToolRegistry

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 20
DEFAULT_TASK = "deep_audit"
RESULT_PREVIEW_CHARS = 200


class CancellationToken:
    """Cooperative cancellation signal, checked before each gateway call."""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


@dataclass
class AgentOptions:
    """
    Options for one agent run.

    Attributes:
        task: Routing hint for model selection (default "deep_audit")
        tier: Preferred model tier
        model: Explicit model id (skips routing)
        max_iterations: Gateway-call ceiling
        allowed_tools: Subset of registry tool names (None = all)
        max_tokens / temperature: Forwarded to the gateway
        properties: Telemetry tracking properties
    """
    task: str = DEFAULT_TASK
    tier: Optional[str] = None
    model: Optional[str] = None
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    allowed_tools: Optional[list[str]] = None
    max_tokens: int = 4096
    temperature: float = 0.7
    properties: dict[str, str] = field(default_factory=dict)


@dataclass
class ToolCallRecord:
    """One executed tool call, as returned in the run log."""
    name: str
    args: dict
    result_preview: str


@dataclass
class ToolCallEvent:
    """Passed to ``on_tool_call`` after every tool execution."""
    name: str
    args: dict
    result: str
    total_cost: float
    total_tokens: int


@dataclass
class AgentResult:
    """Outcome of one agent run."""
    content: str
    tool_calls_made: list[ToolCallRecord] = field(default_factory=list)
    iterations: int = 0
    tokens_used: int = 0
    cost: float = 0.0
    model: str = ""
    cancelled: bool = False


class AgentRunner:
    """
    Tool-calling loop over a CompletionGateway and a ToolRegistry.

    Usage:
        runner = AgentRunner(gateway, registry)
        result = await runner.run(system_prompt, "Audit the backlog", AgentOptions(max_iterations=10))
    """

    def __init__(self, gateway: "CompletionGateway", tools: "ToolRegistry"):
        self.gateway = gateway
        self.tools = tools

    async def _execute(self, call: ToolCall) -> tuple[dict, str]:
        try:
            args = call.parsed_arguments()
        except ValueError as e:
            return {}, json.dumps({"error": f"Invalid JSON arguments for {call.name}: {e}"})

        try:
            result = await self.tools.execute(call.name, args)
        except Exception as e:
            logger.warning("Tool executor raised for %s: %s", call.name, e)
            result = json.dumps({"error": str(e) or "Tool execution failed"})
        return args, result

    async def run(
        self,
        system_prompt: str,
        user_message: str,
        options: Optional[AgentOptions] = None,
        recorder: Optional["AuditRecorder"] = None,
        on_tool_call: Optional[Callable[[ToolCallEvent], Any]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> AgentResult:
        options = options or AgentOptions()
        tools = self.tools.definitions(options.allowed_tools)

        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=user_message),
        ]
        tool_log: list[ToolCallRecord] = []
        total_tokens = 0
        total_cost = 0.0
        last_content = ""
        model = ""

        for i in range(options.max_iterations):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info("Agent run cancelled before iteration %d", i + 1)
                return AgentResult(
                    content=last_content,
                    tool_calls_made=tool_log,
                    iterations=i,
                    tokens_used=total_tokens,
                    cost=total_cost,
                    model=model,
                    cancelled=True,
                )

            result = await self.gateway.complete(messages, CompletionOptions(
                task=options.task,
                tier=options.tier,
                model=options.model,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                tools=tools or None,
                properties=options.properties,
            ))

            total_tokens += result.usage.total_tokens
            total_cost += result.estimated_cost_usd
            model = result.model
            if result.content:
                last_content = result.content

            if recorder is not None:
                recorder.record_thinking(
                    result.content,
                    tokens=(result.usage.input_tokens, result.usage.output_tokens),
                    cost_usd=result.estimated_cost_usd,
                    model=result.model,
                    provider=result.provider,
                )

            messages.append(Message(
                role="assistant",
                content=result.content,
                tool_calls=result.tool_calls,
            ))

            if not result.tool_calls:
                return AgentResult(
                    content=result.content,
                    tool_calls_made=tool_log,
                    iterations=i + 1,
                    tokens_used=total_tokens,
                    cost=total_cost,
                    model=model,
                )

            for call in result.tool_calls:
                if recorder is not None:
                    try:
                        recorder.record_tool_call(call.name, call.parsed_arguments())
                    except ValueError:
                        recorder.record_tool_call(call.name, {})

                args, tool_result = await self._execute(call)

                if recorder is not None:
                    recorder.record_tool_result(call.name, tool_result)

                tool_log.append(ToolCallRecord(
                    name=call.name,
                    args=args,
                    result_preview=tool_result[:RESULT_PREVIEW_CHARS],
                ))
                messages.append(Message(role="tool", content=tool_result, tool_call_id=call.id))

                if on_tool_call is not None:
                    outcome = on_tool_call(ToolCallEvent(
                        name=call.name,
                        args=args,
                        result=tool_result,
                        total_cost=total_cost,
                        total_tokens=total_tokens,
                    ))
                    if asyncio.iscoroutine(outcome):
                        await outcome

        logger.warning("Agent hit max iterations (%d)", options.max_iterations)
        return AgentResult(
            content=last_content or f"[Agent hit max iterations ({options.max_iterations})]",
            tool_calls_made=tool_log,
            iterations=options.max_iterations,
            tokens_used=total_tokens,
            cost=total_cost,
            model=model,
        )
