"""
Automation Engine

Matches trigger events to automation definitions and executes them.

    engine = AutomationEngine(runner, automations, audits, activity, spend, ai_config)
    await engine.fire(TriggerContext("issue_created", {"severity": "critical"}))

Gates, checked on every fire (configuration is re-read each time):
- global automations switch; event triggers additionally need triggers_enabled
- daily budget cap (when pause_on_limit is set)
- one concurrent execution per automation id
- cooldown measured from last_fired

Matched automations are launched as background tasks; ``fire()`` never waits
for them and never raises because of them. Two kinds of execution:
- AI-driven: one agent run with an AuditRecorder attached
- rigid: all conditions must pass, then a fixed list of actions runs
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from .audit import AuditRecorder, AuditStore
from .config import AIConfig, AIConfigStore
from .events import EventBus
from .runner import AgentOptions, AgentRunner
from .store import (
    ActivityLog, Automation, AutomationCondition, AutomationStore, SpendLedger,
    iso_now, parse_iso, utc_now,
)

logger = logging.getLogger(__name__)

# Trigger types that are not external events
NON_EVENT_TRIGGERS = ("scheduled", "manual")

SYSTEM_PROMPT = """You are the DevTrack automation agent. You have access to the DevTrack tools.
Execute the following automation task with depth, precision, and attention to detail.
Use tools to read current state, make changes, and verify your work.
When creating or updating entities, provide rich descriptions and complete metadata.
When deduplicating: list existing items first, check for semantic overlap, keep the more complete version."""

ACTION_SYSTEM_PROMPT = "You are the DevTrack automation agent. Execute the task using available tools."


@dataclass
class TriggerContext:
    """One trigger event."""
    trigger: str
    data: Optional[dict] = None
    source: str = ""
    timestamp: str = field(default_factory=iso_now)


def audit_trigger_type(trigger: str) -> str:
    return trigger if trigger in NON_EVENT_TRIGGERS else "event"


def evaluate_conditions(conditions: list[AutomationCondition], data: Optional[dict]) -> bool:
    """True when every condition holds against *data*. No data never matches."""
    if not data:
        return False

    def check(cond: AutomationCondition) -> bool:
        value = data.get(cond.field)
        try:
            if cond.op == "eq":
                return value == cond.value
            if cond.op == "neq":
                return value != cond.value
            if cond.op == "gt":
                return value is not None and value > cond.value
            if cond.op == "lt":
                return value is not None and value < cond.value
            if cond.op == "contains":
                return str(cond.value) in str(value)
            if cond.op == "in":
                return isinstance(cond.value, list) and value in cond.value
        except TypeError:
            return False
        return False

    return all(check(c) for c in conditions)


class AutomationEngine:
    """Trigger-driven dispatcher with cooldown, overlap and budget gates."""

    def __init__(
        self,
        runner: AgentRunner,
        automations: AutomationStore,
        audits: AuditStore,
        activity: ActivityLog,
        spend: SpendLedger,
        ai_config: AIConfigStore,
        events: Optional[EventBus] = None,
        state_summary: Optional[Callable[[], str]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.runner = runner
        self.automations = automations
        self.audits = audits
        self.activity = activity
        self.spend = spend
        self.ai_config = ai_config
        self.events = events or EventBus()
        self.state_summary = state_summary or (lambda: "")
        self._clock = clock
        self._running: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._budget_warned_on: Optional[str] = None

    # =========================================================================
    # Gates
    # =========================================================================

    def is_running(self, automation_id: str) -> bool:
        return automation_id in self._running

    def _budget_exhausted(self, config: AIConfig) -> bool:
        if not config.budget.get("pause_on_limit", True):
            return False
        spent = self.spend.today_spend()
        limit = float(config.budget.get("daily_limit_usd", 5.0))
        if spent >= limit:
            logger.warning("Daily AI budget reached ($%.2f of $%.2f); automations paused", spent, limit)
            return True
        return False

    def _enabled_for(self, config: AIConfig, trigger: str) -> bool:
        settings = config.automations
        if not settings.get("enabled", True):
            return False
        if trigger not in NON_EVENT_TRIGGERS and not settings.get("triggers_enabled", True):
            return False
        return True

    @staticmethod
    def _matches(automation: Automation, context: TriggerContext) -> bool:
        if not automation.enabled or automation.trigger != context.trigger:
            return False
        # a scheduler-issued trigger is addressed to one automation
        target = (context.data or {}).get("automation_id") if context.trigger == "scheduled" else None
        return target is None or target == automation.id

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def fire(self, context: TriggerContext) -> list[str]:
        """
        Launch every eligible automation for *context*.

        Returns the ids that were launched. Runs in the background; use
        ``wait_idle()`` to wait for them.
        """
        config = self.ai_config.load()
        if not self._enabled_for(config, context.trigger):
            logger.debug("Automations disabled for trigger %s", context.trigger)
            return []
        if self._budget_exhausted(config):
            return []

        matched = [a for a in self.automations.load() if self._matches(a, context)]
        if not matched:
            return []

        logger.info("Trigger: %s - %d automation(s) matched", context.trigger, len(matched))
        cooldown = timedelta(minutes=float(config.automations.get("cooldown_minutes", 60)))
        now = self._clock()
        launched = []

        for automation in matched:
            # unmet conditions must not start the cooldown
            if not automation.ai_driven and automation.conditions:
                if not evaluate_conditions(automation.conditions, context.data):
                    logger.info("Skipping %s - conditions not met", automation.id)
                    continue

            if automation.id in self._running:
                logger.info("Skipping %s - already running", automation.id)
                continue

            last_fired = parse_iso(automation.last_fired)
            if last_fired is not None and now - last_fired < cooldown:
                remaining = (cooldown - (now - last_fired)).total_seconds() / 60
                logger.info("Skipping %s - cooldown (%.0f min remaining)", automation.id, remaining)
                continue

            self._launch(automation, context, config, now)
            launched.append(automation.id)

        return launched

    async def force_run(self, automation_id: str, data: Optional[dict] = None) -> bool:
        """
        Run one automation now, ignoring cooldown and trigger type.

        Still refuses to overlap a running instance and respects the budget cap.
        """
        automation = self.automations.get(automation_id)
        if automation is None:
            raise KeyError(f"Automation not found: {automation_id}")
        if automation_id in self._running:
            logger.info("Skipping %s - already running", automation_id)
            return False

        config = self.ai_config.load()
        if self._budget_exhausted(config):
            return False

        self._launch(automation, TriggerContext("manual", data, source="manual"), config, self._clock())
        return True

    def _launch(self, automation: Automation, context: TriggerContext, config: AIConfig, now: datetime):
        # flag and stamp synchronously, before the task can be scheduled
        self._running.add(automation.id)
        self.automations.mark_fired(automation.id, now.isoformat())

        task = asyncio.create_task(self._execute(automation, context, config))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def wait_idle(self):
        """Wait until every launched execution has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # =========================================================================
    # Execution
    # =========================================================================

    async def _execute(self, automation: Automation, context: TriggerContext, config: AIConfig):
        start = time.monotonic()
        status = "completed"
        error: Optional[str] = None
        cost = 0.0

        try:
            if not automation.ai_driven and automation.conditions:
                if not evaluate_conditions(automation.conditions, context.data):
                    logger.info("%s - conditions not met, skipping", automation.id)
                    return

            if automation.ai_driven and automation.ai_prompt:
                cost = await self._run_ai(automation, context, config)
            else:
                cost = await self._run_actions(automation, context)

            self.automations.increment_fire_count(automation.id)
        except Exception as e:
            status = "failed"
            error = str(e) or type(e).__name__
            logger.exception("Error in automation %s", automation.id)
        finally:
            self._running.discard(automation.id)

        duration = round(time.monotonic() - start, 1)
        if cost:
            self._record_spend(cost, config)

        logger.info("%s %s in %.1fs ($%.4f)", automation.id, status, duration, cost)
        self.activity.add(
            type="automation_fired" if status == "completed" else "automation_failed",
            title=f"Automation {'fired' if status == 'completed' else 'failed'}: {automation.name}",
            entity_type="automation",
            entity_id=automation.id,
            metadata={
                "trigger": context.trigger,
                "duration_seconds": duration,
                "status": status,
                "cost_usd": round(cost, 6),
                "error": error,
            },
        )

    def _context_summary(self, context: TriggerContext) -> str:
        lines = [f"Trigger: {context.trigger}"]
        if context.data:
            lines.append(f"Data: {json.dumps(context.data, default=str)[:2000]}")
        summary = self.state_summary()
        if summary:
            lines.append(summary)
        return "\n".join(lines)

    async def _run_ai(self, automation: Automation, context: TriggerContext, config: AIConfig) -> float:
        settings = config.automations
        recorder = AuditRecorder(
            self.audits,
            automation.id,
            automation.name,
            audit_trigger_type(context.trigger),
            context.source or context.trigger,
            {"data": context.data or {}},
        )
        system_prompt = "\n".join([
            SYSTEM_PROMPT,
            "",
            f"Automation: {automation.name}",
            f"Description: {automation.description}",
            "",
            automation.ai_prompt or "",
        ])
        options = AgentOptions(
            task="deep_audit",
            tier=automation.tier or settings.get("default_tier"),
            max_iterations=int(settings.get("max_iterations", 20)),
            properties={"Automation": automation.id, "Trigger": context.trigger},
        )

        try:
            result = await self.runner.run(system_prompt, self._context_summary(context), options, recorder=recorder)
        except Exception as e:
            recorder.fail(str(e) or type(e).__name__)
            raise

        recorder.finalize(result.content, result.iterations)
        logger.info(
            "AI agent for %r completed: %d iterations, %d tool calls, $%.4f",
            automation.name, result.iterations, len(result.tool_calls_made), result.cost,
        )
        return result.cost

    async def _run_actions(self, automation: Automation, context: TriggerContext) -> float:
        cost = 0.0
        for action in automation.actions:
            if action.type == "notify":
                self.events.publish("activity_event", {
                    "title": f"Automation: {automation.name}",
                    "detail": action.value,
                })
            elif action.type == "run_ai_agent":
                value: Any = action.value or {}
                if isinstance(value, dict) and value.get("prompt"):
                    result = await self.runner.run(
                        ACTION_SYSTEM_PROMPT,
                        value["prompt"],
                        AgentOptions(task=value.get("task") or "deep_audit"),
                    )
                    cost += result.cost
            else:
                logger.warning("Unknown action type: %s", action.type)
        return cost

    def _record_spend(self, cost: float, config: AIConfig):
        total = self.spend.add(cost)
        warn_at = float(config.budget.get("warn_at_usd", 3.0))
        today = self._clock().date().isoformat()
        if total >= warn_at and self._budget_warned_on != today:
            self._budget_warned_on = today
            logger.warning(
                "AI spend today is $%.2f (warning threshold $%.2f, limit $%.2f)",
                total, warn_at, float(config.budget.get("daily_limit_usd", 5.0)),
            )
