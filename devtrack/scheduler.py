"""
Automation Scheduler

Checks every minute for due ``scheduled`` automations and fires them through
the automation engine, one at a time with a stagger delay so a backlog of
overdue automations (e.g. after a restart) never hits the providers at once.

Cadence comes from the automation's ``schedule`` field when set; otherwise it
is inferred from its text ("weekly", "daily"/"nightly", "hourly"), defaulting
to daily.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Optional

from .automation import AutomationEngine, TriggerContext
from .config import AIConfigStore
from .store import Automation, AutomationStore, parse_iso, utc_now

logger = logging.getLogger(__name__)

CHECK_INTERVAL_SECONDS = 60.0
STAGGER_SECONDS = 30.0

# Minimum hours since last_fired; slightly under the nominal period to absorb timer jitter
SCHEDULE_THRESHOLDS_HOURS = {
    "hourly": 1,
    "daily": 22,
    "weekly": 166,
}

# Most time-sensitive first
SCHEDULE_PRIORITY = {"hourly": 0, "daily": 1, "weekly": 2}


def get_schedule_type(automation: Automation) -> str:
    """hourly, daily or weekly."""
    if automation.schedule in SCHEDULE_THRESHOLDS_HOURS:
        return automation.schedule

    text = f"{automation.description} {automation.ai_prompt or ''} {automation.name}".lower()
    if "weekly" in text:
        return "weekly"
    if "daily" in text or "nightly" in text:
        return "daily"
    if "hourly" in text:
        return "hourly"
    return "daily"


def should_fire(schedule: str, now: datetime, last_fired: Optional[datetime]) -> bool:
    """Never-fired automations are due immediately."""
    if last_fired is None:
        return True
    hours = (now - last_fired).total_seconds() / 3600
    return hours >= SCHEDULE_THRESHOLDS_HOURS.get(schedule, SCHEDULE_THRESHOLDS_HOURS["daily"])


class Scheduler:
    """
    Periodic tick over scheduled automations.

    Usage:
        scheduler = Scheduler(engine, automations, ai_config)
        scheduler.start()      # background task on the running loop
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        engine: AutomationEngine,
        automations: AutomationStore,
        ai_config: AIConfigStore,
        interval: float = CHECK_INTERVAL_SECONDS,
        stagger: float = STAGGER_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.automations = automations
        self.ai_config = ai_config
        self.interval = interval
        self.stagger = stagger
        self._clock = clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def due_automations(self, now: Optional[datetime] = None) -> list[tuple[Automation, str]]:
        """(automation, schedule) pairs that are due, most time-sensitive first."""
        now = now or self._clock()
        due = []
        for automation in self.automations.load():
            if not automation.enabled or automation.trigger != "scheduled":
                continue
            schedule = get_schedule_type(automation)
            if should_fire(schedule, now, parse_iso(automation.last_fired)):
                due.append((automation, schedule))
        due.sort(key=lambda pair: SCHEDULE_PRIORITY.get(pair[1], 1))
        return due

    async def tick(self) -> list[str]:
        """One scheduler pass. Returns the ids the engine launched."""
        settings = self.ai_config.load().automations
        if not settings.get("enabled", True) or not settings.get("scheduler_enabled", True):
            return []

        now = self._clock()
        due = self.due_automations(now)
        fired: list[str] = []

        for i, (automation, schedule) in enumerate(due):
            if i > 0:
                logger.info("Staggering next automation by %.0fs...", self.stagger)
                await self._sleep(self.stagger)

            logger.info("Firing scheduled automation: %s (%s)", automation.name, schedule)
            fired.extend(await self.engine.fire(TriggerContext(
                trigger="scheduled",
                data={"schedule_type": schedule, "automation_id": automation.id},
                source="scheduler",
                timestamp=now.isoformat(),
            )))

        return fired

    async def run_forever(self):
        logger.info("Scheduler started (checking every %.0fs)", self.interval)
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("Error checking scheduled automations")
            await self._sleep(self.interval)

    def start(self):
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever())

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Scheduler stopped")
