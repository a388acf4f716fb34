"""
Phased Initialization

Runs project initialization as an ordered list of focused phases. Each phase is
one agent run with its own prompt, tool subset, model tier and iteration
ceiling:

    0. discovery   (budget)   analysis only, produces a plan
    1. systems     (standard) system entities
    2. roadmap     (premium)  epics, roadmap items, issues, ideas
    3. crossref    (standard) linking and milestones, from a fresh state snapshot
    4. git_import  (budget)   changelog entries from git history
    5. finalize    (premium)  project state, context recovery, brain notes

The checkpoint is saved after every phase. A failed phase stops the run without
being marked complete, so running again with the same checkpoint skips the
completed phases and retries the failed one. Cancellation is checked only at
phase boundaries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .checkpoint import Checkpoint, CheckpointStore
from .events import EventBus
from .runner import AgentOptions, AgentRunner, CancellationToken, ToolCallEvent

logger = logging.getLogger(__name__)

PRIOR_CONTEXT_CHARS = 2000

# Maps tool names to entity counters for progress reporting
ENTITY_TOOL_MAP: dict[str, str] = {
    "create_system": "systems",
    "create_backlog_item": "roadmap_items",
    "create_issue": "issues",
    "capture_idea": "ideas",
    "create_epic": "epics",
    "create_milestone": "milestones",
    "add_changelog_entry": "changelog_entries",
    "add_brain_note": "brain_notes",
    "update_project_state": "state_updates",
    "write_context_recovery": "context_recovery",
}


# =============================================================================
# Types
# =============================================================================

@dataclass
class PhaseContext:
    """Everything a phase prompt may draw on."""
    project_name: str
    project_summary: str = ""
    prior_context: str = ""
    discovery_plan: str = ""
    state_cache: str = ""


@dataclass(frozen=True)
class PhaseDefinition:
    id: str
    name: str
    description: str
    tier: str
    tools: tuple[str, ...]
    max_iterations: int
    use_state_cache: bool
    build_prompt: Callable[[PhaseContext], tuple[str, str]]
    carry_context: bool = False  # output feeds later phases' prior context


@dataclass
class PhaseProgress:
    """One progress event."""
    type: str  # phase_start, phase_complete, entity_created, cost_update, error, cancelled, done
    phase: Optional[str] = None
    phase_number: Optional[int] = None
    total_phases: Optional[int] = None
    phase_description: Optional[str] = None
    entity_type: Optional[str] = None
    entity_title: Optional[str] = None
    count: Optional[int] = None
    phase_cost: Optional[float] = None
    total_cost: Optional[float] = None
    total_entities: Optional[int] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    message: Optional[str] = None

    def to_dict(self) -> dict:
        return {k: v for k, v in self.__dict__.items() if v is not None}


ProgressCallback = Callable[[PhaseProgress], Any]


# =============================================================================
# Default phases
# =============================================================================

def _discovery_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are a project analyst preparing an initialization plan for "{ctx.project_name}".
Analyze the project overview and produce a structured plan for the phases that follow. Do NOT create any entities.

Produce the plan in this format:

### Systems Plan
- [system-id]: Name - what it does (target: 8-20 systems)

### Epics Plan
- Epic Name - what it encompasses (target: 3-8 epics)

### Key Observations
Code quality signals, architecture patterns, risk areas.

### Roadmap Themes
Feature gaps, tech debt, testing, performance or security work.

### Issue Signals
Specific bugs or problems to record.

### Ideas to Explore
Forward-looking opportunities (target: 5-10).

Be specific: reference actual file paths from the overview."""
    return system, ctx.project_summary or f"Project: {ctx.project_name}"


def _systems_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are mapping the architecture of "{ctx.project_name}" into system entities.
Follow the Systems Plan below. Read key files where the plan is unclear, then call create_system once per system
with a name, a one-paragraph description and its main files.

## Discovery Plan
{ctx.discovery_plan or '(no plan available)'}"""
    return system, f"Create the system entities for {ctx.project_name}.\n\n{ctx.project_summary}"


def _roadmap_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are building the project backlog for "{ctx.project_name}". Quality over quantity.
Create epics FIRST, then roadmap items under each epic (horizon now/next/later), then issues, then ideas.
Every item needs a specific title and a description that references real code.

## Discovery Plan
{ctx.discovery_plan or '(no plan available)'}

## Prior Phases
{ctx.prior_context or '(none)'}"""
    return system, f"Build the roadmap, issues and ideas for {ctx.project_name}."


def _crossref_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are cross-referencing the entities of "{ctx.project_name}".
Link roadmap items to epics and systems, fix inconsistent statuses, and create 2-4 milestones that group the
"now" and "next" work. Do not create duplicates.

## Current State
{ctx.state_cache}"""
    return system, "Cross-reference all entities and create milestones."


def _git_import_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are importing git history into the changelog for "{ctx.project_name}".
Group related commits into 8-15 logical changelog entries (title, description, type, scope).
Skip merge commits, version bumps and typo fixes. Call get_git_log to read the history."""
    return system, f"Import recent git history into changelog entries for {ctx.project_name}."


def _finalize_prompt(ctx: PhaseContext) -> tuple[str, str]:
    system = f"""You are finalizing the initialization of "{ctx.project_name}".
1. update_project_state with an honest health assessment and a summary.
2. write_context_recovery with a briefing a new contributor could start from.
3. add_brain_note for the 3-6 most important non-obvious facts about the codebase.

## Current State
{ctx.state_cache}

## Prior Phases
{ctx.prior_context or '(none)'}"""
    return system, f"Finalize the initialization of {ctx.project_name}."


INIT_PHASES: tuple[PhaseDefinition, ...] = (
    PhaseDefinition(
        id="discovery",
        name="Analyzing Project",
        description="Quick analysis to produce an initialization plan",
        tier="budget",
        tools=(),
        max_iterations=1,
        use_state_cache=False,
        build_prompt=_discovery_prompt,
        carry_context=True,
    ),
    PhaseDefinition(
        id="systems",
        name="Creating Systems",
        description="Analyzing codebase architecture and creating system entities",
        tier="standard",
        tools=("create_system", "read_file", "list_files"),
        max_iterations=35,
        use_state_cache=False,
        build_prompt=_systems_prompt,
        carry_context=True,
    ),
    PhaseDefinition(
        id="roadmap",
        name="Building Roadmap & Issues",
        description="Creating epics, roadmap items, issues, and ideas",
        tier="premium",
        tools=("create_epic", "create_backlog_item", "create_issue", "capture_idea", "read_file", "list_files"),
        max_iterations=70,
        use_state_cache=False,
        build_prompt=_roadmap_prompt,
    ),
    PhaseDefinition(
        id="crossref",
        name="Cross-Referencing",
        description="Linking entities, wiring epics, creating milestones",
        tier="standard",
        tools=("get_project_state", "update_backlog_item", "update_issue", "update_system", "create_milestone"),
        max_iterations=40,
        use_state_cache=True,
        build_prompt=_crossref_prompt,
    ),
    PhaseDefinition(
        id="git_import",
        name="Importing Git History",
        description="Creating changelog entries from recent git commits",
        tier="budget",
        tools=("add_changelog_entry", "get_git_log"),
        max_iterations=15,
        use_state_cache=False,
        build_prompt=_git_import_prompt,
    ),
    PhaseDefinition(
        id="finalize",
        name="Finalizing",
        description="Writing state summary, context recovery and brain notes",
        tier="premium",
        tools=("update_project_state", "write_context_recovery", "add_brain_note", "capture_idea", "get_project_state"),
        max_iterations=30,
        use_state_cache=True,
        build_prompt=_finalize_prompt,
    ),
)


# =============================================================================
# Orchestrator
# =============================================================================

class PhaseOrchestrator:
    """
    Runs phases in order against a checkpoint.

    Usage:
        orchestrator = PhaseOrchestrator(runner, CheckpointStore(data_dir))
        checkpoint = store.load() or store.create("my-project")
        checkpoint = await orchestrator.run(checkpoint, project_summary, on_progress=print)
    """

    def __init__(
        self,
        runner: AgentRunner,
        store: CheckpointStore,
        phases: tuple[PhaseDefinition, ...] = INIT_PHASES,
        state_cache: Optional[Callable[[], str]] = None,
        events: Optional[EventBus] = None,
        task: str = "project_init",
        max_tokens: int = 8192,
    ):
        self.runner = runner
        self.store = store
        self.phases = phases
        self.state_cache = state_cache or (lambda: "")
        self.events = events
        self.task = task
        self.max_tokens = max_tokens

    def _emit(self, on_progress: Optional[ProgressCallback], progress: PhaseProgress):
        if self.events is not None:
            self.events.publish("init_progress", progress.to_dict())
        if on_progress is not None:
            try:
                on_progress(progress)
            except Exception:
                logger.exception("Progress listener failed for %s", progress.type)

    async def run(
        self,
        checkpoint: Checkpoint,
        project_summary: str = "",
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Checkpoint:
        """Run every phase not yet completed. Never raises for a phase failure."""
        total = len(self.phases)
        start = time.monotonic()
        scan = checkpoint.scan_data
        scan.setdefault("prior_context", "")
        scan.setdefault("discovery_plan", "")

        for i, phase in enumerate(self.phases):
            if phase.id in checkpoint.completed_phases:
                continue

            if cancel_token is not None and cancel_token.cancelled:
                checkpoint.cancelled = True
                self.store.save(checkpoint)
                self._emit(on_progress, PhaseProgress(
                    type="cancelled",
                    total_cost=checkpoint.total_cost,
                    total_entities=checkpoint.total_entities,
                    count=len(checkpoint.completed_phases),
                    message=(
                        f"Initialization paused after {len(checkpoint.completed_phases)} of {total} phases "
                        f"({checkpoint.total_entities} entities, ${checkpoint.total_cost:.2f}). You can resume anytime."
                    ),
                ))
                return checkpoint

            checkpoint.cancelled = False
            checkpoint.current_phase = phase.id
            self.store.save(checkpoint)
            self._emit(on_progress, PhaseProgress(
                type="phase_start",
                phase=phase.id,
                phase_number=i + 1,
                total_phases=total,
                phase_description=phase.description,
                message=phase.name,
            ))

            phase_start = time.monotonic()
            try:
                ctx = PhaseContext(
                    project_name=checkpoint.project,
                    project_summary=project_summary,
                    prior_context=scan["prior_context"],
                    discovery_plan=scan["discovery_plan"],
                    state_cache=self.state_cache() if phase.use_state_cache else "",
                )
                system, user = phase.build_prompt(ctx)

                def on_tool_call(event: ToolCallEvent, _phase=phase):
                    entity_type = ENTITY_TOOL_MAP.get(event.name)
                    running_cost = checkpoint.total_cost + event.total_cost
                    if entity_type:
                        checkpoint.entities_created[entity_type] = checkpoint.entities_created.get(entity_type, 0) + 1
                        self._emit(on_progress, PhaseProgress(
                            type="entity_created",
                            phase=_phase.id,
                            entity_type=entity_type,
                            entity_title=str(event.args.get("title") or event.args.get("name") or event.args.get("id") or ""),
                            total_entities=checkpoint.total_entities,
                            total_cost=running_cost,
                        ))
                    self._emit(on_progress, PhaseProgress(type="cost_update", phase=_phase.id, total_cost=running_cost))

                result = await self.runner.run(system, user, AgentOptions(
                    task=self.task,
                    tier=phase.tier,
                    max_iterations=phase.max_iterations,
                    allowed_tools=list(phase.tools),
                    max_tokens=self.max_tokens,
                    properties={
                        "User": "devtrack-init",
                        "Source": "initialization",
                        "Project": checkpoint.project,
                        "Phase": phase.id,
                        "Tier": phase.tier,
                    },
                ), on_tool_call=on_tool_call)
            except asyncio.CancelledError:
                self.store.save(checkpoint)
                raise
            except Exception as e:
                logger.exception("Phase %s failed", phase.id)
                self.store.save(checkpoint)
                self._emit(on_progress, PhaseProgress(
                    type="error",
                    phase=phase.id,
                    error=str(e),
                    total_cost=checkpoint.total_cost,
                    message=f"Error in {phase.name}: {e}",
                ))
                break

            duration = time.monotonic() - phase_start
            checkpoint.total_cost += result.cost
            checkpoint.completed_phases.append(phase.id)
            checkpoint.current_phase = None
            if phase.id == "discovery":
                scan["discovery_plan"] = result.content
            if phase.carry_context:
                scan["prior_context"] += f"\n\n### {phase.name}\n{result.content[:PRIOR_CONTEXT_CHARS]}"
            self.store.save(checkpoint)

            logger.info("Phase %s complete: %d tool calls, $%.4f", phase.id, len(result.tool_calls_made), result.cost)
            self._emit(on_progress, PhaseProgress(
                type="phase_complete",
                phase=phase.id,
                phase_number=i + 1,
                total_phases=total,
                phase_cost=result.cost,
                total_cost=checkpoint.total_cost,
                count=len(result.tool_calls_made),
                total_entities=checkpoint.total_entities,
                duration_seconds=duration,
                message=(
                    f"{phase.name} complete - {len(result.tool_calls_made)} tool calls, "
                    f"${result.cost:.2f}, {round(duration)}s"
                ),
            ))

        if not checkpoint.cancelled and all(p.id in checkpoint.completed_phases for p in self.phases):
            elapsed = time.monotonic() - start
            checkpoint.completed = True
            self.store.save(checkpoint)
            self._emit(on_progress, PhaseProgress(
                type="done",
                total_cost=checkpoint.total_cost,
                total_entities=checkpoint.total_entities,
                duration_seconds=elapsed,
                message=(
                    f"Initialization complete! {checkpoint.total_entities} entities created, "
                    f"${checkpoint.total_cost:.2f} total cost, {round(elapsed)}s"
                ),
            ))

        return checkpoint
