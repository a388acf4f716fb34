"""
DevTrack CLI

Command-line entry point for the orchestration engine.
Uses Rich for terminal output and logging.

Commands:
- init        phased project initialization (checkpointed, resumable)
- docs        documentation generation
- automations list / run an automation
- scheduler   run the automation scheduler in the foreground
- audits      list recorded agent runs
- models      list routable models for the configured providers
"""

import asyncio
import argparse
import logging
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.prompt import Confirm
from rich.rule import Rule
from rich.table import Table
from rich.theme import Theme

from . import __version__
from .audit import AuditStore
from .automation import AutomationEngine
from .checkpoint import CheckpointStore
from .config import AIConfigStore, DevTrackConfig
from .docs_generator import DocsGenerator, DocStore, register_doc_tools
from .events import EventBus
from .gateway import PROVIDER_LABELS, CompletionGateway
from .phases import INIT_PHASES, PhaseOrchestrator, PhaseProgress
from .runner import AgentRunner, CancellationToken
from .scanner import scan_project
from .scheduler import Scheduler, get_schedule_type
from .store import ActivityLog, AutomationStore, EntityStore, SpendLedger, format_state_summary
from .tools import ToolRegistry, register_codebase_tools, register_entity_tools

logger = logging.getLogger(__name__)


DEVTRACK_THEME = Theme({
    "info": "cyan",
    "warning": "yellow",
    "error": "red bold",
    "success": "green bold",
    "heading": "magenta bold",
    "muted": "dim white",
})

console = Console(theme=DEVTRACK_THEME)


def setup_logging(level: str = "INFO", debug: bool = False):
    """Route library logging through Rich."""
    logging.basicConfig(
        level=logging.DEBUG if debug else getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=debug)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# =============================================================================
# Wiring
# =============================================================================

@dataclass
class Runtime:
    """Every long-lived component, wired once per command."""
    config: DevTrackConfig
    repo_path: Path
    ai_config: AIConfigStore
    gateway: CompletionGateway
    tools: ToolRegistry
    runner: AgentRunner
    events: EventBus
    audits: AuditStore
    automations: AutomationStore
    activity: ActivityLog
    spend: SpendLedger
    entities: EntityStore
    docs: DocStore

    @property
    def project_name(self) -> str:
        return self.config.project_name or self.repo_path.name

    def state_summary(self) -> str:
        return format_state_summary(self.entities, self.project_name)

    def automation_engine(self) -> AutomationEngine:
        return AutomationEngine(
            self.runner, self.automations, self.audits, self.activity, self.spend,
            self.ai_config, events=self.events, state_summary=self.state_summary,
        )

    async def close(self):
        await self.gateway.close()


def build_runtime(
    config: DevTrackConfig,
    repo_path: Path,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Runtime:
    data_dir = config.data_dir
    ai_config = AIConfigStore(data_dir)
    gateway = CompletionGateway(config, ai_config, transport=transport)

    entities = EntityStore(data_dir)
    docs = DocStore(data_dir)
    tools = ToolRegistry()
    register_codebase_tools(tools, repo_path)
    register_entity_tools(tools, entities)
    register_doc_tools(tools, docs)

    return Runtime(
        config=config,
        repo_path=repo_path,
        ai_config=ai_config,
        gateway=gateway,
        tools=tools,
        runner=AgentRunner(gateway, tools),
        events=EventBus(),
        audits=AuditStore(data_dir),
        automations=AutomationStore(data_dir),
        activity=ActivityLog(data_dir),
        spend=SpendLedger(data_dir),
        entities=entities,
        docs=docs,
    )


def _install_cancel_handler(token: CancellationToken):
    """First Ctrl-C requests a graceful stop at the next phase boundary."""
    loop = asyncio.get_running_loop()

    def request_cancel():
        if token.cancelled:
            raise KeyboardInterrupt
        console.print("\n[warning]Stopping after the current phase... (Ctrl-C again to abort)[/]")
        token.cancel()

    try:
        loop.add_signal_handler(signal.SIGINT, request_cancel)
    except (NotImplementedError, RuntimeError):
        # Not supported on this platform; Ctrl-C aborts immediately
        pass


def _require_provider(runtime: Runtime) -> bool:
    if runtime.gateway.is_configured():
        return True
    console.print(
        "[error]No AI provider configured.[/] Set OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_AI_API_KEY "
        f"(or add them to {runtime.config.credentials_path})."
    )
    return False


# =============================================================================
# init
# =============================================================================

def render_progress(progress: PhaseProgress):
    if progress.type == "phase_start":
        console.print()
        console.print(Rule(f"Phase {progress.phase_number}/{progress.total_phases}: {progress.message}", style="cyan"))
        console.print(f"[muted]{progress.phase_description}[/]")
    elif progress.type == "entity_created":
        console.print(f"  [success]+[/] {progress.entity_type}: {progress.entity_title}")
    elif progress.type == "phase_complete":
        console.print(f"[success]{progress.message}[/]")
    elif progress.type == "error":
        console.print(f"[error]{progress.message}[/]")
    elif progress.type == "cancelled":
        console.print(f"[warning]{progress.message}[/]")
    elif progress.type == "done":
        console.print()
        console.print(Panel(progress.message or "Done", border_style="green"))


async def run_init(runtime: Runtime, resume: bool = False, fresh: bool = False) -> int:
    store = CheckpointStore(runtime.config.data_dir)
    if fresh:
        store.clear()

    checkpoint = store.load()
    if checkpoint is not None and checkpoint.completed and not fresh:
        console.print("[info]Project already initialized.[/] Use --fresh to start over.")
        return 0

    if checkpoint is not None and not checkpoint.completed and not resume:
        done = ", ".join(checkpoint.completed_phases) or "none"
        console.print(f"[warning]Unfinished initialization found[/] (completed phases: {done}).")
        resume = Confirm.ask("Resume it?", default=True, console=console)
        if not resume:
            store.clear()
            checkpoint = None

    if not _require_provider(runtime):
        return 1

    if checkpoint is None:
        checkpoint = store.create(runtime.project_name)

    console.print(f"[info]Project:[/] {checkpoint.project}")
    console.print(f"[info]Repository:[/] {runtime.repo_path}")
    console.print("[muted]Scanning project...[/]")
    scan = scan_project(runtime.repo_path)
    console.print(
        f"[muted]{scan.total_files} code files, {scan.total_lines} lines ({scan.size_category()}), "
        f"{len(INIT_PHASES)} phases[/]"
    )

    orchestrator = PhaseOrchestrator(
        runtime.runner, store, state_cache=runtime.state_summary, events=runtime.events,
    )
    token = CancellationToken()
    _install_cancel_handler(token)

    def on_progress(progress: PhaseProgress):
        if progress.type == "phase_complete" and progress.phase_cost:
            runtime.spend.add(progress.phase_cost)
        render_progress(progress)

    checkpoint = await orchestrator.run(checkpoint, scan.to_prompt(), on_progress=on_progress, cancel_token=token)

    if checkpoint.completed:
        return 0
    if checkpoint.cancelled:
        console.print("[muted]Run `devtrack init --resume` to continue.[/]")
    return 1


# =============================================================================
# docs
# =============================================================================

async def run_docs(runtime: Runtime, update: bool = False, fresh: bool = False) -> int:
    if not _require_provider(runtime):
        return 1

    mode = "update" if update else "initialize"
    generator = DocsGenerator(
        runtime.runner, runtime.docs, runtime.audits, runtime.spend, runtime.config.data_dir,
        state_summary=runtime.state_summary,
        systems=lambda: runtime.entities.list("system"),
        events=runtime.events,
    )

    def on_status(event):
        data = event.data
        if data.get("current_doc"):
            console.print(
                f"[muted][{data.get('phase')}] {data.get('current_doc')} "
                f"({data.get('docs_completed')}/{data.get('docs_total')})[/]"
            )

    unsubscribe = runtime.events.subscribe(lambda e: on_status(e) if e.type == "docs_generation_status" else None)
    console.print(Rule(f"Documentation ({mode})", style="cyan"))
    try:
        status = await generator.generate(mode, resume=not fresh)
    finally:
        unsubscribe()

    console.print(Panel(
        f"{status.docs_completed}/{status.docs_total} pages, ${status.total_cost:.2f}, {len(status.errors)} errors",
        title="Docs complete",
        border_style="green" if not status.errors else "yellow",
    ))
    for error in status.errors:
        console.print(f"[error]- {error}[/]")
    return 0 if not status.errors else 1


# =============================================================================
# automations / scheduler / audits / models
# =============================================================================

def list_automations(runtime: Runtime) -> int:
    automations = runtime.automations.load()
    if not automations:
        console.print(f"[muted]No automations defined in {runtime.automations.path}[/]")
        return 0

    table = Table(title="Automations")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Trigger")
    table.add_column("Enabled")
    table.add_column("Last fired", style="muted")
    table.add_column("Runs", justify="right")
    for a in automations:
        trigger = a.trigger if a.trigger != "scheduled" else f"scheduled ({get_schedule_type(a)})"
        table.add_row(a.id, a.name, trigger, "yes" if a.enabled else "no", a.last_fired or "-", str(a.fire_count))
    console.print(table)
    return 0


async def run_automation(runtime: Runtime, automation_id: str) -> int:
    if not _require_provider(runtime):
        return 1

    engine = runtime.automation_engine()
    try:
        launched = await engine.force_run(automation_id)
    except KeyError as e:
        console.print(f"[error]{e.args[0]}[/]")
        return 1
    if not launched:
        console.print("[warning]Automation not started (already running or daily budget reached).[/]")
        return 1

    with console.status(f"Running {automation_id}..."):
        await engine.wait_idle()

    entry = next(iter(runtime.activity.recent(1)), None)
    if entry is not None:
        style = "success" if entry["metadata"].get("status") == "completed" else "warning"
        console.print(f"[{style}]{entry['title']}[/]")
    return 0


async def run_scheduler(runtime: Runtime) -> int:
    if not _require_provider(runtime):
        return 1

    engine = runtime.automation_engine()
    scheduler = Scheduler(engine, runtime.automations, runtime.ai_config)
    console.print("[info]Scheduler running.[/] Press Ctrl-C to stop.")
    try:
        await scheduler.run_forever()
    finally:
        await engine.wait_idle()
    return 0


def list_audits(runtime: Runtime, automation_id: Optional[str], status: Optional[str], limit: int) -> int:
    result = runtime.audits.list_runs(automation_id=automation_id, status=status, limit=limit)
    table = Table(title=f"Agent runs ({result['total']} total)")
    table.add_column("Run", style="cyan")
    table.add_column("Automation")
    table.add_column("Status")
    table.add_column("Started", style="muted")
    table.add_column("Changes", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Summary", overflow="fold")
    for run in result["runs"]:
        status_style = {"completed": "success", "failed": "error"}.get(run["status"], "warning")
        table.add_row(
            run["id"],
            run["automation_name"],
            f"[{status_style}]{run['status']}[/]",
            (run.get("started_at") or "")[:19],
            str(run.get("changes_count", 0)),
            f"${run.get('cost_usd', 0):.4f}",
            run.get("summary", ""),
        )
    console.print(table)
    return 0


async def list_models(runtime: Runtime) -> int:
    if not _require_provider(runtime):
        return 1

    models = await runtime.gateway.discover()
    table = Table(title="Available models")
    table.add_column("Model", style="cyan")
    table.add_column("Provider")
    table.add_column("Tier")
    table.add_column("Name", style="muted")
    for model in models:
        table.add_row(model.id, PROVIDER_LABELS.get(model.provider, model.provider), model.tier, model.name)
    console.print(table)
    return 0


# =============================================================================
# Entry point
# =============================================================================

async def dispatch(args: argparse.Namespace, runtime: Runtime) -> int:
    try:
        if args.command == "init":
            return await run_init(runtime, resume=args.resume, fresh=args.fresh)
        if args.command == "docs":
            return await run_docs(runtime, update=args.update, fresh=args.fresh)
        if args.command == "automations":
            if args.action == "run":
                return await run_automation(runtime, args.automation_id)
            return list_automations(runtime)
        if args.command == "scheduler":
            return await run_scheduler(runtime)
        if args.command == "audits":
            return list_audits(runtime, args.automation, args.status, args.limit)
        if args.command == "models":
            return await list_models(runtime)
        return 2
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="devtrack",
        description="DevTrack - multi-provider LLM orchestration for project tracking",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  devtrack init                      # Initialize the project in the current directory
  devtrack init --resume             # Resume an interrupted initialization
  devtrack docs --update             # Refresh existing documentation
  devtrack automations run nightly-audit
  devtrack audits list --status failed
        """
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--repo", "-r",
        type=str,
        default=".",
        help="Path to the repository (default: current directory)"
    )
    parser.add_argument(
        "--data-dir",
        type=str,
        help="State directory (default: $DEVTRACK_DATA_DIR or .devtrack)"
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    subparsers = parser.add_subparsers(dest="command", required=True, help="Available commands")

    init_parser = subparsers.add_parser("init", help="Run phased project initialization")
    init_parser.add_argument("--resume", action="store_true", help="Resume from the saved checkpoint")
    init_parser.add_argument("--fresh", action="store_true", help="Discard any checkpoint and start over")

    docs_parser = subparsers.add_parser("docs", help="Generate project documentation")
    docs_parser.add_argument("--update", action="store_true", help="Update existing docs instead of planning from scratch")
    docs_parser.add_argument("--fresh", action="store_true", help="Ignore the saved plan and completed pages")

    auto_parser = subparsers.add_parser("automations", help="List or run automations")
    auto_sub = auto_parser.add_subparsers(dest="action", required=True)
    auto_sub.add_parser("list", help="List automations")
    run_parser = auto_sub.add_parser("run", help="Run one automation now")
    run_parser.add_argument("automation_id", help="Automation id")

    subparsers.add_parser("scheduler", help="Run the automation scheduler in the foreground")

    audits_parser = subparsers.add_parser("audits", help="Inspect recorded agent runs")
    audits_sub = audits_parser.add_subparsers(dest="audit_action", required=True)
    list_parser = audits_sub.add_parser("list", help="List recent runs")
    list_parser.add_argument("--automation", type=str, help="Filter by automation id")
    list_parser.add_argument("--status", choices=["running", "completed", "failed"], help="Filter by status")
    list_parser.add_argument("--limit", type=int, default=20, help="Maximum rows (default: 20)")

    subparsers.add_parser("models", help="List routable models")
    return parser


def main(argv: Optional[list[str]] = None):
    """Main entry point for the CLI."""
    args = build_parser().parse_args(argv)

    repo_path = Path(args.repo).resolve()
    if not repo_path.is_dir():
        console.print(f"[error]Error: Path is not a directory: {repo_path}[/]")
        sys.exit(1)

    data_dir = Path(args.data_dir) if args.data_dir else None
    config = DevTrackConfig.load(data_dir)
    if data_dir is None and not config.data_dir.is_absolute():
        config.data_dir = repo_path / config.data_dir
    setup_logging(config.log_level, debug=args.debug or config.debug_logging)

    runtime = build_runtime(config, repo_path)
    logger.debug("Configuration: %s", config.to_dict())

    try:
        code = asyncio.run(dispatch(args, runtime))
    except KeyboardInterrupt:
        console.print("\n[warning]Interrupted[/]")
        sys.exit(130)
    sys.exit(code)


if __name__ == "__main__":
    main()
