"""
Documentation Generator

Two-step generation of a project documentation suite:

1. A discovery agent scans the project and produces a page plan (JSON).
2. Each page gets its own focused agent run, written layer by layer
   (architecture -> operational -> implementation -> design) through the
   concurrency pool.

Modes:
- initialize: plan from scratch, premium routing, concurrency 2
- update:     review existing pages, cheaper routing, concurrency 3

Status and plan are persisted under <data_dir>/ai/ after every change, so a
re-run skips pages already completed. A failing page is recorded in the status
errors and never aborts the run.
"""

import json
import logging
import math
import re
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Callable, Optional

from .audit import AuditRecorder, AuditStore
from .events import EventBus
from .pool import run_pool
from .runner import AgentOptions, AgentRunner
from .store import SpendLedger, _read_json, _write_json, iso_now
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

LAYERS = ("architecture", "operational", "implementation", "design")
MODES = ("initialize", "update")
MAX_DOC_CHARS = 12000

# Rough per-page estimate used for the plan summary
COST_PER_PAGE = {"architecture": 0.60, "operational": 0.50, "implementation": 0.80, "design": 0.30}
MINUTES_PER_PAGE = 2.5


# =============================================================================
# Doc storage
# =============================================================================

def slugify(title: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")


class DocStore:
    """Markdown pages in ``<data_dir>/docs/<id>.md`` plus a JSON registry."""

    def __init__(self, data_dir: Path):
        self.root = Path(data_dir) / "docs"
        self.registry_path = self.root / "registry.json"

    def list(self) -> list[dict]:
        return _read_json(self.registry_path, {"docs": []}).get("docs", [])

    def get(self, doc_id: str) -> Optional[dict]:
        return next((d for d in self.list() if d.get("id") == doc_id), None)

    def content(self, doc_id: str) -> str:
        path = self.root / f"{doc_id}.md"
        return path.read_text() if path.exists() else ""

    def upsert(self, doc_id: str, content: Optional[str] = None, **meta) -> dict:
        docs = self.list()
        doc = next((d for d in docs if d.get("id") == doc_id), None)
        if doc is None:
            doc = {"id": doc_id, "created": iso_now(), "edit_history": []}
            docs.append(doc)
        doc.update({k: v for k, v in meta.items() if v is not None})
        doc["updated"] = iso_now()
        if content is not None:
            self.root.mkdir(parents=True, exist_ok=True)
            (self.root / f"{doc_id}.md").write_text(content)
        _write_json(self.registry_path, {"docs": docs})
        return doc

    def add_edit(self, doc_id: str, edit: dict):
        docs = self.list()
        for doc in docs:
            if doc.get("id") == doc_id:
                doc.setdefault("edit_history", []).append(edit)
                doc["last_edited_by"] = edit.get("actor", "ai")
                doc["last_edited_at"] = edit.get("timestamp", iso_now())
        _write_json(self.registry_path, {"docs": docs})


def register_doc_tools(registry: ToolRegistry, docs: DocStore):
    """list_docs / get_doc / create_doc / update_doc backed by *docs*."""

    @registry.register(
        "list_docs",
        "List documentation pages with their layer and last update.",
        label="Listing docs",
        domain="docs",
    )
    def list_docs():
        pages = docs.list()
        return {
            "docs": [
                {"id": d["id"], "title": d.get("title"), "layer": d.get("layer"), "updated": d.get("updated")}
                for d in pages
            ],
            "total": len(pages),
        }

    @registry.register(
        "get_doc",
        "Read the full markdown content of a documentation page.",
        {
            "type": "object",
            "properties": {"id": {"type": "string", "description": "Doc id"}},
            "required": ["id"],
        },
        label="Reading document",
        domain="docs",
    )
    def get_doc(id: str):
        doc = docs.get(id)
        if doc is None:
            return {"error": f"Doc {id} not found"}
        content = docs.content(id)
        if len(content) > MAX_DOC_CHARS:
            content = content[:MAX_DOC_CHARS] + "\n\n... (truncated)"
        return {**doc, "content": content}

    @registry.register(
        "create_doc",
        "Create a new documentation page. Content is the full markdown text.",
        {
            "type": "object",
            "properties": {
                "id": {"type": "string", "description": "kebab-case id; derived from the title when omitted"},
                "title": {"type": "string"},
                "content": {"type": "string", "description": "Full markdown content"},
                "layer": {"type": "string", "enum": list(LAYERS)},
            },
            "required": ["title", "content"],
        },
        label="Creating document",
        domain="docs",
    )
    def create_doc(title: str, content: str, id: Optional[str] = None, layer: Optional[str] = None):
        doc_id = id or slugify(title)
        if docs.get(doc_id) is not None and docs.content(doc_id):
            return {"error": f'Doc "{doc_id}" already exists. Use update_doc to modify it.'}
        docs.upsert(doc_id, content, title=title, layer=layer)
        return {"created": {"id": doc_id, "title": title, "content_length": len(content)}}

    @registry.register(
        "update_doc",
        "Replace the content of a documentation page. Pass the FULL markdown text, not a reference.",
        {
            "type": "object",
            "properties": {
                "id": {"type": "string"},
                "content": {"type": "string", "description": "Complete markdown document"},
                "title": {"type": "string"},
            },
            "required": ["id", "content"],
        },
        label="Updating document",
        domain="docs",
    )
    def update_doc(id: str, content: str, title: Optional[str] = None):
        if not content.strip():
            return {"error": "content must be the full markdown document"}
        docs.upsert(id, content, title=title)
        return {"updated": {"id": id, "content_length": len(content)}}


# =============================================================================
# Plan and status
# =============================================================================

@dataclass
class DocPage:
    id: str
    title: str
    layer: str = "architecture"
    description: str = ""
    source_files: list[str] = field(default_factory=list)
    parent_id: Optional[str] = None
    sort_order: int = 0
    exists: bool = False


@dataclass
class DocPlan:
    id: str
    mode: str
    created_at: str
    pages: list[DocPage] = field(default_factory=list)
    estimated_cost_usd: float = 0.0
    estimated_minutes: int = 0

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'DocPlan':
        return cls(
            id=data["id"],
            mode=data.get("mode", "initialize"),
            created_at=data.get("created_at", ""),
            pages=[DocPage(**p) for p in data.get("pages", [])],
            estimated_cost_usd=data.get("estimated_cost_usd", 0.0),
            estimated_minutes=data.get("estimated_minutes", 0),
        )


@dataclass
class GenerationStatus:
    running: bool = False
    mode: Optional[str] = None
    phase: Optional[str] = None  # planning, <layer>, done
    started_at: Optional[str] = None
    docs_total: int = 0
    docs_completed: int = 0
    current_doc: Optional[str] = None
    completed_docs: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    total_cost: float = 0.0

    def is_completed(self, doc_id: str) -> bool:
        return any(d["id"] == doc_id for d in self.completed_docs)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'GenerationStatus':
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


def parse_plan(content: str, existing_ids: set[str]) -> list[DocPage]:
    """Extract the page list from agent output that may wrap the JSON in prose."""
    match = re.search(r"\{[\s\S]*\"pages\"[\s\S]*\}", content or "")
    if not match:
        raise ValueError("no JSON plan found in discovery output")
    parsed = json.loads(match.group(0))
    pages = []
    for i, raw in enumerate(parsed.get("pages", [])):
        if not raw.get("id") or not raw.get("title"):
            continue
        pages.append(DocPage(
            id=raw["id"],
            title=raw["title"],
            layer=raw.get("layer") if raw.get("layer") in LAYERS else "architecture",
            description=raw.get("description", ""),
            source_files=list(raw.get("source_files") or []),
            parent_id=raw.get("parent_id") or None,
            sort_order=raw.get("sort_order", i),
            exists=raw["id"] in existing_ids,
        ))
    return pages


def fallback_plan(existing_ids: set[str], systems: list[dict]) -> list[DocPage]:
    """Minimal plan used when the discovery output cannot be parsed."""
    pages = [
        DocPage("system-overview", "System Architecture Overview", "architecture", "High-level architecture", sort_order=0),
        DocPage("getting-started", "Getting Started Guide", "operational", "Setup and first run", sort_order=1),
        DocPage("configuration", "Configuration Guide", "operational", "Settings and environment", sort_order=2),
        DocPage("data-model-reference", "Data Model Reference", "implementation", "Entity types and fields", sort_order=3),
    ]
    for i, system in enumerate(systems):
        name = system.get("name") or system.get("title") or system.get("id")
        pages.append(DocPage(
            id=f"system-{slugify(str(system.get('id')))}",
            title=f"System: {name}",
            layer="architecture",
            description=f"Architecture and implementation of {name}",
            sort_order=10 + i,
        ))
    for page in pages:
        page.exists = page.id in existing_ids
    return pages


# =============================================================================
# Prompts
# =============================================================================

DISCOVERY_SYSTEM_PROMPT = """You are a documentation architect. Analyze a project and produce a documentation plan.
Output ONLY valid JSON matching this schema, with no markdown and no explanation:
{
  "pages": [
    {
      "id": "kebab-case-id",
      "title": "Human Readable Title",
      "layer": "architecture|operational|implementation|design",
      "description": "What this page should cover in 1-2 sentences",
      "source_files": ["path/to/relevant/file.py"],
      "parent_id": null,
      "sort_order": 0
    }
  ]
}"""

STRUCTURE_GUIDE = """Suggested structure (adapt it; not every project needs every page):
- architecture: project overview, one page per major system
- operational: getting started, configuration, API reference, deployment
- implementation: data model, business logic, deep dives on complex features
- design: architecture decision records, design rationale
A small CLI tool may need 5-6 pages; a large platform may need 30+."""

LAYER_PROMPTS = {
    "architecture": (
        "Write ARCHITECTURE documentation: what this component is, how it fits into the larger system, "
        "its key design decisions and its connections to other components. Use Mermaid diagrams."
    ),
    "operational": (
        "Write OPERATIONAL documentation: how to use, configure and work with this component. "
        "Include setup steps, configuration options, common workflows, troubleshooting and examples."
    ),
    "implementation": (
        "Write IMPLEMENTATION documentation: how things work internally. For each function, state its inputs, "
        "outputs and any formula explicitly. Document business rules, data transformations and edge cases."
    ),
    "design": (
        "Write DESIGN documentation: why decisions were made, which alternatives were considered and "
        "which tradeoffs were accepted."
    ),
}


# =============================================================================
# Generator
# =============================================================================

class DocsGenerator:
    """
    Plans and writes the documentation suite.

    Usage:
        generator = DocsGenerator(runner, DocStore(data_dir), AuditStore(data_dir), SpendLedger(data_dir), data_dir)
        status = await generator.generate("initialize")
    """

    def __init__(
        self,
        runner: AgentRunner,
        docs: DocStore,
        audits: AuditStore,
        spend: SpendLedger,
        data_dir: Path,
        state_summary: Optional[Callable[[], str]] = None,
        systems: Optional[Callable[[], list[dict]]] = None,
        events: Optional[EventBus] = None,
    ):
        self.runner = runner
        self.docs = docs
        self.audits = audits
        self.spend = spend
        self.status_path = Path(data_dir) / "ai" / "docs-status.json"
        self.plan_path = Path(data_dir) / "ai" / "docs-plan.json"
        self.state_summary = state_summary or (lambda: "")
        self.systems = systems or (lambda: [])
        self.events = events
        self.status = self.load_status()

    # =========================================================================
    # Persistence
    # =========================================================================

    def load_status(self) -> GenerationStatus:
        data = _read_json(self.status_path, None)
        if not data:
            return GenerationStatus()
        status = GenerationStatus.from_dict(data)
        # A persisted "running" flag belongs to a process that is gone
        status.running = False
        return status

    def load_plan(self) -> Optional[DocPlan]:
        data = _read_json(self.plan_path, None)
        return DocPlan.from_dict(data) if data else None

    def _update_status(self, **changes):
        for key, value in changes.items():
            setattr(self.status, key, value)
        _write_json(self.status_path, self.status.to_dict())
        if self.events is not None:
            self.events.publish("docs_generation_status", self.status.to_dict())

    def _track_cost(self, cost: float):
        self.status.total_cost += cost
        if cost:
            self.spend.add(cost)

    # =========================================================================
    # Steps
    # =========================================================================

    async def plan(self, mode: str) -> DocPlan:
        """Run the discovery agent and persist the resulting page plan."""
        existing = self.docs.list()
        existing_ids = {d["id"] for d in existing}
        listing = "\n".join(
            f"- {d['id']}: \"{d.get('title', '')}\" (layer: {d.get('layer') or 'unknown'}, "
            f"{len(self.docs.content(d['id']))} chars)"
            for d in existing
        )

        if mode == "initialize":
            instructions = (
                "Scan the project with list_files and read_file and plan a complete suite covering all four layers. "
                "Sub-pages are supported through parent_id."
            )
        else:
            instructions = (
                "Review the existing docs and identify pages that need updating, new pages to add and pages to split "
                "or merge. Output the full plan including pages that are current."
            )

        user_message = (
            f"{'Plan a complete documentation suite from scratch.' if mode == 'initialize' else 'Evaluate the existing docs.'}\n\n"
            f"{self.state_summary()}\n\n"
            f"## Existing Documentation\n{listing or 'No docs exist yet.'}\n\n"
            f"## Structure Guide\n{STRUCTURE_GUIDE}\n\n"
            f"## Instructions\n{instructions}\n\nOutput ONLY the JSON."
        )

        result = await self.runner.run(DISCOVERY_SYSTEM_PROMPT, user_message, AgentOptions(
            task="incremental_update",
            max_iterations=5,
            max_tokens=8192,
            allowed_tools=["list_files", "read_file", "list_docs"],
            properties={"User": "devtrack-docs-discovery", "Source": "docs-generation", "Mode": mode, "Phase": "discovery"},
        ))
        self._track_cost(result.cost)

        try:
            pages = parse_plan(result.content, existing_ids)
        except (ValueError, json.JSONDecodeError) as e:
            logger.error("Failed to parse doc plan, using fallback: %s", e)
            pages = fallback_plan(existing_ids, self.systems())

        plan = DocPlan(
            id=f"plan-{int(time.time() * 1000)}",
            mode=mode,
            created_at=iso_now(),
            pages=pages,
            estimated_cost_usd=round(sum(COST_PER_PAGE.get(p.layer, 0.5) for p in pages), 2),
            estimated_minutes=math.ceil(len(pages) * MINUTES_PER_PAGE),
        )
        _write_json(self.plan_path, plan.to_dict())
        return plan

    async def write_page(self, page: DocPage, state_summary: str, mode: str) -> float:
        """One agent run for one page. Returns its cost; raises on failure."""
        if self.docs.get(page.id) is None:
            self.docs.upsert(
                page.id, title=page.title, layer=page.layer,
                parent_id=page.parent_id, sort_order=page.sort_order, auto_generated=True,
            )

        sources = (
            f"Key source files to read: {', '.join(page.source_files)}"
            if page.source_files else "Use list_files and read_file to find relevant source files."
        )
        system_prompt = (
            f"You are a documentation writer. {LAYER_PROMPTS.get(page.layer, LAYER_PROMPTS['architecture'])}\n\n"
            "When you call update_doc you MUST pass the FULL markdown text as the content parameter.\n"
            "Use Mermaid syntax for diagrams, not ASCII art. Be specific to THIS project."
        )
        user_message = (
            f"Generate documentation for: \"{page.title}\" (id: {page.id})\n"
            f"Layer: {page.layer}\nDescription: {page.description}\n\n"
            f"{state_summary}\n\n{sources}\n\n"
            "## Instructions\n"
            f"1. Read the current content with get_doc id \"{page.id}\".\n"
            "2. Read the relevant source files.\n"
            f"3. Call update_doc with id=\"{page.id}\" and the complete markdown content."
        )

        recorder = AuditRecorder(
            self.audits, f"docs-{page.id}", f"Doc: {page.title}",
            "manual", "manual", {"doc_id": page.id, "layer": page.layer},
        )
        try:
            result = await self.runner.run(system_prompt, user_message, AgentOptions(
                task="doc_generation" if mode == "initialize" else "incremental_update",
                max_iterations=12 if page.layer == "implementation" else 8,
                max_tokens=16384,
                allowed_tools=["get_doc", "update_doc", "create_doc", "list_files", "read_file", "grep"],
                properties={
                    "User": "devtrack-docs-generator",
                    "Source": "docs-generation",
                    "Mode": mode,
                    "Layer": page.layer,
                    "DocId": page.id,
                },
            ), recorder=recorder)
        except Exception as e:
            recorder.fail(str(e) or type(e).__name__)
            raise

        recorder.finalize(result.content, result.iterations)
        self._track_cost(result.cost)
        self.docs.add_edit(page.id, {
            "timestamp": iso_now(),
            "actor": "ai",
            "actor_detail": f"{result.iterations} iterations, {mode} mode",
            "summary": f"Generated {page.layer} documentation",
            "cost_usd": result.cost,
        })
        return result.cost

    async def generate(self, mode: str = "initialize", resume: bool = False) -> GenerationStatus:
        """
        Plan and write every page.

        With *resume*, the persisted plan is reused and pages already completed
        are skipped; otherwise a fresh plan and status are produced.

        Raises:
            RuntimeError: A generation is already running in this process
            ValueError: Unknown mode
        """
        if mode not in MODES:
            raise ValueError(f"Unknown docs mode: {mode}")
        if self.status.running:
            raise RuntimeError("Doc generation already in progress")

        # a finished run is only resumable when some of its pages failed
        resumable = self.status.phase != "done" or bool(self.status.errors)
        plan = self.load_plan() if resume and resumable else None
        if plan is None:
            self.status = GenerationStatus()
        self._update_status(running=True, mode=mode, phase="planning", started_at=iso_now(), current_doc=None, errors=[])

        try:
            if plan is None:
                logger.info("Running docs discovery (%s)...", mode)
                plan = await self.plan(mode)
            self._update_status(docs_total=len(plan.pages), phase=LAYERS[0])
            logger.info(
                "Doc plan: %d pages, est. $%.2f, ~%d min",
                len(plan.pages), plan.estimated_cost_usd, plan.estimated_minutes,
            )

            state_summary = self.state_summary()
            concurrency = 2 if mode == "initialize" else 3

            for layer in LAYERS:
                pending = [p for p in plan.pages if p.layer == layer and not self.status.is_completed(p.id)]
                if not pending:
                    continue
                self._update_status(phase=layer)
                logger.info("Docs layer %s: %d pages", layer, len(pending))

                async def handle(page: DocPage):
                    self._update_status(current_doc=page.id)
                    try:
                        cost = await self.write_page(page, state_summary, mode)
                    except Exception as e:
                        logger.error("Failed doc %s: %s", page.id, e)
                        self.status.errors.append(f"{page.id}: {e}")
                        self._update_status()
                        return
                    self.status.completed_docs.append({
                        "id": page.id, "completed_at": iso_now(), "cost": cost, "layer": page.layer,
                    })
                    self._update_status(docs_completed=self.status.docs_completed + 1)
                    logger.info(
                        "Done doc %s ($%.2f) [%d/%d]",
                        page.id, cost, self.status.docs_completed, self.status.docs_total,
                    )

                await run_pool(pending, concurrency, handle)

            self._update_status(running=False, phase="done", current_doc=None)
        except Exception:
            self._update_status(running=False, phase=None)
            raise

        logger.info(
            "Docs complete: %d/%d pages, $%.2f, %d errors",
            self.status.docs_completed, self.status.docs_total, self.status.total_cost, len(self.status.errors),
        )
        if self.events is not None:
            self.events.publish("docs_generated", {
                "mode": mode,
                "completed": self.status.docs_completed,
                "total": self.status.docs_total,
                "cost": self.status.total_cost,
            })
        return self.status
