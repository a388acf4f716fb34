"""
Audit Recorder

Instruments one agent run and persists it as a structured, queryable record.

Create a recorder before the run, pass it to ``AgentRunner.run()``, then call
``finalize()`` (or ``fail()``) afterwards:

    recorder = AuditRecorder(store, "weekly-review", "Weekly review", "scheduled", "scheduler")
    result = await runner.run(system, user, options, recorder=recorder)
    recorder.finalize(result.content, result.iterations)

The recorder only observes; it never changes what the loop does. Entity
changes are derived from mutating tool calls, and failed mutations (results
carrying ``error`` or ``duplicate``) are not counted as changes.

Persistence layout (``<data_dir>/audits/``):
    runs/<run-id>.json   full run including every step
    index.json           {"runs": [...summary entries, newest first...], "next_id": N}
"""

import json
import logging
from collections import Counter
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

from .store import iso_now, parse_iso, utc_now

logger = logging.getLogger(__name__)

MAX_INDEX_ENTRIES = 200
MAX_RESULT_CHARS = 5000
PREVIEW_CHARS = 200

# Tool names that indicate entity mutations: tool -> (action, entity_type)
MUTATING_TOOLS: dict[str, tuple[str, str]] = {
    "create_backlog_item": ("created", "roadmap_item"),
    "update_backlog_item": ("updated", "roadmap_item"),
    "delete_backlog_item": ("deleted", "roadmap_item"),
    "create_epic": ("created", "epic"),
    "update_epic": ("updated", "epic"),
    "delete_epic": ("deleted", "epic"),
    "create_milestone": ("created", "milestone"),
    "update_milestone": ("updated", "milestone"),
    "delete_milestone": ("deleted", "milestone"),
    "create_release": ("created", "release"),
    "update_release": ("updated", "release"),
    "publish_release": ("updated", "release"),
    "create_issue": ("created", "issue"),
    "update_issue": ("updated", "issue"),
    "resolve_issue": ("resolved", "issue"),
    "capture_idea": ("created", "idea"),
    "update_idea": ("updated", "idea"),
    "add_changelog_entry": ("created", "changelog"),
    "add_brain_note": ("created", "brain_note"),
    "write_context_recovery": ("updated", "context_recovery"),
    "update_preferences": ("updated", "preferences"),
    "update_project_state": ("updated", "project_state"),
    "create_system": ("created", "system"),
    "update_system": ("updated", "system"),
    "create_doc": ("created", "doc"),
    "update_doc": ("updated", "doc"),
    "delete_doc": ("deleted", "doc"),
    "write_project_file": ("updated", "file"),
}


# =============================================================================
# Records
# =============================================================================

@dataclass
class AuditStep:
    """One ordered step: thinking, tool_call or tool_result."""
    index: int
    type: str
    timestamp: str
    content: Optional[str] = None
    tokens: Optional[dict] = None
    cost_usd: Optional[float] = None
    tool_name: Optional[str] = None
    tool_args: Optional[dict] = None
    tool_result: Optional[str] = None
    tool_result_preview: Optional[str] = None


@dataclass
class AuditChange:
    entity_type: str
    entity_id: str
    action: str
    description: str
    tool_name: str


@dataclass
class AuditRun:
    id: str
    automation_id: str
    automation_name: str
    trigger: dict
    started_at: str
    ended_at: Optional[str] = None
    duration_seconds: float = 0
    status: str = "running"
    model: str = ""
    provider: str = ""
    iterations: int = 0
    tokens: dict = field(default_factory=lambda: {"input": 0, "output": 0, "total": 0})
    cost_usd: float = 0.0
    steps: list[AuditStep] = field(default_factory=list)
    summary: str = ""
    changes_made: list[AuditChange] = field(default_factory=list)
    suggestions: list[dict] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    def index_entry(self) -> dict:
        """Summary fields only; never the step log."""
        by_action = Counter(c.action for c in self.changes_made)
        return {
            "id": self.id,
            "automation_id": self.automation_id,
            "automation_name": self.automation_name,
            "trigger_type": self.trigger.get("type"),
            "trigger_source": self.trigger.get("source"),
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": self.duration_seconds,
            "status": self.status,
            "model": self.model,
            "cost_usd": round(self.cost_usd, 6),
            "iterations": self.iterations,
            "summary": self.summary[:300],
            "changes_count": len(self.changes_made),
            "changes_by_action": dict(by_action),
            "suggestions_count": len(self.suggestions),
            "suggestions_pending": len([s for s in self.suggestions if s.get("status", "pending") == "pending"]),
            "errors_count": len(self.errors),
        }


# =============================================================================
# Store
# =============================================================================

class AuditStore:
    """Run documents plus the capped, newest-first index."""

    def __init__(self, data_dir: Path, max_index_entries: int = MAX_INDEX_ENTRIES):
        self.root = Path(data_dir) / "audits"
        self.runs_dir = self.root / "runs"
        self.index_path = self.root / "index.json"
        self.max_index_entries = max_index_entries

    def _load_index(self) -> dict:
        if not self.index_path.exists():
            return {"runs": [], "next_id": 1}
        try:
            data = json.loads(self.index_path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Audit index unreadable (%s); rebuilding", e)
            return {"runs": [], "next_id": 1}
        data.setdefault("runs", [])
        data.setdefault("next_id", 1)
        return data

    def _save_index(self, index: dict):
        self.root.mkdir(parents=True, exist_ok=True)
        self.index_path.write_text(json.dumps(index, indent=2))

    def next_run_id(self) -> str:
        """Reserve the next sequential run id."""
        index = self._load_index()
        run_id = f"run-{index['next_id']:04d}"
        index["next_id"] += 1
        self._save_index(index)
        return run_id

    def save_run(self, run: AuditRun):
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        (self.runs_dir / f"{run.id}.json").write_text(json.dumps(run.to_dict(), indent=2))

        index = self._load_index()
        runs = [r for r in index["runs"] if r.get("id") != run.id]
        runs.insert(0, run.index_entry())
        index["runs"] = runs[:self.max_index_entries]
        self._save_index(index)

    def get_run(self, run_id: str) -> Optional[dict]:
        path = self.runs_dir / f"{run_id}.json"
        if not path.exists():
            return None
        return json.loads(path.read_text())

    def list_runs(
        self,
        automation_id: Optional[str] = None,
        status: Optional[str] = None,
        trigger_type: Optional[str] = None,
        since: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> dict:
        """Filter the index; returns {"runs": [...], "total": N}."""
        runs = self._load_index()["runs"]
        if automation_id:
            runs = [r for r in runs if r.get("automation_id") == automation_id]
        if status:
            runs = [r for r in runs if r.get("status") == status]
        if trigger_type:
            runs = [r for r in runs if r.get("trigger_type") == trigger_type]
        if since:
            cutoff = parse_iso(since)
            if cutoff is not None:
                runs = [r for r in runs if (parse_iso(r.get("started_at")) or cutoff) >= cutoff]
        return {"runs": runs[offset:offset + limit], "total": len(runs)}

    def stats(self) -> dict:
        runs = self._load_index()["runs"]
        today = utc_now().date().isoformat()
        todays = [r for r in runs if (r.get("started_at") or "").startswith(today)]
        return {
            "total_runs": len(runs),
            "runs_today": len(todays),
            "cost_today_usd": round(sum(r.get("cost_usd", 0) for r in todays), 4),
            "failed": len([r for r in runs if r.get("status") == "failed"]),
            "changes": sum(r.get("changes_count", 0) for r in runs),
            "by_automation": dict(Counter(r.get("automation_id") for r in runs)),
        }


# =============================================================================
# Recorder
# =============================================================================

def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None


class AuditRecorder:
    """Captures one agent run step by step and persists it on completion."""

    def __init__(
        self,
        store: AuditStore,
        automation_id: str,
        automation_name: str,
        trigger_type: str,
        trigger_source: str,
        trigger_context: Optional[dict] = None,
    ):
        self.store = store
        self._step_index = 0
        self._changes: list[AuditChange] = []
        self._last_args: dict = {}
        self.run = AuditRun(
            id=store.next_run_id(),
            automation_id=automation_id,
            automation_name=automation_name,
            trigger={"type": trigger_type, "source": trigger_source, "context": trigger_context or {}},
            started_at=iso_now(),
        )

    def _append(self, **kwargs) -> AuditStep:
        step = AuditStep(index=self._step_index, timestamp=iso_now(), **kwargs)
        self._step_index += 1
        self.run.steps.append(step)
        return step

    def record_thinking(
        self,
        content: str,
        tokens: Optional[tuple[int, int]] = None,
        cost_usd: Optional[float] = None,
        model: Optional[str] = None,
        provider: Optional[str] = None,
    ):
        """Record model output plus its token/cost usage."""
        if not content and not tokens:
            return

        self._append(
            type="thinking",
            content=content or None,
            tokens={"input": tokens[0], "output": tokens[1]} if tokens else None,
            cost_usd=cost_usd,
        )
        if tokens:
            self.run.tokens["input"] += tokens[0]
            self.run.tokens["output"] += tokens[1]
            self.run.tokens["total"] += tokens[0] + tokens[1]
        if cost_usd:
            self.run.cost_usd += cost_usd
        if model and not self.run.model:
            self.run.model = model
        if provider and not self.run.provider:
            self.run.provider = provider

    def record_tool_call(self, name: str, args: dict):
        self._last_args = args
        self._append(type="tool_call", tool_name=name, tool_args=args)

    def record_tool_result(self, name: str, result: str):
        truncated = result if len(result) <= MAX_RESULT_CHARS else result[:MAX_RESULT_CHARS] + "...[truncated]"
        self._append(
            type="tool_result",
            tool_name=name,
            tool_result=truncated,
            tool_result_preview=result[:PREVIEW_CHARS],
        )
        self._detect_change(name, self._last_args, result)
        self._last_args = {}

    def add_suggestion(self, title: str, detail: str = "", **extra):
        self.run.suggestions.append({
            "id": f"sug-{len(self.run.suggestions) + 1}",
            "title": title,
            "detail": detail,
            "status": "pending",
            **extra,
        })

    def _detect_change(self, tool_name: str, args: dict, result: str):
        mapping = MUTATING_TOOLS.get(tool_name)
        if mapping is None:
            return
        action, entity_type = mapping

        parsed = _parse_json(result)
        if isinstance(parsed, dict) and (parsed.get("error") or parsed.get("duplicate")):
            return

        entity_id = args.get("id") or ""
        if not entity_id and isinstance(parsed, dict):
            for key in ("created", "updated", "deleted", "resolved"):
                value = parsed.get(key)
                if isinstance(value, dict) and value.get("id"):
                    entity_id = value["id"]
                    break

        description = f"{action} {entity_type}"
        if entity_id:
            description += f' "{entity_id}"'
        if args.get("title"):
            description += f": {args['title']}"
        elif args.get("status"):
            description += f" → {args['status']}"
        elif args.get("horizon"):
            description += f" → {args['horizon']}"

        self._changes.append(AuditChange(
            entity_type=entity_type,
            entity_id=str(entity_id),
            action=action,
            description=description,
            tool_name=tool_name,
        ))

    @property
    def changes(self) -> list[AuditChange]:
        return list(self._changes)

    def _close(self, status: str):
        ended = utc_now()
        self.run.ended_at = ended.isoformat()
        started = parse_iso(self.run.started_at) or ended
        self.run.duration_seconds = round((ended - started).total_seconds())
        self.run.status = status
        self.run.changes_made = list(self._changes)

    def _summary(self, agent_content: str) -> str:
        if agent_content and agent_content.strip():
            return agent_content

        counts = Counter(f"{c.action} {c.entity_type}" for c in self._changes)
        if counts:
            parts = ", ".join(f"{n}x {key}" for key, n in counts.items())
            return f"{self.run.automation_name}: {parts}."
        return f"{self.run.automation_name} completed with no detected changes."

    def finalize(self, agent_content: str, iterations: int, suggestions: Optional[list[dict]] = None) -> AuditRun:
        """Mark the run completed, persist it and return it."""
        self._close("completed")
        self.run.iterations = iterations
        if suggestions:
            self.run.suggestions.extend(suggestions)
        self.run.summary = self._summary(agent_content)
        self.store.save_run(self.run)
        logger.info("Audit %s completed: %d change(s), $%.4f", self.run.id, len(self._changes), self.run.cost_usd)
        return self.run

    def fail(self, error: str) -> AuditRun:
        """Mark the run failed, persist it and return it."""
        self._close("failed")
        self.run.errors.append(error)
        self.run.summary = f"Failed: {error}"
        self.store.save_run(self.run)
        logger.info("Audit %s failed: %s", self.run.id, error)
        return self.run
