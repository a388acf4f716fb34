"""
JSON-file Stores

The external state the orchestration core reads and writes:

- AutomationStore: automation definitions (automations.json)
- ActivityLog: append-only activity feed (activity.json, capped)
- SpendLedger: estimated AI spend per calendar day (ai/spend.json)
- EntityStore: minimal project-entity records the built-in entity tools write

All stores follow the same pattern: load on demand, mutate in memory, write the
whole document back with ``json.dumps(..., indent=2)``.
"""

import json
import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger(__name__)

TRIGGER_TYPES = (
    "issue_created",
    "item_completed",
    "session_ended",
    "health_changed",
    "scheduled",
    "file_changed",
    "manual",
)

MAX_ACTIVITY_ENTRIES = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso_now() -> str:
    return utc_now().isoformat()


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Unreadable %s (%s); starting empty", path, e)
        return default


def _write_json(path: Path, data: Any):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2))


# =============================================================================
# Automations
# =============================================================================

@dataclass
class AutomationCondition:
    """One rigid condition: ``data[field] <op> value``."""
    field: str
    op: str  # eq, neq, gt, lt, contains, in
    value: Any = None


@dataclass
class AutomationAction:
    """One rigid action (``notify`` or ``run_ai_agent``)."""
    type: str
    value: Any = None


@dataclass
class Automation:
    """An automation definition."""
    id: str
    name: str
    trigger: str
    enabled: bool = True
    description: str = ""
    conditions: list[AutomationCondition] = field(default_factory=list)
    actions: list[AutomationAction] = field(default_factory=list)
    ai_driven: bool = False
    ai_prompt: Optional[str] = None
    tier: Optional[str] = None
    schedule: Optional[str] = None  # hourly, daily or weekly; inferred when unset
    last_fired: Optional[str] = None
    fire_count: int = 0
    created: str = field(default_factory=lambda: date.today().isoformat())

    @classmethod
    def from_dict(cls, data: dict) -> 'Automation':
        return cls(
            id=data["id"],
            name=data.get("name", data["id"]),
            trigger=data.get("trigger", "manual"),
            enabled=data.get("enabled", True),
            description=data.get("description", ""),
            conditions=[AutomationCondition(**c) for c in data.get("conditions", [])],
            actions=[AutomationAction(**a) for a in data.get("actions", [])],
            ai_driven=data.get("ai_driven", False),
            ai_prompt=data.get("ai_prompt"),
            tier=data.get("tier"),
            schedule=data.get("schedule"),
            last_fired=data.get("last_fired"),
            fire_count=data.get("fire_count", 0),
            created=data.get("created", date.today().isoformat()),
        )

    def to_dict(self) -> dict:
        return asdict(self)


class AutomationStore:
    """Automation definitions persisted in ``<data_dir>/automations.json``."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "automations.json"

    def load(self) -> list[Automation]:
        data = _read_json(self.path, {"automations": []})
        return [Automation.from_dict(a) for a in data.get("automations", [])]

    def save_all(self, automations: list[Automation]):
        _write_json(self.path, {"automations": [a.to_dict() for a in automations]})

    def get(self, automation_id: str) -> Optional[Automation]:
        return next((a for a in self.load() if a.id == automation_id), None)

    def upsert(self, automation: Automation):
        automations = [a for a in self.load() if a.id != automation.id]
        automations.append(automation)
        self.save_all(automations)

    def update(self, automation_id: str, **changes) -> Optional[Automation]:
        """Apply field changes to one automation and persist."""
        automations = self.load()
        target = next((a for a in automations if a.id == automation_id), None)
        if target is None:
            return None
        for key, value in changes.items():
            setattr(target, key, value)
        self.save_all(automations)
        return target

    def mark_fired(self, automation_id: str, when: Optional[str] = None):
        self.update(automation_id, last_fired=when or iso_now())

    def increment_fire_count(self, automation_id: str):
        automations = self.load()
        for a in automations:
            if a.id == automation_id:
                a.fire_count += 1
        self.save_all(automations)


# =============================================================================
# Activity feed
# =============================================================================

class ActivityLog:
    """Newest-first activity feed in ``<data_dir>/activity.json``."""

    def __init__(self, data_dir: Path, max_entries: int = MAX_ACTIVITY_ENTRIES):
        self.path = Path(data_dir) / "activity.json"
        self.max_entries = max_entries

    def add(
        self,
        type: str,
        title: str,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        actor: str = "system",
        metadata: Optional[dict] = None,
    ) -> dict:
        data = _read_json(self.path, {"events": [], "next_id": 1})
        entry = {
            "id": f"ACT-{data.get('next_id', 1)}",
            "type": type,
            "timestamp": iso_now(),
            "actor": actor,
            "title": title,
            "entity_type": entity_type,
            "entity_id": entity_id,
            "metadata": metadata or {},
        }
        events = [entry] + data.get("events", [])
        _write_json(self.path, {"events": events[:self.max_entries], "next_id": data.get("next_id", 1) + 1})
        return entry

    def recent(self, limit: int = 20) -> list[dict]:
        return _read_json(self.path, {"events": []}).get("events", [])[:limit]


# =============================================================================
# Budget
# =============================================================================

class SpendLedger:
    """Estimated AI spend per UTC day in ``<data_dir>/ai/spend.json``."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "ai" / "spend.json"

    @staticmethod
    def _today() -> str:
        return utc_now().date().isoformat()

    def today_spend(self) -> float:
        return float(_read_json(self.path, {}).get(self._today(), 0.0))

    def add(self, cost_usd: float) -> float:
        """Add *cost_usd* to today's total and return the new total."""
        data = _read_json(self.path, {})
        today = self._today()
        data[today] = round(float(data.get(today, 0.0)) + cost_usd, 6)
        _write_json(self.path, data)
        return data[today]


# =============================================================================
# Project entities
# =============================================================================

ENTITY_PREFIXES = {
    "system": "SYS",
    "roadmap_item": "ITEM",
    "issue": "ISS",
    "idea": "IDEA",
    "epic": "EPIC",
    "milestone": "MS",
    "changelog": "CL",
    "brain_note": "NOTE",
    "doc": "DOC",
}


def _normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", title.strip().lower())


class EntityStore:
    """
    Flat JSON records per entity type in ``<data_dir>/entities/<type>.json``.

    Records are free-form dicts with an ``id``. Creating a record whose title
    already exists returns the existing record flagged as a duplicate.
    """

    def __init__(self, data_dir: Path):
        self.root = Path(data_dir) / "entities"
        self.state_root = Path(data_dir) / "state"

    def _path(self, entity_type: str) -> Path:
        return self.root / f"{entity_type}.json"

    def list(self, entity_type: str) -> list[dict]:
        return _read_json(self._path(entity_type), {"items": []}).get("items", [])

    def create(self, entity_type: str, fields: dict) -> dict:
        data = _read_json(self._path(entity_type), {"items": [], "next_id": 1})
        title = fields.get("title") or fields.get("name") or ""
        if title:
            key = _normalize_title(title)
            for existing in data["items"]:
                if _normalize_title(existing.get("title") or existing.get("name") or "") == key:
                    return {"duplicate": True, "existing": existing}

        prefix = ENTITY_PREFIXES.get(entity_type, entity_type.upper())
        record = {"id": fields.get("id") or f"{prefix}-{data.get('next_id', 1)}", **fields, "created": iso_now()}
        data["items"].append(record)
        data["next_id"] = data.get("next_id", 1) + 1
        _write_json(self._path(entity_type), data)
        return {"created": record}

    def update(self, entity_type: str, entity_id: str, fields: dict, verb: str = "updated") -> dict:
        data = _read_json(self._path(entity_type), {"items": [], "next_id": 1})
        for record in data["items"]:
            if record.get("id") == entity_id:
                record.update({k: v for k, v in fields.items() if k != "id"})
                record["updated"] = iso_now()
                _write_json(self._path(entity_type), data)
                return {verb: record}
        return {"error": f"{entity_type} {entity_id} not found"}

    def counts(self) -> dict[str, int]:
        if not self.root.exists():
            return {}
        return {p.stem: len(self.list(p.stem)) for p in sorted(self.root.glob("*.json"))}

    def singleton(self, name: str) -> dict:
        return _read_json(self.state_root / f"{name}.json", {})

    def write_singleton(self, name: str, data: dict):
        _write_json(self.state_root / f"{name}.json", data)


def format_state_summary(entities: EntityStore, project_name: str = "") -> str:
    """Compact project snapshot for prompts, rebuilt from the current records."""
    lines = [f"Project: {project_name or 'Unknown Project'}"]

    state = entities.singleton("project_state")
    if state.get("summary"):
        lines.append(f"Summary: {state['summary']}")
    if state.get("health"):
        lines.append(f"Health: {state['health']}")

    systems = entities.list("system")
    lines.append(f"\nSystems ({len(systems)}):")
    lines.extend(f"- [{s.get('id')}] {s.get('name') or s.get('title')}" for s in systems[:30])

    items = [i for i in entities.list("roadmap_item") if i.get("status") != "completed"]
    now = [i for i in items if i.get("horizon") == "now"]
    lines.append(f"\nRoadmap: {len(now)} now, {len(items) - len(now)} next/later")
    lines.extend(f"- [{i.get('id')}] {i.get('title')} ({i.get('status', 'planned')})" for i in now[:20])

    issues = [i for i in entities.list("issue") if i.get("status", "open") == "open"]
    lines.append(f"\nOpen issues ({len(issues)}):")
    lines.extend(f"- [{i.get('id')}] {i.get('title')} ({i.get('severity', 'medium')})" for i in issues[:20])

    epics = entities.list("epic")
    if epics:
        lines.append(f"\nEpics: {', '.join(e.get('title', '') for e in epics[:15])}")
    milestones = entities.list("milestone")
    if milestones:
        lines.append(f"Milestones: {', '.join(m.get('title', '') for m in milestones[:10])}")

    return "\n".join(lines)
