"""
Initialization Checkpoint

Tracks phase completion for cancel/resume. The checkpoint is rewritten after
every phase transition so a fresh process can pick up where a crashed or
cancelled one stopped.
"""

import json
import logging
import time
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Any, Optional

from .store import iso_now

logger = logging.getLogger(__name__)


@dataclass
class Checkpoint:
    """Progress of one initialization run."""
    run_id: str
    project: str
    started_at: str = field(default_factory=iso_now)
    completed_phases: list[str] = field(default_factory=list)
    current_phase: Optional[str] = None
    total_cost: float = 0.0
    entities_created: dict[str, int] = field(default_factory=dict)
    cancelled: bool = False
    completed: bool = False
    scan_data: dict[str, Any] = field(default_factory=dict)

    @property
    def total_entities(self) -> int:
        return sum(self.entities_created.values())

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> 'Checkpoint':
        return cls(
            run_id=data["run_id"],
            project=data.get("project", ""),
            started_at=data.get("started_at") or iso_now(),
            completed_phases=list(data.get("completed_phases", [])),
            current_phase=data.get("current_phase"),
            total_cost=float(data.get("total_cost", 0.0)),
            entities_created=dict(data.get("entities_created", {})),
            cancelled=bool(data.get("cancelled", False)),
            completed=bool(data.get("completed", False)),
            scan_data=data.get("scan_data") or {},
        )


class CheckpointStore:
    """Checkpoint persisted at ``<data_dir>/init-checkpoint.json``."""

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "init-checkpoint.json"

    def create(self, project: str) -> Checkpoint:
        return Checkpoint(run_id=f"init-{int(time.time() * 1000)}", project=project)

    def load(self) -> Optional[Checkpoint]:
        if not self.path.exists():
            return None
        try:
            return Checkpoint.from_dict(json.loads(self.path.read_text()))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring unreadable checkpoint %s: %s", self.path, e)
            return None

    def save(self, checkpoint: Checkpoint):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(checkpoint.to_dict(), indent=2))
        tmp.replace(self.path)

    def clear(self):
        if self.path.exists():
            self.path.unlink()
