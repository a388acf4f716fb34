"""
Tool Registry

The tool-execution collaborator of the agent loop. Tools are plain (sync or
async) functions registered with a JSON-schema description:

    registry = ToolRegistry()

    @registry.register("read_file", "Read a file", {"type": "object", ...})
    def read_file(file_path: str, max_lines: int = 200):
        ...

    result = await registry.execute("read_file", {"file_path": "README.md"})

``execute`` never raises: unknown tools and tool failures come back as
``{"error": ...}`` JSON so the model can react to its own mistakes.

Two built-in tool sets are provided:
- codebase tools (read_file, list_files, grep, get_git_log) scoped to one repository root
- entity tools that write project records through an EntityStore
"""

import inspect
import json
import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from .llm_client import ToolDefinition
from .store import EntityStore

logger = logging.getLogger(__name__)

EMPTY_SCHEMA = {"type": "object", "properties": {}}


@dataclass
class Tool:
    """A registered tool."""
    definition: ToolDefinition
    fn: Callable[..., Any]
    label: str
    domain: str = "general"


class ToolRegistry:
    """Named tools plus their definitions, in registration order."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(
        self,
        name: str,
        description: str,
        parameters: Optional[dict] = None,
        label: Optional[str] = None,
        domain: str = "general",
    ) -> Callable:
        """
        Decorator registering *fn* as tool *name*.

        Raises ValueError if the name is already taken.
        """
        def decorator(fn: Callable) -> Callable:
            if name in self._tools:
                raise ValueError(f"Tool '{name}' is already registered.")
            self._tools[name] = Tool(
                definition=ToolDefinition(name=name, description=description, parameters=parameters or EMPTY_SCHEMA),
                fn=fn,
                label=label or name.replace("_", " ").capitalize(),
                domain=domain,
            )
            return fn
        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def label(self, name: str) -> str:
        tool = self._tools.get(name)
        return tool.label if tool else name

    def definitions(self, allowed: Optional[Iterable[str]] = None) -> list[ToolDefinition]:
        """Definitions for every tool, or only the *allowed* subset."""
        if allowed is None:
            return [t.definition for t in self._tools.values()]
        wanted = set(allowed)
        return [t.definition for name, t in self._tools.items() if name in wanted]

    def stats(self) -> dict:
        domains: dict[str, int] = {}
        for tool in self._tools.values():
            domains[tool.domain] = domains.get(tool.domain, 0) + 1
        return {"total_tools": len(self._tools), "domains": domains}

    async def execute(self, name: str, args: dict) -> str:
        """Run a tool and return its result as text. Never raises."""
        tool = self._tools.get(name)
        if tool is None:
            return json.dumps({"error": f"Unknown tool: {name}"})

        try:
            result = tool.fn(**args)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            logger.warning("Tool %s failed: %s", name, e)
            return json.dumps({"error": str(e) or "Tool execution failed"})

        if isinstance(result, str):
            return result
        return json.dumps(result, indent=2, default=str)


# =============================================================================
# Codebase tools
# =============================================================================

CODE_EXTENSIONS = {'.py', '.js', '.ts', '.tsx', '.jsx', '.go', '.rs', '.java', '.rb', '.c', '.cpp', '.h', '.hpp', '.cs'}
CONFIG_EXTENSIONS = {'.json', '.yaml', '.yml', '.toml', '.ini', '.md'}
IGNORED_DIRS = {'node_modules', '__pycache__', 'venv', '.venv', 'dist', 'build'}


def _iter_files(root: Path, extensions: set[str]):
    for path in sorted(root.rglob("*")):
        rel_parts = path.relative_to(root).parts
        if any(part.startswith('.') or part in IGNORED_DIRS for part in rel_parts):
            continue
        if path.is_file() and path.suffix in extensions:
            yield path


def register_codebase_tools(registry: ToolRegistry, repo_path: Path):
    """Read-only exploration tools scoped to *repo_path*."""
    root = Path(repo_path).resolve()

    def _resolve(relative: str) -> Path:
        target = (root / relative).resolve()
        if target != root and root not in target.parents:
            raise ValueError(f"Path escapes repository: {relative}")
        return target

    @registry.register(
        "read_file",
        "Read a file from the repository.",
        {
            "type": "object",
            "properties": {
                "file_path": {"type": "string", "description": "Path relative to the repository root"},
                "max_lines": {"type": "integer", "description": "Maximum lines to return (default 200)"},
            },
            "required": ["file_path"],
        },
        label="Reading file",
        domain="codebase",
    )
    def read_file(file_path: str, max_lines: int = 200) -> str:
        full_path = _resolve(file_path)
        if not full_path.is_file():
            return json.dumps({"error": f"File not found: {file_path}"})

        lines = full_path.read_text(encoding="utf-8", errors="ignore").splitlines(keepends=True)
        content = ''.join(lines[:max_lines])
        if len(lines) > max_lines:
            content += f"\n... (truncated, {len(lines) - max_lines} more lines)"
        return f"Contents of {file_path}:\n```\n{content}\n```"

    @registry.register(
        "list_files",
        "List files and directories in a repository directory.",
        {
            "type": "object",
            "properties": {
                "directory": {"type": "string", "description": "Directory relative to the root (default root)"},
                "pattern": {"type": "string", "description": "Glob filter for files (default *)"},
            },
        },
        label="Listing files",
        domain="codebase",
    )
    def list_files(directory: str = "", pattern: str = "*") -> str:
        target = _resolve(directory) if directory else root
        if not target.is_dir():
            return json.dumps({"error": f"Directory not found: {directory}"})

        dirs, files = [], []
        for item in sorted(target.iterdir()):
            if item.name.startswith('.') or item.name in IGNORED_DIRS:
                continue
            relative = item.relative_to(root)
            if item.is_dir():
                dirs.append(f"  [DIR] {relative}/")
            elif pattern == "*" or item.match(pattern):
                files.append(f"  {relative}")

        output = [f"Contents of {directory or '.'}:"] + dirs[:50] + files[:100]
        if len(dirs) > 50 or len(files) > 100:
            output.append("  ... (truncated)")
        return "\n".join(output)

    @registry.register(
        "grep",
        "Search for a regex pattern across the repository's source files.",
        {
            "type": "object",
            "properties": {
                "pattern": {"type": "string", "description": "Regex pattern (case-insensitive)"},
                "max_results": {"type": "integer", "description": "Maximum matches (default 20)"},
            },
            "required": ["pattern"],
        },
        label="Searching code",
        domain="codebase",
    )
    def grep(pattern: str, max_results: int = 20) -> str:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            return json.dumps({"error": f"Invalid regex pattern: {e}"})

        results = []
        for path in _iter_files(root, CODE_EXTENSIONS | CONFIG_EXTENSIONS):
            try:
                lines = path.read_text(encoding="utf-8", errors="ignore").splitlines()
            except OSError:
                continue
            for line_num, line in enumerate(lines, 1):
                if compiled.search(line):
                    results.append(f"  {path.relative_to(root)}:{line_num}: {line.strip()[:200]}")
                    if len(results) >= max_results:
                        break
            if len(results) >= max_results:
                break

        if not results:
            return f"No matches found for pattern: {pattern}"
        return "\n".join([f"Found {len(results)} matches for '{pattern}':"] + results)

    @registry.register(
        "get_git_log",
        "Recent git commits (one line each, newest first).",
        {
            "type": "object",
            "properties": {"limit": {"type": "integer", "description": "Number of commits (default 30)"}},
        },
        label="Reading git history",
        domain="codebase",
    )
    def get_git_log(limit: int = 30) -> str:
        return git_log(root, limit)


def git_log(repo_path: Path, limit: int = 30) -> str:
    """``git log --oneline`` for *repo_path*, or a note when unavailable."""
    try:
        result = subprocess.run(
            ["git", "log", f"-{int(limit)}", "--date=short", "--pretty=format:%h %ad %s"],
            cwd=repo_path,
            capture_output=True,
            text=True,
            timeout=30,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        return f"git unavailable: {e}"
    if result.returncode != 0:
        return f"No git history available ({result.stderr.strip()[:200]})"
    return result.stdout.strip() or "No commits yet"


# =============================================================================
# Entity tools
# =============================================================================

_RECORD_SCHEMA = {
    "type": "object",
    "properties": {
        "title": {"type": "string"},
        "description": {"type": "string"},
        "status": {"type": "string"},
        "priority": {"type": "string"},
    },
    "additionalProperties": True,
}

_UPDATE_SCHEMA = {
    "type": "object",
    "properties": {
        "id": {"type": "string"},
        "title": {"type": "string"},
        "description": {"type": "string"},
        "status": {"type": "string"},
        "horizon": {"type": "string"},
    },
    "required": ["id"],
    "additionalProperties": True,
}

# tool name -> (entity type, description)
CREATE_TOOLS = {
    "create_system": ("system", "Register an architectural system or component."),
    "create_backlog_item": ("roadmap_item", "Add a roadmap/backlog item (horizon: now, next or later)."),
    "create_issue": ("issue", "Record a bug or problem."),
    "capture_idea": ("idea", "Capture an idea for later."),
    "create_epic": ("epic", "Create an epic grouping related roadmap items."),
    "create_milestone": ("milestone", "Create a milestone."),
    "add_changelog_entry": ("changelog", "Add a changelog entry."),
    "add_brain_note": ("brain_note", "Store a note in project memory."),
}

UPDATE_TOOLS = {
    "update_backlog_item": ("roadmap_item", "updated", "Update a roadmap item."),
    "update_issue": ("issue", "updated", "Update an issue."),
    "resolve_issue": ("issue", "resolved", "Mark an issue resolved."),
    "update_system": ("system", "updated", "Update a system."),
}


def register_entity_tools(registry: ToolRegistry, entities: EntityStore):
    """Project-record tools backed by *entities*."""

    for tool_name, (entity_type, description) in CREATE_TOOLS.items():
        def create(_entity_type=entity_type, **fields):
            return entities.create(_entity_type, fields)
        registry.register(tool_name, description, _RECORD_SCHEMA, domain="entities")(create)

    for tool_name, (entity_type, verb, description) in UPDATE_TOOLS.items():
        def update(id: str, _entity_type=entity_type, _verb=verb, **fields):
            if _verb == "resolved":
                fields.setdefault("status", "resolved")
            return entities.update(_entity_type, id, fields, verb=_verb)
        registry.register(tool_name, description, _UPDATE_SCHEMA, domain="entities")(update)

    @registry.register(
        "get_project_state",
        "Summarize the project: entity counts, current state and recent roadmap items.",
        label="Reading project state",
        domain="entities",
    )
    def get_project_state():
        return {
            "counts": entities.counts(),
            "state": entities.singleton("project_state"),
            "roadmap_now": [
                i.get("title") for i in entities.list("roadmap_item")
                if i.get("horizon") == "now" and i.get("status") != "completed"
            ][:20],
            "open_issues": len([i for i in entities.list("issue") if i.get("status", "open") == "open"]),
        }

    @registry.register(
        "update_project_state",
        "Update the overall project state (health, summary, focus).",
        {
            "type": "object",
            "properties": {
                "health": {"type": "string"},
                "summary": {"type": "string"},
                "focus": {"type": "string"},
            },
            "additionalProperties": True,
        },
        domain="entities",
    )
    def update_project_state(**fields):
        state = {**entities.singleton("project_state"), **fields}
        entities.write_singleton("project_state", state)
        return {"updated": {"id": "project_state", **state}}

    @registry.register(
        "write_context_recovery",
        "Write a context-recovery briefing for the next session.",
        {
            "type": "object",
            "properties": {"briefing": {"type": "string"}},
            "required": ["briefing"],
        },
        domain="entities",
    )
    def write_context_recovery(briefing: str, **extra):
        entities.write_singleton("context_recovery", {"briefing": briefing, **extra})
        return {"updated": {"id": "context_recovery"}}
