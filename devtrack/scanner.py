"""
Project Scanner

Walks a repository once to build the overview that seeds project
initialization: file tree, language breakdown, entry points, test directories,
README excerpt, pre-read key files and recent git history.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

from .tools import git_log

logger = logging.getLogger(__name__)

# Directories to exclude from scanning
EXCLUDED_DIRS = {
    'venv', 'node_modules', '.git', '__pycache__',
    'dist', 'build', '.idea', '.vscode', 'env',
    'site-packages', '.tox', '.pytest_cache',
    '.mypy_cache', '.eggs', '.devtrack', '.cache',
    'coverage', '.next', '.nuxt', '.svelte-kit', 'target',
}

BINARY_EXTENSIONS = {
    '.pyc', '.pyo', '.so', '.dll', '.exe', '.bin',
    '.png', '.jpg', '.jpeg', '.gif', '.ico', '.svg',
    '.pdf', '.zip', '.tar', '.gz', '.7z',
    '.mp3', '.mp4', '.wav', '.mov',
    '.ttf', '.woff', '.woff2',
    '.db', '.sqlite', '.pickle', '.pkl', '.lock',
}

# Entry point files (in priority order)
ENTRY_POINT_FILES = [
    'main.py', 'app.py', '__main__.py', 'cli.py', 'pyproject.toml', 'setup.py',
    'index.ts', 'index.js', 'main.ts', 'server.ts', 'server.js', 'package.json',
    'Cargo.toml', 'go.mod', 'Makefile', 'Dockerfile',
]

TEST_DIR_NAMES = {'test', 'tests', 'spec', 'specs', '__tests__', 'testing'}

CODE_EXTENSIONS = {
    '.py', '.js', '.ts', '.tsx', '.jsx', '.java', '.c', '.cpp', '.h',
    '.cs', '.go', '.rs', '.rb', '.php', '.swift', '.kt', '.vue', '.svelte',
}

README_CHARS = 8000
MAX_KEY_FILES = 10
KEY_FILE_LINES = 150
TREE_LINES = 200


@dataclass
class KeyFile:
    path: str
    reason: str
    content: str
    total_lines: int


@dataclass
class ProjectScan:
    """Structural overview of one repository."""
    root_path: Path
    total_files: int = 0
    total_lines: int = 0
    languages: dict[str, int] = field(default_factory=dict)
    project_type: str = "unknown"
    entry_points: list[str] = field(default_factory=list)
    test_dirs: list[str] = field(default_factory=list)
    file_tree: str = ""
    readme: str = ""
    key_files: list[KeyFile] = field(default_factory=list)
    git_history: str = ""

    def size_category(self) -> str:
        if self.total_files < 50:
            return "small"
        if self.total_files < 200:
            return "medium"
        if self.total_files < 500:
            return "large"
        return "xl"

    def to_prompt(self) -> str:
        """Markdown overview handed to the initialization phases."""
        langs = ", ".join(f"{ext} ({n})" for ext, n in sorted(self.languages.items(), key=lambda kv: -kv[1])[:8])
        lines = [
            f"# Project Overview: {self.root_path.name}",
            "",
            f"- Type: {self.project_type}",
            f"- Code files: {self.total_files} ({self.total_lines} lines, {self.size_category()})",
            f"- Languages: {langs or 'none detected'}",
        ]
        if self.entry_points:
            lines.append(f"- Entry points: {', '.join(self.entry_points[:10])}")
        if self.test_dirs:
            lines.append(f"- Test directories: {', '.join(self.test_dirs[:5])}")

        lines += ["", "## File Tree", "```", self.file_tree, "```"]
        if self.readme:
            lines += ["", "## README", self.readme]
        for key_file in self.key_files:
            lines += ["", f"## {key_file.path} ({key_file.reason}, {key_file.total_lines} lines)", "```", key_file.content, "```"]
        if self.git_history:
            lines += ["", "## Recent Commits", self.git_history]
        return "\n".join(lines)


class ProjectScanner:
    """
    Usage:
        scan = ProjectScanner("/path/to/repo").scan()
        print(scan.to_prompt())
    """

    def __init__(self, root_path: Union[str, Path], max_depth: int = 8, max_files: int = 5000):
        self.root_path = Path(root_path).resolve()
        self.max_depth = max_depth
        self.max_files = max_files

        if not self.root_path.is_dir():
            raise ValueError(f"Path is not a directory: {self.root_path}")

    def scan(self, include_git: bool = True) -> ProjectScan:
        scan = ProjectScan(root_path=self.root_path)
        code_files: list[tuple[str, int]] = []
        tree_lines = [f"{self.root_path.name}/"]

        self._walk(self.root_path, scan, tree_lines, code_files, prefix="", depth=0)

        if len(tree_lines) > TREE_LINES:
            tree_lines = tree_lines[:TREE_LINES] + [f"... ({len(tree_lines) - TREE_LINES} more entries)"]
        scan.file_tree = "\n".join(tree_lines)
        scan.project_type = self._project_type(scan.languages)
        scan.readme = self._read_readme()
        scan.key_files = self._key_files(scan.entry_points, code_files)
        if include_git:
            scan.git_history = git_log(self.root_path, limit=40)
        return scan

    def _walk(
        self,
        path: Path,
        scan: ProjectScan,
        tree_lines: list[str],
        code_files: list[tuple[str, int]],
        prefix: str,
        depth: int,
    ):
        if depth > self.max_depth or scan.total_files >= self.max_files:
            return

        try:
            items = sorted(path.iterdir(), key=lambda x: (x.is_file(), x.name.lower()))
        except PermissionError:
            return

        items = [
            item for item in items
            if not item.name.startswith('.')
            and (
                (item.is_dir() and item.name not in EXCLUDED_DIRS and not item.name.endswith('.egg-info'))
                or (item.is_file() and item.suffix.lower() not in BINARY_EXTENSIONS)
            )
        ]

        for i, item in enumerate(items):
            is_last = i == len(items) - 1
            connector = "└── " if is_last else "├── "
            rel_path = item.relative_to(self.root_path).as_posix()

            if item.is_dir():
                if item.name.lower() in TEST_DIR_NAMES:
                    scan.test_dirs.append(rel_path)
                tree_lines.append(f"{prefix}{connector}{item.name}/")
                self._walk(item, scan, tree_lines, code_files, prefix + ("    " if is_last else "│   "), depth + 1)
                continue

            tree_lines.append(f"{prefix}{connector}{item.name}")
            if item.name in ENTRY_POINT_FILES and rel_path not in scan.entry_points:
                scan.entry_points.append(rel_path)

            ext = item.suffix.lower()
            if ext not in CODE_EXTENSIONS:
                continue
            scan.total_files += 1
            scan.languages[ext] = scan.languages.get(ext, 0) + 1
            try:
                with open(item, 'r', encoding='utf-8', errors='ignore') as f:
                    line_count = sum(1 for _ in f)
            except OSError:
                line_count = 0
            scan.total_lines += line_count
            code_files.append((rel_path, line_count))

        scan.entry_points.sort(key=lambda p: (p.count('/'), ENTRY_POINT_FILES.index(Path(p).name)))

    def _project_type(self, languages: dict[str, int]) -> str:
        root = self.root_path
        if (root / "pyproject.toml").exists() or (root / "setup.py").exists():
            return "python"
        if (root / "package.json").exists():
            return "node"
        if (root / "Cargo.toml").exists():
            return "rust"
        if (root / "go.mod").exists():
            return "go"
        if languages:
            return max(languages, key=languages.get).lstrip('.')
        return "unknown"

    def _read_readme(self) -> str:
        for name in ("README.md", "README.rst", "README.txt", "README"):
            path = self.root_path / name
            if path.exists():
                return path.read_text(encoding='utf-8', errors='ignore')[:README_CHARS]
        return ""

    def _key_files(self, entry_points: list[str], code_files: list[tuple[str, int]]) -> list[KeyFile]:
        """Entry points first, then the largest non-test code files."""
        selected: dict[str, str] = {}
        for rel_path in entry_points:
            if Path(rel_path).suffix.lower() in CODE_EXTENSIONS:
                selected.setdefault(rel_path, "entry point")

        for rel_path, line_count in sorted(code_files, key=lambda f: -f[1]):
            if len(selected) >= MAX_KEY_FILES:
                break
            if "test" in rel_path.lower():
                continue
            selected.setdefault(rel_path, f"large file ({line_count} lines)")

        key_files = []
        for rel_path, reason in list(selected.items())[:MAX_KEY_FILES]:
            try:
                lines = (self.root_path / rel_path).read_text(encoding='utf-8', errors='ignore').splitlines()
            except OSError:
                continue
            content = "\n".join(lines[:KEY_FILE_LINES])
            if len(lines) > KEY_FILE_LINES:
                content += f"\n... ({len(lines) - KEY_FILE_LINES} more lines)"
            key_files.append(KeyFile(path=rel_path, reason=reason, content=content, total_lines=len(lines)))

        logger.info("Pre-read %d key files", len(key_files))
        return key_files


def scan_project(path: Union[str, Path], include_git: bool = True, **kwargs) -> ProjectScan:
    return ProjectScanner(path, **kwargs).scan(include_git=include_git)
