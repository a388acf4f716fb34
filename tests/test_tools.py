"""Tool registry, codebase tools and entity tools."""

import json

import pytest

from devtrack.store import EntityStore
from devtrack.tools import ToolRegistry, register_codebase_tools, register_entity_tools


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "repo"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("def main():\n    # TODO wire config\n    return 1\n")
    (root / "README.md").write_text("# Demo\n")
    (root / "node_modules").mkdir()
    (root / "node_modules" / "junk.js").write_text("// TODO ignored\n")
    return root


@pytest.fixture
def registry(repo):
    registry = ToolRegistry()
    register_codebase_tools(registry, repo)
    return registry


class TestRegistry:

    def test_duplicate_names_are_rejected(self):
        registry = ToolRegistry()
        registry.register("a", "first")(lambda: None)

        with pytest.raises(ValueError):
            registry.register("a", "second")(lambda: None)

    @pytest.mark.asyncio
    async def test_tool_failures_become_error_results(self):
        registry = ToolRegistry()

        @registry.register("boom", "Always fails")
        def boom():
            raise RuntimeError("kaput")

        assert json.loads(await registry.execute("boom", {})) == {"error": "kaput"}

    @pytest.mark.asyncio
    async def test_async_tools_are_awaited(self):
        registry = ToolRegistry()

        @registry.register("later", "Async tool")
        async def later(n: int):
            return {"n": n * 2}

        assert json.loads(await registry.execute("later", {"n": 4})) == {"n": 8}

    def test_stats_groups_by_domain(self, registry):
        assert registry.stats() == {"total_tools": 4, "domains": {"codebase": 4}}
        assert registry.label("read_file") == "Reading file"


class TestCodebaseTools:

    @pytest.mark.asyncio
    async def test_read_file(self, registry):
        result = await registry.execute("read_file", {"file_path": "src/app.py", "max_lines": 1})

        assert result.startswith("Contents of src/app.py:")
        assert "def main" in result
        assert "2 more lines" in result

    @pytest.mark.asyncio
    async def test_read_file_outside_repo_is_refused(self, registry):
        result = json.loads(await registry.execute("read_file", {"file_path": "../secret.txt"}))

        assert "escapes repository" in result["error"]

    @pytest.mark.asyncio
    async def test_list_files_skips_ignored_dirs(self, registry):
        result = await registry.execute("list_files", {})

        assert "[DIR] src/" in result
        assert "README.md" in result
        assert "node_modules" not in result

    @pytest.mark.asyncio
    async def test_grep_skips_ignored_dirs(self, registry):
        result = await registry.execute("grep", {"pattern": "todo"})

        assert "src/app.py:2" in result
        assert "junk.js" not in result

    @pytest.mark.asyncio
    async def test_grep_invalid_regex(self, registry):
        result = json.loads(await registry.execute("grep", {"pattern": "("}))

        assert result["error"].startswith("Invalid regex pattern")


class TestEntityTools:

    @pytest.fixture
    def entities(self, data_dir):
        return EntityStore(data_dir)

    @pytest.fixture
    def entity_registry(self, entities):
        registry = ToolRegistry()
        register_entity_tools(registry, entities)
        return registry

    @pytest.mark.asyncio
    async def test_create_then_duplicate(self, entity_registry, entities):
        first = json.loads(await entity_registry.execute("create_issue", {"title": "Login fails", "severity": "high"}))
        second = json.loads(await entity_registry.execute("create_issue", {"title": "  login FAILS "}))

        assert first["created"]["id"] == "ISS-1"
        assert second["duplicate"] is True
        assert second["existing"]["id"] == "ISS-1"
        assert len(entities.list("issue")) == 1

    @pytest.mark.asyncio
    async def test_resolve_issue_sets_status(self, entity_registry, entities):
        await entity_registry.execute("create_issue", {"title": "Crash"})

        result = json.loads(await entity_registry.execute("resolve_issue", {"id": "ISS-1"}))

        assert result["resolved"]["status"] == "resolved"
        assert entities.list("issue")[0]["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_update_unknown_record(self, entity_registry):
        result = json.loads(await entity_registry.execute("update_system", {"id": "SYS-9", "status": "x"}))

        assert result == {"error": "system SYS-9 not found"}

    @pytest.mark.asyncio
    async def test_project_state_round(self, entity_registry):
        await entity_registry.execute("create_backlog_item", {"title": "Ship v1", "horizon": "now"})
        await entity_registry.execute("update_project_state", {"health": "green"})

        state = json.loads(await entity_registry.execute("get_project_state", {}))

        assert state["counts"] == {"roadmap_item": 1}
        assert state["state"] == {"health": "green"}
        assert state["roadmap_now"] == ["Ship v1"]
