"""Documentation planning, layered page generation and resume."""

import json
import re
from unittest.mock import AsyncMock

import pytest

from conftest import make_result, tool_call
from devtrack.audit import AuditStore
from devtrack.docs_generator import (
    DocPage, DocStore, DocsGenerator, fallback_plan, parse_plan, register_doc_tools,
)
from devtrack.events import EventBus
from devtrack.runner import AgentRunner
from devtrack.store import SpendLedger
from devtrack.tools import ToolRegistry

PLAN = {
    "pages": [
        {"id": "overview", "title": "Overview", "layer": "architecture", "source_files": ["README.md"]},
        {"id": "getting-started", "title": "Getting Started", "layer": "operational"},
        {"id": "data-model", "title": "Data Model", "layer": "implementation"},
        {"id": "why-json", "title": "Why JSON files", "layer": "design"},
    ]
}


class DocsGateway:
    """
    Answers the planner with PLAN and makes each page writer call update_doc
    once before finishing. Pages listed in ``failing`` raise instead.
    """

    def __init__(self, plan_text=None, failing=()):
        self.plan_text = plan_text if plan_text is not None else "Here is the plan:\n" + json.dumps(PLAN)
        self.failing = set(failing)
        self.calls = []

    async def complete(self, messages, options=None):
        self.calls.append((list(messages), options))
        if messages[0].content.startswith("You are a documentation architect"):
            return make_result(self.plan_text, cost=0.05)

        doc_id = re.search(r"\(id: ([\w-]+)\)", messages[1].content).group(1)
        if doc_id in self.failing:
            raise RuntimeError(f"model refused {doc_id}")
        if messages[-1].role == "user":
            return make_result("", [tool_call("update_doc", {"id": doc_id, "content": f"# {doc_id}\n\nBody."})], cost=0.10)
        return make_result(f"Wrote {doc_id}.", cost=0.02)

    def page_calls(self):
        return [m for m, _ in self.calls if not m[0].content.startswith("You are a documentation architect")]


@pytest.fixture
def docs(data_dir):
    return DocStore(data_dir)


def make_generator(gateway, docs, data_dir, events=None):
    registry = ToolRegistry()
    register_doc_tools(registry, docs)
    return DocsGenerator(
        AgentRunner(gateway, registry), docs, AuditStore(data_dir), SpendLedger(data_dir), data_dir,
        state_summary=lambda: "Project: Demo", systems=lambda: [{"id": "SYS-1", "name": "Core"}], events=events,
    )


class TestPlanParsing:

    def test_json_wrapped_in_prose(self):
        pages = parse_plan("Sure!\n" + json.dumps(PLAN) + "\nDone.", {"overview"})

        assert [p.id for p in pages] == ["overview", "getting-started", "data-model", "why-json"]
        assert pages[0].exists is True
        assert pages[0].source_files == ["README.md"]
        assert pages[1].exists is False

    def test_bad_layers_and_incomplete_pages(self):
        pages = parse_plan(json.dumps({"pages": [
            {"id": "x", "title": "X", "layer": "marketing"},
            {"id": "no-title"},
        ]}), set())

        assert [(p.id, p.layer) for p in pages] == [("x", "architecture")]

    def test_no_json_raises(self):
        with pytest.raises(ValueError):
            parse_plan("I could not produce a plan.", set())

    def test_fallback_plan_adds_system_pages(self):
        pages = fallback_plan({"getting-started"}, [{"id": "SYS-1", "name": "Core"}])

        ids = [p.id for p in pages]
        assert "system-overview" in ids
        assert "system-sys-1" in ids
        assert next(p for p in pages if p.id == "getting-started").exists


class TestDocTools:

    @pytest.mark.asyncio
    async def test_create_update_get(self, docs):
        registry = ToolRegistry()
        register_doc_tools(registry, docs)

        created = json.loads(await registry.execute("create_doc", {"title": "API Reference", "content": "# API"}))
        again = json.loads(await registry.execute("create_doc", {"title": "API Reference", "content": "# API v2"}))
        empty = json.loads(await registry.execute("update_doc", {"id": "api-reference", "content": "   "}))
        updated = json.loads(await registry.execute("update_doc", {"id": "api-reference", "content": "# API v3"}))
        fetched = json.loads(await registry.execute("get_doc", {"id": "api-reference"}))

        assert created["created"]["id"] == "api-reference"
        assert "already exists" in again["error"]
        assert "error" in empty
        assert updated == {"updated": {"id": "api-reference", "content_length": 8}}
        assert fetched["content"] == "# API v3"
        assert fetched["title"] == "API Reference"

    @pytest.mark.asyncio
    async def test_get_missing_doc(self, docs):
        registry = ToolRegistry()
        register_doc_tools(registry, docs)

        assert json.loads(await registry.execute("get_doc", {"id": "nope"})) == {"error": "Doc nope not found"}


class TestGenerate:

    @pytest.mark.asyncio
    async def test_initialize_writes_every_page(self, data_dir, docs):
        gateway = DocsGateway()
        events = EventBus()
        published = []
        events.subscribe(lambda e: published.append(e.type))
        generator = make_generator(gateway, docs, data_dir, events=events)

        status = await generator.generate("initialize")

        assert status.running is False
        assert status.phase == "done"
        assert status.docs_total == 4
        assert status.docs_completed == 4
        assert status.errors == []
        assert docs.content("data-model") == "# data-model\n\nBody."
        assert docs.get("overview")["last_edited_by"] == "ai"
        assert status.total_cost == pytest.approx(0.05 + 4 * 0.12)
        assert SpendLedger(data_dir).today_spend() == pytest.approx(0.05 + 4 * 0.12)

        runs = AuditStore(data_dir).list_runs(limit=10)["runs"]
        assert sorted(r["automation_id"] for r in runs) == [
            "docs-data-model", "docs-getting-started", "docs-overview", "docs-why-json",
        ]
        assert all(r["changes_count"] == 1 for r in runs)

        assert "docs_generated" in published
        assert "docs_generation_status" in published
        saved = json.loads((data_dir / "ai" / "docs-status.json").read_text())
        assert saved["docs_completed"] == 4

    @pytest.mark.asyncio
    async def test_pages_are_written_layer_by_layer(self, data_dir, docs):
        gateway = DocsGateway()

        await make_generator(gateway, docs, data_dir).generate("initialize")

        order = []
        for messages in gateway.page_calls():
            doc_id = re.search(r"\(id: ([\w-]+)\)", messages[1].content).group(1)
            if doc_id not in order:
                order.append(doc_id)
        assert order == ["overview", "getting-started", "data-model", "why-json"]

    @pytest.mark.asyncio
    async def test_page_options_follow_mode_and_layer(self, data_dir, docs):
        gateway = DocsGateway()

        await make_generator(gateway, docs, data_dir).generate("update")

        by_doc = {}
        for messages, options in gateway.calls:
            match = re.search(r"\(id: ([\w-]+)\)", messages[1].content)
            if match:
                by_doc.setdefault(match.group(1), options)
        assert by_doc["data-model"].task == "incremental_update"
        assert by_doc["overview"].max_tokens == 16384
        assert gateway.calls[0][1].task == "incremental_update"

    @pytest.mark.asyncio
    async def test_failed_page_is_collected_not_fatal(self, data_dir, docs):
        gateway = DocsGateway(failing={"getting-started"})

        status = await make_generator(gateway, docs, data_dir).generate("initialize")

        assert status.docs_completed == 3
        assert status.errors == ["getting-started: model refused getting-started"]
        failed = AuditStore(data_dir).list_runs(automation_id="docs-getting-started")["runs"]
        assert failed[0]["status"] == "failed"

    @pytest.mark.asyncio
    async def test_resume_skips_completed_pages(self, data_dir, docs):
        await make_generator(DocsGateway(failing={"data-model"}), docs, data_dir).generate("initialize")

        gateway = DocsGateway()
        status = await make_generator(gateway, docs, data_dir).generate("initialize", resume=True)

        written = {re.search(r"\(id: ([\w-]+)\)", m[1].content).group(1) for m in gateway.page_calls()}
        assert written == {"data-model"}
        assert len(gateway.page_calls()) == len(gateway.calls)
        assert status.docs_completed == 4
        assert status.errors == []

    @pytest.mark.asyncio
    async def test_unparseable_plan_uses_fallback(self, data_dir, docs):
        generator = make_generator(DocsGateway(plan_text="no idea"), docs, data_dir)
        generator.write_page = AsyncMock(return_value=0.0)

        status = await generator.generate("initialize")

        written = [call.args[0].id for call in generator.write_page.await_args_list]
        assert "system-sys-1" in written
        assert status.docs_total == len(written)

    @pytest.mark.asyncio
    async def test_rejects_bad_mode_and_concurrent_runs(self, data_dir, docs):
        generator = make_generator(DocsGateway(), docs, data_dir)

        with pytest.raises(ValueError):
            await generator.generate("rewrite")

        generator.status.running = True
        with pytest.raises(RuntimeError):
            await generator.generate("initialize")

    def test_stale_running_flag_is_cleared_on_load(self, data_dir, docs):
        (data_dir / "ai").mkdir(parents=True, exist_ok=True)
        (data_dir / "ai" / "docs-status.json").write_text(json.dumps({"running": True, "phase": "operational"}))

        generator = make_generator(DocsGateway(), docs, data_dir)

        assert generator.status.running is False
        assert generator.status.phase == "operational"


def test_doc_page_defaults():
    page = DocPage("x", "X")
    assert page.layer == "architecture"
    assert page.exists is False
