"""CLI wiring: argument parsing, runtime assembly and command handlers."""

import httpx
import pytest

from conftest import ScriptedGateway, make_result, tool_call
from devtrack import cli
from devtrack.checkpoint import CheckpointStore
from devtrack.config import DevTrackConfig
from devtrack.store import Automation, SpendLedger


@pytest.fixture
def repo(tmp_path):
    root = tmp_path / "demo"
    root.mkdir()
    (root / "README.md").write_text("# Demo\n\nA small demo project.\n")
    (root / "main.py").write_text("print('hello')\n")
    return root


@pytest.fixture
def runtime(repo, data_dir):
    config = DevTrackConfig(data_dir=data_dir, anthropic_api_key="sk-ant")
    transport = httpx.MockTransport(lambda request: httpx.Response(500))
    return cli.build_runtime(config, repo, transport=transport)


class TestParser:

    def test_init_flags(self):
        args = cli.build_parser().parse_args(["init", "--resume"])

        assert args.command == "init"
        assert args.resume is True
        assert args.fresh is False
        assert args.repo == "."

    def test_automation_run(self):
        args = cli.build_parser().parse_args(["--debug", "automations", "run", "nightly"])

        assert args.debug is True
        assert (args.command, args.action, args.automation_id) == ("automations", "run", "nightly")

    def test_audits_list_filters(self):
        args = cli.build_parser().parse_args(["audits", "list", "--status", "failed", "--limit", "5"])

        assert args.status == "failed"
        assert args.limit == 5

    def test_command_required(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args([])


class TestRuntime:

    def test_registers_every_tool_family(self, runtime):
        domains = runtime.tools.stats()["domains"]

        assert set(domains) == {"codebase", "entities", "docs"}
        assert runtime.gateway.is_configured()
        assert runtime.project_name == "demo"

    def test_state_summary_reflects_entities(self, runtime):
        runtime.entities.create("system", {"name": "Core"})

        summary = runtime.state_summary()

        assert summary.startswith("Project: demo")
        assert "Core" in summary


class TestCommands:

    @pytest.mark.asyncio
    async def test_init_runs_all_phases_and_records_spend(self, runtime, data_dir):
        gateway = ScriptedGateway([
            make_result("### Systems Plan\n- [core]: Core", cost=0.01),
            make_result("", [tool_call("create_system", {"name": "Core", "title": "Core"})], cost=0.02),
        ])
        runtime.runner.gateway = gateway

        code = await cli.run_init(runtime)

        assert code == 0
        checkpoint = CheckpointStore(data_dir).load()
        assert checkpoint.completed is True
        assert checkpoint.entities_created == {"systems": 1}
        assert SpendLedger(data_dir).today_spend() == pytest.approx(checkpoint.total_cost)

    @pytest.mark.asyncio
    async def test_init_already_completed(self, runtime, data_dir):
        store = CheckpointStore(data_dir)
        checkpoint = store.create("demo")
        checkpoint.completed = True
        store.save(checkpoint)
        runtime.runner.gateway = ScriptedGateway()

        assert await cli.run_init(runtime) == 0
        assert runtime.runner.gateway.calls == []

    @pytest.mark.asyncio
    async def test_init_needs_a_provider(self, repo, data_dir):
        runtime = cli.build_runtime(DevTrackConfig(data_dir=data_dir), repo)

        assert await cli.run_init(runtime) == 1

    @pytest.mark.asyncio
    async def test_run_automation(self, runtime):
        runtime.automations.upsert(Automation(
            id="nightly", name="Nightly audit", trigger="scheduled", ai_driven=True, ai_prompt="Audit.",
        ))
        runtime.runner.gateway = ScriptedGateway([make_result("All clear.")])

        assert await cli.run_automation(runtime, "nightly") == 0
        assert runtime.audits.list_runs()["runs"][0]["summary"] == "All clear."

    @pytest.mark.asyncio
    async def test_run_unknown_automation(self, runtime):
        assert await cli.run_automation(runtime, "missing") == 1

    def test_list_commands(self, runtime):
        runtime.automations.upsert(Automation(id="weekly", name="Weekly review", trigger="scheduled"))

        assert cli.list_automations(runtime) == 0
        assert cli.list_audits(runtime, None, None, 10) == 0


def test_main_lists_audits(repo, data_dir, monkeypatch):
    for key in ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_AI_API_KEY"):
        monkeypatch.delenv(key, raising=False)

    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--repo", str(repo), "--data-dir", str(data_dir), "audits", "list"])

    assert exc_info.value.code == 0


def test_main_rejects_missing_repo(tmp_path):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["--repo", str(tmp_path / "nope"), "models"])

    assert exc_info.value.code == 1
