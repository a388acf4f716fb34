"""Process configuration sources and the mutable AI config file."""

import json

import pytest

from devtrack import config as config_module
from devtrack.config import AIConfig, AIConfigStore, DevTrackConfig

ENV_VARS = (
    "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "GOOGLE_AI_API_KEY", "HELICONE_API_KEY", "HELICONE_ORG_ID",
    "DEVTRACK_PROJECT", "DEVTRACK_LOG_LEVEL", "DEVTRACK_DATA_DIR", "DEVTRACK_DEBUG",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    # keep load_dotenv away from any .env in the working tree
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestDevTrackConfig:

    def test_from_env(self, clean_env, tmp_path):
        clean_env.setenv("ANTHROPIC_API_KEY", "sk-ant")
        clean_env.setenv("DEVTRACK_DATA_DIR", str(tmp_path / "state"))
        clean_env.setenv("DEVTRACK_PROJECT", "Demo")
        clean_env.setenv("DEVTRACK_DEBUG", "yes")

        config = DevTrackConfig.from_env()

        assert config.anthropic_api_key == "sk-ant"
        assert config.openai_api_key is None
        assert config.data_dir == tmp_path / "state"
        assert config.project_name == "Demo"
        assert config.debug_logging is True
        assert config.provider_keys() == {"openai": None, "anthropic": "sk-ant", "google": None}

    def test_from_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"ai": {"google": "g-key", "helicone": "h-key"}, "project_name": "Shop"}))

        config = DevTrackConfig.from_file(path, data_dir=tmp_path)

        assert config.google_api_key == "g-key"
        assert config.helicone_api_key == "h-key"
        assert config.project_name == "Shop"
        assert config.data_dir == tmp_path

    def test_corrupt_file_falls_back_to_defaults(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text("{oops")

        config = DevTrackConfig.from_file(path)

        assert config.provider_keys() == {"openai": None, "anthropic": None, "google": None}

    def test_environment_overrides_file(self, clean_env, tmp_path):
        DevTrackConfig(data_dir=tmp_path, openai_api_key="file-key", google_api_key="g-file").save()
        clean_env.setenv("OPENAI_API_KEY", "env-key")

        config = DevTrackConfig.load(tmp_path)

        assert config.openai_api_key == "env-key"
        assert config.google_api_key == "g-file"
        assert config.data_dir == tmp_path

    def test_to_dict_hides_secrets(self):
        config = DevTrackConfig(anthropic_api_key="sk-ant", helicone_api_key="h")

        data = config.to_dict()

        assert data["providers"] == {"openai": False, "anthropic": True, "google": False}
        assert data["helicone"] is True
        assert "sk-ant" not in json.dumps(data)


class TestAIConfigStore:

    def test_defaults_when_missing(self, data_dir):
        config = AIConfigStore(data_dir).load()

        assert config.budget["daily_limit_usd"] == 5.0
        assert config.automations["cooldown_minutes"] == 60
        assert config.helicone_enabled is False

    def test_partial_file_is_merged_with_defaults(self, data_dir):
        store = AIConfigStore(data_dir)
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(json.dumps({"budget": {"daily_limit_usd": 1.0}, "providers": {"helicone": {"enabled": True}}}))

        config = store.load()

        assert config.budget == {"daily_limit_usd": 1.0, "warn_at_usd": 3.0, "pause_on_limit": True}
        assert config.helicone_enabled is True
        assert config.automations["default_tier"] == "premium"

    def test_update_persists(self, data_dir):
        store = AIConfigStore(data_dir)

        store.update("automations", triggers_enabled=False)

        reloaded = store.load()
        assert reloaded.automations["triggers_enabled"] is False
        assert reloaded.automations["enabled"] is True

    @pytest.mark.parametrize("content", ["{broken", "[1, 2]"])
    def test_unusable_file_gives_defaults(self, data_dir, content):
        store = AIConfigStore(data_dir)
        store.path.parent.mkdir(parents=True, exist_ok=True)
        store.path.write_text(content)

        assert store.load() == AIConfig()


def test_global_config(clean_env, tmp_path):
    config_module.reset_config()
    try:
        custom = DevTrackConfig(data_dir=tmp_path, project_name="Pinned")
        config_module.set_config(custom)
        assert config_module.get_config() is custom

        config_module.reset_config()
        loaded = config_module.get_config(tmp_path)
        assert loaded is not custom
        assert loaded is config_module.get_config()
    finally:
        config_module.reset_config()
