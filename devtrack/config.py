"""
DevTrack Configuration System

Two layers:

1. DevTrackConfig - process settings resolved once (data directory, provider
   credentials, telemetry proxy key, logging). Sources:
     - Environment variables (OPENAI_API_KEY, DEVTRACK_*, ...; a .env file is honoured)
     - Credentials file (<data_dir>/credentials.json, under an "ai" key)
     - Direct code configuration via set_config()

   Priority: Direct code > Environment variables > Credentials file > Defaults

2. AIConfig - mutable dispatch settings (<data_dir>/ai/config.json): budget,
   automation switches, cooldown, default tier, model overrides. Read fresh
   through AIConfigStore.load() on every dispatch decision so edits apply
   without a restart.

Example credentials file (.devtrack/credentials.json):
{
    "ai": {
        "anthropic": "sk-ant-...",
        "helicone": "sk-helicone-..."
    }
}
"""

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = ".devtrack"

# env var -> DevTrackConfig attribute
_ENV_KEYS = {
    "OPENAI_API_KEY": "openai_api_key",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "GOOGLE_AI_API_KEY": "google_api_key",
    "HELICONE_API_KEY": "helicone_api_key",
    "HELICONE_ORG_ID": "helicone_org_id",
    "DEVTRACK_PROJECT": "project_name",
    "DEVTRACK_LOG_LEVEL": "log_level",
}

# credentials.json "ai" key -> DevTrackConfig attribute
_CREDENTIAL_KEYS = {
    "openai": "openai_api_key",
    "anthropic": "anthropic_api_key",
    "google": "google_api_key",
    "helicone": "helicone_api_key",
    "helicone_org_id": "helicone_org_id",
}


@dataclass
class DevTrackConfig:
    """
    Process-wide configuration.

    Attributes:
        data_dir: Root of all persisted state (audits, checkpoints, automations)
        openai_api_key / anthropic_api_key / google_api_key: Provider credentials.
            A missing key marks that provider unavailable; it is never fatal.
        helicone_api_key: Telemetry proxy key (used only when the proxy is
            enabled in AIConfig)
        helicone_org_id: Optional proxy organization
        project_name: Reported to the proxy as a tracking property
        debug_logging: Verbose CLI output
        log_level: Root log level for the CLI
    """
    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))

    # Provider credentials
    openai_api_key: Optional[str] = None
    anthropic_api_key: Optional[str] = None
    google_api_key: Optional[str] = None

    # Telemetry proxy
    helicone_api_key: Optional[str] = None
    helicone_org_id: Optional[str] = None

    project_name: str = ""

    # Debug settings
    debug_logging: bool = False
    log_level: str = "INFO"

    @property
    def credentials_path(self) -> Path:
        return self.data_dir / "credentials.json"

    @property
    def ai_dir(self) -> Path:
        return self.data_dir / "ai"

    def provider_keys(self) -> dict[str, Optional[str]]:
        """Credential per provider family."""
        return {
            "openai": self.openai_api_key,
            "anthropic": self.anthropic_api_key,
            "google": self.google_api_key,
        }

    @classmethod
    def from_env(cls) -> 'DevTrackConfig':
        """Load configuration from environment variables."""
        config = cls()

        if os.getenv("DEVTRACK_DATA_DIR"):
            config.data_dir = Path(os.getenv("DEVTRACK_DATA_DIR"))

        for env_key, attr in _ENV_KEYS.items():
            if os.getenv(env_key):
                setattr(config, attr, os.getenv(env_key))

        if os.getenv("DEVTRACK_DEBUG"):
            config.debug_logging = os.getenv("DEVTRACK_DEBUG", "").lower() in ("true", "1", "yes")

        return config

    @classmethod
    def from_file(cls, path: Path, data_dir: Optional[Path] = None) -> 'DevTrackConfig':
        """Load credentials from a JSON file."""
        config = cls()
        if data_dir is not None:
            config.data_dir = data_dir

        if not path.exists():
            return config

        try:
            data = json.loads(path.read_text())
            ai = data.get("ai") or {}
            for key, attr in _CREDENTIAL_KEYS.items():
                if ai.get(key):
                    setattr(config, attr, str(ai[key]))
            if "project_name" in data:
                config.project_name = str(data["project_name"])
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError):
            logger.warning("Ignoring unreadable credentials file %s", path)

        return config

    @classmethod
    def load(cls, data_dir: Optional[Path] = None) -> 'DevTrackConfig':
        """
        Load configuration from all sources (env, credentials file, defaults).

        Args:
            data_dir: Overrides DEVTRACK_DATA_DIR and the default

        Returns:
            Merged configuration
        """
        load_dotenv()

        env_config = cls.from_env()
        root = Path(data_dir) if data_dir else env_config.data_dir

        # Start with the credentials file (or defaults)
        config = cls.from_file(root / "credentials.json", data_dir=root)

        # Environment takes priority
        for attr in _ENV_KEYS.values():
            value = getattr(env_config, attr)
            if value:
                setattr(config, attr, value)
        config.debug_logging = env_config.debug_logging

        return config

    def to_dict(self) -> dict:
        """Convert config to dictionary (credentials are reported as present/absent)."""
        return {
            "data_dir": str(self.data_dir),
            "providers": {name: bool(key) for name, key in self.provider_keys().items()},
            "helicone": bool(self.helicone_api_key),
            "project_name": self.project_name,
            "debug_logging": self.debug_logging,
            "log_level": self.log_level,
        }

    def save(self, path: Optional[Path] = None):
        """Write credentials back to the credentials file."""
        path = path or self.credentials_path
        path.parent.mkdir(parents=True, exist_ok=True)
        ai = {}
        for key, attr in _CREDENTIAL_KEYS.items():
            value = getattr(self, attr)
            if value:
                ai[key] = value
        path.write_text(json.dumps({"ai": ai, "project_name": self.project_name}, indent=2))


# =============================================================================
# Mutable AI configuration
# =============================================================================

DEFAULT_AI_CONFIG: dict = {
    "providers": {
        "helicone": {"enabled": False},
    },
    "features": {},
    "defaults": {
        "chat_model": None,
    },
    "budget": {
        "daily_limit_usd": 5.0,
        "warn_at_usd": 3.0,
        "pause_on_limit": True,
    },
    "automations": {
        "enabled": True,
        "triggers_enabled": True,
        "scheduler_enabled": True,
        "cooldown_minutes": 60,
        "default_tier": "premium",
        "max_iterations": 20,
    },
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class AIConfig:
    """Snapshot of the mutable AI configuration."""
    providers: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_AI_CONFIG["providers"]))
    features: dict = field(default_factory=dict)
    defaults: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_AI_CONFIG["defaults"]))
    budget: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_AI_CONFIG["budget"]))
    automations: dict = field(default_factory=lambda: copy.deepcopy(DEFAULT_AI_CONFIG["automations"]))

    @classmethod
    def from_dict(cls, data: dict) -> 'AIConfig':
        merged = _merge(DEFAULT_AI_CONFIG, data or {})
        return cls(
            providers=merged["providers"],
            features=merged["features"],
            defaults=merged["defaults"],
            budget=merged["budget"],
            automations=merged["automations"],
        )

    def to_dict(self) -> dict:
        return {
            "providers": self.providers,
            "features": self.features,
            "defaults": self.defaults,
            "budget": self.budget,
            "automations": self.automations,
        }

    @property
    def helicone_enabled(self) -> bool:
        return bool((self.providers.get("helicone") or {}).get("enabled"))


class AIConfigStore:
    """
    File-backed AIConfig. ``load()`` always re-reads the file.

    Usage:
        store = AIConfigStore(Path(".devtrack"))
        if store.load().automations["enabled"]:
            ...
    """

    def __init__(self, data_dir: Path):
        self.path = Path(data_dir) / "ai" / "config.json"

    def load(self) -> AIConfig:
        if not self.path.exists():
            return AIConfig()
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Unreadable AI config %s (%s); using defaults", self.path, e)
            return AIConfig()
        if not isinstance(data, dict):
            return AIConfig()
        return AIConfig.from_dict(data)

    def save(self, config: AIConfig):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(config.to_dict(), indent=2))

    def update(self, section: str, **values) -> AIConfig:
        """Merge *values* into one section and persist."""
        config = self.load()
        getattr(config, section).update(values)
        self.save(config)
        return config


# Global config instance (can be overridden)
_global_config: Optional[DevTrackConfig] = None


def get_config(data_dir: Optional[Path] = None) -> DevTrackConfig:
    """Get the current configuration."""
    global _global_config
    if _global_config is None:
        _global_config = DevTrackConfig.load(data_dir)
    return _global_config


def set_config(config: DevTrackConfig):
    """Set the global configuration."""
    global _global_config
    _global_config = config


def reset_config():
    """Reset configuration to reload from sources."""
    global _global_config
    _global_config = None
