"""
Model Router

Task-aware model selection. Model ids are classified into cost/quality tiers by
pattern rather than by exact id, so new dated releases
(claude-sonnet-4-5-20250929 vs 20250514) route without code changes.

Also owns the static price table used for every persisted cost estimate.
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional

from .llm_client import NoModelsAvailableError

logger = logging.getLogger(__name__)

PROVIDERS = ("openai", "anthropic", "google")
TIERS = ("premium", "standard", "budget")


# =============================================================================
# Pricing
# =============================================================================

# Approximate USD cost per 1M tokens (input/output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    # OpenAI
    "gpt-5.2": (3.00, 15.00),
    "gpt-5.3-codex": (3.00, 15.00),
    "gpt-5-pro": (15.00, 60.00),
    "gpt-4o": (5.00, 15.00),
    "gpt-4o-mini": (0.15, 0.60),
    # Anthropic
    "claude-opus-4-6": (15.00, 75.00),
    "claude-sonnet-4-5-20250929": (3.00, 15.00),
    "claude-haiku-4-5-20251001": (1.00, 5.00),
    # Google
    "gemini-3-pro-preview": (1.25, 5.00),
    "gemini-3-flash-preview": (0.15, 0.60),
}

# Conservative rate for models missing from the table
FALLBACK_COST: tuple[float, float] = (3.00, 15.00)


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    """Estimated USD cost of one call."""
    input_rate, output_rate = MODEL_COSTS.get(model, FALLBACK_COST)
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def provider_for_model(model: str) -> str:
    """Resolve the backend family from the model id naming convention."""
    if model.startswith("claude"):
        return "anthropic"
    if model.startswith("gemini"):
        return "google"
    return "openai"


# =============================================================================
# Tier classification
# =============================================================================

@dataclass
class ModelInfo:
    """A routable model."""
    id: str
    provider: str
    tier: str
    name: str


@dataclass
class TierPattern:
    pattern: str
    tier: str
    friendly_name: str
    priority: int  # lower = preferred within tier


TIER_PATTERNS: dict[str, list[TierPattern]] = {
    "anthropic": [
        TierPattern(r"claude-opus-4-6", "premium", "Claude Opus 4.6", 0),
        TierPattern(r"claude-opus-4-5", "premium", "Claude Opus 4.5", 1),
        TierPattern(r"claude-opus-4-1", "premium", "Claude Opus 4.1", 2),
        TierPattern(r"claude-opus-4(?![\d.-])", "premium", "Claude Opus 4", 3),
        TierPattern(r"claude-sonnet-4-5", "standard", "Claude Sonnet 4.5", 0),
        TierPattern(r"claude-sonnet-4", "standard", "Claude Sonnet 4", 1),
        TierPattern(r"claude-haiku-4", "budget", "Claude Haiku 4.5", 0),
        TierPattern(r"claude-3-haiku", "budget", "Claude Haiku 3", 1),
    ],
    "openai": [
        TierPattern(r"gpt-5-pro", "premium", "GPT-5 Pro", 0),
        TierPattern(r"gpt-5\.3", "premium", "GPT-5.3 Codex", 1),
        TierPattern(r"gpt-5\.2", "standard", "GPT-5.2", 0),
        TierPattern(r"gpt-5\.1", "standard", "GPT-5.1", 1),
        TierPattern(r"gpt-5(?![\d.])", "standard", "GPT-5", 2),
        TierPattern(r"gpt-4o-mini", "budget", "GPT-4o Mini", 0),
        TierPattern(r"gpt-4o", "standard", "GPT-4o", 3),
    ],
    "google": [
        TierPattern(r"gemini-3-pro", "standard", "Gemini 3 Pro", 0),
        TierPattern(r"gemini-3-flash", "budget", "Gemini 3 Flash", 0),
        TierPattern(r"gemini-2.*pro", "standard", "Gemini 2 Pro", 1),
        TierPattern(r"gemini-2.*flash", "budget", "Gemini 2 Flash", 1),
    ],
}

# Used until discovery has run (and when it cannot run at all)
SEED_MODELS: dict[str, list[str]] = {
    "anthropic": ["claude-opus-4-6", "claude-sonnet-4-5-20250929", "claude-haiku-4-5-20251001"],
    "openai": ["gpt-5-pro", "gpt-5.2", "gpt-4o-mini"],
    "google": ["gemini-3-pro-preview", "gemini-3-flash-preview"],
}


def classify_model(model_id: str, provider: str) -> Optional[ModelInfo]:
    """Match a model id against the provider's tier patterns."""
    for p in TIER_PATTERNS.get(provider, []):
        if re.search(p.pattern, model_id):
            return ModelInfo(id=model_id, provider=provider, tier=p.tier, name=p.friendly_name)
    return None


def _priority(info: ModelInfo) -> int:
    for p in TIER_PATTERNS.get(info.provider, []):
        if re.search(p.pattern, info.id):
            return p.priority
    return 99


# =============================================================================
# Task routes
# =============================================================================

@dataclass
class TaskRoute:
    tiers: tuple[str, ...]
    providers: tuple[str, ...]


_DEFAULT_PROVIDERS = ("anthropic", "openai", "google")

TASK_ROUTES: dict[str, TaskRoute] = {
    "chat": TaskRoute(("standard", "premium"), _DEFAULT_PROVIDERS),
    "codebase_qa": TaskRoute(("standard", "premium"), _DEFAULT_PROVIDERS),
    "change_analysis": TaskRoute(("standard", "budget"), ("openai", "anthropic", "google")),
    "changelog_update": TaskRoute(("budget", "standard"), ("anthropic", "google", "openai")),
    "docs_generation": TaskRoute(("standard", "premium"), _DEFAULT_PROVIDERS),
    "quick_classification": TaskRoute(("budget", "standard"), ("google", "anthropic", "openai")),
    "context_generation": TaskRoute(("budget", "standard"), ("anthropic", "google", "openai")),
    # premium first: depth over cost
    "project_init": TaskRoute(("premium", "standard"), _DEFAULT_PROVIDERS),
    "deep_audit": TaskRoute(("premium", "standard"), _DEFAULT_PROVIDERS),
    "doc_generation": TaskRoute(("premium", "standard"), _DEFAULT_PROVIDERS),
    "incremental_update": TaskRoute(("standard", "budget"), _DEFAULT_PROVIDERS),
}


# =============================================================================
# Router
# =============================================================================

class ModelRouter:
    """
    Routes a task (optionally pinned to a tier) to the best available model.

    Only providers with credentials are ever selected.

    Usage:
        router = ModelRouter({"anthropic"})
        router.route("deep_audit")             # -> "claude-opus-4-6"
        router.route("project_init", "budget")  # -> "claude-haiku-4-5-20251001"
    """

    def __init__(self, available_providers: set[str], config_loader=None):
        self.available_providers = set(available_providers)
        self._config_loader = config_loader
        self._models: list[ModelInfo] = []
        self._seed()

    def _seed(self):
        models = []
        for provider in PROVIDERS:
            if provider not in self.available_providers:
                continue
            for model_id in SEED_MODELS[provider]:
                info = classify_model(model_id, provider)
                if info:
                    models.append(info)
        self._models = models

    def update_providers(self, providers: set[str]):
        self.available_providers = set(providers)
        self._seed()

    async def discover_models(self, clients: dict) -> list[ModelInfo]:
        """
        Replace the model list with what the providers advertise.

        ``clients`` maps provider name -> ProviderClient. Failures for one
        provider keep that provider's seed models.
        """
        models: list[ModelInfo] = []
        for provider in PROVIDERS:
            if provider not in self.available_providers:
                continue
            client = clients.get(provider)
            ids: list[str] = []
            if client is not None:
                try:
                    ids = await client.list_models()
                except Exception as e:
                    logger.warning("Failed to discover %s models: %s", provider, e)
            if not ids:
                ids = SEED_MODELS[provider]
            for model_id in ids:
                info = classify_model(model_id, provider)
                if info:
                    models.append(info)

        models.sort(key=lambda m: (PROVIDERS.index(m.provider), TIERS.index(m.tier), _priority(m)))
        self._models = models
        logger.info("Discovered %d models: %s", len(models), ", ".join(m.id for m in models))
        return models

    def get_available_models(self) -> list[ModelInfo]:
        return list(self._models)

    def get_models_by_tier(self, tier: str) -> list[ModelInfo]:
        return [m for m in self._models if m.tier == tier]

    def route(self, task: Optional[str] = None, tier: Optional[str] = None) -> str:
        """Pick a model id for *task*, preferring *tier* when given."""
        task = task or "chat"
        config = self._config_loader() if self._config_loader else None

        if config is not None:
            override = config.features.get(task, {}).get("model_override")
            if override:
                return override
            chat_model = config.defaults.get("chat_model")
            if task == "chat" and chat_model and any(m.id == chat_model for m in self._models):
                return chat_model

        route = TASK_ROUTES.get(task, TASK_ROUTES["chat"])
        tiers = list(route.tiers)
        if tier:
            tiers = [tier] + [t for t in tiers if t != tier]

        for wanted in tiers:
            for provider in route.providers:
                if provider not in self.available_providers:
                    continue
                candidates = [m for m in self._models if m.tier == wanted and m.provider == provider]
                if candidates:
                    candidates.sort(key=_priority)
                    return candidates[0].id

        usable = [m for m in self._models if m.provider in self.available_providers]
        if usable:
            return usable[0].id

        raise NoModelsAvailableError("No AI models available. Configure at least one provider API key.")
