"""
DevTrack Orchestration Engine

Multi-provider LLM orchestration for an AI-assisted project tracker:

- Completion gateway over OpenAI, Anthropic and Google with routing, cost
  estimation, rate limiting and retries
- Headless tool-calling agent loop with step-by-step audit recording
- Trigger-driven automations plus a periodic scheduler
- Checkpointed, resumable phased project initialization
- Bounded-concurrency documentation generation
"""

__version__ = "0.4.0"

from .llm_client import (
    Message, ToolCall, ToolDefinition, TokenUsage, CompletionOptions, CompletionResult, StreamEvent,
    ProviderClient, ProviderError, RateLimitError, ProviderUnavailableError, RetryExhaustedError,
    NoModelsAvailableError,
)
from .config import DevTrackConfig, AIConfig, AIConfigStore, get_config, set_config, reset_config

# Providers and routing
from .openai_client import OpenAIClient
from .anthropic_client import AnthropicClient
from .google_client import GoogleClient
from .router import ModelRouter, ModelInfo, estimate_cost, provider_for_model
from .rate_limit import TokenRateTracker, with_retry, estimate_tokens
from .gateway import CompletionGateway, build_clients

# Agent loop and audit
from .tools import ToolRegistry, register_codebase_tools, register_entity_tools
from .runner import AgentRunner, AgentOptions, AgentResult, CancellationToken, ToolCallEvent
from .audit import AuditRecorder, AuditStore, AuditRun

# Automations
from .events import Event, EventBus
from .store import AutomationStore, Automation, ActivityLog, SpendLedger, EntityStore
from .automation import AutomationEngine, TriggerContext
from .scheduler import Scheduler

# Initialization and docs
from .checkpoint import Checkpoint, CheckpointStore
from .phases import PhaseOrchestrator, PhaseDefinition, PhaseContext, PhaseProgress, INIT_PHASES
from .pool import run_pool
from .scanner import ProjectScanner, ProjectScan, scan_project
from .docs_generator import DocsGenerator, DocStore

__all__ = [
    # Contract
    "Message",
    "ToolCall",
    "ToolDefinition",
    "TokenUsage",
    "CompletionOptions",
    "CompletionResult",
    "StreamEvent",
    "ProviderClient",

    # Errors
    "ProviderError",
    "RateLimitError",
    "ProviderUnavailableError",
    "RetryExhaustedError",
    "NoModelsAvailableError",

    # Configuration
    "DevTrackConfig",
    "AIConfig",
    "AIConfigStore",
    "get_config",
    "set_config",
    "reset_config",

    # Gateway
    "OpenAIClient",
    "AnthropicClient",
    "GoogleClient",
    "ModelRouter",
    "ModelInfo",
    "estimate_cost",
    "provider_for_model",
    "TokenRateTracker",
    "with_retry",
    "estimate_tokens",
    "CompletionGateway",
    "build_clients",

    # Agent loop
    "ToolRegistry",
    "register_codebase_tools",
    "register_entity_tools",
    "AgentRunner",
    "AgentOptions",
    "AgentResult",
    "CancellationToken",
    "ToolCallEvent",
    "AuditRecorder",
    "AuditStore",
    "AuditRun",

    # Automations
    "Event",
    "EventBus",
    "AutomationStore",
    "Automation",
    "ActivityLog",
    "SpendLedger",
    "EntityStore",
    "AutomationEngine",
    "TriggerContext",
    "Scheduler",

    # Initialization and docs
    "Checkpoint",
    "CheckpointStore",
    "PhaseOrchestrator",
    "PhaseDefinition",
    "PhaseContext",
    "PhaseProgress",
    "INIT_PHASES",
    "run_pool",
    "ProjectScanner",
    "ProjectScan",
    "scan_project",
    "DocsGenerator",
    "DocStore",
]
