"""Turnstile engine: models, phase lifecycle, configuration and errors."""
from .models import (
    ASSISTANT_FAMILY,
    AgentMessage,
    BlockKind,
    Category,
    ContentBlock,
    EntryRole,
    MessageKind,
    Phase,
    Run,
    RunStatus,
    SessionState,
    Spacing,
    TokenUsage,
    TranscriptEntry,
)
from .config import ControllerConfig
from .generation import GenerationGate
from .errors import (
    ArtifactMissing,
    ConfigError,
    InvalidPhaseTransition,
    PersistenceFailure,
    RuntimeStartFailure,
    RuntimeTerminalError,
    TurnstileError,
)

__all__ = [
    # Models
    "ASSISTANT_FAMILY",
    "AgentMessage",
    "BlockKind",
    "Category",
    "ContentBlock",
    "EntryRole",
    "MessageKind",
    "Phase",
    "Run",
    "RunStatus",
    "SessionState",
    "Spacing",
    "TokenUsage",
    "TranscriptEntry",
    # Config
    "ControllerConfig",
    "GenerationGate",
    # YAML config (lazy import)
    "TurnstileConfig",
    "load_yaml_config",
    # Errors
    "ArtifactMissing",
    "ConfigError",
    "InvalidPhaseTransition",
    "PersistenceFailure",
    "RuntimeStartFailure",
    "RuntimeTerminalError",
    "TurnstileError",
]


def __getattr__(name: str):
    if name == "TurnstileConfig":
        from .yaml_config import TurnstileConfig
        return TurnstileConfig
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
