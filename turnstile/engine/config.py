"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TURNSTILE_* env vars
or a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, fields
from typing import Any

from .errors import ConfigError

logger = logging.getLogger(__name__)


# Async callback for run-record updates published by the RunStore.
# Signature: async def callback(run: Run) -> None
RunCallback = Callable[[Any], Awaitable[None]]

# Callback for phase changes. Signature: def callback(old: Phase, new: Phase) -> None
PhaseCallback = Callable[[Any, Any], None]


async def fire_callback(callback: RunCallback | None, payload: Any) -> None:
    """Invoke a subscriber, logging and swallowing its errors."""
    if callback is None:
        return
    try:
        await callback(payload)
    except Exception:
        # Never let subscriber errors break the store
        logger.exception("Subscriber callback failed")


DEFAULT_ALLOWED_TOOLS = ["Read", "Write", "Edit", "Glob", "Grep", "Bash", "Task"]

DEFAULT_CONTEXT_REMINDER = (
    "[Context reminder: You are the reasoning agent for \"{context_id}\" "
    "in domain \"{domain}\". You MUST write your decisions to "
    "{context_id}/{artifact_path} before completing. "
    "The workspace is at {workspace_path}.]\n\n"
)


def _parse_bool(value: str) -> bool:
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _parse_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class ControllerConfig:
    """Per-step conversation controller configuration."""

    # Agent launch parameters
    model: str = "opus"
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    max_turns: int = 100
    step_id: int = 4
    phase_label: str = "step4-reasoning"
    # Persona name so resume turns load the full agent definition
    agent_persona: str | None = None
    domain: str = ""

    # Artifact gating. artifact_path is relative to <root>/<context_id>/.
    artifact_path: str = "context/decisions.md"
    session_artifact: str = "context/reasoning-session.json"
    workspace_path: str = "."
    # Primary override location checked before workspace_path
    skills_path: str | None = None

    # 0 (or negative) disables the stall check
    stall_timeout_seconds: float = 0.0

    # Prepended to prompts on resume turns
    context_reminder: str = DEFAULT_CONTEXT_REMINDER
    context_reminder_enabled: bool = True

    log_level: str = "INFO"

    def render_context_reminder(self, context_id: str) -> str:
        if not self.context_reminder_enabled or not self.context_reminder:
            return ""
        return self.context_reminder.format(
            context_id=context_id,
            domain=self.domain,
            artifact_path=self.artifact_path,
            workspace_path=self.workspace_path,
        )

    def with_overrides(self, overrides: dict[str, Any], source: str = "<overrides>") -> ControllerConfig:
        """Return a copy with *overrides* applied. Unknown keys are ignored."""
        known = {f.name: f for f in fields(self)}
        values = {name: getattr(self, name) for name in known}
        for key, value in overrides.items():
            if key not in known:
                logger.warning("Ignoring unknown controller setting %r in %s", key, source)
                continue
            values[key] = _coerce(key, value, values[key], source)
        return ControllerConfig(**values)

    @classmethod
    def from_env(cls) -> ControllerConfig:
        """Load configuration from TURNSTILE_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TURNSTILE_")
        }
        if env_vars:
            logger.info(
                "ControllerConfig.from_env: TURNSTILE_* env overrides: %s",
                ", ".join(sorted(env_vars)),
            )
        else:
            logger.debug("ControllerConfig.from_env: no TURNSTILE_* env vars set, using defaults")

        overrides: dict[str, Any] = {}
        mapping = {
            "TURNSTILE_MODEL": "model",
            "TURNSTILE_ALLOWED_TOOLS": "allowed_tools",
            "TURNSTILE_MAX_TURNS": "max_turns",
            "TURNSTILE_STEP_ID": "step_id",
            "TURNSTILE_PHASE_LABEL": "phase_label",
            "TURNSTILE_AGENT_PERSONA": "agent_persona",
            "TURNSTILE_DOMAIN": "domain",
            "TURNSTILE_ARTIFACT_PATH": "artifact_path",
            "TURNSTILE_SESSION_ARTIFACT": "session_artifact",
            "TURNSTILE_WORKSPACE": "workspace_path",
            "TURNSTILE_SKILLS_PATH": "skills_path",
            "TURNSTILE_STALL_TIMEOUT": "stall_timeout_seconds",
            "TURNSTILE_CONTEXT_REMINDER": "context_reminder_enabled",
            "TURNSTILE_LOG_LEVEL": "log_level",
        }
        for env_name, attr in mapping.items():
            raw = os.getenv(env_name)
            if raw is not None and raw != "":
                overrides[attr] = raw

        config = cls().with_overrides(overrides, source="environment")
        logger.info(
            "ControllerConfig.from_env: model=%s workspace=%s artifact=%s",
            config.model, config.workspace_path, config.artifact_path,
        )
        return config


def _coerce(key: str, value: Any, current: Any, source: str) -> Any:
    """Convert a raw env/YAML value to the type of the current default."""
    if value is None:
        return None
    try:
        if key == "allowed_tools":
            if isinstance(value, str):
                return _parse_list(value)
            return [str(v) for v in value]
        if isinstance(current, bool):
            return _parse_bool(value) if isinstance(value, str) else bool(value)
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(source, f"{key}={value!r}: {exc}") from exc
    return str(value) if not isinstance(value, str) else value
