"""Exception hierarchy for the conversation controller.

Specific exceptions for each failure mode. External-call failures are
wrapped in these at the controller boundary and never propagate into
the transcript pipeline.
"""
from __future__ import annotations


class TurnstileError(Exception):
    """Base exception for all turnstile errors."""


class RuntimeStartFailure(TurnstileError):
    """The agent runtime rejected or failed a start/resume call."""
    def __init__(self, prompt_preview: str, reason: str):
        self.prompt_preview = prompt_preview
        self.reason = reason
        super().__init__(f"Failed to start agent: {reason}")


class RuntimeTerminalError(TurnstileError):
    """A run ended with error status."""
    def __init__(self, run_id: str, detail: str | None = None):
        self.run_id = run_id
        self.detail = detail or "Agent encountered an error"
        super().__init__(f"Run {run_id} failed: {self.detail}")


class ArtifactMissing(TurnstileError):
    """The artifact required to complete a step was not found anywhere."""
    def __init__(self, context_id: str, relative_path: str, locations: list[str]):
        self.context_id = context_id
        self.relative_path = relative_path
        self.locations = locations
        filename = relative_path.rsplit("/", 1)[-1]
        super().__init__(
            f"Required artifact was not created. The agent did not save "
            f"{filename}. Please send feedback to the agent asking it to "
            f"write {filename} before completing."
        )


class PersistenceFailure(TurnstileError):
    """Saving or loading session state failed."""
    def __init__(self, operation: str, target: str, reason: str):
        self.operation = operation
        self.target = target
        self.reason = reason
        super().__init__(f"Cannot {operation} {target}: {reason}")


class InvalidPhaseTransition(TurnstileError, ValueError):
    """A phase change that the lifecycle table does not allow."""
    def __init__(self, current: str, target: str, allowed: list[str]):
        self.current = current
        self.target = target
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none"
        super().__init__(
            f"Invalid phase transition: {current} -> {target}. "
            f"Allowed from {current}: {allowed_str}"
        )


class ConfigError(TurnstileError):
    """Configuration could not be parsed."""
    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Invalid configuration in {source}: {reason}")
