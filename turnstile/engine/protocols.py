"""Interfaces of the external collaborators the controller consumes.

Only the shape is defined here. The agent runtime lives outside this
package entirely; a file-backed ArtifactStore is provided in
turnstile.shared.services.artifact_store.
"""
from __future__ import annotations

from typing import Protocol, runtime_checkable


@runtime_checkable
class AgentRuntime(Protocol):
    """Spawns, streams and cancels agent runs.

    Runs publish their messages and terminal status into a RunStore; the
    controller never polls the runtime.
    """

    async def start(
        self,
        prompt: str,
        model: str,
        working_dir: str,
        allowed_tools: list[str],
        max_turns: int,
        resume_session_id: str | None,
        context_id: str,
        phase_label: str,
        agent_persona: str | None = None,
    ) -> str:
        """Start or resume a run. Returns the run id."""
        ...

    async def cancel(self, run_id: str) -> None:
        """Best-effort cancel. The run may already have finished."""
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Durable per-context artifact storage."""

    async def save_artifact(
        self, context_id: str, step_id: int, relative_path: str, content: str,
    ) -> None:
        ...

    async def read_artifact(self, context_id: str, relative_path: str) -> str | None:
        ...

    async def capture_step_artifacts(
        self, context_id: str, step_id: int, workspace_path: str,
    ) -> list[str] | None:
        """Copy whatever the agent wrote into the workspace into the store."""
        ...


@runtime_checkable
class Notifier(Protocol):
    """The single user-visible notification channel.

    Levels: "info", "success", "warning", "error".
    """

    def notify(self, level: str, message: str) -> None:
        ...
