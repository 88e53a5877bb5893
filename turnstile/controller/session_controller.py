"""Conversation session controller.

Drives one multi-turn conversation with an agent: starts and resumes runs
through the AgentRuntime, reacts to RunStore notifications, keeps the
transcript and phase, persists the session, and gates step completion on
the required artifact actually existing.

Phase flow (see engine/lifecycle.py for the full table):

    not_started -> agent_running -> awaiting_feedback -> agent_running ...
                                 -> completed  (complete_step)
                                 -> error -> awaiting_feedback | not_started

External-call failures stop here. They are logged and reported through
the Notifier and never propagate to the caller or the transcript pipeline.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

from turnstile.adapters.notifications import LogNotifier
from turnstile.adapters.run_store import RunStore
from turnstile.controller.stall import StallDecision, StallMonitor
from turnstile.engine.config import ControllerConfig, PhaseCallback, fire_callback
from turnstile.engine.errors import (
    ArtifactMissing,
    PersistenceFailure,
    RuntimeStartFailure,
    RuntimeTerminalError,
)
from turnstile.engine.generation import GenerationGate
from turnstile.engine.lifecycle import can_transition, phase_after_failure, validate_transition
from turnstile.engine.models import (
    EntryRole,
    Phase,
    Run,
    RunStatus,
    SessionState,
    TranscriptEntry,
)
from turnstile.engine.protocols import AgentRuntime, ArtifactStore, Notifier
from turnstile.shared.services.persistence import (
    ArtifactSessionSink,
    SessionSink,
    normalize_phase,
    record_to_session,
)
from turnstile.transcript.response_parser import count_decisions

logger = logging.getLogger(__name__)

# Generation group for once-only terminal processing
TERMINAL_GROUP = "terminal-run"

StepCompletedHook = Callable[["ConversationController"], Awaitable[None]]


def _read_candidate(path: Path) -> str | None:
    try:
        data = path.read_bytes()
    except OSError:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        # The agent did write the file; undecodable bytes only affect the preview
        logger.warning("Artifact %s is not valid UTF-8; decoding with replacements", path)
        return data.decode("utf-8", errors="replace")


class ConversationController:
    """One controller per session. Single event loop only."""

    def __init__(
        self,
        context_id: str,
        runtime: AgentRuntime,
        run_store: RunStore,
        *,
        artifact_store: ArtifactStore | None = None,
        sink: SessionSink | None = None,
        notifier: Notifier | None = None,
        config: ControllerConfig | None = None,
        gate: GenerationGate | None = None,
        on_step_completed: StepCompletedHook | None = None,
    ) -> None:
        self._context_id = context_id
        self._runtime = runtime
        self._run_store = run_store
        self._artifact_store = artifact_store
        self._config = config or ControllerConfig()
        if sink is None and artifact_store is not None:
            sink = ArtifactSessionSink(
                artifact_store, context_id, self._config.step_id, self._config.session_artifact,
            )
        self._sink = sink
        self._notifier: Notifier = notifier or LogNotifier()
        self._gate = gate or GenerationGate()
        self._on_step_completed = on_step_completed

        self._state = SessionState()
        self._current_run_id: str | None = None
        self._run_tokens: dict[str, int] = {}
        self._last_processed_run_id: str | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._last_prompt: str | None = None
        # Set while runtime.start is awaited and no run id exists yet
        self._starting = False
        self._artifact_preview: str | None = None
        self._stall = StallMonitor(self._config.stall_timeout_seconds)
        self._phase_listeners: list[PhaseCallback] = []

    # ── read-only view ──────────────────────────────────────────────

    @property
    def context_id(self) -> str:
        return self._context_id

    @property
    def config(self) -> ControllerConfig:
        return self._config

    @property
    def phase(self) -> Phase:
        return self._state.phase

    @property
    def messages(self) -> list[TranscriptEntry]:
        return list(self._state.messages)

    @property
    def session_id(self) -> str | None:
        return self._state.session_id

    @property
    def round(self) -> int:
        return self._state.round

    @property
    def current_run(self) -> Run | None:
        if self._current_run_id is None:
            return None
        return self._run_store.get(self._current_run_id)

    @property
    def is_agent_running(self) -> bool:
        if self._starting:
            return True
        run = self.current_run
        return run is not None and run.status == RunStatus.RUNNING

    @property
    def can_send(self) -> bool:
        return not self.is_agent_running

    @property
    def artifact_preview(self) -> str | None:
        return self._artifact_preview

    @property
    def decision_count(self) -> int:
        return count_decisions(self._artifact_preview)

    def snapshot(self) -> SessionState:
        return SessionState(
            messages=list(self._state.messages),
            session_id=self._state.session_id,
            phase=self._state.phase,
            round=self._state.round,
        )

    # ── phase ───────────────────────────────────────────────────────

    def add_phase_listener(self, callback: PhaseCallback) -> Callable[[], None]:
        """Call ``callback(old, new)`` after every phase change."""
        self._phase_listeners.append(callback)

        def _remove() -> None:
            if callback in self._phase_listeners:
                self._phase_listeners.remove(callback)

        return _remove

    def _set_phase(self, target: Phase) -> None:
        current = self._state.phase
        if current == target:
            return
        validate_transition(current, target)
        self._state.phase = target
        logger.info("[%s] phase %s -> %s", self._context_id, current.value, target.value)
        self._fire_phase_change(current, target)

    def _restore_phase(self, target: Phase) -> None:
        """Set phase from persisted state; restores bypass the transition table."""
        current = self._state.phase
        self._state.phase = target
        if current != target:
            self._fire_phase_change(current, target)

    def _fire_phase_change(self, old: Phase, new: Phase) -> None:
        for listener in list(self._phase_listeners):
            try:
                listener(old, new)
            except Exception:
                logger.exception("Phase listener failed (%s -> %s)", old.value, new.value)

    def _notify(self, level: str, message: str) -> None:
        try:
            self._notifier.notify(level, message)
        except Exception:
            logger.exception("Notifier failed for %s message", level)

    # ── runs ────────────────────────────────────────────────────────

    async def start(self, prompt: str, resume_session_id: str | None = None) -> str | None:
        """Start (or resume) an agent run. Returns the run id, None on failure."""
        if self.is_agent_running:
            logger.warning(
                "[%s] start ignored: run %s still running", self._context_id, self._current_run_id,
            )
            return None

        previous = self._state.phase
        session_id = resume_session_id or self._state.session_id
        self._set_phase(Phase.AGENT_RUNNING)
        self._last_prompt = prompt

        # Resume turns re-state the artifact requirement in case the agent's
        # context was lost between sessions.
        reminder = self._config.render_context_reminder(self._context_id) if session_id else ""
        cfg = self._config
        self._starting = True
        try:
            run_id = await self._runtime.start(
                reminder + prompt,
                cfg.model,
                cfg.workspace_path,
                list(cfg.allowed_tools),
                cfg.max_turns,
                session_id,
                self._context_id,
                cfg.phase_label,
                cfg.agent_persona,
            )
        except Exception as exc:
            failure = RuntimeStartFailure(prompt[:80], str(exc) or type(exc).__name__)
            logger.warning("[%s] %s", self._context_id, failure, exc_info=True)
            self._set_phase(previous if previous != Phase.ERROR else phase_after_failure(self._state.has_transcript))
            self._notify("error", str(failure))
            return None
        finally:
            self._starting = False

        logger.info(
            "[%s] started run %s (resume=%s, round=%d)",
            self._context_id, run_id, bool(session_id), self._state.round,
        )
        self._watch(run_id)
        await self._save()
        run = self._run_store.get(run_id)
        if run is not None:
            # Terminal status may have landed before we subscribed
            await self.on_run_observed(run)
        return run_id

    def _watch(self, run_id: str) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
        self._current_run_id = run_id
        self._run_tokens[run_id] = self._gate.issue(TERMINAL_GROUP)
        self._run_store.register_run(run_id, self._config.model, self._context_id)
        self._unsubscribe = self._run_store.subscribe(run_id, self.on_run_observed)

    async def send(self, text: str) -> bool:
        """Append a user message and start a resume turn with it."""
        text = (text or "").strip()
        if not text or self.is_agent_running:
            return False
        self._state.messages.append(TranscriptEntry(role=EntryRole.USER, content=text))
        self._state.round += 1
        run_id = await self.start(text)
        return run_id is not None

    async def on_run_observed(self, run: Run) -> None:
        """React to a run update. Each terminal run is processed once."""
        token = self._run_tokens.get(run.run_id)
        if token is None:
            logger.debug("[%s] ignoring update for foreign run %s", self._context_id, run.run_id)
            return

        if run.session_id and (run.is_terminal or not self._state.session_id):
            self._state.session_id = run.session_id

        if not run.is_terminal:
            return
        if run.run_id == self._last_processed_run_id or not self._gate.consume(token, TERMINAL_GROUP):
            logger.debug("[%s] run %s already processed", self._context_id, run.run_id)
            return
        self._last_processed_run_id = run.run_id
        self._stall.forget(run.run_id)
        if self._unsubscribe is not None and run.run_id == self._current_run_id:
            self._unsubscribe()
            self._unsubscribe = None

        if run.status == RunStatus.COMPLETED:
            await self._handle_completed(run)
        elif run.status == RunStatus.ERROR:
            await self._handle_error(run)
        else:
            await self._handle_cancelled(run)

    async def _handle_completed(self, run: Run) -> None:
        text = run.assistant_text()
        if text:
            self._state.messages.append(
                TranscriptEntry(role=EntryRole.AGENT, content=text, run_id=run.run_id)
            )
        else:
            logger.info("[%s] run %s completed without assistant text", self._context_id, run.run_id)
        if self._state.phase == Phase.AGENT_RUNNING:
            self._set_phase(Phase.AWAITING_FEEDBACK)
        await self._save()
        await self._refresh_artifact_preview(capture=True)

    async def _handle_error(self, run: Run) -> None:
        had_transcript = self._state.has_transcript
        error = RuntimeTerminalError(run.run_id, run.first_error())
        self._state.messages.append(
            TranscriptEntry(role=EntryRole.AGENT, content=f"Error: {error.detail}", run_id=run.run_id)
        )
        if self._state.phase == Phase.AGENT_RUNNING:
            self._set_phase(Phase.ERROR)
            self._set_phase(phase_after_failure(had_transcript))
        logger.warning("[%s] %s", self._context_id, error)
        await self._save()
        self._notify("error", "Agent encountered an error")

    async def _handle_cancelled(self, run: Run) -> None:
        if self._state.phase == Phase.AGENT_RUNNING:
            self._set_phase(phase_after_failure(self._state.has_transcript))
        await self._save()
        self._notify("info", f"Agent run {run.run_id} cancelled")

    async def cancel(self) -> bool:
        """Best-effort cancel of the in-flight run."""
        # During startup there is no run id yet; the stored run is an old one
        run = self.current_run
        if run is None or run.status != RunStatus.RUNNING:
            return False
        run_id = run.run_id
        try:
            await self._runtime.cancel(run_id)
        except Exception:
            # The run may already have finished
            logger.warning("[%s] runtime cancel for %s failed", self._context_id, run_id, exc_info=True)
        await self._run_store.cancel_run(run_id)
        return True

    async def retry(self) -> str | None:
        """Cancel the in-flight run (if any) and start again with the last prompt."""
        if self._last_prompt is None:
            logger.info("[%s] retry requested with no previous prompt", self._context_id)
            return None
        if self.is_agent_running:
            await self.cancel()
        return await self.start(self._last_prompt)

    def check_stall(self, now: float | None = None) -> bool:
        """Offer retry-or-cancel once when the current run looks stalled."""
        run = self.current_run
        if not self._stall.check(run, now):
            return False
        self._notify("warning", StallMonitor.prompt_for(run, now))
        return True

    async def resolve_stall(self, decision: StallDecision | str) -> str | None:
        """Apply the operator's answer to a stall prompt."""
        if StallDecision(decision) == StallDecision.RETRY:
            return await self.retry()
        await self.cancel()
        return None

    # ── step completion ─────────────────────────────────────────────

    async def complete_step(self) -> bool:
        """Mark the step completed if its artifact exists. Never raises."""
        if self._state.phase == Phase.COMPLETED:
            return True
        if not can_transition(self._state.phase, Phase.COMPLETED):
            self._notify("warning", f"Cannot complete the step while {self._state.phase.value}")
            return False

        await self._capture_artifacts()
        content, locations = await self._find_artifact()
        if content is None:
            missing = ArtifactMissing(self._context_id, self._config.artifact_path, locations)
            logger.warning(
                "[%s] artifact %s not found in: %s",
                self._context_id, self._config.artifact_path, ", ".join(locations),
            )
            self._notify("error", str(missing))
            return False

        self._artifact_preview = content
        self._set_phase(Phase.COMPLETED)
        await self._save()
        self._notify("success", "Step completed")
        await fire_callback(self._on_step_completed, self)
        return True

    async def _capture_artifacts(self) -> None:
        if self._artifact_store is None:
            return
        try:
            await self._artifact_store.capture_step_artifacts(
                self._context_id, self._config.step_id, self._config.workspace_path,
            )
        except Exception:
            logger.warning("[%s] artifact capture failed", self._context_id, exc_info=True)

    async def _find_artifact(self) -> tuple[str | None, list[str]]:
        """Check override path, workspace path, then the store; first non-blank wins."""
        cfg = self._config
        locations: list[str] = []
        paths = []
        if cfg.skills_path:
            paths.append(Path(cfg.skills_path) / self._context_id / cfg.artifact_path)
        paths.append(Path(cfg.workspace_path) / self._context_id / cfg.artifact_path)

        for path in paths:
            locations.append(str(path))
            content = _read_candidate(path)
            if content and content.strip():
                return content, locations

        if self._artifact_store is not None:
            locations.append(f"store:{self._context_id}/{cfg.artifact_path}")
            try:
                content = await self._artifact_store.read_artifact(self._context_id, cfg.artifact_path)
            except Exception:
                logger.debug("[%s] store lookup failed", self._context_id, exc_info=True)
                content = None
            if content and content.strip():
                return content, locations
        return None, locations

    async def _refresh_artifact_preview(self, capture: bool = False) -> None:
        if self._artifact_store is None:
            return
        if capture:
            await self._capture_artifacts()
        try:
            content = await self._artifact_store.read_artifact(
                self._context_id, self._config.artifact_path,
            )
        except Exception:
            logger.debug("[%s] artifact preview unavailable", self._context_id, exc_info=True)
            return
        if content:
            self._artifact_preview = content

    # ── persistence ─────────────────────────────────────────────────

    async def _save(self) -> None:
        if self._sink is None:
            return
        try:
            await self._sink.save(self.snapshot())
        except PersistenceFailure as exc:
            logger.warning("[%s] %s", self._context_id, exc)
        except Exception:
            logger.exception("[%s] session save failed", self._context_id)

    def resume(self, persisted: SessionState | Mapping[str, Any]) -> bool:
        """Restore a persisted session. Returns True if anything was restored.

        A record without messages restores nothing. The restored phase is
        never agent_running or error.
        """
        if self.is_agent_running:
            logger.warning("[%s] resume ignored while a run is in flight", self._context_id)
            return False
        if isinstance(persisted, SessionState):
            state = persisted
        else:
            try:
                state = record_to_session(persisted)
            except ValueError as exc:
                logger.warning("[%s] ignoring malformed session record: %s", self._context_id, exc)
                return False
        if not state.messages:
            return False

        self._state = SessionState(
            messages=list(state.messages),
            session_id=state.session_id,
            phase=self._state.phase,
            round=max(1, state.round),
        )
        self._restore_phase(normalize_phase(state.phase, True))
        logger.info(
            "[%s] resumed session: %d messages, phase=%s, round=%d",
            self._context_id, len(state.messages), self._state.phase.value, self._state.round,
        )
        return True

    async def load(self) -> bool:
        """Load and resume the session from the sink. Failures mean no prior session."""
        if self._sink is None:
            return False
        try:
            state = await self._sink.load()
        except PersistenceFailure as exc:
            logger.warning("[%s] %s; starting fresh", self._context_id, exc)
            return False
        except Exception:
            logger.exception("[%s] session load failed; starting fresh", self._context_id)
            return False
        await self._refresh_artifact_preview()
        if state is None:
            return False
        return self.resume(state)
