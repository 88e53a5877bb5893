"""Session persistence: record codec, legacy phase mapping and sinks.

Two on-disk shapes are supported.

Session record (stored as an artifact, default
``{context_id}/context/reasoning-session.json``)::

    {
      "messages": [{"role": "agent", "content": "...", "runId": "r-1"}],
      "sessionId": "sess-abc",
      "phase": "awaiting_feedback",
      "round": 2
    }

Chat log (``{workspace}/{context_id}/logs/{label}-chat.json``)::

    {
      "sessionId": "sess-abc",
      "stepId": 4,
      "messages": [
        {"role": "assistant", "content": "...", "timestamp": "...", "agentId": "r-1"}
      ]
    }

Older builds wrote intermediate phase labels (``summary``, ``follow_up``,
``gate_check``) and the live ``agent_running`` phase; these are normalized
on load so nothing ever resumes mid-run.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from turnstile.engine.errors import PersistenceFailure
from turnstile.engine.lifecycle import phase_after_failure
from turnstile.engine.models import EntryRole, Phase, SessionState, TranscriptEntry
from turnstile.engine.protocols import ArtifactStore
from turnstile.shared.services.artifact_store import atomic_write_text

logger = logging.getLogger(__name__)


# ── phase normalization ────────────────────────────────────────────

LEGACY_PHASE_MAP: dict[str, Phase] = {
    "agent_running": Phase.AWAITING_FEEDBACK,
    "summary": Phase.AWAITING_FEEDBACK,
    "follow_up": Phase.AWAITING_FEEDBACK,
    "gate_check": Phase.AWAITING_FEEDBACK,
    "awaiting_feedback": Phase.AWAITING_FEEDBACK,
    "completed": Phase.COMPLETED,
    "not_started": Phase.NOT_STARTED,
}


def normalize_phase(value: Any, has_messages: bool) -> Phase:
    """Map a stored phase label onto a phase that is safe to resume in.

    Never returns AGENT_RUNNING or ERROR.
    """
    label = value.value if isinstance(value, Phase) else value
    if label == Phase.ERROR.value:
        return phase_after_failure(has_messages)
    if isinstance(label, str) and label in LEGACY_PHASE_MAP:
        return LEGACY_PHASE_MAP[label]
    logger.info("Unknown persisted phase %r; resuming as awaiting_feedback", value)
    return Phase.AWAITING_FEEDBACK


# ── record codec ───────────────────────────────────────────────────

_ROLE_ALIASES = {
    "agent": EntryRole.AGENT,
    "assistant": EntryRole.AGENT,
    "user": EntryRole.USER,
}


def _entry_from_dict(data: Any, position: int) -> TranscriptEntry | None:
    if not isinstance(data, Mapping):
        logger.warning("Skipping transcript entry %d: not an object", position)
        return None
    role = _ROLE_ALIASES.get(str(data.get("role", "")))
    content = data.get("content")
    if role is None or not isinstance(content, str):
        logger.warning(
            "Skipping transcript entry %d: role=%r content type=%s",
            position, data.get("role"), type(content).__name__,
        )
        return None
    run_id = data.get("runId") or data.get("agentId")
    return TranscriptEntry(role=role, content=content, run_id=str(run_id) if run_id else None)


def _entries_from_list(raw_messages: Any) -> list[TranscriptEntry]:
    if raw_messages is None:
        return []
    if not isinstance(raw_messages, list):
        raise ValueError(f"messages must be a list, got {type(raw_messages).__name__}")
    entries = []
    for i, item in enumerate(raw_messages):
        entry = _entry_from_dict(item, i)
        if entry is not None:
            entries.append(entry)
    return entries


def session_to_record(state: SessionState) -> dict[str, Any]:
    messages = []
    for entry in state.messages:
        item: dict[str, Any] = {"role": entry.role.value, "content": entry.content}
        if entry.run_id:
            item["runId"] = entry.run_id
        messages.append(item)
    record: dict[str, Any] = {
        "messages": messages,
        "phase": state.phase.value,
        "round": state.round,
    }
    if state.session_id:
        record["sessionId"] = state.session_id
    return record


def record_to_session(data: Any) -> SessionState:
    """Decode a session record, normalizing its phase.

    Raises ValueError when the record is not an object or its message list
    is malformed. Individual bad entries are skipped.
    """
    if not isinstance(data, Mapping):
        raise ValueError(f"session record must be an object, got {type(data).__name__}")
    messages = _entries_from_list(data.get("messages"))
    session_id = data.get("sessionId")
    try:
        round_ = max(1, int(data.get("round", 1)))
    except (TypeError, ValueError):
        logger.warning("Invalid round %r in session record; using 1", data.get("round"))
        round_ = 1
    return SessionState(
        messages=messages,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        phase=normalize_phase(data.get("phase"), bool(messages)),
        round=round_,
    )


def chat_log_to_session(data: Any) -> SessionState:
    """Decode a chat log. The round is one more than the user turn count."""
    if not isinstance(data, Mapping):
        raise ValueError(f"chat log must be an object, got {type(data).__name__}")
    messages = _entries_from_list(data.get("messages"))
    session_id = data.get("sessionId")
    return SessionState(
        messages=messages,
        session_id=session_id if isinstance(session_id, str) and session_id else None,
        phase=Phase.AWAITING_FEEDBACK if messages else Phase.NOT_STARTED,
        round=1 + sum(1 for m in messages if m.role == EntryRole.USER),
    )


# ── sinks ──────────────────────────────────────────────────────────


class SessionSink(Protocol):
    """Where a controller saves and loads its session.

    Both methods raise PersistenceFailure; callers decide whether to
    swallow it.
    """

    async def save(self, state: SessionState) -> None:
        ...

    async def load(self) -> SessionState | None:
        ...


class ArtifactSessionSink:
    """Stores the session record as an artifact through an ArtifactStore."""

    def __init__(
        self,
        store: ArtifactStore,
        context_id: str,
        step_id: int,
        relative_path: str = "context/reasoning-session.json",
    ) -> None:
        self._store = store
        self._context_id = context_id
        self._step_id = step_id
        self._relative_path = relative_path

    @property
    def target(self) -> str:
        return f"{self._context_id}/{self._relative_path}"

    async def save(self, state: SessionState) -> None:
        payload = json.dumps(session_to_record(state), indent=2)
        try:
            await self._store.save_artifact(
                self._context_id, self._step_id, self._relative_path, payload,
            )
        except Exception as exc:
            raise PersistenceFailure("save", self.target, str(exc)) from exc

    async def load(self) -> SessionState | None:
        try:
            content = await self._store.read_artifact(self._context_id, self._relative_path)
        except Exception as exc:
            raise PersistenceFailure("load", self.target, str(exc)) from exc
        if not content:
            return None
        try:
            return record_to_session(json.loads(content))
        except (json.JSONDecodeError, ValueError) as exc:
            raise PersistenceFailure("load", self.target, str(exc)) from exc


class ChatLogSink:
    """Stores the transcript as a per-step chat log in the workspace.

    The chat log carries no phase; a non-empty log resumes as
    awaiting_feedback, and the round is one more than the number of user
    turns. Entry timestamps are kept stable across saves.
    """

    def __init__(
        self,
        workspace_path: str | Path,
        context_id: str,
        label: str,
        step_id: int,
    ) -> None:
        self._path = Path(workspace_path) / context_id / "logs" / f"{label}-chat.json"
        self._step_id = step_id
        self._timestamps: list[str] = []

    @property
    def path(self) -> Path:
        return self._path

    @property
    def target(self) -> str:
        return str(self._path)

    def _stamp(self, count: int) -> list[str]:
        now = datetime.now(timezone.utc).isoformat()
        while len(self._timestamps) < count:
            self._timestamps.append(now)
        return self._timestamps[:count]

    async def save(self, state: SessionState) -> None:
        stamps = self._stamp(len(state.messages))
        messages = []
        for entry, stamp in zip(state.messages, stamps):
            item: dict[str, Any] = {
                "role": "assistant" if entry.role == EntryRole.AGENT else "user",
                "content": entry.content,
                "timestamp": stamp,
            }
            if entry.run_id:
                item["agentId"] = entry.run_id
            messages.append(item)
        record = {
            "sessionId": state.session_id or "",
            "stepId": self._step_id,
            "messages": messages,
        }
        try:
            atomic_write_text(self._path, json.dumps(record, indent=2))
        except OSError as exc:
            raise PersistenceFailure("save", self.target, str(exc)) from exc

    async def load(self) -> SessionState | None:
        try:
            content = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise PersistenceFailure("load", self.target, str(exc)) from exc
        if not content.strip():
            return None
        try:
            data = json.loads(content)
            state = chat_log_to_session(data)
        except (json.JSONDecodeError, ValueError) as exc:
            raise PersistenceFailure("load", self.target, str(exc)) from exc

        self._timestamps = [
            str(m.get("timestamp", "")) for m in data.get("messages") or [] if isinstance(m, Mapping)
        ][: len(state.messages)]
        return state


def load_session_file(path: str | Path) -> SessionState:
    """Decode a session record or chat log file, whichever *path* holds.

    Raises PersistenceFailure when the file is missing or unreadable.
    """
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise PersistenceFailure("load", str(path), str(exc)) from exc
    is_chat_log = isinstance(data, Mapping) and "stepId" in data and "phase" not in data
    try:
        return chat_log_to_session(data) if is_chat_log else record_to_session(data)
    except ValueError as exc:
        raise PersistenceFailure("load", str(path), str(exc)) from exc
