"""Core data models for the conversation pipeline.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class MessageKind(str, Enum):
    """Kind of a single event in an agent run's stream."""
    ASSISTANT = "assistant"
    SYSTEM = "system"
    ERROR = "error"
    RESULT = "result"
    CONFIG = "config"
    USER = "user"
    OTHER = "other"

    @classmethod
    def parse(cls, value: str | None) -> MessageKind:
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class BlockKind(str, Enum):
    """Kind of a content block inside an assistant payload."""
    TEXT = "text"
    TOOL_USE = "tool_use"
    TOOL_RESULT = "tool_result"
    THINKING = "thinking"
    UNKNOWN = "unknown"


class RunStatus(str, Enum):
    """Run lifecycle. Anything other than RUNNING is terminal."""
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


class Category(str, Enum):
    """Semantic classification of a single message."""
    AGENT_RESPONSE = "agent_response"
    TOOL_CALL = "tool_call"
    QUESTION = "question"
    RESULT = "result"
    ERROR = "error"
    CONFIG = "config"
    STATUS = "status"


# Categories that read as one speaker within an agent turn
ASSISTANT_FAMILY: frozenset[Category] = frozenset({
    Category.AGENT_RESPONSE,
    Category.TOOL_CALL,
    Category.QUESTION,
})


class Spacing(str, Enum):
    """Visual spacing decision for a message in the transcript."""
    NONE = "none"
    GROUP_START = "group-start"
    CONTINUATION = "continuation"


class Phase(str, Enum):
    """Conversation session phases. See lifecycle.py for transition rules."""
    NOT_STARTED = "not_started"
    AGENT_RUNNING = "agent_running"
    AWAITING_FEEDBACK = "awaiting_feedback"
    COMPLETED = "completed"
    ERROR = "error"


class EntryRole(str, Enum):
    AGENT = "agent"
    USER = "user"


@dataclass(frozen=True)
class ContentBlock:
    """One decoded block of an assistant payload."""
    kind: BlockKind
    text: str = ""
    name: str | None = None
    input: Mapping[str, Any] | None = None
    tool_use_id: str | None = None


@dataclass(frozen=True)
class AgentMessage:
    """One event from the agent stream, decoded at the stream boundary.

    Immutable once appended to a Run. ``raw`` keeps the original payload
    for consumers that need fields the decoder does not lift out.
    """
    kind: MessageKind
    content: str | None = None
    raw: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
    blocks: tuple[ContentBlock, ...] = ()
    raw_type: str = ""

    @property
    def has_tool_use(self) -> bool:
        return any(b.kind == BlockKind.TOOL_USE for b in self.blocks)

    @property
    def first_tool_use(self) -> ContentBlock | None:
        for block in self.blocks:
            if block.kind == BlockKind.TOOL_USE:
                return block
        return None


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output


@dataclass
class Run:
    """One agent execution attempt.

    Created when a start/resume request is issued. Owned by the RunStore,
    which refuses to mutate it once ``status`` leaves RUNNING.
    """
    run_id: str
    model: str = "unknown"
    status: RunStatus = RunStatus.RUNNING
    messages: list[AgentMessage] = field(default_factory=list)
    session_id: str | None = None
    token_usage: TokenUsage | None = None
    total_cost: float | None = None
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    context_id: str | None = None
    agent_name: str | None = None
    num_turns: int | None = None
    result_subtype: str | None = None
    result_errors: list[str] = field(default_factory=list)
    stop_reason: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.RUNNING

    def elapsed(self, now: float | None = None) -> float:
        """Seconds since start, frozen at end_time once terminal."""
        if self.end_time is not None:
            end = self.end_time
        else:
            end = now if now is not None else time.time()
        return max(0.0, end - self.start_time)

    def assistant_text(self) -> str:
        """Concatenate assistant contents in order, blank-line separated."""
        parts = [
            m.content for m in self.messages
            if m.kind == MessageKind.ASSISTANT and m.content
        ]
        return "\n\n".join(parts)

    def first_error(self) -> str | None:
        for m in self.messages:
            if m.kind == MessageKind.ERROR:
                return m.content
        return None


@dataclass
class TranscriptEntry:
    role: EntryRole
    content: str
    run_id: str | None = None


@dataclass
class SessionState:
    """The durable, resumable conversation unit."""
    messages: list[TranscriptEntry] = field(default_factory=list)
    session_id: str | None = None
    phase: Phase = Phase.NOT_STARTED
    round: int = 1

    @property
    def has_transcript(self) -> bool:
        return bool(self.messages)
