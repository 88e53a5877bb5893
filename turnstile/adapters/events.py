"""Decoding of raw agent-runtime payloads at the stream boundary.

Each runtime payload is a loosely-typed dict. It is decoded exactly once
into an immutable AgentMessage whose content blocks carry an explicit
BlockKind, so nothing downstream re-inspects the raw shape.

Runtime notifications are wrapped in envelope dicts and parsed into
typed dataclasses, mirroring the engine callback dicts:

    {"event": "agent_message", "run_id": "...", "message": {...payload...}}
    {"event": "agent_exit", "run_id": "...", "success": true}
"""
from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from turnstile.engine.models import AgentMessage, BlockKind, ContentBlock, MessageKind

logger = logging.getLogger(__name__)

_BLOCK_KINDS: dict[str, BlockKind] = {
    "text": BlockKind.TEXT,
    "tool_use": BlockKind.TOOL_USE,
    "tool_result": BlockKind.TOOL_RESULT,
    "thinking": BlockKind.THINKING,
}


def decode_block(data: Any) -> ContentBlock:
    """Decode one entry of ``payload["message"]["content"]``."""
    if not isinstance(data, Mapping):
        return ContentBlock(kind=BlockKind.UNKNOWN)
    kind = _BLOCK_KINDS.get(str(data.get("type", "")), BlockKind.UNKNOWN)
    text = data.get("text")
    if kind == BlockKind.THINKING and text is None:
        text = data.get("thinking")
    tool_input = data.get("input")
    return ContentBlock(
        kind=kind,
        text=text if isinstance(text, str) else "",
        name=data.get("name") if isinstance(data.get("name"), str) else None,
        input=dict(tool_input) if isinstance(tool_input, Mapping) else None,
        tool_use_id=data.get("id") or data.get("tool_use_id"),
    )


def _decode_blocks(payload: Mapping[str, Any]) -> tuple[ContentBlock, ...]:
    body = payload.get("message")
    if not isinstance(body, Mapping):
        return ()
    content = body.get("content")
    if not isinstance(content, list):
        return ()
    return tuple(decode_block(b) for b in content)


def _content_for(kind: MessageKind, payload: Mapping[str, Any], blocks: tuple[ContentBlock, ...]) -> str | None:
    if kind == MessageKind.ASSISTANT:
        text = "".join(b.text for b in blocks if b.kind == BlockKind.TEXT)
        return text or None
    if kind == MessageKind.RESULT:
        result = payload.get("result")
        return result if isinstance(result, str) and result else None
    if kind == MessageKind.ERROR:
        error = payload.get("error")
        return error if isinstance(error, str) and error else "Unknown error"
    return None


def decode_message(payload: Mapping[str, Any], timestamp: float | None = None) -> AgentMessage:
    """Decode a raw runtime payload into an AgentMessage. Never raises."""
    raw_type = str(payload.get("type", ""))
    kind = MessageKind.parse(raw_type)
    blocks = _decode_blocks(payload)
    return AgentMessage(
        kind=kind,
        content=_content_for(kind, payload, blocks),
        raw=dict(payload),
        timestamp=timestamp if timestamp is not None else time.time(),
        blocks=blocks,
        raw_type=raw_type,
    )


@dataclass
class StreamEvent:
    """Base notification from the agent runtime."""
    event_type: str = ""
    run_id: str = ""


@dataclass
class MessageReceived(StreamEvent):
    event_type: str = "agent_message"
    message: AgentMessage | None = None


@dataclass
class RunExited(StreamEvent):
    event_type: str = "agent_exit"
    success: bool = True


_TRUE_STRINGS = frozenset({"true", "1", "yes"})


def _parse_success(value: Any) -> bool:
    if value is None or isinstance(value, bool):
        return value is not False
    if isinstance(value, str):
        return value.strip().lower() in _TRUE_STRINGS
    if isinstance(value, (int, float)):
        return bool(value)
    logger.warning("Unrecognised agent_exit success value %r; treating as failure", value)
    return False


def dict_to_event(data: Mapping[str, Any], default_run_id: str = "") -> StreamEvent:
    """Convert a runtime notification dict to a typed event.

    A bare payload (no ``event`` key but a ``type``) is treated as an
    agent_message for *default_run_id*.
    """
    event_type = data.get("event")
    run_id = str(data.get("run_id") or data.get("agent_id") or default_run_id)
    if event_type is None and "type" in data:
        return MessageReceived(run_id=run_id, message=decode_message(data))
    if event_type == "agent_message":
        payload = data.get("message")
        if not isinstance(payload, Mapping):
            logger.warning("agent_message without a payload for run %s", run_id)
            return StreamEvent(event_type="agent_message", run_id=run_id)
        ts = data.get("timestamp")
        return MessageReceived(
            run_id=run_id,
            message=decode_message(payload, timestamp=float(ts) if isinstance(ts, (int, float)) else None),
        )
    if event_type == "agent_exit":
        return RunExited(run_id=run_id, success=_parse_success(data.get("success")))
    return StreamEvent(event_type=str(event_type or ""), run_id=run_id)


def message_to_dict(message: AgentMessage) -> dict[str, Any]:
    """Plain-dict form of a message for JSON recording."""
    return {
        "event": "agent_message",
        "timestamp": message.timestamp,
        "message": dict(message.raw),
    }
