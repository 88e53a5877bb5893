"""Message classification: one AgentMessage in, one Category out.

Pure and deterministic. The only collaborator is the response-shape
parser, which is injectable so callers can swap in a provider-specific
one.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Callable

from turnstile.engine.models import AgentMessage, Category, MessageKind
from turnstile.transcript.response_parser import ResponseType, parse_agent_response_type

logger = logging.getLogger(__name__)

ResponseParser = Callable[[str], "ResponseType | str | None"]

# English only. Non-English trailing questions classify as agent_response.
INTERROGATIVES = (
    "should", "would", "could", "do", "does", "did", "can", "will",
    "is", "are", "was", "were", "have", "has", "had", "shall", "may",
    "might", "what", "where", "when", "how", "why", "which", "who",
)

_INTERROGATIVE_RE = re.compile(
    r"\b(" + "|".join(INTERROGATIVES) + r")\b",
    re.IGNORECASE,
)

_QUESTION_SHAPES = frozenset({ResponseType.FOLLOW_UP.value, ResponseType.GATE_CHECK.value})

_FIXED_KINDS: dict[MessageKind, Category] = {
    MessageKind.CONFIG: Category.CONFIG,
    MessageKind.SYSTEM: Category.STATUS,
    MessageKind.ERROR: Category.ERROR,
    MessageKind.RESULT: Category.RESULT,
}


def ends_with_user_question(text: str) -> bool:
    """True when the last non-empty line reads as a question to the user.

    Requires a trailing ``?``, more than five characters, and at least one
    whole-word interrogative so code fragments like ``x ?`` do not count.
    """
    lines = [line.strip() for line in text.strip().split("\n")]
    last_line = next((line for line in reversed(lines) if line), "")
    if not last_line.endswith("?") or len(last_line) <= 5:
        return False
    return _INTERROGATIVE_RE.search(last_line) is not None


def _parser_says_question(content: str, response_parser: ResponseParser) -> bool:
    try:
        shape = response_parser(content)
    except Exception:
        logger.debug("Response parser raised; falling back to heuristic", exc_info=True)
        return False
    if shape is None:
        return False
    value = shape.value if isinstance(shape, ResponseType) else str(shape)
    return value in _QUESTION_SHAPES


def classify_message(
    message: AgentMessage,
    response_parser: ResponseParser = parse_agent_response_type,
) -> Category:
    fixed = _FIXED_KINDS.get(message.kind)
    if fixed is not None:
        return fixed

    if message.kind != MessageKind.ASSISTANT:
        return Category.STATUS

    if message.has_tool_use:
        return Category.TOOL_CALL

    if message.content:
        if _parser_says_question(message.content, response_parser):
            return Category.QUESTION
        if ends_with_user_question(message.content):
            return Category.QUESTION

    return Category.AGENT_RESPONSE


def classify_all(
    messages: list[AgentMessage],
    response_parser: ResponseParser = parse_agent_response_type,
) -> list[Category]:
    return [classify_message(m, response_parser) for m in messages]
