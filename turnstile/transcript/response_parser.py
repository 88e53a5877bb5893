"""Response-shape parsing for reasoning-agent replies.

Classifies a reply by the structure the reasoning prompt asks the agent to
use, so phase logic and the classifier can tell a closing gate check from a
round of follow-up questions.
"""
from __future__ import annotations

import re
from enum import Enum


class ResponseType(str, Enum):
    FOLLOW_UP = "follow_up"
    SUMMARY = "summary"
    GATE_CHECK = "gate_check"
    UNKNOWN = "unknown"


_GATE_CHECK_RE = re.compile(
    r"ready to proceed|proceed to (?:the )?build|proceed to skill creation",
    re.IGNORECASE,
)
_FOLLOW_UP_HEADING_RE = re.compile(r"##\s*follow-up questions", re.IGNORECASE)
_FOLLOW_UP_PHRASE_RE = re.compile(r"\bfollow-up questions?\b", re.IGNORECASE)
_SUMMARY_RE = re.compile(
    r"what i concluded|assumptions i.?m making|conflicts or tensions",
    re.IGNORECASE,
)
_DECISION_HEADING_RE = re.compile(r"###\s*D\d+:")


def parse_agent_response_type(text: str | None) -> ResponseType:
    """Classify a reply. Priority: gate_check > follow_up > summary > unknown.

    A gate check only wins when the reply carries no follow-up questions;
    outstanding questions must be answered before the step can close.
    """
    if not text:
        return ResponseType.UNKNOWN

    has_follow_up = bool(
        _FOLLOW_UP_HEADING_RE.search(text) or _FOLLOW_UP_PHRASE_RE.search(text)
    )
    if _GATE_CHECK_RE.search(text) and not has_follow_up:
        return ResponseType.GATE_CHECK
    if has_follow_up:
        return ResponseType.FOLLOW_UP
    if _SUMMARY_RE.search(text):
        return ResponseType.SUMMARY
    return ResponseType.UNKNOWN


def count_decisions(content: str | None) -> int:
    """Count ``### D<n>:`` decision headings in a decisions document."""
    if not content:
        return 0
    return len(_DECISION_HEADING_RE.findall(content))
