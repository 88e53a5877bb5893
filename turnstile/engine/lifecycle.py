"""Conversation phase state machine.

Defines valid transitions and enforces them. Invalid transitions
raise InvalidPhaseTransition rather than silently proceeding.

State Diagram:

    NOT_STARTED ──> AGENT_RUNNING ──┬──> AWAITING_FEEDBACK ──> AGENT_RUNNING
         ^                          │            │
         │                          │            └──> COMPLETED
         │                          ├──> COMPLETED ──> AGENT_RUNNING (re-open)
         │                          │
         │                          └──> ERROR ──┬──> AWAITING_FEEDBACK
         │                                       │
         └───────────────────────────────────────┘  (no prior transcript)

    AGENT_RUNNING ──> NOT_STARTED / AWAITING_FEEDBACK  (start failure revert,
                                                        cancellation)
"""
from __future__ import annotations

from .errors import InvalidPhaseTransition
from .models import Phase

VALID_TRANSITIONS: dict[Phase, set[Phase]] = {
    Phase.NOT_STARTED: {
        Phase.AGENT_RUNNING,
    },
    Phase.AGENT_RUNNING: {
        Phase.AWAITING_FEEDBACK,
        Phase.COMPLETED,
        Phase.ERROR,
        Phase.NOT_STARTED,
    },
    Phase.AWAITING_FEEDBACK: {
        Phase.AGENT_RUNNING,
        Phase.COMPLETED,
    },
    Phase.ERROR: {
        Phase.AWAITING_FEEDBACK,
        Phase.NOT_STARTED,
    },
    Phase.COMPLETED: {
        Phase.AGENT_RUNNING,
    },
}


def can_transition(current: Phase, target: Phase) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


def validate_transition(current: Phase, target: Phase) -> None:
    """Validate a phase transition. Raises InvalidPhaseTransition if invalid."""
    if not can_transition(current, target):
        allowed = sorted(p.value for p in VALID_TRANSITIONS.get(current, set()))
        raise InvalidPhaseTransition(current.value, target.value, allowed)


def phase_after_failure(has_transcript: bool) -> Phase:
    """Where a session settles after an errored or cancelled run."""
    return Phase.AWAITING_FEEDBACK if has_transcript else Phase.NOT_STARTED
