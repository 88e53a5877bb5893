"""Turn indexing and display grouping over a run's message list.

Three independent passes, each linear in the number of messages:

- turn map: index -> running assistant count, entries only where an
  assistant message sits (those are the turn-marker positions)
- spacing: none / group-start / continuation per message
- tool-call runs: consecutive tool_call messages (2 or more) collapsed
  under their first index

``build_display_rows`` runs all of them once and zips the results into the
rows handed to a renderer.
"""
from __future__ import annotations

import logging
from bisect import bisect_right
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from turnstile.engine.models import (
    ASSISTANT_FAMILY,
    AgentMessage,
    Category,
    MessageKind,
    Spacing,
)
from turnstile.transcript.classifier import ResponseParser, classify_all
from turnstile.transcript.response_parser import parse_agent_response_type

logger = logging.getLogger(__name__)


# ── turns ──────────────────────────────────────────────────────────


def compute_turn_map(messages: Sequence[AgentMessage]) -> dict[int, int]:
    """Map each assistant-message index to its 1-based turn number."""
    turn_map: dict[int, int] = {}
    turn = 0
    for i, message in enumerate(messages):
        if message.kind == MessageKind.ASSISTANT:
            turn += 1
            turn_map[i] = turn
    return turn_map


def turn_markers(turn_map: Mapping[int, int]) -> list[int]:
    """Sorted marker positions of *turn_map*. Build once, then use turn_at()."""
    return sorted(turn_map)


def turn_at(markers: Sequence[int], index: int) -> int:
    """Count of assistant messages in ``[0..index]``.

    *markers* must be sorted (see turn_markers). Turn values are consecutive
    from 1 in index order, so the count is the number of marker positions at
    or before *index*.
    """
    return bisect_right(markers, index)


def compute_turn_numbers(messages: Sequence[AgentMessage]) -> list[int]:
    """Dense form of the turn map: one non-decreasing entry per message."""
    numbers: list[int] = []
    turn = 0
    for message in messages:
        if message.kind == MessageKind.ASSISTANT:
            turn += 1
        numbers.append(turn)
    return numbers


# ── spacing ────────────────────────────────────────────────────────


def compute_message_groups(
    messages: Sequence[AgentMessage],
    turn_map: Mapping[int, int],
    categories: Sequence[Category] | None = None,
    response_parser: ResponseParser = parse_agent_response_type,
) -> list[Spacing]:
    """Decide visual spacing for every message.

    Status messages get NONE and are invisible to the grouping state. A
    visible message starts a group when it carries a turn marker or when it
    and the previous visible message are not both assistant-family.
    """
    if categories is None:
        categories = classify_all(list(messages), response_parser)
    elif len(categories) != len(messages):
        raise ValueError(
            f"categories has {len(categories)} entries for {len(messages)} messages"
        )

    result: list[Spacing] = []
    prev_visible: Category | None = None

    for i, category in enumerate(categories):
        if category == Category.STATUS:
            result.append(Spacing.NONE)
            continue

        has_turn_marker = turn_map.get(i, 0) > 0
        if prev_visible is None:
            result.append(Spacing.NONE)
        elif has_turn_marker or not (
            category in ASSISTANT_FAMILY and prev_visible in ASSISTANT_FAMILY
        ):
            result.append(Spacing.GROUP_START)
        else:
            result.append(Spacing.CONTINUATION)

        prev_visible = category

    return result


# ── tool-call runs ─────────────────────────────────────────────────


@dataclass
class ToolCallGroups:
    """Leader index -> member indices, plus the reverse member -> leader map."""
    groups: dict[int, list[int]] = field(default_factory=dict)
    member_of: dict[int, int] = field(default_factory=dict)

    def is_hidden_member(self, index: int) -> bool:
        leader = self.member_of.get(index)
        return leader is not None and leader != index


def compute_tool_call_groups(
    messages: Sequence[AgentMessage],
    categories: Sequence[Category] | None = None,
    response_parser: ResponseParser = parse_agent_response_type,
) -> ToolCallGroups:
    if categories is None:
        categories = classify_all(list(messages), response_parser)

    result = ToolCallGroups()
    current: list[int] = []

    def flush() -> None:
        if len(current) >= 2:
            leader = current[0]
            result.groups[leader] = list(current)
            for idx in current:
                result.member_of[idx] = leader
        current.clear()

    for i, category in enumerate(categories):
        if category == Category.TOOL_CALL:
            current.append(i)
        else:
            flush()
    flush()

    return result


# ── display rows ───────────────────────────────────────────────────


@dataclass
class DisplayRow:
    """Everything a renderer needs to paint one message position."""
    index: int
    category: Category
    spacing: Spacing
    turn: int
    tool_call_group_leader: int | None = None
    group_members: list[int] = field(default_factory=list)

    @property
    def visible(self) -> bool:
        return self.category != Category.STATUS

    @property
    def skipped(self) -> bool:
        """Non-leader member of a tool-call run; drawn by its leader."""
        return (
            self.tool_call_group_leader is not None
            and self.tool_call_group_leader != self.index
        )

    @property
    def is_turn_marker(self) -> bool:
        return self.turn > 0


def build_display_rows(
    messages: Sequence[AgentMessage],
    response_parser: ResponseParser = parse_agent_response_type,
) -> list[DisplayRow]:
    """Classify once, then derive turns, spacing and tool-call runs."""
    categories = classify_all(list(messages), response_parser)
    turn_map = compute_turn_map(messages)
    spacing = compute_message_groups(messages, turn_map, categories)
    tool_groups = compute_tool_call_groups(messages, categories)

    rows = [
        DisplayRow(
            index=i,
            category=category,
            spacing=spacing[i],
            turn=turn_map.get(i, 0),
            tool_call_group_leader=tool_groups.member_of.get(i),
            group_members=list(tool_groups.groups.get(i, ())),
        )
        for i, category in enumerate(categories)
    ]
    logger.debug(
        "Built %d display rows (%d turns, %d tool-call groups)",
        len(rows), len(turn_map), len(tool_groups.groups),
    )
    return rows
