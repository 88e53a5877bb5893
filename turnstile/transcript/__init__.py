"""Transcript pipeline: classification, turn indexing and display grouping."""
from .classifier import classify_all, classify_message, ends_with_user_question
from .grouping import (
    DisplayRow,
    ToolCallGroups,
    build_display_rows,
    compute_message_groups,
    compute_tool_call_groups,
    compute_turn_map,
    compute_turn_numbers,
    turn_at,
    turn_markers,
)
from .response_parser import ResponseType, count_decisions, parse_agent_response_type

__all__ = [
    "DisplayRow",
    "ResponseType",
    "ToolCallGroups",
    "build_display_rows",
    "classify_all",
    "classify_message",
    "compute_message_groups",
    "compute_tool_call_groups",
    "compute_turn_map",
    "compute_turn_numbers",
    "count_decisions",
    "ends_with_user_question",
    "parse_agent_response_type",
    "turn_at",
    "turn_markers",
]
