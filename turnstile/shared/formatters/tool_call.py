"""One-line summaries of tool invocations for collapsed transcript rows.

Registry-based: each tool gets a small decorated function that turns the
tool-use block's input into a short human label. Tools without a
registered summarizer fall back to their name plus the first non-empty
string argument.

    @tool_summarizer("MyTool")
    def _summarize_my_tool(tool_input):
        return f"Doing {tool_input['thing']}" if tool_input.get("thing") else None
"""
from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from turnstile.engine.models import AgentMessage

Summarizer = Callable[[Mapping[str, Any]], "str | None"]


@dataclass(frozen=True)
class ToolSummary:
    tool_name: str
    summary: str
    icon: str = "⚙"


_SUMMARIZERS: dict[str, Summarizer] = {}

_ICONS: dict[str, str] = {
    "Read": "📄",
    "Write": "✏",
    "Edit": "✏",
    "NotebookEdit": "✏",
    "Grep": "🔍",
    "Glob": "🔍",
    "Search": "🔍",
    "WebSearch": "🌐",
    "WebFetch": "🌐",
    "Task": "🔀",
}


def tool_summarizer(name: str):
    """Decorator to register a summarizer for a given tool name."""

    def decorator(fn: Summarizer) -> Summarizer:
        _SUMMARIZERS[name] = fn
        return fn

    return decorator


def tool_icon(name: str) -> str:
    return _ICONS.get(name, "⚙")


# ── helpers ──


def _trunc(text: str, length: int) -> str:
    return text[:length] + "..." if len(text) > length else text


def _filename(path: Any) -> str:
    return str(path).split("/")[-1]


# ── per-tool summarizers ──


@tool_summarizer("Read")
def _summarize_read(tool_input):
    if tool_input.get("file_path"):
        return f"Reading {_filename(tool_input['file_path'])}"
    return None


@tool_summarizer("Write")
def _summarize_write(tool_input):
    if tool_input.get("file_path"):
        return f"Writing {_filename(tool_input['file_path'])}"
    return None


@tool_summarizer("Edit")
def _summarize_edit(tool_input):
    if tool_input.get("file_path"):
        return f"Editing {_filename(tool_input['file_path'])}"
    return None


@tool_summarizer("Bash")
def _summarize_bash(tool_input):
    if tool_input.get("command"):
        return f"Running: {_trunc(str(tool_input['command']), 80)}"
    return None


@tool_summarizer("Grep")
def _summarize_grep(tool_input):
    if not tool_input.get("pattern"):
        return None
    pattern = _trunc(str(tool_input["pattern"]), 40)
    where = f" in {_filename(tool_input['path'])}" if tool_input.get("path") else ""
    return f'Grep: "{pattern}"{where}'


@tool_summarizer("Glob")
def _summarize_glob(tool_input):
    if tool_input.get("pattern"):
        return f"Glob: {_trunc(str(tool_input['pattern']), 50)}"
    return None


@tool_summarizer("WebSearch")
def _summarize_web_search(tool_input):
    if tool_input.get("query"):
        return f'Web search: "{_trunc(str(tool_input["query"]), 60)}"'
    return None


@tool_summarizer("WebFetch")
def _summarize_web_fetch(tool_input):
    if tool_input.get("url"):
        return f"Fetching: {_trunc(str(tool_input['url']), 70)}"
    return None


@tool_summarizer("Task")
def _summarize_task(tool_input):
    if tool_input.get("description"):
        return f"Sub-agent: {_trunc(str(tool_input['description']), 60)}"
    return None


@tool_summarizer("NotebookEdit")
def _summarize_notebook_edit(tool_input):
    if tool_input.get("notebook_path"):
        return f"Editing notebook {_filename(tool_input['notebook_path'])}"
    return None


@tool_summarizer("LS")
def _summarize_ls(tool_input):
    if tool_input.get("path"):
        return f"Listing {_trunc(str(tool_input['path']), 50)}"
    return None


# ── public API ──


def summarize_tool(name: str, tool_input: Mapping[str, Any] | None) -> str:
    """Summary line for a tool call given its name and input."""
    tool_input = tool_input or {}
    summarizer = _SUMMARIZERS.get(name)
    if summarizer is not None:
        summary = summarizer(tool_input)
        if summary:
            return summary
    for value in tool_input.values():
        if isinstance(value, str) and value:
            return f"{name}: {_trunc(value, 60)}"
    return name


def get_tool_summary(message: AgentMessage) -> ToolSummary | None:
    """Summarize the first tool-use block of *message*, if it has a named one."""
    block = message.first_tool_use
    if block is None or not block.name:
        return None
    return ToolSummary(
        tool_name=block.name,
        summary=summarize_tool(block.name, block.input),
        icon=tool_icon(block.name),
    )


def get_tool_input(message: AgentMessage) -> str | None:
    """Pretty-printed JSON of the first tool-use input, or None if it is empty."""
    block = message.first_tool_use
    if block is None or not block.input:
        return None
    has_content = any(
        value is not None and str(value).strip() != ""
        for value in block.input.values()
    )
    if not has_content:
        return None
    try:
        return json.dumps(dict(block.input), indent=2)
    except (TypeError, ValueError):
        return None
