"""Command-line entry point.

Usage:
    turnstile replay events.jsonl [--show-status] [--no-group]
    turnstile session path/to/reasoning-session.json
    turnstile config

``replay`` feeds a recorded agent event stream (one JSON object per line)
through the run store and the transcript pipeline and prints the grouped
transcript. Lines may be bare runtime payloads (``{"type": ...}``) or
envelopes (``{"event": "agent_message", "run_id": ..., "message": {...}}``,
``{"event": "agent_exit", "run_id": ..., "success": true}``).

``session`` loads a persisted session record or chat log and prints it
with its phase normalized the way a controller would resume it.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from turnstile.adapters.events import dict_to_event
from turnstile.adapters.run_store import RunStore
from turnstile.engine.config import ControllerConfig
from turnstile.engine.errors import ConfigError, PersistenceFailure
from turnstile.engine.models import Category, EntryRole, MessageKind, Run, Spacing
from turnstile.engine.yaml_config import LoggingConfig, discover_config, load_yaml_config
from turnstile.shared.formatters.run_stats import run_stats_line
from turnstile.shared.formatters.tool_call import get_tool_summary
from turnstile.shared.services.persistence import load_session_file
from turnstile.transcript.grouping import DisplayRow, build_display_rows

logger = logging.getLogger(__name__)

DEFAULT_RUN_ID = "replay"

_CATEGORY_STYLES: dict[Category, str] = {
    Category.AGENT_RESPONSE: "",
    Category.TOOL_CALL: "cyan",
    Category.QUESTION: "bold magenta",
    Category.RESULT: "green",
    Category.ERROR: "bold red",
    Category.CONFIG: "blue",
    Category.STATUS: "dim",
}


class InputError(Exception):
    """A replay or session input file could not be read."""


# ── logging ──


def configure_logging(verbose: bool, log_config: LoggingConfig | None = None) -> None:
    level_name = "DEBUG" if verbose else os.getenv(
        "TURNSTILE_LOG_LEVEL", log_config.level if log_config else "WARNING",
    ).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.WARNING),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )
    log_file = os.getenv("TURNSTILE_LOG_FILE") or (log_config.file if log_config else None)
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(path, maxBytes=2_000_000, backupCount=5, encoding="utf-8")
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s")
        )
        logging.getLogger().addHandler(handler)
        logger.info("Logging to %s", path)


def load_config(config_path: str | None) -> tuple[ControllerConfig, LoggingConfig | None]:
    """Env defaults, overlaid by an explicit or auto-discovered YAML file."""
    base = ControllerConfig.from_env()
    path = Path(config_path) if config_path else discover_config(Path.cwd())
    if path is None:
        logger.debug("No config file found; using environment defaults")
        return base, None
    loaded = load_yaml_config(path, base=base)
    return loaded.controller, loaded.logging


# ── replay ──


def read_events(path: Path) -> list[dict]:
    """Parse a JSON-lines event file. Blank lines are skipped."""
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise InputError(f"cannot read {path}: {exc}") from exc
    events = []
    for lineno, line in enumerate(lines, start=1):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise InputError(f"{path}:{lineno}: invalid JSON: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise InputError(f"{path}:{lineno}: expected a JSON object")
        events.append(data)
    return events


async def replay_events(events: list[dict], store: RunStore | None = None) -> RunStore:
    """Feed decoded events into a store and settle runs that ended with a result."""
    if store is None:
        store = RunStore()
    for data in events:
        if "event" not in data and isinstance(data.get("message"), dict) and "type" not in data:
            # Envelope without an explicit event name
            data = {**data, "event": "agent_message"}
        await store.apply(dict_to_event(data, default_run_id=DEFAULT_RUN_ID))

    for run in store.runs():
        if run.is_terminal:
            continue
        result = next((m for m in reversed(run.messages) if m.kind == MessageKind.RESULT), None)
        if result is not None:
            await store.complete_run(run.run_id, success=not result.raw.get("is_error", False))
    return store


def _row_text(run: Run, row: DisplayRow) -> Text:
    message = run.messages[row.index]
    style = _CATEGORY_STYLES[row.category]
    label = Text(f"[{row.category.value}] ", style=style or "bold")
    if row.category == Category.TOOL_CALL:
        summary = get_tool_summary(message)
        body = f"{summary.icon} {summary.summary}" if summary else "tool call"
    elif row.category == Category.RESULT:
        body = message.content or message.raw.get("subtype", "result")
    elif row.category == Category.STATUS:
        subtype = message.raw.get("subtype")
        body = f"{message.raw_type} ({subtype})" if subtype else message.raw_type
    elif row.category == Category.CONFIG:
        body = "configuration received"
    else:
        body = message.content or ""
    return label + Text(str(body), style=style)


def render_run(
    console: Console,
    run: Run,
    show_status: bool = False,
    group: bool = True,
) -> None:
    console.print(Rule(f"run {run.run_id}"))
    rows = build_display_rows(run.messages)
    for row in rows:
        if not row.visible and not show_status:
            continue
        if group and row.skipped:
            continue
        if row.spacing == Spacing.GROUP_START:
            console.print()
        if row.is_turn_marker:
            console.print(Text(f"── Turn {row.turn} ──", style="dim"))
        if group and row.group_members:
            console.print(Text(f"▸ {len(row.group_members)} tool calls", style="cyan bold"))
            for idx in row.group_members:
                console.print(Text("   ") + _row_text(run, rows[idx]))
            continue
        console.print(_row_text(run, row))
    console.print()
    console.print(Text(run_stats_line(run), style="dim"))


def cmd_replay(args: argparse.Namespace, console: Console) -> int:
    events = read_events(Path(args.events))
    store = asyncio.run(replay_events(events))
    if len(store) == 0:
        console.print("No agent messages found.")
        return 0
    for run in store.runs():
        render_run(console, run, show_status=args.show_status, group=not args.no_group)
    return 0


# ── session ──


def cmd_session(args: argparse.Namespace, console: Console) -> int:
    try:
        state = load_session_file(args.path)
    except PersistenceFailure as exc:
        raise InputError(str(exc)) from exc

    table = Table(show_header=False, box=None)
    table.add_row("phase", state.phase.value)
    table.add_row("round", str(state.round))
    table.add_row("session", state.session_id or "-")
    table.add_row("messages", str(len(state.messages)))
    console.print(table)
    for entry in state.messages:
        who = "agent" if entry.role == EntryRole.AGENT else "you"
        style = "bold green" if entry.role == EntryRole.AGENT else "bold"
        console.print()
        console.print(Text(f"{who}:", style=style))
        console.print(Text(entry.content))
    return 0


def cmd_config(config: ControllerConfig, console: Console) -> int:
    table = Table(show_header=True, header_style="bold")
    table.add_column("setting")
    table.add_column("value")
    for name, value in sorted(vars(config).items()):
        if name == "context_reminder":
            value = (value[:60] + "...") if len(value) > 60 else value
        table.add_row(name, repr(value))
    console.print(table)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="turnstile",
        description="Replay and inspect multi-turn agent conversations",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .turnstile/turnstile.yaml or turnstile.yaml)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    replay = sub.add_parser("replay", help="Render a recorded agent event stream")
    replay.add_argument("events", help="JSON-lines file of runtime events")
    replay.add_argument(
        "--show-status", action="store_true",
        help="Also print status messages (hidden by default)",
    )
    replay.add_argument(
        "--no-group", action="store_true",
        help="Print every tool call instead of collapsing runs",
    )

    session = sub.add_parser("session", help="Show a persisted session record or chat log")
    session.add_argument("path", help="Session JSON file")

    sub.add_parser("config", help="Show the effective controller configuration")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    console = Console()
    err_console = Console(stderr=True)

    try:
        config, log_config = load_config(args.config)
    except (ConfigError, FileNotFoundError) as exc:
        configure_logging(args.verbose)
        err_console.print(f"Error: {exc}", style="bold red", markup=False)
        return 2
    configure_logging(args.verbose, log_config)

    try:
        if args.command == "replay":
            return cmd_replay(args, console)
        if args.command == "session":
            return cmd_session(args, console)
        return cmd_config(config, console)
    except InputError as exc:
        err_console.print(f"Error: {exc}", style="bold red", markup=False)
        return 1


if __name__ == "__main__":
    sys.exit(main())
