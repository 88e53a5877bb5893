"""Notifier implementations for the user-visible notification channel."""
from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

LEVELS = ("info", "success", "warning", "error")

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LogNotifier:
    """Routes notifications to the logging system."""

    def __init__(self, name: str = "turnstile.notifications") -> None:
        self._logger = logging.getLogger(name)

    def notify(self, level: str, message: str) -> None:
        self._logger.log(_LOG_LEVELS.get(level, logging.INFO), "[%s] %s", level, message)


class ConsoleNotifier:
    """Prints notifications to a rich console."""

    _STYLES = {
        "info": "dim",
        "success": "green",
        "warning": "yellow",
        "error": "bold red",
    }

    def __init__(self, console=None) -> None:
        if console is None:
            from rich.console import Console

            console = Console(stderr=True)
        self._console = console

    def notify(self, level: str, message: str) -> None:
        style = self._STYLES.get(level, "")
        self._console.print(f"[{level}] {message}", style=style, markup=False)
