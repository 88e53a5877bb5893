"""Stall detection for long-running agent runs.

There is no automatic timeout. Once a run has been going longer than the
configured threshold the operator is offered a retry-or-cancel choice,
exactly once per run.
"""
from __future__ import annotations

import logging
from enum import Enum

from turnstile.engine.models import Run
from turnstile.shared.formatters.run_stats import format_elapsed

logger = logging.getLogger(__name__)


class StallDecision(str, Enum):
    RETRY = "retry"
    CANCEL = "cancel"


class StallMonitor:
    """Tracks which runs have already been flagged as stalled."""

    def __init__(self, timeout_seconds: float = 0.0) -> None:
        self.timeout_seconds = timeout_seconds
        self._offered: set[str] = set()

    @property
    def enabled(self) -> bool:
        return self.timeout_seconds > 0

    def check(self, run: Run | None, now: float | None = None) -> bool:
        """True the first time *run* is seen running past the threshold."""
        if not self.enabled or run is None or run.is_terminal:
            return False
        if run.run_id in self._offered:
            return False
        elapsed = run.elapsed(now)
        if elapsed < self.timeout_seconds:
            return False
        self._offered.add(run.run_id)
        logger.warning(
            "Run %s has been running for %s (threshold %s)",
            run.run_id, format_elapsed(elapsed), format_elapsed(self.timeout_seconds),
        )
        return True

    def forget(self, run_id: str) -> None:
        self._offered.discard(run_id)

    @staticmethod
    def prompt_for(run: Run, now: float | None = None) -> str:
        return (
            f"The agent has been running for {format_elapsed(run.elapsed(now))} "
            f"without finishing. Retry or cancel?"
        )
