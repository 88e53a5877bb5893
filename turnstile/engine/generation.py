"""Generation tokens for discarding stale asynchronous responses.

Every dependent async operation takes a token from ``issue()`` before it
starts. When it finishes, its result is applied only if the token is still
the latest one issued for its group; anything older is stale and dropped.

``consume()`` is the once-only variant: the first caller holding the
current token wins and the generation advances, so every later call with
the same token is rejected. The session controller uses it to process
each terminal run exactly once.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_GROUP = "default"


class GenerationGate:
    """Monotonic per-group counters. Single event loop only."""

    def __init__(self) -> None:
        self._latest: dict[str, int] = {}

    def issue(self, group: str = DEFAULT_GROUP) -> int:
        """Issue a new token for *group*, invalidating all earlier ones."""
        token = self._latest.get(group, 0) + 1
        self._latest[group] = token
        return token

    def latest(self, group: str = DEFAULT_GROUP) -> int:
        return self._latest.get(group, 0)

    def is_current(self, token: int, group: str = DEFAULT_GROUP) -> bool:
        return token > 0 and token == self._latest.get(group, 0)

    def consume(self, token: int, group: str = DEFAULT_GROUP) -> bool:
        """Return True exactly once for the current token of *group*."""
        if not self.is_current(token, group):
            return False
        # Advance past the token so a repeat consume() is stale
        self.issue(group)
        return True

    def invalidate(self, group: str = DEFAULT_GROUP) -> None:
        """Make every outstanding token of *group* stale."""
        self.issue(group)

    async def run_latest(
        self,
        fetch: Callable[[], Awaitable[T]],
        apply: Callable[[T], None],
        group: str = DEFAULT_GROUP,
    ) -> bool:
        """Run *fetch* and hand its result to *apply* only if still current.

        Returns True when the result was applied. Exceptions from *fetch*
        propagate to the caller.
        """
        token = self.issue(group)
        result = await fetch()
        if not self.is_current(token, group):
            logger.debug("Discarding stale result for group %s (token %d)", group, token)
            return False
        apply(result)
        return True
