"""Adapters package - Bridge between the agent runtime stream and the controller.

This package contains the stream-boundary decoder, the keyed run store,
and the notifier implementations.
"""
from __future__ import annotations

__all__ = [
    "RunStore",
    "decode_message",
    "dict_to_event",
    "LogNotifier",
    "ConsoleNotifier",
]

from turnstile.adapters.events import decode_message, dict_to_event
from turnstile.adapters.notifications import ConsoleNotifier, LogNotifier
from turnstile.adapters.run_store import RunStore
