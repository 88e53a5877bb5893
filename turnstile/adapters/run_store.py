"""Keyed store of live agent runs with subscription notifications.

The runtime's stream consumer feeds messages and exit notifications in;
controllers subscribe to the run ids they started and are awaited on every
change. There is no module-level instance: callers create a store and pass
it explicitly to whoever needs it.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any

from turnstile.adapters.events import MessageReceived, RunExited, StreamEvent
from turnstile.engine.config import RunCallback, fire_callback
from turnstile.engine.models import AgentMessage, MessageKind, Run, RunStatus, TokenUsage

logger = logging.getLogger(__name__)

Unsubscribe = Callable[[], None]


class RunStore:
    """Run records keyed by run id.

    Single event loop only. A run is frozen once its status leaves
    RUNNING: late messages and repeated exits are ignored.
    """

    def __init__(self) -> None:
        self._runs: dict[str, Run] = {}
        self._subscribers: dict[str, list[RunCallback]] = {}

    # ── reads ───────────────────────────────────────────────────────

    def get(self, run_id: str) -> Run | None:
        return self._runs.get(run_id)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def runs(self) -> list[Run]:
        return list(self._runs.values())

    # ── subscriptions ───────────────────────────────────────────────

    def subscribe(self, run_id: str, callback: RunCallback) -> Unsubscribe:
        """Call *callback* with the run after every change to *run_id*."""
        self._subscribers.setdefault(run_id, []).append(callback)

        def _unsubscribe() -> None:
            callbacks = self._subscribers.get(run_id)
            if callbacks and callback in callbacks:
                callbacks.remove(callback)
                if not callbacks:
                    del self._subscribers[run_id]

        return _unsubscribe

    async def _notify(self, run: Run) -> None:
        for callback in list(self._subscribers.get(run.run_id, ())):
            await fire_callback(callback, run)

    # ── writes ──────────────────────────────────────────────────────

    def register_run(
        self,
        run_id: str,
        model: str,
        context_id: str | None = None,
    ) -> Run:
        """Create the run record, or adopt one auto-created by early messages."""
        run = self._runs.get(run_id)
        if run is None:
            run = Run(run_id=run_id, model=model, context_id=context_id)
            self._runs[run_id] = run
        else:
            # Messages arrived before registration; keep them
            if run.model == "unknown" or not run.model:
                run.model = model
            if context_id is not None:
                run.context_id = context_id
        return run

    async def add_message(self, run_id: str, message: AgentMessage) -> None:
        run = self._runs.get(run_id)
        if run is None:
            run = Run(run_id=run_id)
            self._runs[run_id] = run
        elif run.is_terminal:
            logger.debug(
                "Dropping %s message for terminal run %s", message.kind.value, run_id,
            )
            return
        _absorb_metadata(run, message)
        run.messages.append(message)
        await self._notify(run)

    async def complete_run(self, run_id: str, success: bool) -> None:
        await self._finish(run_id, RunStatus.COMPLETED if success else RunStatus.ERROR)

    async def cancel_run(self, run_id: str) -> None:
        await self._finish(run_id, RunStatus.CANCELLED)

    async def _finish(self, run_id: str, status: RunStatus) -> None:
        run = self._runs.get(run_id)
        if run is None or run.is_terminal:
            logger.debug("Ignoring %s for run %s (unknown or terminal)", status.value, run_id)
            return
        run.status = status
        run.end_time = time.time()
        logger.info(
            "Run %s finished: status=%s messages=%d", run_id, status.value, len(run.messages),
        )
        await self._notify(run)

    async def apply(self, event: StreamEvent) -> None:
        """Route a decoded runtime notification into the store."""
        if isinstance(event, MessageReceived) and event.message is not None:
            await self.add_message(event.run_id, event.message)
        elif isinstance(event, RunExited):
            await self.complete_run(event.run_id, event.success)
        else:
            logger.debug("Ignoring stream event %s for run %s", event.event_type, event.run_id)

    def clear(self) -> None:
        self._runs.clear()
        self._subscribers.clear()


def _token_count(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        if value is not None:
            logger.debug("Ignoring non-numeric token count %r", value)
        return 0
    return int(value)


def _absorb_metadata(run: Run, message: AgentMessage) -> None:
    """Lift session id, model, usage and cost out of bookkeeping messages."""
    raw: Mapping[str, Any] = message.raw
    if message.kind == MessageKind.SYSTEM and raw.get("subtype") == "init":
        sid = raw.get("session_id")
        if isinstance(sid, str) and sid:
            run.session_id = sid
        init_model = raw.get("model")
        if isinstance(init_model, str) and init_model:
            run.model = init_model
    elif message.kind == MessageKind.RESULT:
        usage = raw.get("usage")
        if isinstance(usage, Mapping):
            run.token_usage = TokenUsage(
                input=_token_count(usage.get("input_tokens")),
                output=_token_count(usage.get("output_tokens")),
            )
        cost = raw.get("total_cost_usd", raw.get("cost_usd"))
        if isinstance(cost, (int, float)):
            run.total_cost = float(cost)
        if isinstance(raw.get("subtype"), str):
            run.result_subtype = raw["subtype"]
        if isinstance(raw.get("errors"), list):
            run.result_errors = [str(e) for e in raw["errors"]]
        if isinstance(raw.get("stop_reason"), str):
            run.stop_reason = raw["stop_reason"]
        if isinstance(raw.get("num_turns"), int):
            run.num_turns = raw["num_turns"]
        sid = raw.get("session_id")
        if isinstance(sid, str) and sid and not run.session_id:
            run.session_id = sid
    elif message.kind == MessageKind.CONFIG:
        config = raw.get("config")
        if isinstance(config, Mapping) and isinstance(config.get("agentName"), str):
            run.agent_name = config["agentName"]
