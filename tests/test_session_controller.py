from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from turnstile.adapters.events import decode_message
from turnstile.adapters.run_store import RunStore
from turnstile.controller.session_controller import ConversationController
from turnstile.controller.stall import StallDecision
from turnstile.engine.config import ControllerConfig
from turnstile.engine.models import EntryRole, Phase, RunStatus, SessionState, TranscriptEntry
from turnstile.shared.services.artifact_store import FileArtifactStore

CONTEXT = "billing"
_DEFAULT = object()


class _FakeRuntime:
    def __init__(self, fail: Exception | None = None) -> None:
        self.fail = fail
        self.calls: list[dict] = []
        self.cancelled: list[str] = []
        self.cancel_error: Exception | None = None

    async def start(
        self, prompt, model, working_dir, allowed_tools, max_turns,
        resume_session_id, context_id, phase_label, agent_persona=None,
    ) -> str:
        if self.fail is not None:
            raise self.fail
        self.calls.append({
            "prompt": prompt,
            "model": model,
            "working_dir": working_dir,
            "allowed_tools": allowed_tools,
            "max_turns": max_turns,
            "resume_session_id": resume_session_id,
            "context_id": context_id,
            "phase_label": phase_label,
            "agent_persona": agent_persona,
        })
        return f"run-{len(self.calls)}"

    async def cancel(self, run_id: str) -> None:
        self.cancelled.append(run_id)
        if self.cancel_error is not None:
            raise self.cancel_error


class _Notifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def notify(self, level: str, message: str) -> None:
        self.sent.append((level, message))

    def levels(self) -> list[str]:
        return [level for level, _ in self.sent]


class _MemorySink:
    def __init__(self, initial: SessionState | None = None, fail_save: bool = False) -> None:
        self.saved: list[SessionState] = []
        self.initial = initial
        self.fail_save = fail_save

    async def save(self, state: SessionState) -> None:
        if self.fail_save:
            raise OSError("read-only filesystem")
        self.saved.append(state)

    async def load(self) -> SessionState | None:
        return self.initial


def _text(text: str) -> dict:
    return {"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}}


def _make(tmp_path: Path, **kwargs):
    runtime = kwargs.pop("runtime", None) or _FakeRuntime()
    store = RunStore()
    notifier = _Notifier()
    config = kwargs.pop("config", None) or ControllerConfig(workspace_path=str(tmp_path / "ws"))
    sink = kwargs.pop("sink", _DEFAULT)
    if sink is _DEFAULT:
        sink = _MemorySink()
    controller = ConversationController(
        CONTEXT, runtime, store,
        notifier=notifier, config=config, sink=sink, **kwargs,
    )
    return controller, runtime, store, notifier, sink


async def _finish(store: RunStore, run_id: str, *texts: str, session_id: str = "sess-1") -> None:
    await store.add_message(run_id, decode_message(
        {"type": "system", "subtype": "init", "session_id": session_id}
    ))
    for text in texts:
        await store.add_message(run_id, decode_message(_text(text)))
    await store.complete_run(run_id, success=True)


class TestStart:
    @pytest.mark.asyncio
    async def test_first_start_uses_configured_launch_parameters(self, tmp_path) -> None:
        controller, runtime, store, _, _ = _make(tmp_path)
        run_id = await controller.start("Analyse the domain")

        assert run_id == "run-1"
        assert controller.phase == Phase.AGENT_RUNNING
        assert controller.is_agent_running
        assert not controller.can_send
        call = runtime.calls[0]
        assert call["prompt"] == "Analyse the domain"
        assert call["model"] == "opus"
        assert call["allowed_tools"] == ["Read", "Write", "Edit", "Glob", "Grep", "Bash", "Task"]
        assert call["max_turns"] == 100
        assert call["resume_session_id"] is None
        assert call["context_id"] == CONTEXT
        assert call["phase_label"] == "step4-reasoning"
        assert store.get("run-1").context_id == CONTEXT

    @pytest.mark.asyncio
    async def test_start_failure_reverts_to_not_started(self, tmp_path) -> None:
        runtime = _FakeRuntime(fail=RuntimeError("sidecar not running"))
        controller, _, _, notifier, _ = _make(tmp_path, runtime=runtime)

        assert await controller.start("go") is None
        assert controller.phase == Phase.NOT_STARTED
        assert notifier.sent == [("error", "Failed to start agent: sidecar not running")]

    @pytest.mark.asyncio
    async def test_resume_start_failure_reverts_to_awaiting_feedback(self, tmp_path) -> None:
        controller, runtime, store, notifier, _ = _make(tmp_path)
        await controller.start("go")
        await _finish(store, "run-1", "First answer")
        runtime.fail = ConnectionError("lost")

        assert await controller.send("more please") is False
        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert controller.messages[-1].content == "more please"
        assert notifier.levels()[-1] == "error"

    @pytest.mark.asyncio
    async def test_second_start_refused_while_running(self, tmp_path) -> None:
        controller, runtime, _, _, _ = _make(tmp_path)
        await controller.start("go")
        assert await controller.start("again") is None
        assert len(runtime.calls) == 1

    @pytest.mark.asyncio
    async def test_start_refused_while_runtime_is_starting(self, tmp_path) -> None:
        release = asyncio.Event()

        class _SlowRuntime(_FakeRuntime):
            async def start(self, *args, **kwargs) -> str:
                await release.wait()
                return await super().start(*args, **kwargs)

        controller, runtime, _, _, _ = _make(tmp_path, runtime=_SlowRuntime())
        first = asyncio.create_task(controller.start("go"))
        await asyncio.sleep(0)

        assert controller.is_agent_running
        assert not controller.can_send
        assert await controller.start("again") is None
        assert await controller.send("hello") is False
        assert await controller.cancel() is False

        release.set()
        assert await first == "run-1"
        assert len(runtime.calls) == 1
        assert runtime.calls[0]["prompt"] == "go"
        assert controller.is_agent_running

    @pytest.mark.asyncio
    async def test_failed_start_clears_starting_state(self, tmp_path) -> None:
        runtime = _FakeRuntime(fail=RuntimeError("boom"))
        controller, _, _, _, _ = _make(tmp_path, runtime=runtime)

        assert await controller.start("go") is None
        assert controller.can_send
        runtime.fail = None
        assert await controller.start("go") == "run-1"

    @pytest.mark.asyncio
    async def test_terminal_before_subscription_is_processed(self, tmp_path) -> None:
        controller, runtime, store, _, _ = _make(tmp_path)
        # The runtime finishes before start() returns
        await _finish(store, "run-1", "instant")
        await controller.start("go")

        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert [m.content for m in controller.messages] == ["instant"]


class TestRunObserved:
    @pytest.mark.asyncio
    async def test_completed_run_appends_one_joined_entry(self, tmp_path) -> None:
        controller, _, store, _, sink = _make(tmp_path)
        await controller.start("go")
        await _finish(store, "run-1", "Part one.", "Part two.")

        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert controller.session_id == "sess-1"
        assert controller.messages == [
            TranscriptEntry(EntryRole.AGENT, "Part one.\n\nPart two.", run_id="run-1"),
        ]
        assert sink.saved[-1].phase == Phase.AWAITING_FEEDBACK
        assert sink.saved[-1].messages == controller.messages

    @pytest.mark.asyncio
    async def test_duplicate_terminal_observation_is_ignored(self, tmp_path) -> None:
        controller, _, store, _, sink = _make(tmp_path)
        await controller.start("go")
        await _finish(store, "run-1", "Answer")
        saves = len(sink.saved)

        run = store.get("run-1")
        await controller.on_run_observed(run)
        await controller.on_run_observed(run)

        assert len(controller.messages) == 1
        assert len(sink.saved) == saves

    @pytest.mark.asyncio
    async def test_completed_without_text_adds_nothing(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        await controller.start("go")
        await _finish(store, "run-1")
        assert controller.messages == []
        assert controller.phase == Phase.AWAITING_FEEDBACK

    @pytest.mark.asyncio
    async def test_session_id_captured_mid_run(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        await controller.start("go")
        await store.add_message("run-1", decode_message(
            {"type": "system", "subtype": "init", "session_id": "sess-early"}
        ))
        assert controller.session_id == "sess-early"
        assert controller.phase == Phase.AGENT_RUNNING

    @pytest.mark.asyncio
    async def test_error_run_on_empty_transcript(self, tmp_path) -> None:
        controller, _, store, notifier, sink = _make(tmp_path)
        phases: list[tuple[Phase, Phase]] = []
        controller.add_phase_listener(lambda old, new: phases.append((old, new)))
        await controller.start("go")
        await store.add_message("run-1", decode_message({"type": "error", "error": "rate limited"}))
        await store.complete_run("run-1", success=False)

        assert controller.phase == Phase.NOT_STARTED
        assert controller.messages[-1].content == "Error: rate limited"
        assert phases == [
            (Phase.NOT_STARTED, Phase.AGENT_RUNNING),
            (Phase.AGENT_RUNNING, Phase.ERROR),
            (Phase.ERROR, Phase.NOT_STARTED),
        ]
        assert ("error", "Agent encountered an error") in notifier.sent
        assert sink.saved[-1].messages[-1].content == "Error: rate limited"

    @pytest.mark.asyncio
    async def test_error_run_with_transcript_awaits_feedback(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        await controller.start("go")
        await _finish(store, "run-1", "First")
        await controller.send("continue")
        await store.complete_run("run-2", success=False)

        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert controller.messages[-1].content == "Error: Agent encountered an error"

    @pytest.mark.asyncio
    async def test_foreign_run_ignored(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        store.register_run("someone-else", "opus")
        await store.complete_run("someone-else", success=True)
        await controller.on_run_observed(store.get("someone-else"))
        assert controller.messages == []
        assert controller.phase == Phase.NOT_STARTED

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_block_phase(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path, sink=_MemorySink(fail_save=True))
        await controller.start("go")
        await _finish(store, "run-1", "Answer")
        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert len(controller.messages) == 1


class TestSend:
    @pytest.mark.asyncio
    async def test_send_starts_resume_turn_with_reminder(self, tmp_path) -> None:
        config = ControllerConfig(workspace_path="/ws", domain="payments", agent_persona="domain-reasoning")
        controller, runtime, store, _, _ = _make(tmp_path, config=config)
        await controller.start("go")
        await _finish(store, "run-1", "What currency do you use?")

        assert await controller.send("  EUR only  ") is True
        assert controller.round == 2
        assert controller.messages[-1] == TranscriptEntry(EntryRole.USER, "EUR only")
        call = runtime.calls[-1]
        assert call["resume_session_id"] == "sess-1"
        assert call["agent_persona"] == "domain-reasoning"
        assert call["prompt"].startswith('[Context reminder: You are the reasoning agent for "billing"')
        assert call["prompt"].endswith("]\n\nEUR only")

    @pytest.mark.asyncio
    async def test_blank_or_busy_send_ignored(self, tmp_path) -> None:
        controller, runtime, _, _, _ = _make(tmp_path)
        assert await controller.send("   ") is False
        await controller.start("go")
        assert await controller.send("hello?") is False
        assert controller.messages == []
        assert controller.round == 1
        assert len(runtime.calls) == 1


class TestCompleteStep:
    async def _ready(self, tmp_path, **kwargs):
        controller, runtime, store, notifier, sink = _make(tmp_path, **kwargs)
        await controller.start("go")
        await _finish(store, "run-1", "Ready to proceed?")
        return controller, notifier, sink

    @pytest.mark.asyncio
    async def test_missing_artifact_blocks_completion(self, tmp_path) -> None:
        controller, notifier, sink = await self._ready(tmp_path)
        saves = len(sink.saved)

        assert await controller.complete_step() is False
        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert len(sink.saved) == saves
        level, message = notifier.sent[-1]
        assert level == "error"
        assert "decisions.md" in message
        assert "Please send feedback to the agent" in message

    @pytest.mark.asyncio
    async def test_blank_artifact_does_not_count(self, tmp_path) -> None:
        controller, _, _ = await self._ready(tmp_path)
        path = tmp_path / "ws" / CONTEXT / "context" / "decisions.md"
        path.parent.mkdir(parents=True)
        path.write_text("   \n")
        assert await controller.complete_step() is False

    @pytest.mark.asyncio
    async def test_workspace_artifact_completes(self, tmp_path) -> None:
        completed: list[str] = []

        async def _hook(ctrl) -> None:
            completed.append(ctrl.context_id)

        controller, notifier, sink = await self._ready(tmp_path, on_step_completed=_hook)
        path = tmp_path / "ws" / CONTEXT / "context" / "decisions.md"
        path.parent.mkdir(parents=True)
        path.write_text("### D1: Postgres\n### D2: EUR\n")

        assert await controller.complete_step() is True
        assert controller.phase == Phase.COMPLETED
        assert sink.saved[-1].phase == Phase.COMPLETED
        assert notifier.sent[-1] == ("success", "Step completed")
        assert completed == [CONTEXT]
        assert controller.decision_count == 2

    @pytest.mark.asyncio
    async def test_skills_path_checked_first(self, tmp_path) -> None:
        config = ControllerConfig(workspace_path=str(tmp_path / "ws"), skills_path=str(tmp_path / "skills"))
        controller, _, _ = await self._ready(tmp_path, config=config)
        path = tmp_path / "skills" / CONTEXT / "context" / "decisions.md"
        path.parent.mkdir(parents=True)
        path.write_text("### D1: from skills")

        assert await controller.complete_step() is True
        assert controller.artifact_preview == "### D1: from skills"

    @pytest.mark.asyncio
    async def test_non_utf8_artifact_still_completes(self, tmp_path) -> None:
        controller, _, _ = await self._ready(tmp_path)
        path = tmp_path / "ws" / CONTEXT / "context" / "decisions.md"
        path.parent.mkdir(parents=True)
        path.write_bytes(b"### D1: caf\xe9\n")

        assert await controller.complete_step() is True
        assert controller.phase == Phase.COMPLETED
        assert "### D1: caf" in controller.artifact_preview
        assert controller.decision_count == 1

    @pytest.mark.asyncio
    async def test_store_is_last_resort(self, tmp_path) -> None:
        artifacts = FileArtifactStore(tmp_path / "store")
        await artifacts.save_artifact(CONTEXT, 4, "context/decisions.md", "### D1: stored")
        controller, _, _ = await self._ready(tmp_path, artifact_store=artifacts)

        assert await controller.complete_step() is True
        assert controller.phase == Phase.COMPLETED

    @pytest.mark.asyncio
    async def test_cannot_complete_before_starting(self, tmp_path) -> None:
        controller, _, _, notifier, _ = _make(tmp_path)
        assert await controller.complete_step() is False
        assert controller.phase == Phase.NOT_STARTED
        assert notifier.levels() == ["warning"]

    @pytest.mark.asyncio
    async def test_completed_step_can_be_reopened(self, tmp_path) -> None:
        controller, _, _ = await self._ready(tmp_path)
        path = tmp_path / "ws" / CONTEXT / "context" / "decisions.md"
        path.parent.mkdir(parents=True)
        path.write_text("### D1: x")
        await controller.complete_step()

        assert await controller.send("one more change") is True
        assert controller.phase == Phase.AGENT_RUNNING


class TestResume:
    def test_legacy_gate_check_resumes_awaiting_feedback(self, tmp_path) -> None:
        controller, _, _, _, _ = _make(tmp_path)
        record = {
            "messages": [
                {"role": "agent", "content": "Summary", "runId": "r-1"},
                {"role": "user", "content": "ok"},
            ],
            "sessionId": "sess-9",
            "phase": "gate_check",
            "round": 3,
        }
        assert controller.resume(json.loads(json.dumps(record))) is True
        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert controller.session_id == "sess-9"
        assert controller.round == 3
        assert [m.content for m in controller.messages] == ["Summary", "ok"]

    def test_agent_running_never_restored(self, tmp_path) -> None:
        controller, _, _, _, _ = _make(tmp_path)
        state = SessionState(
            messages=[TranscriptEntry(EntryRole.AGENT, "partial")],
            phase=Phase.AGENT_RUNNING,
        )
        assert controller.resume(state) is True
        assert controller.phase == Phase.AWAITING_FEEDBACK
        assert not controller.is_agent_running

    def test_empty_record_restores_nothing(self, tmp_path) -> None:
        controller, _, _, _, _ = _make(tmp_path)
        assert controller.resume({"messages": [], "phase": "completed", "sessionId": "s"}) is False
        assert controller.phase == Phase.NOT_STARTED
        assert controller.session_id is None

    def test_malformed_record_ignored(self, tmp_path) -> None:
        controller, _, _, _, _ = _make(tmp_path)
        assert controller.resume({"messages": "garbage"}) is False

    @pytest.mark.asyncio
    async def test_load_from_sink(self, tmp_path) -> None:
        initial = SessionState(
            messages=[TranscriptEntry(EntryRole.AGENT, "hello")],
            session_id="sess-2",
            phase=Phase.COMPLETED,
            round=4,
        )
        controller, runtime, _, _, _ = _make(tmp_path, sink=_MemorySink(initial=initial))
        assert await controller.load() is True
        assert controller.phase == Phase.COMPLETED

        await controller.send("reopen")
        assert runtime.calls[-1]["resume_session_id"] == "sess-2"

    @pytest.mark.asyncio
    async def test_load_round_trip_through_artifact_store(self, tmp_path) -> None:
        artifacts = FileArtifactStore(tmp_path / "store")
        first, _, store, _, _ = _make(tmp_path, artifact_store=artifacts, sink=None)
        await first.start("go")
        await _finish(store, "run-1", "Answer")

        second, _, _, _, _ = _make(tmp_path, artifact_store=artifacts, sink=None)
        assert await second.load() is True
        assert second.messages == first.messages
        assert second.phase == Phase.AWAITING_FEEDBACK

    @pytest.mark.asyncio
    async def test_corrupt_session_treated_as_fresh(self, tmp_path) -> None:
        artifacts = FileArtifactStore(tmp_path / "store")
        await artifacts.save_artifact(CONTEXT, 4, "context/reasoning-session.json", "{oops")
        controller, _, _, _, _ = _make(tmp_path, artifact_store=artifacts, sink=None)
        assert await controller.load() is False
        assert controller.phase == Phase.NOT_STARTED


class TestCancelRetryStall:
    @pytest.mark.asyncio
    async def test_cancel_marks_run_and_reverts_phase(self, tmp_path) -> None:
        controller, runtime, store, notifier, _ = _make(tmp_path)
        await controller.start("go")

        assert await controller.cancel() is True
        assert runtime.cancelled == ["run-1"]
        assert store.get("run-1").status == RunStatus.CANCELLED
        assert controller.phase == Phase.NOT_STARTED
        assert controller.messages == []
        assert notifier.levels()[-1] == "info"

    @pytest.mark.asyncio
    async def test_cancel_runtime_error_is_not_a_failure(self, tmp_path) -> None:
        controller, runtime, store, _, _ = _make(tmp_path)
        runtime.cancel_error = RuntimeError("already gone")
        await controller.start("go")
        assert await controller.cancel() is True
        assert store.get("run-1").status == RunStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_cancel_without_run(self, tmp_path) -> None:
        controller, runtime, _, _, _ = _make(tmp_path)
        assert await controller.cancel() is False
        assert runtime.cancelled == []

    @pytest.mark.asyncio
    async def test_late_terminal_of_cancelled_run_ignored(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        await controller.start("go")
        await controller.retry()
        await controller.on_run_observed(store.get("run-1"))

        assert controller.phase == Phase.AGENT_RUNNING
        assert controller.current_run.run_id == "run-2"

    @pytest.mark.asyncio
    async def test_retry_restarts_with_last_prompt(self, tmp_path) -> None:
        controller, runtime, store, _, _ = _make(tmp_path)
        await controller.start("Analyse the domain")
        run_id = await controller.retry()

        assert run_id == "run-2"
        assert runtime.cancelled == ["run-1"]
        assert runtime.calls[-1]["prompt"] == "Analyse the domain"
        assert controller.phase == Phase.AGENT_RUNNING

    @pytest.mark.asyncio
    async def test_retry_without_prompt(self, tmp_path) -> None:
        controller, _, _, _, _ = _make(tmp_path)
        assert await controller.retry() is None

    @pytest.mark.asyncio
    async def test_stall_offered_once(self, tmp_path) -> None:
        config = ControllerConfig(workspace_path=str(tmp_path), stall_timeout_seconds=60)
        controller, _, store, notifier, _ = _make(tmp_path, config=config)
        await controller.start("go")
        started = store.get("run-1").start_time

        assert controller.check_stall(now=started + 30) is False
        assert controller.check_stall(now=started + 61) is True
        assert controller.check_stall(now=started + 120) is False
        level, message = notifier.sent[-1]
        assert level == "warning"
        assert "1m 1s" in message

        await controller.resolve_stall(StallDecision.CANCEL)
        assert controller.phase == Phase.NOT_STARTED

    @pytest.mark.asyncio
    async def test_stall_disabled_by_default(self, tmp_path) -> None:
        controller, _, store, _, _ = _make(tmp_path)
        await controller.start("go")
        assert controller.check_stall(now=store.get("run-1").start_time + 10_000) is False
