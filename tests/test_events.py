from __future__ import annotations

from turnstile.adapters.events import (
    MessageReceived,
    RunExited,
    StreamEvent,
    decode_block,
    decode_message,
    dict_to_event,
    message_to_dict,
)
from turnstile.engine.models import BlockKind, MessageKind


def _assistant_payload(*blocks) -> dict:
    return {"type": "assistant", "message": {"content": list(blocks)}}


class TestDecodeMessage:
    def test_assistant_text_blocks_concatenate(self) -> None:
        message = decode_message(_assistant_payload(
            {"type": "text", "text": "Hello "},
            {"type": "thinking", "thinking": "hmm"},
            {"type": "text", "text": "world"},
        ))
        assert message.kind == MessageKind.ASSISTANT
        assert message.content == "Hello world"
        assert [b.kind for b in message.blocks] == [BlockKind.TEXT, BlockKind.THINKING, BlockKind.TEXT]
        assert message.blocks[1].text == "hmm"
        assert not message.has_tool_use

    def test_tool_use_block(self) -> None:
        message = decode_message(_assistant_payload(
            {"type": "tool_use", "id": "tu_9", "name": "Bash", "input": {"command": "ls"}},
        ))
        assert message.has_tool_use
        block = message.first_tool_use
        assert block is not None
        assert block.name == "Bash"
        assert block.input == {"command": "ls"}
        assert block.tool_use_id == "tu_9"
        assert message.content is None

    def test_malformed_bodies_decode_without_blocks(self) -> None:
        for payload in (
            {"type": "assistant"},
            {"type": "assistant", "message": "oops"},
            {"type": "assistant", "message": {"content": "plain string"}},
        ):
            message = decode_message(payload)
            assert message.blocks == ()
            assert message.content is None

    def test_non_dict_block_is_unknown(self) -> None:
        assert decode_block("text").kind == BlockKind.UNKNOWN
        assert decode_block({"type": "image"}).kind == BlockKind.UNKNOWN

    def test_result_and_error_content(self) -> None:
        assert decode_message({"type": "result", "result": "All done"}).content == "All done"
        assert decode_message({"type": "result"}).content is None
        assert decode_message({"type": "error", "error": "rate limited"}).content == "rate limited"
        assert decode_message({"type": "error"}).content == "Unknown error"

    def test_system_has_no_content(self) -> None:
        message = decode_message({"type": "system", "subtype": "init"})
        assert message.kind == MessageKind.SYSTEM
        assert message.content is None

    def test_explicit_timestamp(self) -> None:
        assert decode_message({"type": "system"}, timestamp=12.5).timestamp == 12.5


class TestDictToEvent:
    def test_bare_payload_uses_default_run(self) -> None:
        event = dict_to_event({"type": "assistant"}, default_run_id="r-default")
        assert isinstance(event, MessageReceived)
        assert event.run_id == "r-default"
        assert event.message.kind == MessageKind.ASSISTANT

    def test_envelope(self) -> None:
        event = dict_to_event({
            "event": "agent_message",
            "agent_id": "r-7",
            "timestamp": 100,
            "message": {"type": "result", "result": "ok"},
        })
        assert isinstance(event, MessageReceived)
        assert event.run_id == "r-7"
        assert event.message.timestamp == 100.0
        assert event.message.content == "ok"

    def test_envelope_without_payload(self) -> None:
        event = dict_to_event({"event": "agent_message", "run_id": "r-1"})
        assert type(event) is StreamEvent
        assert event.event_type == "agent_message"

    def test_exit(self) -> None:
        event = dict_to_event({"event": "agent_exit", "run_id": "r-1", "success": False})
        assert isinstance(event, RunExited)
        assert event.success is False

    def test_exit_success_parsing(self) -> None:
        def success(value) -> bool:
            return dict_to_event({"event": "agent_exit", "run_id": "r-1", "success": value}).success

        assert dict_to_event({"event": "agent_exit", "run_id": "r-1"}).success is True
        assert success(None) is True
        assert success("false") is False
        assert success("False") is False
        assert success("0") is False
        assert success("") is False
        assert success(" TRUE ") is True
        assert success("yes") is True
        assert success(0) is False
        assert success(1) is True
        assert success({"ok": True}) is False

    def test_unknown_event(self) -> None:
        event = dict_to_event({"event": "heartbeat", "run_id": "r-1"})
        assert event.event_type == "heartbeat"

    def test_message_to_dict_round_trips_through_envelope(self) -> None:
        original = decode_message({"type": "result", "result": "ok"}, timestamp=5.0)
        event = dict_to_event({**message_to_dict(original), "run_id": "r-2"})
        assert isinstance(event, MessageReceived)
        assert event.message.raw == original.raw
        assert event.message.timestamp == 5.0
