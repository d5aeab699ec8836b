"""Unit tests for parley.server.session."""

import json

import pytest

from parley.common import wire
from parley.server import session as session_module
from parley.server.llmclient import RoundEnd
from parley.server.session import RelaySession


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class ScriptedCompletion:
    """Fake completion capability. Each call plays the next script, and records the history it was given."""
    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls = []

    def __call__(self, history):
        self.calls.append(list(history))
        script = self.scripts.pop(0)
        for event in script:
            if isinstance(event, Exception):
                raise event
            yield event


@pytest.fixture
def sent():
    """Frames sent by the session, decoded."""
    return []


def make_session(sent, *scripts):
    completion = ScriptedCompletion(*scripts)
    session = RelaySession(completion=completion,
                           send=lambda frame: sent.append(wire.decode_stream_chunk(frame)),
                           name="test")
    return session, completion


def chat_request(*turns):
    return wire.encode(wire.ChatRequest(list(turns)))


def user(text):
    return wire.Turn(role="user", content=text)


# ---------------------------------------------------------------------------
# Plain text rounds
# ---------------------------------------------------------------------------

class TestTextRound:
    def test_happy_path(self, sent):
        session, completion = make_session(sent, [wire.Text("Hel", False), wire.Text("lo", False), RoundEnd("stop")])
        session.handle_frame('{"type":"chat_request","messages":[{"role":"user","content":"hi"}]}')
        assert sent == [wire.Text("Hel", False), wire.Text("lo", False), wire.Text("", True)]
        assert session.transcript == [user("hi"), wire.Turn(role="assistant", content="Hello")]
        assert session.state is session_module.state_idle
        assert completion.calls == [[user("hi")]]

    def test_empty_response_appends_nothing(self, sent):
        session, _ = make_session(sent, [RoundEnd("stop")])
        session.handle_frame(chat_request(user("hi")))
        assert sent == [wire.Text("", True)]
        assert session.transcript == [user("hi")]

    def test_chat_request_adopted_verbatim(self, sent):
        session, completion = make_session(sent,
                                           [wire.Text("A", False), RoundEnd("stop")],
                                           [wire.Text("B", False), RoundEnd("stop")])
        session.handle_frame(chat_request(user("one")))
        # The client sends its own view of the history; the relay takes it as-is.
        history = [user("one"), wire.Turn(role="assistant", content="A (edited)"), user("two")]
        session.handle_frame(chat_request(*history))
        assert completion.calls[1] == history
        assert session.transcript == history + [wire.Turn(role="assistant", content="B")]

    def test_completion_closing_round_with_done_text(self, sent):
        session, _ = make_session(sent, [wire.Text("Hi", False), wire.Text("!", True)])
        session.handle_frame(chat_request(user("hi")))
        assert sent == [wire.Text("Hi", False), wire.Text("!", True)]  # exactly one done frame
        assert session.transcript[-1] == wire.Turn(role="assistant", content="Hi!")
        assert session.state is session_module.state_idle

    def test_completion_without_end_marker(self, sent):
        session, _ = make_session(sent, [wire.Text("Hi", False)])
        session.handle_frame(chat_request(user("hi")))
        assert sent[-1] == wire.Text("", True)
        assert session.transcript[-1] == wire.Turn(role="assistant", content="Hi")


# ---------------------------------------------------------------------------
# Tool-call rounds
# ---------------------------------------------------------------------------

class TestToolRound:
    def test_tool_round_trip_ordering(self, sent):
        tool_call = wire.ToolCall("t1", "read_file", '{"filename":"a.txt"}')
        session, completion = make_session(sent,
                                           [tool_call, RoundEnd("tool_calls")],
                                           [wire.Text("It says R.", False), RoundEnd("stop")])
        session.handle_frame(chat_request(user("read a.txt")))
        assert sent == [tool_call, wire.Text("", True)]
        assert session.state is session_module.state_awaiting_tool_results

        session.handle_frame(wire.encode(wire.ToolResult("t1", "R")))
        expected_prefix = [user("read a.txt"),
                           wire.Turn(role="assistant", content="", tool_calls=[tool_call.to_descriptor()]),
                           wire.Turn(role="tool", content="R", tool_call_id="t1")]
        assert completion.calls[1] == expected_prefix
        assert session.transcript == expected_prefix + [wire.Turn(role="assistant", content="It says R.")]
        assert sent[2:] == [wire.Text("It says R.", False), wire.Text("", True)]
        assert session.state is session_module.state_idle

    def test_waits_for_all_tool_results(self, sent):
        calls = [wire.ToolCall("a", "grep", "{}"), wire.ToolCall("b", "read_file", "{}")]
        session, completion = make_session(sent,
                                           calls + [RoundEnd("tool_calls")],
                                           [wire.Text("done", False), RoundEnd("stop")])
        session.handle_frame(chat_request(user("go")))
        session.handle_frame(wire.encode(wire.ToolResult("b", "B")))
        assert len(completion.calls) == 1  # still waiting for "a"
        assert session.state is session_module.state_awaiting_tool_results
        session.handle_frame(wire.encode(wire.ToolResult("a", "A")))
        assert len(completion.calls) == 2
        # Results are folded in arrival order.
        assert [turn.tool_call_id for turn in completion.calls[1][2:]] == ["b", "a"]

    def test_text_and_tool_calls_never_both_finalized(self, sent):
        session, _ = make_session(sent, [wire.Text("Let me look.", False), wire.ToolCall("1", "grep", "{}"), RoundEnd("tool_calls")])
        session.handle_frame(chat_request(user("go")))
        assistant_turn = session.transcript[-1]
        assert assistant_turn.content == ""
        assert [tool_call.id for tool_call in assistant_turn.tool_calls] == ["1"]

    def test_unexpected_tool_result_rejected(self, sent):
        session, completion = make_session(sent, [wire.ToolCall("1", "grep", "{}"), RoundEnd("tool_calls")])
        session.handle_frame(chat_request(user("go")))
        transcript_before = list(session.transcript)
        session.handle_frame(wire.encode(wire.ToolResult("nope", "X")))
        assert sent[-1].done and sent[-1].delta.startswith("Error: Unexpected tool result")
        assert session.transcript == transcript_before
        assert session.state is session_module.state_awaiting_tool_results
        assert len(completion.calls) == 1

    def test_tool_result_while_idle_rejected(self, sent):
        session, completion = make_session(sent)
        session.handle_frame(wire.encode(wire.ToolResult("1", "X")))
        assert sent == [wire.Text("Error: Unexpected tool result for tool call id '1'", True)]
        assert session.transcript == []
        assert completion.calls == []

    def test_chat_request_while_awaiting_tool_results(self, sent):
        session, completion = make_session(sent,
                                           [wire.ToolCall("1", "grep", "{}"), RoundEnd("tool_calls")],
                                           [wire.Text("ok", False), RoundEnd("stop")])
        session.handle_frame(chat_request(user("go")))
        session.handle_frame(chat_request(user("never mind")))
        assert session.transcript == [user("never mind"), wire.Turn(role="assistant", content="ok")]
        assert session.outstanding_tool_call_ids == []
        # The old tool call is no longer expected.
        session.handle_frame(wire.encode(wire.ToolResult("1", "late")))
        assert sent[-1].delta.startswith("Error: Unexpected tool result")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_malformed_frame(self, sent):
        session, completion = make_session(sent, [wire.Text("fine", False), RoundEnd("stop")])
        session.handle_frame("this is not json")
        assert len(sent) == 1
        assert sent[0].done
        assert "Invalid request format" in sent[0].delta
        # The session keeps working.
        session.handle_frame(chat_request(user("hi")))
        assert session.transcript[-1] == wire.Turn(role="assistant", content="fine")

    def test_completion_failure_mid_stream(self, sent):
        session, _ = make_session(sent, [wire.Text("partial", False), RuntimeError("While calling LLM: HTTP 500 Internal Server Error")])
        session.handle_frame(chat_request(user("hi")))
        assert sent[0] == wire.Text("partial", False)
        assert sent[-1] == wire.Text("Error: RuntimeError: While calling LLM: HTTP 500 Internal Server Error", True)
        assert session.transcript == [user("hi")]  # the failed round leaves nothing behind
        assert session.state is session_module.state_idle

    def test_completion_failure_after_tool_calls(self, sent):
        session, _ = make_session(sent, [wire.ToolCall("1", "grep", "{}"), ConnectionError("boom")])
        session.handle_frame(chat_request(user("hi")))
        assert sent[-1].delta.startswith("Error: ConnectionError")
        assert session.outstanding_tool_call_ids == []
        assert session.state is session_module.state_idle

    def test_completion_failure_on_invocation(self, sent):
        def broken(history):
            raise ValueError("no")
        session = RelaySession(completion=broken,
                               send=lambda frame: sent.append(wire.decode_stream_chunk(frame)))
        session.handle_frame(chat_request(user("hi")))
        assert sent == [wire.Text("Error: ValueError: no", True)]

    def test_unserializable_frame_dropped(self, sent):
        session, _ = make_session(sent, [wire.ToolCall("1", "grep", {"not", "json"}), RoundEnd("tool_calls")])
        session.handle_frame(chat_request(user("hi")))
        # The bad chunk is dropped; the round still closes.
        assert [json.loads(wire.encode(chunk)) for chunk in sent] == [{"type": "text", "delta": "", "done": True}]
        assert session.state is session_module.state_awaiting_tool_results
