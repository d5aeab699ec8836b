"""Unit tests for parley.client.conversation."""

import pytest

from parley.common import wire
from parley.client import conversation as conversation_module
from parley.client.conversation import Conversation


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

class FakeConvlog:
    def __init__(self):
        self.entries = []

    def log_turn(self, turn):
        self.entries.append(("turn", turn.role, turn.content))

    def log_tool_call(self, id, name, arguments):
        self.entries.append(("tool_call", id, name))

    def log_tool_result(self, id, content):
        self.entries.append(("tool_result", id, content))


class Harness:
    """A `Conversation` wired to recording fakes instead of a relay and a tool runner."""
    def __init__(self, connected=True):
        self.connected = connected
        self.sent = []
        self.tools_started = []
        self.progress = []
        self.shown = []
        self.convlog = FakeConvlog()
        self.conversation = Conversation(send=self.send,
                                         run_tool=self.tools_started.append,
                                         on_progress=self.progress.append,
                                         on_turn=self.shown.append,
                                         convlog=self.convlog)

    def send(self, message):
        if not self.connected:
            return False
        self.sent.append(message)
        return True

    def feed(self, *chunks):
        for chunk in chunks:
            self.conversation.handle_chunk(chunk)


@pytest.fixture
def harness():
    return Harness()


def user(text):
    return wire.Turn(role="user", content=text)


def assistant(text, ui_only=False):
    return wire.Turn(role="assistant", content=text, ui_only=ui_only)


# ---------------------------------------------------------------------------
# Plain text rounds
# ---------------------------------------------------------------------------

class TestTextRound:
    def test_happy_path(self, harness):
        c = harness.conversation
        assert c.submit("hi")
        assert harness.sent == [wire.ChatRequest([user("hi")])]
        assert c.state is conversation_module.state_awaiting_model
        assert c.is_busy()

        harness.feed(wire.Text("Hel", False), wire.Text("lo", False), wire.Text("", True))
        assert c.transcript == [user("hi"), assistant("Hello")]
        assert c.state is conversation_module.state_idle
        assert harness.progress == ["Hel", "lo"]

    def test_done_frame_with_text(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("Hel", False), wire.Text("lo", True))
        assert c.transcript[-1] == assistant("Hello")
        assert harness.progress == ["Hel", "lo"]

    def test_empty_reply_adds_no_turn(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("", True))
        assert c.transcript == [user("hi")]
        assert c.state is conversation_module.state_idle

    def test_history_is_resent(self, harness):
        c = harness.conversation
        c.submit("one")
        harness.feed(wire.Text("A", True))
        c.submit("two")
        assert harness.sent[-1] == wire.ChatRequest([user("one"), assistant("A"), user("two")])

    def test_on_turn_sees_every_turn(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("yo", True))
        assert harness.shown == c.transcript


# ---------------------------------------------------------------------------
# Submitting
# ---------------------------------------------------------------------------

class TestSubmit:
    def test_blank_input_ignored(self, harness):
        assert not harness.conversation.submit("   ")
        assert harness.sent == []
        assert harness.conversation.transcript == []

    def test_busy_rejects_input(self, harness):
        c = harness.conversation
        c.submit("first")
        assert not c.submit("second")
        assert len(harness.sent) == 1
        assert c.transcript == [user("first")]

    def test_not_connected(self):
        harness = Harness(connected=False)
        c = harness.conversation
        assert not c.submit("hi")
        [turn] = c.transcript
        assert turn.role == "system" and turn.ui_only
        assert turn.content.startswith("Error: Not connected")
        assert c.state is conversation_module.state_idle
        assert c.outbound_history() == []

    def test_clear(self, harness):
        c = harness.conversation
        c.submit("hi")
        c.clear()
        assert c.transcript == []
        assert not c.is_busy()


# ---------------------------------------------------------------------------
# Tool-call rounds
# ---------------------------------------------------------------------------

class TestToolRound:
    def test_tool_round_trip(self, harness):
        c = harness.conversation
        tool_call = wire.ToolCall("1", "read_file", '{"filename":"a.txt"}')
        c.submit("What's in a.txt?")
        harness.feed(tool_call)
        assert harness.tools_started == [tool_call]
        assert c.state is conversation_module.state_awaiting_tool_execution

        harness.feed(wire.Text("", True))  # closes the round that asked for the tool
        assert c.state is conversation_module.state_awaiting_tool_execution
        assert not c.expecting_continuation

        c.handle_tool_done("1", "X")
        assert harness.sent[-1] == wire.ToolResult("1", "X")
        assert c.state is conversation_module.state_awaiting_model_after_tool

        harness.feed(wire.Text("It says X.", False), wire.Text("", True))
        assert [(turn.role, turn.ui_only) for turn in c.transcript] == [("user", False),
                                                                       ("assistant", True),
                                                                       ("system", True),
                                                                       ("assistant", False)]
        assert c.transcript[1].content == '[ToolCall] read_file({"filename":"a.txt"})'
        assert c.transcript[2].content == "[ToolInfo] read_file: X"
        assert c.transcript[3] == assistant("It says X.")
        assert c.state is conversation_module.state_idle

    def test_tool_finishes_before_done_frame(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "grep", "{}"))
        c.handle_tool_done("1", "result")
        harness.feed(wire.Text("", True))
        assert c.state is conversation_module.state_awaiting_model_after_tool
        harness.feed(wire.Text("Found it.", True))
        assert c.transcript[-1] == assistant("Found it.")
        assert c.state is conversation_module.state_idle

    def test_continuation_guard(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "grep", "{}"))
        assert c.expecting_continuation
        harness.feed(wire.Text("", True))
        # The `done` after a tool call is not the answer.
        assert not any(turn.role == "assistant" and not turn.ui_only for turn in c.transcript)
        assert c.is_busy()

    def test_text_before_tool_call_kept(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.Text("Let me look.", False), wire.ToolCall("1", "grep", "{}"))
        assert c.transcript[1] == assistant("Let me look.")
        assert c.transcript[2].content.startswith("[ToolCall] grep")

    def test_waits_for_all_tools(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("a", "grep", "{}"), wire.ToolCall("b", "read_file", "{}"), wire.Text("", True))
        c.handle_tool_done("b", "B")
        assert c.state is conversation_module.state_awaiting_tool_execution
        c.handle_tool_done("a", "A")
        assert c.state is conversation_module.state_awaiting_model_after_tool
        assert harness.sent[1:] == [wire.ToolResult("b", "B"), wire.ToolResult("a", "A")]

    def test_unknown_tool_result_ignored(self, harness):
        c = harness.conversation
        c.submit("go")
        c.handle_tool_done("nope", "X")
        assert len(harness.sent) == 1
        assert c.state is conversation_module.state_awaiting_model

    def test_long_tool_output_summarized(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "read_file", "{}"))
        c.handle_tool_done("1", "line one\nline two\nline three")
        assert c.transcript[-1].content == "[ToolInfo] read_file: line one [... 3 lines]"
        # The model gets the full text.
        assert harness.sent[-1].content == "line one\nline two\nline three"

    def test_outbound_history_filters_annotations(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "grep", "{}"), wire.Text("", True))
        c.handle_tool_done("1", "R")
        harness.feed(wire.Text("Done.", True))
        assert c.outbound_history() == [user("go"), assistant("Done.")]
        c.submit("next")
        assert harness.sent[-1] == wire.ChatRequest([user("go"), assistant("Done."), user("next")])


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class TestErrors:
    def test_error_done_frame(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("part", False), wire.Text("Error: RuntimeError: upstream died", True))
        assert c.transcript[1] == assistant("part")
        assert c.transcript[2] == wire.Turn(role="system", content="Error: RuntimeError: upstream died", ui_only=True)
        assert c.state is conversation_module.state_idle
        assert c.outbound_history() == [user("hi"), assistant("part")]

    def test_error_while_tools_running(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "grep", "{}"), wire.Text("Error: Invalid request format: x", True))
        assert c.state is conversation_module.state_idle
        assert not c.expecting_continuation
        # A late result from the orphaned tool is not sent.
        c.handle_tool_done("1", "late")
        assert harness.sent == [wire.ChatRequest([user("go")])]

    def test_abandon_on_connection_loss(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("half an ans", False))
        c.abandon("Error: Connection to the relay lost; the reply was interrupted.")
        assert c.transcript[1] == assistant("half an ans")
        assert c.transcript[2].ui_only and c.transcript[2].content.startswith("Error: Connection")
        assert not c.is_busy()
        assert c.submit("again")

    def test_idle_after_error_accepts_input(self, harness):
        c = harness.conversation
        c.submit("hi")
        harness.feed(wire.Text("Error: boom", True))
        assert c.submit("again")


# ---------------------------------------------------------------------------
# Conversation log
# ---------------------------------------------------------------------------

class TestConvlog:
    def test_entries(self, harness):
        c = harness.conversation
        c.submit("go")
        harness.feed(wire.ToolCall("1", "grep", "{}"), wire.Text("", True))
        c.handle_tool_done("1", "R")
        harness.feed(wire.Text("Done.", True))
        assert harness.convlog.entries == [("turn", "user", "go"),
                                           ("tool_call", "1", "grep"),
                                           ("turn", "system", "[ToolInfo] grep: R"),
                                           ("tool_result", "1", "R"),
                                           ("turn", "assistant", "Done.")]
