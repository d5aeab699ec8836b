"""Client-side conversation state machine.

Owns the display transcript: what the user sees. This includes UI-only annotation turns
(tool calls being made, tool results received, errors), which are never sent to the relay.

States:

    `state_idle`: ready for the next user message.
    `state_awaiting_model`: sent a chat request, draining the streamed reply.
    `state_awaiting_tool_execution`: the model asked for one or more tools; they are running locally.
    `state_awaiting_model_after_tool`: all tool results sent, draining the model's follow-up.

The relay closes every model round with a `Text(done=True)`. A round that ended in tool calls is closed
the same way, but that `done` does not carry the real answer. So when a tool call arrives, we set the
"expecting continuation" guard, and the next `done` only clears the guard.

This class does not do I/O itself. It is driven by `submit` (user input), `handle_chunk` (inbound from
the relay), and `handle_tool_done` (local tool finished), all of which must be called from the same thread.
"""

__all__ = ["Conversation",
           "state_idle", "state_awaiting_model",
           "state_awaiting_tool_execution", "state_awaiting_model_after_tool",
           "error_marker", "toolinfo_marker", "toolcall_marker"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import io
from typing import Any, Callable, Dict, List, Optional

from unpythonic import sym

from ..common import wire

state_idle = sym("idle")
state_awaiting_model = sym("awaiting_model")
state_awaiting_tool_execution = sym("awaiting_tool_execution")
state_awaiting_model_after_tool = sym("awaiting_model_after_tool")

error_marker = "Error"
toolcall_marker = "[ToolCall]"
toolinfo_marker = "[ToolInfo]"

def _summarize_tool_output(text: str, max_length: int = 200) -> str:
    lines = text.splitlines()
    if not lines:
        return "(empty result)"
    first = lines[0] if len(lines[0]) <= max_length else f"{lines[0][:max_length]}..."
    if len(lines) == 1:
        return first
    return f"{first} [... {len(lines)} lines]"

class Conversation:
    def __init__(self,
                 send: Callable[[Any], bool],
                 run_tool: Callable[[wire.ToolCall], None],
                 on_progress: Optional[Callable[[str], None]] = None,
                 on_turn: Optional[Callable[[wire.Turn], None]] = None,
                 convlog: Optional[Any] = None):
        """The client's view of one chat.

        `send`: 1-argument callable, transmits a `ClientMessage` to the relay. Must not block.
                Returns whether the message was accepted (`False` e.g. when not connected).

        `run_tool`: 1-argument callable, starts local execution of a `ToolCall`. Must not block.
                    When the tool finishes, the result must be handed back via `handle_tool_done`.

        `on_progress`: 1-argument callable, receives each streamed text fragment, for live display.

        `on_turn`: 1-argument callable, receives each `Turn` as it is appended to the transcript.

        `convlog`: optional `parley.client.convlog.ConversationLogger`, or anything with the same methods.
        """
        self.send = send
        self.run_tool = run_tool
        self.on_progress = on_progress
        self.on_turn = on_turn
        self.convlog = convlog

        self.transcript: List[wire.Turn] = []
        self.state = state_idle
        self.accumulator: Optional[io.StringIO] = None
        self.expecting_continuation = False
        self.outstanding_tools: Dict[str, str] = {}  # tool call id -> tool name, in call order

    def outbound_history(self) -> List[wire.Turn]:
        """The transcript as the relay should see it: UI-only turns filtered out."""
        return [turn for turn in self.transcript if not turn.ui_only]

    def is_busy(self) -> bool:
        return self.state is not state_idle

    def clear(self) -> None:
        """Start a new conversation."""
        self.transcript = []
        self.state = state_idle
        self.accumulator = None
        self.expecting_continuation = False
        self.outstanding_tools = {}

    # --------------------------------------------------------------------------------
    # User input

    def submit(self, text: str) -> bool:
        """Send the user's message. Return whether a request was actually sent.

        Nothing is sent if `text` is blank, or if the previous round is still in progress.
        """
        if not text.strip():
            return False
        if self.is_busy():
            logger.info(f"Conversation.submit: busy (state {self.state}), not sending.")
            return False

        turn = wire.Turn(role="user", content=text)
        request = wire.ChatRequest(messages=self.outbound_history() + [turn])
        if self.send(request) is False:
            self._append(wire.Turn(role="system", content="Error: Not connected to the relay; message not sent.", ui_only=True))
            return False
        self._append(turn)
        self.accumulator = io.StringIO()
        self.expecting_continuation = False
        self.state = state_awaiting_model
        return True

    # --------------------------------------------------------------------------------
    # Events from the relay

    def handle_chunk(self, chunk: Any) -> None:
        """Process one inbound `StreamChunk`."""
        if isinstance(chunk, wire.Text):
            if chunk.done:
                self._on_done(chunk.delta)
            else:
                if self.accumulator is None:
                    self.accumulator = io.StringIO()
                self.accumulator.write(chunk.delta)
                if self.on_progress is not None:
                    self.on_progress(chunk.delta)
        elif isinstance(chunk, wire.ToolCall):
            self._on_tool_call(chunk)
        else:  # relay -> client `ToolResult` is reserved; nothing uses it
            logger.info(f"Conversation.handle_chunk: ignoring {chunk!r}")

    def abandon(self, reason: str) -> None:
        """Give up on the round in progress (e.g. the connection was lost).

        Whatever was streamed so far is kept; `reason` is shown as a UI-only error turn.
        """
        self._materialize()
        self._append(wire.Turn(role="system", content=reason, ui_only=True))
        self.expecting_continuation = False
        if self.outstanding_tools:
            logger.info(f"Conversation.abandon: results of {len(self.outstanding_tools)} running tool(s) will be discarded.")
        self.outstanding_tools = {}
        self.state = state_idle

    def _on_done(self, delta: str) -> None:
        if delta.startswith(error_marker):  # the relay abandoned the round
            self.abandon(delta)
            return

        if self.expecting_continuation:  # closes the round that requested the tools
            self.expecting_continuation = False
            return

        if self.accumulator is None:
            self.accumulator = io.StringIO()
        if delta:
            self.accumulator.write(delta)
            if self.on_progress is not None:
                self.on_progress(delta)
        self._materialize()
        self.state = state_idle

    def _on_tool_call(self, tool_call: wire.ToolCall) -> None:
        # Text streamed before the tool call stays as its own turn, so the eventual answer doesn't run into it.
        self._materialize()
        self._append(wire.Turn(role="assistant", content=f"{toolcall_marker} {tool_call.name}({tool_call.arguments})", ui_only=True))
        if self.convlog is not None:
            self.convlog.log_tool_call(tool_call.id, tool_call.name, tool_call.arguments)
        self.expecting_continuation = True
        self.accumulator = io.StringIO()
        self.outstanding_tools[tool_call.id] = tool_call.name
        self.state = state_awaiting_tool_execution
        self.run_tool(tool_call)

    # --------------------------------------------------------------------------------
    # Events from the local tool runner

    def handle_tool_done(self, tool_call_id: str, result: str) -> None:
        """A local tool finished. Annotate, and send the result to the relay."""
        if tool_call_id not in self.outstanding_tools:
            logger.info(f"Conversation.handle_tool_done: discarding result for '{tool_call_id}', no longer expected.")
            return
        name = self.outstanding_tools.pop(tool_call_id)
        self._append(wire.Turn(role="system", content=f"{toolinfo_marker} {name}: {_summarize_tool_output(result)}", ui_only=True))
        if self.convlog is not None:
            self.convlog.log_tool_result(tool_call_id, result)
        self.send(wire.ToolResult(id=tool_call_id, content=result))
        if not self.outstanding_tools:
            self.state = state_awaiting_model_after_tool

    # --------------------------------------------------------------------------------
    # Internal

    def _materialize(self) -> None:
        """Turn the accumulated text into an assistant turn (if there is any text)."""
        if self.accumulator is None:
            return
        content = self.accumulator.getvalue()
        self.accumulator = None
        if content:
            self._append(wire.Turn(role="assistant", content=content))

    def _append(self, turn: wire.Turn) -> None:
        self.transcript.append(turn)
        if self.convlog is not None and not (turn.ui_only and turn.role == "assistant"):  # tool call annotations are logged as `ToolCall` entries
            self.convlog.log_turn(turn)
        if self.on_turn is not None:
            self.on_turn(turn)
