"""Relay session: the per-connection state machine on the relay side.

A `RelaySession` owns the send transcript of one client connection, i.e. strictly what has been exchanged
with the model. It is driven by inbound frames (`handle_frame`), one at a time, in arrival order.

States:

    `state_idle`: no completion in flight.
    `state_streaming`: the completion capability is producing events for the current round.
    `state_awaiting_tool_results`: the round ended in tool calls; paused until the client returns
                                   a `ToolResult` for each of them.

Each round is closed to the client by exactly one `Text(done=True)` frame: with an empty delta on success,
or with "Error: ..." when the round was abandoned.

Tool results are folded into the transcript as they arrive. The next round starts only when the results
for ALL tool calls of the previous round are in, so that a model issuing parallel tool calls gets one
follow-up round, not one per result.
"""

__all__ = ["RelaySession",
           "state_idle", "state_streaming", "state_awaiting_tool_results"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import io
from typing import Any, Callable, Iterable, List

from unpythonic import sym

from ..common import wire
from .llmclient import RoundEnd

state_idle = sym("idle")
state_streaming = sym("streaming")
state_awaiting_tool_results = sym("awaiting_tool_results")

class RelaySession:
    def __init__(self,
                 completion: Callable[[List[wire.Turn]], Iterable[Any]],
                 send: Callable[[str], None],
                 name: str = "session"):
        """Per-connection relay state.

        `completion`: 1-argument callable `(history: List[Turn]) -> iterable of events`, where each event is
                      `Text`, `ToolCall` or `RoundEnd` (see `parley.server.llmclient.stream_completion`).
                      It receives a copy of the transcript.

        `send`: 1-argument callable that transmits one encoded text frame to the client.
                Exceptions from `send` (e.g. the connection closed) propagate to the caller of `handle_frame`.

        `name`: for log messages.
        """
        self.completion = completion
        self.send = send
        self.name = name
        self.transcript: List[wire.Turn] = []
        self.state = state_idle
        self.outstanding_tool_call_ids: List[str] = []

    def handle_frame(self, frame: str) -> None:
        """Process one inbound frame from the client. Runs any resulting model round to completion before returning."""
        logger.debug(f"RelaySession.handle_frame: {self.name}: inbound: {frame!r}")
        try:
            message = wire.decode_client_message(frame)
        except wire.DecodeError as exc:
            logger.warning(f"RelaySession.handle_frame: {self.name}: invalid frame: {exc}")
            self._emit(wire.Text(f"Error: Invalid request format: {exc}", True))
            return

        if isinstance(message, wire.ChatRequest):
            self._on_chat_request(message)
        else:
            self._on_tool_result(message)

    def _on_chat_request(self, request: wire.ChatRequest) -> None:
        if self.state is state_awaiting_tool_results:
            logger.info(f"RelaySession._on_chat_request: {self.name}: new chat request while waiting for {len(self.outstanding_tool_call_ids)} tool result(s); abandoning the paused round.")
        # The incoming history is the new authoritative prefix.
        self.transcript = list(request.messages)
        self.outstanding_tool_call_ids = []
        logger.info(f"RelaySession._on_chat_request: {self.name}: chat request with {len(self.transcript)} turn(s).")
        self._run_round()

    def _on_tool_result(self, result: wire.ToolResult) -> None:
        if self.state is not state_awaiting_tool_results or result.id not in self.outstanding_tool_call_ids:
            logger.warning(f"RelaySession._on_tool_result: {self.name}: unexpected tool result for id '{result.id}' (state {self.state}, outstanding {self.outstanding_tool_call_ids}).")
            self._emit(wire.Text(f"Error: Unexpected tool result for tool call id '{result.id}'", True))
            return

        self.outstanding_tool_call_ids.remove(result.id)
        self.transcript.append(wire.Turn(role="tool", content=result.content, tool_call_id=result.id))
        if self.outstanding_tool_call_ids:
            logger.info(f"RelaySession._on_tool_result: {self.name}: got result for '{result.id}', still waiting for {len(self.outstanding_tool_call_ids)} more.")
            return
        logger.info(f"RelaySession._on_tool_result: {self.name}: got all tool results, continuing.")
        self._run_round()

    def _run_round(self) -> None:
        """Invoke the completion capability with the full transcript, forward its events, fold the result into the transcript."""
        self.state = state_streaming
        text = io.StringIO()
        tool_calls = []
        try:
            events = iter(self.completion(list(self.transcript)))
        except Exception as exc:
            self._abandon_round(exc)
            return

        while True:
            try:
                event = next(events)
            except StopIteration:
                event = RoundEnd(None)  # capability ended without an explicit marker
            except Exception as exc:
                self._abandon_round(exc)
                return

            if isinstance(event, wire.Text):
                text.write(event.delta)
                if event.done:  # capability closed the round itself
                    self._emit(event)
                    self._finish_text_round(text.getvalue())
                    return
                self._emit(event)
            elif isinstance(event, wire.ToolCall):
                tool_calls.append(event.to_descriptor())
                self._emit(event)
            elif isinstance(event, RoundEnd):
                if tool_calls:
                    if text.getvalue():
                        logger.info(f"RelaySession._run_round: {self.name}: round produced both text and tool calls; keeping only the tool calls in the transcript.")
                    self.transcript.append(wire.Turn(role="assistant", content="", tool_calls=tool_calls))
                    self.outstanding_tool_call_ids = [tool_call.id for tool_call in tool_calls]
                    self.state = state_awaiting_tool_results
                    logger.info(f"RelaySession._run_round: {self.name}: round ended with {len(tool_calls)} tool call(s); waiting for results.")
                else:
                    self._finish_text_round(text.getvalue())
                self._emit(wire.Text("", True))
                return
            else:
                logger.warning(f"RelaySession._run_round: {self.name}: ignoring unknown event from completion capability: {event!r}")

    def _finish_text_round(self, content: str) -> None:
        if content:
            self.transcript.append(wire.Turn(role="assistant", content=content))
        self.state = state_idle
        logger.info(f"RelaySession._finish_text_round: {self.name}: round finished, transcript now has {len(self.transcript)} turn(s).")

    def _abandon_round(self, exc: Exception) -> None:
        logger.error(f"RelaySession._abandon_round: {self.name}: completion failed: {type(exc)}: {exc}")
        self.state = state_idle
        self.outstanding_tool_call_ids = []
        self._emit(wire.Text(f"Error: {type(exc).__name__}: {exc}", True))

    def _emit(self, message: Any) -> None:
        try:
            frame = wire.encode(message)
        except (TypeError, ValueError) as exc:
            logger.error(f"RelaySession._emit: {self.name}: failed to serialize {message!r}, dropping it: {type(exc)}: {exc}")
            return
        logger.debug(f"RelaySession._emit: {self.name}: outbound: {frame!r}")
        self.send(frame)
