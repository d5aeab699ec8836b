"""Wire protocol shared by the Parley chat client and the Parley relay.

Every frame on the persistent connection is one JSON object, tagged by its "type" field.

Client -> relay (`ClientMessage`):

    {"type": "chat_request", "messages": [turn0, ...]}
    {"type": "tool_result", "id": "<tool_call_id>", "content": "<result text>"}

Relay -> client (`StreamChunk`):

    {"type": "text", "delta": "<fragment>", "done": <bool>}
    {"type": "tool_call", "id": "...", "name": "...", "arguments": "<json-encoded-string>"}
    {"type": "tool_result", "id": "...", "content": "..."}   # reserved, unused in normal flow

A turn is encoded as::

    {"role": "user" | "assistant" | "system" | "tool",
     "content": "...",
     "tool_call_id": "...",                                    # tool turns only
     "tool_calls": [{"id": "...", "name": "...", "arguments": "..."}, ...]}  # assistant turns only

Decoding validates the discriminant before dispatch. Anything malformed raises `DecodeError`;
it is up to the receiving side to decide how to report it (the connection is never torn down
because of a bad frame).

This module is licensed under the 2-clause BSD license.
"""

__all__ = ["DecodeError",
           "roles",
           "ToolCallDescriptor", "Turn",
           "Text", "ToolCall", "ToolResult", "ChatRequest",
           "encode",
           "decode_client_message", "decode_stream_chunk",
           "turns_to_dicts"]

import json
from typing import Any, Dict, List, Optional

roles = ("system", "user", "assistant", "tool")

class DecodeError(ValueError):
    """A frame could not be decoded into a protocol message."""

_missing = object()

def _get_str(data: Dict[str, Any], key: str, default: Any = _missing) -> str:
    value = data.get(key, default)
    if value is _missing:
        raise DecodeError(f"missing field '{key}'")
    if not isinstance(value, str):
        raise DecodeError(f"field '{key}' must be a string, got {type(value).__name__}")
    return value

def _get_bool(data: Dict[str, Any], key: str) -> bool:
    if key not in data:
        raise DecodeError(f"missing field '{key}'")
    value = data[key]
    if not isinstance(value, bool):
        raise DecodeError(f"field '{key}' must be a boolean, got {type(value).__name__}")
    return value

def _require_object(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise DecodeError(f"{what} must be a JSON object, got {type(data).__name__}")
    return data

# --------------------------------------------------------------------------------
# Conversation data

class ToolCallDescriptor:
    """One tool call requested by the model.

    `id`: opaque, unique within one assistant turn.
    `name`: tool identifier, e.g. "read_file".
    `arguments`: the serialized parameters, as sent by the model (a JSON string; we don't look inside).
    """

    def __init__(self, id: str, name: str, arguments: str):
        self.id = id
        self.name = name
        self.arguments = arguments

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: Any) -> "ToolCallDescriptor":
        data = _require_object(data, "tool call")
        return cls(id=_get_str(data, "id"),
                   name=_get_str(data, "name"),
                   arguments=_get_str(data, "arguments"))

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ToolCallDescriptor):
            return NotImplemented
        return (self.id, self.name, self.arguments) == (other.id, other.name, other.arguments)

    def __repr__(self) -> str:
        return f"ToolCallDescriptor(id={self.id!r}, name={self.name!r}, arguments={self.arguments!r})"


class Turn:
    """A single role-tagged contribution to a conversation.

    `role`: one of "system", "user", "assistant", "tool".
    `content`: the text. May be empty (e.g. an assistant turn that only calls tools).
    `tool_call_id`: for "tool" turns: the id of the tool call this turn answers.
    `tool_calls`: for "assistant" turns: list of `ToolCallDescriptor`, when the model called tools.
    `ui_only`: client-side flag. A UI-only turn is shown to the user, but never sent to the relay.
               Not part of the wire format.

    Invariants (checked by `validate`):

      - An assistant turn has non-empty `content` XOR non-empty `tool_calls`.
      - A tool turn always carries `tool_call_id`.
      - Only assistant turns may carry `tool_calls`, only tool turns may carry `tool_call_id`.
    """

    def __init__(self, role: str, content: str = "",
                 tool_call_id: Optional[str] = None,
                 tool_calls: Optional[List[ToolCallDescriptor]] = None,
                 ui_only: bool = False):
        self.role = role
        self.content = content
        self.tool_call_id = tool_call_id
        self.tool_calls = tool_calls
        self.ui_only = ui_only

    def validate(self) -> None:
        """Raise `DecodeError` if this turn violates the turn invariants."""
        if self.role not in roles:
            raise DecodeError(f"unknown role '{self.role}'; valid values: {', '.join(roles)}")
        if self.role == "tool" and not self.tool_call_id:
            raise DecodeError("a tool turn must carry 'tool_call_id'")
        if self.role != "tool" and self.tool_call_id is not None:
            raise DecodeError(f"'tool_call_id' is only allowed on tool turns, not on {self.role} turns")
        if self.tool_calls is not None and self.role != "assistant":
            raise DecodeError(f"'tool_calls' is only allowed on assistant turns, not on {self.role} turns")
        if self.role == "assistant" and bool(self.content) == bool(self.tool_calls):
            raise DecodeError("an assistant turn must have either non-empty 'content' or non-empty 'tool_calls' (exactly one of them)")

    def to_dict(self) -> Dict[str, Any]:
        out = {"role": self.role, "content": self.content}
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            out["tool_calls"] = [tool_call.to_dict() for tool_call in self.tool_calls]
        return out

    @classmethod
    def from_dict(cls, data: Any) -> "Turn":
        data = _require_object(data, "turn")
        tool_call_id = data.get("tool_call_id", None)
        if tool_call_id is not None and not isinstance(tool_call_id, str):
            raise DecodeError(f"field 'tool_call_id' must be a string, got {type(tool_call_id).__name__}")
        tool_calls = data.get("tool_calls", None)
        if tool_calls is not None:
            if not isinstance(tool_calls, list):
                raise DecodeError(f"field 'tool_calls' must be a list, got {type(tool_calls).__name__}")
            tool_calls = [ToolCallDescriptor.from_dict(item) for item in tool_calls]
        turn = cls(role=_get_str(data, "role"),
                   content=_get_str(data, "content", default=""),
                   tool_call_id=tool_call_id,
                   tool_calls=tool_calls)
        turn.validate()
        return turn

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, Turn):
            return NotImplemented
        return (self.role, self.content, self.tool_call_id, self.tool_calls, self.ui_only) == \
               (other.role, other.content, other.tool_call_id, other.tool_calls, other.ui_only)

    def __repr__(self) -> str:
        extras = []
        if self.tool_call_id is not None:
            extras.append(f", tool_call_id={self.tool_call_id!r}")
        if self.tool_calls is not None:
            extras.append(f", tool_calls={self.tool_calls!r}")
        if self.ui_only:
            extras.append(", ui_only=True")
        return f"Turn(role={self.role!r}, content={self.content!r}{''.join(extras)})"

def turns_to_dicts(turns: List[Turn]) -> List[Dict[str, Any]]:
    """Encode a transcript into its JSON-ready form."""
    return [turn.to_dict() for turn in turns]

# --------------------------------------------------------------------------------
# Protocol messages

class _Message:
    """Base class for tagged protocol messages. Subclasses set `type` and `fields`."""
    type = None
    fields = ()

    def to_dict(self) -> Dict[str, Any]:
        out = {"type": self.type}
        for name in self.fields:
            out[name] = getattr(self, name)
        return out

    def __eq__(self, other: Any) -> bool:
        if type(other) is not type(self):
            return NotImplemented
        return all(getattr(self, name) == getattr(other, name) for name in self.fields)

    def __repr__(self) -> str:
        args = ", ".join(f"{name}={getattr(self, name)!r}" for name in self.fields)
        return f"{type(self).__name__}({args})"


class Text(_Message):
    """A fragment of model output. `done=True` closes the current model round."""
    type = "text"
    fields = ("delta", "done")

    def __init__(self, delta: str, done: bool):
        self.delta = delta
        self.done = done

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Text":
        return cls(delta=_get_str(data, "delta"),
                   done=_get_bool(data, "done"))


class ToolCall(_Message):
    """The model asks the client to run a local tool."""
    type = "tool_call"
    fields = ("id", "name", "arguments")

    def __init__(self, id: str, name: str, arguments: str):
        self.id = id
        self.name = name
        self.arguments = arguments

    def to_descriptor(self) -> ToolCallDescriptor:
        return ToolCallDescriptor(id=self.id, name=self.name, arguments=self.arguments)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolCall":
        return cls(id=_get_str(data, "id"),
                   name=_get_str(data, "name"),
                   arguments=_get_str(data, "arguments"))


class ToolResult(_Message):
    """Output of a tool call, keyed by the id of the call it answers.

    Used in both directions; client -> relay in normal flow.
    """
    type = "tool_result"
    fields = ("id", "content")

    def __init__(self, id: str, content: str):
        self.id = id
        self.content = content

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ToolResult":
        return cls(id=_get_str(data, "id"),
                   content=_get_str(data, "content"))


class ChatRequest(_Message):
    """The client's full conversation so far. The relay adopts `messages` verbatim as its transcript."""
    type = "chat_request"
    fields = ("messages",)

    def __init__(self, messages: List[Turn]):
        self.messages = messages

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type,
                "messages": turns_to_dicts(self.messages)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatRequest":
        messages = data.get("messages", _missing)
        if messages is _missing:
            raise DecodeError("missing field 'messages'")
        if not isinstance(messages, list):
            raise DecodeError(f"field 'messages' must be a list, got {type(messages).__name__}")
        return cls(messages=[Turn.from_dict(item) for item in messages])


_client_message_types = {cls.type: cls for cls in (ChatRequest, ToolResult)}
_stream_chunk_types = {cls.type: cls for cls in (Text, ToolCall, ToolResult)}

# --------------------------------------------------------------------------------
# Codec

def encode(message: _Message) -> str:
    """Serialize a protocol message into one text frame.

    Raises `TypeError` or `ValueError` if the message contains something JSON can't represent.
    """
    return json.dumps(message.to_dict(), ensure_ascii=False)

def _decode(text: str, known_types: Dict[str, type], what: str) -> _Message:
    if isinstance(text, (bytes, bytearray)):
        try:
            text = text.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecodeError(f"frame is not valid UTF-8: {exc}") from exc
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise DecodeError(f"frame is not valid JSON: {exc}") from exc
    data = _require_object(data, what)
    if "type" not in data:
        raise DecodeError(f"{what} is missing the 'type' field")
    type_ = data["type"]
    if not isinstance(type_, str) or type_ not in known_types:
        raise DecodeError(f"unknown {what} type {type_!r}; valid values: {', '.join(sorted(known_types))}")
    return known_types[type_].from_dict(data)

def decode_client_message(text: str) -> _Message:
    """Decode a client -> relay frame into a `ChatRequest` or a `ToolResult`. Raises `DecodeError`."""
    return _decode(text, _client_message_types, "client message")

def decode_stream_chunk(text: str) -> _Message:
    """Decode a relay -> client frame into a `Text`, `ToolCall` or `ToolResult`. Raises `DecodeError`."""
    return _decode(text, _stream_chunk_types, "stream chunk")
