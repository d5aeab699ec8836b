"""LLM client for the Parley relay: the completion capability.

Talks to any OpenAI-compatible `/v1/chat/completions` endpoint, in streaming mode, and turns
the server-sent events into a flat stream of Parley events:

  - `parley.common.wire.Text(delta, done=False)` for each text fragment,
  - `parley.common.wire.ToolCall(id, name, arguments)` for each tool call the model requested,
  - one final `RoundEnd(finish_reason)`.

The relay session (`parley.server.session`) consumes this stream; it doesn't care where it comes from.
"""

__all__ = ["RoundEnd",
           "tool_specs",
           "load_api_key",
           "setup",
           "to_openai_messages",
           "stream_completion",
           "complete"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import copy
import io
import json
import os
import pathlib
from typing import Any, Dict, Iterator, List, Optional, Union

import requests
import sseclient  # pip install sseclient-py

from unpythonic import timer
from unpythonic.env import env

from ..common import wire

class RoundEnd:
    """End-of-round marker. `finish_reason` is as reported by the backend (e.g. "stop", "tool_calls"), or `None`."""
    def __init__(self, finish_reason: Optional[str]):
        self.finish_reason = finish_reason
    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, RoundEnd):
            return NotImplemented
        return self.finish_reason == other.finish_reason
    def __repr__(self) -> str:
        return f"RoundEnd(finish_reason={self.finish_reason!r})"

# Tools (functions) the model may call. These are executed on the CLIENT side (see `parley.client.tools`);
# the relay only advertises them and forwards the calls.
tool_specs = [
    {"type": "function",
     "function": {"name": "read_file",
                  "description": "Read a file and return the contents",
                  "parameters": {"type": "object",
                                 "required": ["filename"],
                                 "properties": {"filename": {"type": "string",
                                                             "description": "Absolute or workspace-relative path of the file to read"}}}}},
    {"type": "function",
     "function": {"name": "grep",
                  "description": "Search for content in files using regex patterns",
                  "parameters": {"type": "object",
                                 "required": ["search_term", "filter"],
                                 "properties": {"search_term": {"type": "string",
                                                                "description": "Search term (can be a regex pattern)"},
                                                "filter": {"type": "string",
                                                           "description": "File filter pattern (e.g., 'src/**/*.py', '*.txt')"},
                                                "context_lines": {"type": "integer",
                                                                  "description": "Number of lines to show before and after each match",
                                                                  "default": 2}}}}},
]

# --------------------------------------------------------------------------------
# Setup

def load_api_key(api_key_file: Union[str, pathlib.Path],
                 environment_variable: Optional[str] = None) -> Optional[str]:
    """Read the LLM API key from `api_key_file`, falling back to `environment_variable`.

    Return `None` if neither provides a key.
    """
    if os.path.exists(api_key_file):
        with open(api_key_file, "r", encoding="utf-8") as f:
            api_key = f.read().strip()
        if api_key:
            logger.info(f"load_api_key: Using LLM API key from '{str(api_key_file)}'.")
            return api_key
    if environment_variable is not None:
        api_key = os.environ.get(environment_variable, "").strip()
        if api_key:
            logger.info(f"load_api_key: Using LLM API key from environment variable '{environment_variable}'.")
            return api_key
    logger.info("load_api_key: No LLM API key configured. Sending requests without authorization.")
    return None

def setup(backend_url: str,
          model: str,
          system_prompt: str,
          api_key: Optional[str] = None,
          timeout: Optional[float] = None) -> env:
    """Prepare to talk to the LLM at `backend_url`.

    Return an `unpythonic.env.env` object (a fancy namespace) populated with the following fields:

        `backend_url: str`: The `backend_url` argument, trailing slash stripped.

        `model: str`: The model name, sent in every request.

        `system_prompt: str`: Prepended to every request as a "system" message.

        `headers: Dict[str, str]`: HTTP headers for LLM requests (including authorization, if `api_key` was given).

        `tools: List[Dict[str, Any]]`: JSON specifications of the tools the model may call.

        `request_data: Dict[str, Any]`: Template for the chat completion request body.
                                        The messages are filled in by `stream_completion`.

        `timeout: Optional[float]`: Network timeout for `requests`, in seconds.
    """
    headers = {"Content-Type": "application/json"}
    if api_key is not None:
        headers["Authorization"] = f"Bearer {api_key}"

    request_data = {
        "model": model,
        "stream": True,  # Send each token to us as soon as it is available. We forward them to the client as they arrive.
        "messages": [],  # Populated later by `stream_completion`.
        "tools": tool_specs,
    }

    return env(backend_url=backend_url.rstrip("/"),
               model=model,
               system_prompt=system_prompt,
               headers=headers,
               tools=tool_specs,  # for inspection
               request_data=request_data,
               timeout=timeout)

# --------------------------------------------------------------------------------
# Transcript conversion

def to_openai_messages(system_prompt: Optional[str], history: List[wire.Turn]) -> List[Dict[str, Any]]:
    """Convert a Parley transcript into the OpenAI chat message format, with `system_prompt` prepended (if given)."""
    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    for turn in history:
        message = {"role": turn.role,
                   "content": turn.content}
        if turn.tool_calls:
            if not turn.content:
                message["content"] = None  # OpenAI wants `null`, not "", when the assistant only calls tools.
            message["tool_calls"] = [{"id": tool_call.id,
                                      "type": "function",
                                      "function": {"name": tool_call.name,
                                                   "arguments": tool_call.arguments}}
                                     for tool_call in turn.tool_calls]
        if turn.tool_call_id is not None:
            message["tool_call_id"] = turn.tool_call_id
        messages.append(message)
    return messages

# --------------------------------------------------------------------------------
# The most important function - call LLM, parse result

def stream_completion(settings: env,
                      history: List[wire.Turn],
                      tools_enabled: bool = True) -> Iterator[Any]:
    """Invoke the LLM with the given transcript, yielding events as they arrive.

    `settings`: Obtain this by calling `setup()` at app start time.

    `history`: The transcript, a list of `parley.common.wire.Turn`. Not modified.

    `tools_enabled`: Whether the LLM is allowed to call tools. The non-streaming HTTP endpoint disables them.

    Yields:

        `Text(delta, done=False)`: one for each non-empty text fragment.

        `ToolCall(id, name, arguments)`: when the backend finishes the round with `finish_reason="tool_calls"`,
                                         one for each tool call, in the order the model listed them.

        `RoundEnd(finish_reason)`: always last, unless an exception is raised.

    Raises `RuntimeError` if the backend returns an HTTP error or reports an error inside the stream.
    Network problems propagate as `requests` exceptions.
    """
    data = copy.deepcopy(settings.request_data)
    data["messages"] = to_openai_messages(settings.system_prompt, history)
    if tools_enabled:
        logger.debug("stream_completion: Tool calling is enabled. Providing tool specifications in request.")
    else:
        logger.debug("stream_completion: Tool calling is disabled. Stripping tool specifications from request.")
        data.pop("tools")

    logger.info(f"stream_completion: Sending {len(history)} turn(s) to model '{settings.model}'.")
    stream_response = requests.post(f"{settings.backend_url}/v1/chat/completions",
                                    headers=settings.headers,
                                    json=data,
                                    stream=True,
                                    timeout=settings.timeout)

    if stream_response.status_code != 200:  # not "200 OK"?
        logger.error(f"stream_completion: LLM server returned error: {stream_response.status_code} {stream_response.reason}. Content of error response follows.")
        logger.error(stream_response.text)
        raise RuntimeError(f"While calling LLM: HTTP {stream_response.status_code} {stream_response.reason}")

    client = sseclient.SSEClient(stream_response)

    # Streamed tool calls arrive in fragments, keyed by their index in the final list:
    # the first fragment carries the id and the function name, the following ones carry more of the arguments.
    pending_tool_calls = {}  # index -> env(id, name, arguments: StringIO)
    finish_reason = None
    n_chunks = 0
    try:
        with timer() as tim:
            for event in client.events():
                if event.data.strip() == "[DONE]":
                    break
                try:
                    payload = json.loads(event.data)
                except json.JSONDecodeError as exc:
                    logger.warning(f"stream_completion: skipping undecodable event: {exc}. Data: {event.data!r}")
                    continue
                if "error" in payload:
                    logger.error(f"stream_completion: LLM server reported error inside stream. Data: {payload}")
                    error = payload["error"]
                    message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                    raise RuntimeError(f"While calling LLM: {message}")
                choices = payload.get("choices") or []
                if not choices:  # e.g. a final usage-only chunk
                    continue
                choice = choices[0]
                delta = choice.get("delta") or {}

                chunk = delta.get("content")
                if chunk:
                    n_chunks += 1
                    yield wire.Text(chunk, False)

                for fragment in delta.get("tool_calls") or []:
                    index = int(fragment.get("index", 0))  # some backends send the index as a string
                    if index not in pending_tool_calls:
                        pending_tool_calls[index] = env(id="", name="", arguments=io.StringIO())
                    record = pending_tool_calls[index]
                    if fragment.get("id"):
                        record.id = fragment["id"]
                    function = fragment.get("function") or {}
                    if function.get("name"):
                        record.name = function["name"]
                    if function.get("arguments"):
                        record.arguments.write(function["arguments"])

                if choice.get("finish_reason"):
                    finish_reason = choice["finish_reason"]
                    if finish_reason == "tool_calls":
                        for index in sorted(pending_tool_calls.keys()):
                            record = pending_tool_calls[index]
                            logger.info(f"stream_completion: Model requested tool call {record.id}: '{record.name}'.")
                            yield wire.ToolCall(record.id, record.name, record.arguments.getvalue())
                        pending_tool_calls.clear()
    except requests.exceptions.ChunkedEncodingError as exc:
        logger.error(f"stream_completion: Connection lost. Please check if your LLM backend is still alive (was at {settings.backend_url}). Original error message follows.")
        logger.error(f"{type(exc)}: {exc}")
        raise
    finally:
        client.close()

    logger.info(f"stream_completion: Round finished ({finish_reason}), {n_chunks} text chunk(s) in {tim.dt:0.2f}s.")
    yield RoundEnd(finish_reason)

def complete(settings: env, history: List[wire.Turn]) -> str:
    """Non-streaming convenience: run one round with tools disabled, return the concatenated text."""
    output = io.StringIO()
    for event in stream_completion(settings, history, tools_enabled=False):
        if isinstance(event, wire.Text):
            output.write(event.delta)
    return output.getvalue()
