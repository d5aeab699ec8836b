"""Conversation log: an append-only JSONL diagnostic trail, one file per chat session.

Each line is one JSON object::

    {"timestamp": "2025-06-01T12:34:56.789012+00:00",
     "entry_type": {"type": "UserMessage", "content": "..."}}

Entry types:

    UserMessage{content}, AssistantMessage{content}, SystemMessage{content}, ToolInfo{content},
    ToolCall{id, name, arguments}, ToolResult{id, content}

This is not a resumable store, and nothing reads it back. Writing is best-effort: a failed write
is logged, and the chat goes on.
"""

__all__ = ["ConversationLogger"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import datetime
import json
import pathlib
import threading
from typing import Any, Dict, Optional, Union

from ..common import wire
from .conversation import toolinfo_marker

class ConversationLogger:
    def __init__(self, log_dir: Union[str, pathlib.Path], now: Optional[datetime.datetime] = None):
        """Log one chat session into a new file in `log_dir` (created if needed).

        `now`: timestamp for the filename; default is the current local time.
        """
        if now is None:
            now = datetime.datetime.now()
        self.log_dir = pathlib.Path(log_dir).expanduser().resolve()
        self.path = self.log_dir / f"conversation_{now.strftime('%Y%m%d_%H%M%S')}.jsonl"
        self.lock = threading.Lock()
        logger.info(f"ConversationLogger.__init__: logging conversation to '{str(self.path)}'.")

    def log_turn(self, turn: wire.Turn) -> None:
        """Log a transcript turn, classified by role (and for system turns, by content)."""
        if turn.role == "user":
            self._write({"type": "UserMessage", "content": turn.content})
        elif turn.role == "assistant":
            self._write({"type": "AssistantMessage", "content": turn.content})
        elif turn.role == "system" and turn.content.startswith(toolinfo_marker):
            self._write({"type": "ToolInfo", "content": turn.content})
        elif turn.role == "system":
            self._write({"type": "SystemMessage", "content": turn.content})
        else:  # tool turns are logged via `log_tool_result`
            self._write({"type": "ToolResult", "id": turn.tool_call_id, "content": turn.content})

    def log_tool_call(self, id: str, name: str, arguments: str) -> None:
        self._write({"type": "ToolCall", "id": id, "name": name, "arguments": arguments})

    def log_tool_result(self, id: str, content: str) -> None:
        self._write({"type": "ToolResult", "id": id, "content": content})

    def _write(self, entry_type: Dict[str, Any]) -> None:
        record = {"timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                  "entry_type": entry_type}
        try:
            line = json.dumps(record, ensure_ascii=False)
            with self.lock:
                self.log_dir.mkdir(parents=True, exist_ok=True)
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(f"{line}\n")
        except (OSError, TypeError, ValueError) as exc:
            logger.warning(f"ConversationLogger._write: failed to write log entry, skipping it: {type(exc)}: {exc}")
