"""Background execution of local tool calls.

One task per tool call, on a thread pool. The result is posted into the client's mailbox,
so that the conversation state machine (which lives on the UI thread) picks it up in order
with everything else.

Each task gets a cooperative `cancelled` flag, checked at tool entry. `clear` sets the flag on all
tracked tasks and drops the ones still queued; a tool that is already running is orphaned, not interrupted.
"""

__all__ = ["ToolRunner", "event_tool_done"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import concurrent.futures
import queue
import threading
import traceback
from typing import Callable, Optional

from unpythonic import gensym, sym
from unpythonic.symbol import gsym
from unpythonic.env import env

from ..common import wire

event_tool_done = sym("tool_done")  # posted as `(event_tool_done, tool_call_id, result_text)`

class ToolRunner:
    def __init__(self, name: str,
                 execute: Callable[[str, str], str],
                 mailbox: queue.Queue,
                 executor: Optional[concurrent.futures.Executor] = None):
        """Run tool calls in the background.

        `name`: for task names in log messages.
        `execute`: 2-argument callable `(tool_name, arguments_json) -> result_text`, e.g. a partial of `parley.client.tools.execute`.
        `mailbox`: where to post `(event_tool_done, tool_call_id, result_text)` when a tool finishes.
        `executor`: `concurrent.futures.ThreadPoolExecutor` or something duck-compatible with it.
                    If not provided, one is instantiated automatically.
        """
        if executor is None:
            executor = concurrent.futures.ThreadPoolExecutor(thread_name_prefix=name)
        self.name = name
        self.execute = execute
        self.mailbox = mailbox
        self.executor = executor
        self.tasks = {}  # task name (unique) -> (future, env)
        self.lock = threading.RLock()

    def submit(self, tool_call: wire.ToolCall) -> gsym:
        """Start running `tool_call` in the background. Return the unique task name."""
        with self.lock:
            task_env = env(task_name=gensym(f"{self.name}_task"),
                           cancelled=False,
                           tool_call=tool_call)
            future = self.executor.submit(self._run, task_env)
            self.tasks[task_env.task_name] = (future, task_env)
            future.add_done_callback(self._done_callback)
            logger.info(f"ToolRunner.submit: instance '{self.name}': task '{task_env.task_name}' submitted for tool call {tool_call.id} ('{tool_call.name}').")
            return task_env.task_name

    def has_tasks(self) -> bool:
        with self.lock:
            return len(self.tasks) > 0

    def _run(self, task_env: env) -> None:
        if task_env.cancelled:
            logger.info(f"ToolRunner._run: instance '{self.name}': task '{task_env.task_name}' cancelled before start.")
            return
        tool_call = task_env.tool_call
        result = self.execute(tool_call.name, tool_call.arguments)
        if task_env.cancelled:  # orphaned while running; nobody is listening anymore
            logger.info(f"ToolRunner._run: instance '{self.name}': task '{task_env.task_name}' finished after cancellation, discarding result.")
            return
        self.mailbox.put((event_tool_done, tool_call.id, result))

    def _done_callback(self, future: concurrent.futures.Future) -> None:
        # Avoid silently swallowing exceptions from background tasks
        try:
            exc = future.exception()  # the future exited already, so we don't need to set a timeout
        except concurrent.futures.CancelledError:
            pass
        else:
            if exc is not None:
                logger.error(f"ToolRunner._done_callback: instance '{self.name}': future '{future}' exited with exception {type(exc)}: {exc}")
                logger.error("".join(traceback.format_exception(exc)))
        with self.lock:
            for task_name, (f, task_env) in list(self.tasks.items()):
                if f is future:
                    self.tasks.pop(task_name)
                    if _exited_with_exception(future) and not task_env.cancelled:
                        # Still answer the tool call, so the conversation doesn't hang waiting for it.
                        tool_call = task_env.tool_call
                        self.mailbox.put((event_tool_done, tool_call.id, f"Tool call failed. Function '{tool_call.name}' crashed: {future.exception()}"))
                    break

    def clear(self) -> None:
        """Cancel all tasks. Queued tasks never start; running ones are orphaned (their results are discarded)."""
        logger.info(f"ToolRunner.clear: instance '{self.name}': cancelling all tasks.")
        with self.lock:
            for future, task_env in self.tasks.values():
                task_env.cancelled = True
                future.cancel()
            self.tasks.clear()

def _exited_with_exception(future: concurrent.futures.Future) -> bool:
    """Return whether `future` (which must be done) exited with an exception."""
    if future.cancelled():
        return False
    return future.exception() is not None
