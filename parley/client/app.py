"""Parley terminal chat client.

Chat with an LLM through the Parley relay. The model can read files and search in the workspace
directory (by default, the current working directory); these tool calls run locally, on this machine.

Threads:

  - main thread: the UI loop. Owns the conversation state, prints everything, and dispatches mailbox messages.
  - input thread: reads a line with GNU readline when the UI loop asks for one.
  - connection thread(s): see `parley.client.connection`.
  - tool threads: see `parley.client.toolrunner`.

All of them talk to the UI loop via one mailbox queue.
"""

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import argparse
import atexit
import functools
import pathlib
import queue
import sys
import threading

import requests

from mcpyrate import colorizer

from unpythonic import sym

from .. import __version__

from ..common import wire
from . import api
from . import config as client_config
from . import connection as connection_module
from . import conversation as conversation_module
from . import convlog as convlog_module
from . import tools
from . import toolrunner as toolrunner_module

event_input = sym("input")
event_quit = sym("quit")

def bright(text: str) -> str:
    return colorizer.colorize(text, colorizer.Style.BRIGHT)

_status_colors = {connection_module.status_connected: colorizer.Fore.GREEN,
                  connection_module.status_connecting: colorizer.Fore.YELLOW,
                  connection_module.status_disconnected: colorizer.Fore.YELLOW,
                  connection_module.status_error: colorizer.Fore.RED}

def format_status(status: connection_module.ConnectionStatus) -> str:
    return colorizer.colorize(f"● {status}", colorizer.Style.BRIGHT, _status_colors[status.state])

def format_turn(turn: wire.Turn) -> str:
    """Format a transcript turn for `!history`."""
    role = turn.role.capitalize()
    if turn.ui_only:
        heading = colorizer.colorize(f"[{role}, not sent]", colorizer.Style.DIM)
    elif turn.role == "user":
        heading = colorizer.colorize(f"[{role}]", colorizer.Style.BRIGHT, colorizer.Fore.CYAN)
    else:
        heading = colorizer.colorize(f"[{role}]", colorizer.Style.BRIGHT, colorizer.Fore.GREEN)
    return f"{heading} {turn.content}"

def setup_logging(log_file: pathlib.Path) -> None:
    """Send log messages to `log_file`, so that they don't mess up the chat display."""
    log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(level=logging.INFO, filename=str(log_file), force=True)

def one_shot(relay_url: str, text: str) -> int:
    """Ask one question via the non-streaming endpoint, print the answer. Return exit code."""
    if not api.relay_available(relay_url):
        print(colorizer.colorize(f"Cannot connect to Parley relay at {relay_url}.", colorizer.Style.BRIGHT, colorizer.Fore.RED) + " Is the server running?")
        return 255
    try:
        result = api.chat(relay_url, [wire.Turn(role="user", content=text)])
    except (RuntimeError, requests.exceptions.RequestException) as exc:
        print(colorizer.colorize(f"{exc}", colorizer.Style.BRIGHT, colorizer.Fore.RED))
        return 1
    print(result.content)
    print(colorizer.colorize(f"[{result.model}]", colorizer.Style.DIM))
    return 0

def chat_client(relay_url: str, ws_url: str, workspace_dir: pathlib.Path, enable_conversation_log: bool) -> None:
    """Interactive chat over the streaming connection."""
    mailbox = queue.Queue()

    # Main program
    if api.relay_available(relay_url):
        print(colorizer.colorize(f"Parley relay is up at {relay_url}", colorizer.Style.BRIGHT, colorizer.Fore.GREEN))
    else:
        print(colorizer.colorize(f"WARNING: Cannot reach Parley relay at {relay_url}", colorizer.Style.BRIGHT, colorizer.Fore.YELLOW))
        print("Will keep trying to connect in the background.")
    print(f"    {bright('Streaming chat')}: {ws_url}")
    print(f"    {bright('Workspace')}: {str(workspace_dir)} (the model can read and search files here)")

    convlog = None
    if enable_conversation_log:
        convlog = convlog_module.ConversationLogger(client_config.conversation_log_dir)
        print(f"    {bright('Conversation log')}: {str(convlog.path)}")
    print(f"    {bright('Client log')}: {str(client_config.client_log_file)}")
    print()

    toolbox = tools.setup(workspace_dir)
    toolrunner = toolrunner_module.ToolRunner(name="parley_tools",
                                              execute=functools.partial(tools.execute, toolbox),
                                              mailbox=mailbox)

    connection = connection_module.ConnectionManager(ws_url,
                                                     inbox=mailbox,
                                                     reconnect_delay=client_config.reconnect_delay,
                                                     max_frame_size=client_config.relay_max_frame_size)
    connection.subscribe(mailbox)

    chars = 0
    def on_progress(delta: str) -> None:
        nonlocal chars
        if chars == 0 and not delta.strip():
            return
        chars += len(delta)
        if "\n" in delta:
            chars = len(delta) - delta.rfind("\n") - 1
        elif chars >= client_config.line_wrap_width:
            print()
            chars = 0
        print(delta, end="")
        sys.stdout.flush()

    def on_turn(turn: wire.Turn) -> None:
        nonlocal chars
        if turn.role == "user":  # the user already sees what they typed
            return
        if turn.role == "assistant" and not turn.ui_only:  # already streamed via `on_progress`
            print()
            print()
            chars = 0
            return
        if chars:
            print()
            chars = 0
        if turn.role == "assistant":  # tool call annotation
            print(colorizer.colorize(turn.content, colorizer.Style.DIM, colorizer.Fore.CYAN))
        elif turn.content.startswith(conversation_module.error_marker):
            print(colorizer.colorize(turn.content, colorizer.Style.BRIGHT, colorizer.Fore.RED))
            print()
        else:
            print(colorizer.colorize(turn.content, colorizer.Style.DIM, colorizer.Fore.YELLOW))

    conversation = conversation_module.Conversation(send=connection.send,
                                                    run_tool=toolrunner.submit,
                                                    on_progress=on_progress,
                                                    on_turn=on_turn,
                                                    convlog=convlog)

    import readline  # noqa: F401, side effect: enable GNU readline in builtin input()
    history_file = client_config.input_history_file
    try:
        readline.read_history_file(history_file)
    except FileNotFoundError:
        pass
    def persist() -> None:
        history_file.parent.mkdir(parents=True, exist_ok=True)
        readline.set_history_length(1000)
        readline.write_history_file(history_file)
    atexit.register(persist)

    def chat_show_help() -> None:
        print(bright("=" * 80))
        print("    parley-chat - terminal chat client for the Parley relay.")
        print()
        print("    Special commands:")
        print("        !clear    - Start new chat")
        print("        !history  - Print the transcript (including local annotations, which are not sent to the model)")
        print("        !status   - Show connection status")
        print("        !log      - Show where the conversation log is")
        print("        !help     - Show this message again")
        print()
        print("    Press Ctrl+D to exit chat.")
        print(bright("=" * 80))
        print()
    chat_show_help()

    # Input happens on a separate thread, so that the UI loop can keep handling streamed chunks and status changes.
    # The UI loop asks for input only when the conversation is idle.
    input_wanted = threading.Event()
    def input_loop() -> None:
        while True:
            input_wanted.wait()
            input_wanted.clear()
            try:
                text = input(colorizer.colorize("You: ", colorizer.Style.BRIGHT, colorizer.Fore.CYAN))
            except (EOFError, KeyboardInterrupt):
                mailbox.put((event_quit,))
                return
            mailbox.put((event_input, text))
    input_thread = threading.Thread(target=input_loop, name="parley-input", daemon=True)

    def handle_command(text: str) -> bool:
        """Handle a special command. Return whether `text` was one."""
        if text == "!help":
            chat_show_help()
        elif text == "!clear":
            toolrunner.clear()
            conversation.clear()
            print(bright("Starting new chat session."))
            print()
        elif text == "!history":
            print(bright("Chat history:"))
            print(bright("=" * 80))
            for turn in conversation.transcript:
                print(format_turn(turn))
                print()
            print(bright("=" * 80))
            print()
        elif text == "!status":
            print(format_status(connection.status))
            print()
        elif text == "!log":
            if convlog is not None:
                print(f"Conversation log: {str(convlog.path)}")
            else:
                print("Conversation logging is disabled (--no-log).")
            print()
        elif text.startswith("!") and len(text.split("\n")) == 1:
            print(f"Unrecognized command '{text}'; use `!help` for available commands.")
            print()
        else:
            return False
        return True

    connection.start()
    input_thread.start()
    waiting_for_input = False
    try:
        while True:
            if not waiting_for_input and not conversation.is_busy():
                waiting_for_input = True
                input_wanted.set()

            message = mailbox.get()
            kind = message[0]
            if kind is event_quit:
                break
            elif kind is event_input:
                waiting_for_input = False
                text = message[1]
                if handle_command(text.strip()):
                    continue
                if conversation.submit(text):
                    print()
                    print(colorizer.colorize("AI:", colorizer.Style.BRIGHT, colorizer.Fore.GREEN))
            elif kind is connection_module.event_chunk:
                conversation.handle_chunk(message[1])
            elif kind is connection_module.event_status:
                status = message[1]
                if waiting_for_input:
                    print()
                print(format_status(status))
                if status.state is connection_module.status_disconnected and conversation.is_busy():
                    # The relay forgets the round when the connection goes; don't wait for it.
                    conversation.abandon("Error: Connection to the relay lost; the reply was interrupted.")
            elif kind is toolrunner_module.event_tool_done:
                _, tool_call_id, result = message
                conversation.handle_tool_done(tool_call_id, result)
            else:
                logger.warning(f"chat_client: unknown mailbox message {message!r}")
    except KeyboardInterrupt:
        pass
    print()
    print(bright("Exiting chat."))
    print()
    toolrunner.clear()  # orphan any running tools
    connection.close()

def main() -> None:
    parser = argparse.ArgumentParser(description="""Terminal chat client for the Parley relay, with local file reading and search tools for the model.""",
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument('-v', '--version', action='version', version=('%(prog)s ' + __version__))
    parser.add_argument(dest="relay_url", nargs="?", default=client_config.relay_url, type=str, metavar="url", help=f"HTTP address of the Parley relay (default, currently '{client_config.relay_url}', is set in `parley/client/config.py`)")
    parser.add_argument("--ws-url", type=str, default=client_config.relay_ws_url, help=f"address of the streaming chat connection (default '{client_config.relay_ws_url}')")
    parser.add_argument("--workspace", type=str, default=None, help="directory the model's tools operate in (default: current working directory)")
    parser.add_argument("--once", type=str, metavar="TEXT", default=None, help="ask one question without tools via the non-streaming endpoint, print the answer, and exit")
    parser.add_argument("--no-log", action="store_true", help="don't write a conversation log")
    opts = parser.parse_args()

    if opts.once is not None:
        sys.exit(one_shot(opts.relay_url, opts.once))

    setup_logging(client_config.client_log_file)
    logger.info(f"parley-chat {__version__} starting.")
    workspace_dir = pathlib.Path(opts.workspace if opts.workspace else client_config.workspace_dir).expanduser().resolve()
    if not workspace_dir.is_dir():
        print(colorizer.colorize(f"Workspace '{str(workspace_dir)}' is not a directory.", colorizer.Style.BRIGHT, colorizer.Fore.RED))
        sys.exit(2)
    chat_client(opts.relay_url, opts.ws_url, workspace_dir, enable_conversation_log=not opts.no_log)

if __name__ == "__main__":
    main()
