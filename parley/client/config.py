"""Client-side config for the Parley chat client."""

import pathlib

from .. import config as global_config

client_userdata_dir = global_config.userdata_dir / "client"

# --------------------------------------------------------------------------------

# Where to reach the Parley relay.
#
# `relay_url` is the HTTP side (health probe, non-streaming chat).
# `relay_ws_url` is the persistent streaming connection, where the actual chat happens.
#
# See `parley.server.config` for the default ports.
#
relay_url = "http://127.0.0.1:3000"
relay_ws_url = "ws://127.0.0.1:3001/ws/chat"

# Seconds to wait between losing the connection (or failing to connect) and the next connection attempt.
# The client retries forever.
reconnect_delay = 2.0

# Largest frame, in bytes, accepted from the relay. Keep in sync with `parley.server.config.relay_max_frame_size`.
relay_max_frame_size = 64 * 1024 * 1024

# One JSONL file per chat session is written here. Use `--no-log` on the command line to disable.
conversation_log_dir = client_userdata_dir / "conversation_logs"

# The client's own log messages go here, so that they don't mess up the chat display.
client_log_file = client_userdata_dir / "parley-chat.log"

# User input history (GNU readline).
input_history_file = client_userdata_dir / "history"

# The directory the local tools (`read_file`, `grep`) operate in. Relative paths from the model are resolved against this.
#
# NOTE: This is evaluated when the config module is first imported. Override on the command line with `--workspace`.
#
workspace_dir = pathlib.Path.cwd()

# Soft line wrap for streamed model output, in characters.
line_wrap_width = 160
