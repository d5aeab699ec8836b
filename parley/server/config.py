"""Parley relay configuration.

This is the default config module. A different one can be selected on the command line
when starting the server: `parley-server --config some.python.module`.
"""

from .. import config as global_config

# Where to store server-side files. Currently only the LLM API key lives here.
server_userdata_dir = global_config.userdata_dir / "server"

# The port the HTTP endpoints (health probe, non-streaming chat) listen on. Can be overridden on the command line.
default_port = 3000

# The port the persistent streaming connection listens on. Can be overridden on the command line.
#
# The client connects to `ws://<host>:<relay port><relay_path>`.
#
default_relay_port = 3001
relay_path = "/ws/chat"

# Largest frame, in bytes, accepted on the streaming connection. A chat request carries the whole history, and a
# tool result can carry a whole file (up to 1 MiB of text, more after JSON escaping), so this must stay well above that.
# The client has the same setting; see `parley.client.config`. `None` means no limit.
#
relay_max_frame_size = 64 * 1024 * 1024

# --------------------------------------------------------------------------------
# Upstream LLM

# Any OpenAI-compatible backend works. For a local model, point this at e.g. oobabooga or llama.cpp server,
# such as "http://127.0.0.1:5000".
#
llm_backend_url = "https://api.openai.com"

# Model name, sent as-is in every completion request. Can be overridden on the command line.
llm_model = "gpt-4o-mini"

# API key for the LLM backend.
#
# If this file exists, its content (whitespace stripped) is sent as a Bearer token.
# If it doesn't, the `OPENAI_API_KEY` environment variable is used instead, if set.
# If neither is available, requests are sent without an "Authorization" header (fine for most local backends).
#
llm_api_key_file = server_userdata_dir / "api_key.txt"
llm_api_key_environment_variable = "OPENAI_API_KEY"

# Prepended to every upstream request. Never stored in the conversation transcript.
llm_system_prompt = ("You are a coding assistant. Your goal is to complete the coding task given to you by USER.\n"
                     "You can and should use provided tools to complete the task.")

# Seconds. Passed to `requests` as the connect/read timeout of the streaming completion call.
llm_request_timeout = 120.0
