#!/usr/bin/python
"""Parley relay server.

Two listeners:

  - HTTP (Flask, served by waitress): the health probe and the non-streaming chat endpoint.
  - The persistent streaming connection (`parley.server.relay`), where the actual chat sessions,
    including tool-call round-trips, take place.

Both forward to the same upstream LLM (see `parley.server.llmclient`).
"""

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import argparse
import functools
import importlib
import time
import traceback

from colorama import Fore, Style, init as colorama_init

from flask import Flask, jsonify, request, abort
from flask_cors import CORS
from flask_compress import Compress
from waitress import serve

from unpythonic.env import env

from .. import __version__

from ..common import wire
from . import llmclient
from . import relay

# --------------------------------------------------------------------------------
# Inits that must run before we proceed any further

colorama_init()

app = Flask(__name__)
CORS(app)  # allow cross-domain requests
Compress(app)  # compress responses

# will be populated by `init_llm`
llm_settings = None

def init_llm(server_config, model=None) -> env:
    """Set up the upstream LLM connection from `server_config` (a config module). Return the settings.

    `model`: if given, overrides `server_config.llm_model`.
    """
    global llm_settings
    api_key = llmclient.load_api_key(server_config.llm_api_key_file,
                                     getattr(server_config, "llm_api_key_environment_variable", None))
    llm_settings = llmclient.setup(backend_url=server_config.llm_backend_url,
                                   model=model if model else server_config.llm_model,
                                   system_prompt=server_config.llm_system_prompt,
                                   api_key=api_key,
                                   timeout=server_config.llm_request_timeout)
    return llm_settings

# --------------------------------------------------------------------------------
# Web API

@app.before_request
def before_request():
    request.start_time = time.monotonic()

@app.after_request
def after_request(response):
    duration = time.monotonic() - request.start_time
    response.headers["X-Request-Duration"] = str(duration)  # seconds
    return response

@app.route("/health", methods=["GET"])
def health():
    """A simple ping endpoint for clients to check that the server is running.

    No inputs, no outputs - if you get a 200 OK, it means the server heard you.
    """
    return "OK"

@app.route("/api/chat", methods=["POST"])
def api_chat():
    """Non-streaming chat. Send the conversation, get the model's reply in one piece.

    Tool calling is disabled for this endpoint; use the streaming relay for that.

    Input is JSON::

        {"messages": [{"role": "user", "content": "Hello?"},
                      ...]}

    with each message in the same format as in a streaming chat request.

    Output is JSON::

        {"content": "Hi! How can I help?",
         "model": "gpt-4o-mini"}
    """
    if llm_settings is None:
        abort(503, "api_chat: LLM not initialized")

    data = request.get_json(silent=True)
    if not isinstance(data, dict) or "messages" not in data or not isinstance(data["messages"], list):
        abort(400, 'api_chat: "messages" is required and must be a list')
    try:
        history = [wire.Turn.from_dict(item) for item in data["messages"]]
    except wire.DecodeError as exc:
        abort(400, f"api_chat: invalid message: {exc}")

    try:
        content = llmclient.complete(llm_settings, history)
    except Exception as exc:
        traceback.print_exc()
        abort(500, f"api_chat: failed, reason: {type(exc)}: {exc}")
    return jsonify({"content": content,
                    "model": llm_settings.model})

# --------------------------------------------------------------------------------
# Main program

def main():
    parser = argparse.ArgumentParser(prog="Parley-server", description="Relay between the Parley chat client and an OpenAI-compatible LLM, with local tool-call forwarding")
    parser.add_argument('-v', '--version', action='version', version=('%(prog)s ' + __version__))
    parser.add_argument("--config", metavar='some.python.module', default="parley.server.config", type=str, help="Python module containing the server config (default is 'parley.server.config')")
    parser.add_argument("--port", type=int, help="Port for the HTTP endpoints (default is set in the server config module)")
    parser.add_argument("--relay-port", type=int, help="Port for the streaming chat connection (default is set in the server config module)")
    parser.add_argument("--listen", action="store_true", help="Host the app on the local network (if not set, the server is visible to localhost only)")
    parser.add_argument("--model", type=str, help="LLM model name to request from the backend (default is set in the server config module)")
    args = parser.parse_args()

    # Switchable config module. Note this executes user-provided Python code at startup; the server is meant to run in a trusted environment only.
    try:
        server_config = importlib.import_module(args.config)
        print(f"{Fore.GREEN}{Style.BRIGHT}Server config loaded from '{args.config}'.{Style.RESET_ALL}")
    except ModuleNotFoundError:
        print(f"{Fore.RED}{Style.BRIGHT}Server config '{args.config}' (Python module) not found.{Style.RESET_ALL}")
        raise
    try:
        settings = init_llm(server_config, model=args.model)
        relay_path = server_config.relay_path
        relay_max_frame_size = server_config.relay_max_frame_size
        port = args.port if args.port else server_config.default_port
        relay_port = args.relay_port if args.relay_port else server_config.default_relay_port
    except AttributeError:  # very basic sanity check while at it
        print(f"{Fore.RED}{Style.BRIGHT}Server config '{args.config}' (Python module) does not seem to be a Parley server config module.{Style.RESET_ALL}")
        raise
    host = "0.0.0.0" if args.listen else "localhost"

    print(f"{Fore.GREEN}{Style.BRIGHT}Parley-server {__version__}{Style.RESET_ALL}: model '{settings.model}' at {settings.backend_url}")
    if "Authorization" not in settings.headers:
        print(f"{Fore.YELLOW}{Style.BRIGHT}No LLM API key found.{Style.RESET_ALL} Sending requests without authorization (put the key in '{server_config.llm_api_key_file}').")

    relay.start_relay_server(host, relay_port,
                             completion=functools.partial(llmclient.stream_completion, settings),
                             path=relay_path,
                             max_frame_size=relay_max_frame_size)
    where = "all IPv4 addresses" if args.listen else "localhost"
    print(f"{Fore.GREEN}{Style.BRIGHT}Streaming chat on ws://{host}:{relay_port}{relay_path}{Style.RESET_ALL}")
    print(f"{Fore.GREEN}{Style.BRIGHT}Starting HTTP server on port {port}{Style.RESET_ALL}")
    print(f"{Fore.GREEN}{Style.BRIGHT}Listening for connections from {where}{Style.RESET_ALL}")
    serve(app, host=host, port=port)

if __name__ == "__main__":
    main()
