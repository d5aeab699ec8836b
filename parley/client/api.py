"""Python bindings for the HTTP side of the Parley relay.

For what the endpoints do, see the server side in `parley.server.app`. The naming convention is:

  - Client API function: `chat` (in `parley.client.api`)
  - Server-side function: `api_chat` (in `parley.server.app`)
  - Web API endpoint: "/api/chat"

The streaming chat (with tool calls) does not go through here; see `parley.client.connection`.
"""

__all__ = ["relay_available",
           "chat",
           "yell_on_error"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import requests
from typing import List

from unpythonic.env import env

from ..common import wire

def yell_on_error(response: requests.Response) -> None:
    if response.status_code != 200:
        logger.error(f"Parley relay returned error: {response.status_code} {response.reason}. Content of error response follows.")
        logger.error(response.text)
        raise RuntimeError(f"While calling Parley relay: HTTP {response.status_code} {response.reason}")

def relay_available(relay_url: str) -> bool:
    """Return whether the Parley relay at `relay_url` (the HTTP side) is up."""
    try:
        response = requests.get(f"{relay_url}/health", timeout=5)
    except requests.exceptions.RequestException as exc:  # refused, timed out, ...
        logger.error(f"relay_available: {type(exc)}: {exc}")
        return False
    if response.status_code != 200:
        return False
    return True

def chat(relay_url: str, messages: List[wire.Turn], timeout: float = 300.0) -> env:
    """Non-streaming chat: send `messages` (a transcript), wait for the whole reply.

    Tool calls are not available in this mode.

    `timeout`: seconds to wait for the relay; the model may take a while to write the whole reply.

    Returns an `unpythonic.env.env` with attributes `content: str` (the model's reply)
    and `model: str` (which model produced it).
    """
    data = {"messages": wire.turns_to_dicts(messages)}
    response = requests.post(f"{relay_url}/api/chat", json=data, timeout=timeout)
    yell_on_error(response)
    output_data = response.json()
    return env(content=output_data["content"],
               model=output_data["model"])
