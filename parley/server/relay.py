"""The persistent streaming connection endpoint of the Parley relay.

One `parley.server.session.RelaySession` per client connection. The connection's handler thread
reads frames in arrival order and feeds them to the session; the session writes its frames back
on the same connection.
"""

__all__ = ["make_relay_server", "start_relay_server"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import threading
import urllib.parse
from typing import Any, Callable, Iterable, List, Optional

from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode
from websockets.sync.server import Server, ServerConnection, serve

from ..common import wire
from .session import RelaySession

def make_relay_server(host: str,
                      port: int,
                      completion: Callable[[List[wire.Turn]], Iterable[Any]],
                      path: str = "/ws/chat",
                      max_frame_size: Optional[int] = 64 * 1024 * 1024) -> Server:
    """Create (but don't start) the relay server.

    `completion`: the completion capability, passed to each `RelaySession`.
    `path`: the only accepted request path. Connections to anything else are closed
            with a policy-violation close code.
    `max_frame_size`: largest inbound frame accepted, in bytes; `None` for no limit. A larger frame
                      would make the connection close, taking the session with it.

    Call `.serve_forever()` on the result to start serving, `.shutdown()` to stop.
    The actual bound port is `server.socket.getsockname()[1]` (useful with `port=0`).
    """
    def handler(connection: ServerConnection) -> None:
        remote = connection.remote_address
        requested_path = urllib.parse.urlsplit(connection.request.path).path
        if requested_path != path:
            logger.warning(f"relay: {remote}: rejecting connection to unknown path '{requested_path}'.")
            connection.close(code=CloseCode.POLICY_VIOLATION, reason=f"unknown path '{requested_path}'")
            return

        logger.info(f"relay: {remote}: client connected.")
        session = RelaySession(completion=completion,
                               send=connection.send,
                               name=str(remote))
        try:
            for frame in connection:
                session.handle_frame(frame)
        except ConnectionClosed as exc:
            logger.info(f"relay: {remote}: connection closed: {exc}")
        finally:
            logger.info(f"relay: {remote}: client disconnected (session state was {session.state}, transcript {len(session.transcript)} turn(s)).")

    return serve(handler, host, port, max_size=max_frame_size)

def start_relay_server(host: str,
                       port: int,
                       completion: Callable[[List[wire.Turn]], Iterable[Any]],
                       path: str = "/ws/chat",
                       max_frame_size: Optional[int] = 64 * 1024 * 1024) -> Server:
    """Create the relay server and start serving it in a daemon thread. Return the server."""
    server = make_relay_server(host, port, completion, path, max_frame_size)
    thread = threading.Thread(target=server.serve_forever, name="parley-relay", daemon=True)
    thread.start()
    return server
