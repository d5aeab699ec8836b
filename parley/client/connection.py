"""Connection manager: the client's single logical connection to the Parley relay.

A background thread keeps the connection up. If the relay is not reachable, or the connection drops,
it waits `reconnect_delay` seconds and tries again, forever. Each successful connection is a fresh
session from the relay's point of view; nothing is replayed.

Status transitions::

    disconnected -> connecting -> connected -> (closed or error) -> disconnected -> ...
                            \\-> error(reason) -> disconnected -> ...

Inbound stream chunks are posted, in arrival order, into the `inbox` queue given to the constructor,
as `(event_chunk, chunk)` pairs. Frames that fail to decode are logged and dropped.

Status changes are posted as `(event_status, ConnectionStatus)` pairs into each queue registered
with `subscribe`. Repeating the current status is not a change, and is not posted. The latest status
can also be read synchronously via the `status` property.
"""

__all__ = ["ConnectionManager", "ConnectionStatus",
           "status_disconnected", "status_connecting", "status_connected", "status_error",
           "event_chunk", "event_status"]

import logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

import queue
import threading
from typing import Any, Optional

from unpythonic import sym

from websockets.exceptions import ConnectionClosed, WebSocketException
from websockets.sync.client import ClientConnection, connect

from ..common import wire

status_disconnected = sym("disconnected")
status_connecting = sym("connecting")
status_connected = sym("connected")
status_error = sym("error")

event_chunk = sym("chunk")  # inbound `StreamChunk`
event_status = sym("status")  # connection status changed

_status_names = {status_disconnected: "Disconnected",
                 status_connecting: "Connecting",
                 status_connected: "Connected",
                 status_error: "Error"}

class ConnectionStatus:
    """Immutable status snapshot. `reason` is only set for `status_error`."""
    def __init__(self, state: sym, reason: Optional[str] = None):
        self.state = state
        self.reason = reason

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ConnectionStatus):
            return NotImplemented
        return self.state is other.state and self.reason == other.reason

    def __hash__(self) -> int:
        return hash((self.state, self.reason))

    def __str__(self) -> str:
        if self.reason is not None:
            return f"{_status_names[self.state]}: {self.reason}"
        return _status_names[self.state]

    def __repr__(self) -> str:
        return f"ConnectionStatus({self.state!r}, reason={self.reason!r})"


class ConnectionManager:
    def __init__(self, url: str, inbox: queue.Queue,
                 reconnect_delay: float = 2.0,
                 open_timeout: float = 10.0,
                 max_frame_size: Optional[int] = 64 * 1024 * 1024):
        """Keep a connection to the relay at `url` (e.g. "ws://127.0.0.1:3001/ws/chat").

        `inbox`: where to post inbound chunks.
        `reconnect_delay`: seconds between a lost or failed connection and the next attempt.
        `open_timeout`: seconds to wait for the opening handshake.
        `max_frame_size`: largest inbound frame accepted, in bytes; `None` for no limit.

        Call `start` to begin connecting.
        """
        self.url = url
        self.inbox = inbox
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self.max_frame_size = max_frame_size

        self._lock = threading.Lock()
        self._status = ConnectionStatus(status_disconnected)
        self._subscribers = []
        self._connection: Optional[ClientConnection] = None
        self._outbox: Optional[queue.Queue] = None  # per-connection; `None` when not connected
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def status(self) -> ConnectionStatus:
        """The latest connection status."""
        with self._lock:
            return self._status

    def subscribe(self, mailbox: Optional[queue.Queue] = None) -> queue.Queue:
        """Post future status changes into `mailbox` (a new queue if not given). Return the queue."""
        if mailbox is None:
            mailbox = queue.Queue()
        with self._lock:
            self._subscribers.append(mailbox)
        return mailbox

    def start(self) -> None:
        """Start the background connection thread."""
        if self._thread is not None:
            raise RuntimeError("ConnectionManager.start: already started")
        self._thread = threading.Thread(target=self._run, name="parley-connection", daemon=True)
        self._thread.start()

    def send(self, message: Any) -> bool:
        """Enqueue a `ClientMessage` for transmission. Non-blocking.

        Return whether the message was accepted. When not connected, the message is dropped (logged);
        nothing is buffered across reconnects.
        """
        try:
            frame = wire.encode(message)
        except (TypeError, ValueError) as exc:
            logger.error(f"ConnectionManager.send: failed to serialize {message!r}, dropping it: {type(exc)}: {exc}")
            return False
        with self._lock:
            outbox = self._outbox
        if outbox is None:
            logger.warning(f"ConnectionManager.send: not connected, dropping outbound message: {frame!r}")
            return False
        outbox.put(frame)
        return True

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Stop reconnecting, close the current connection (if any), and wait for the connection thread to exit."""
        logger.info("ConnectionManager.close: shutting down.")
        self._stop_event.set()
        with self._lock:
            connection = self._connection
        if connection is not None:
            connection.close()
        if self._thread is not None:
            self._thread.join(timeout)

    # --------------------------------------------------------------------------------
    # Internal

    def _set_status(self, status: ConnectionStatus) -> None:
        with self._lock:
            if status == self._status:
                return
            self._status = status
            subscribers = list(self._subscribers)
        logger.info(f"ConnectionManager._set_status: {status}")
        for mailbox in subscribers:
            mailbox.put((event_status, status))

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._set_status(ConnectionStatus(status_connecting))
            try:
                connection = connect(self.url, open_timeout=self.open_timeout, max_size=self.max_frame_size)
            except (OSError, TimeoutError, WebSocketException) as exc:
                logger.warning(f"ConnectionManager._run: failed to connect to '{self.url}': {type(exc)}: {exc}")
                self._set_status(ConnectionStatus(status_error, str(exc) or type(exc).__name__))
            else:
                self._serve(connection)
            self._set_status(ConnectionStatus(status_disconnected))
            if self._stop_event.wait(self.reconnect_delay):
                break
        logger.info("ConnectionManager._run: exiting.")

    def _serve(self, connection: ClientConnection) -> None:
        """Pump one live connection until it closes."""
        outbox = queue.Queue()
        with self._lock:
            self._connection = connection
            self._outbox = outbox
        writer = threading.Thread(target=self._write_loop, args=(connection, outbox), name="parley-connection-writer", daemon=True)
        writer.start()
        self._set_status(ConnectionStatus(status_connected))
        try:
            if self._stop_event.is_set():  # `close` was called while we were connecting
                return
            for frame in connection:
                try:
                    chunk = wire.decode_stream_chunk(frame)
                except wire.DecodeError as exc:
                    logger.warning(f"ConnectionManager._serve: dropping undecodable frame: {exc}. Data: {frame!r}")
                    continue
                self.inbox.put((event_chunk, chunk))
        except ConnectionClosed as exc:
            logger.warning(f"ConnectionManager._serve: connection lost: {exc}")
        finally:
            with self._lock:
                self._connection = None
                self._outbox = None
            outbox.put(None)  # stop the writer; anything still queued is dropped
            connection.close()
            writer.join()

    def _write_loop(self, connection: ClientConnection, outbox: queue.Queue) -> None:
        while True:
            frame = outbox.get()
            if frame is None:
                return
            try:
                connection.send(frame)
            except ConnectionClosed as exc:
                logger.warning(f"ConnectionManager._write_loop: connection closed, dropping outbound message: {exc}")
                return
            logger.debug(f"ConnectionManager._write_loop: sent {frame!r}")
