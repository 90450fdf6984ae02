"""Bidirectional TCP relaying for ftpmon.

A RelayServer accepts connections on a listening socket, connects each
one to a remote address and hands both sockets to a RelayHandler. The
default CopyingRelayHandler copies bytes in both directions until either
side closes, optionally tapping each direction for diagnostics.
"""

import logging
import selectors
import socket
import threading
from contextlib import closing, suppress
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Protocol, Tuple

from ftpmon.utils.threading import TaskResult, TaskStatus, ThreadedTask

logger = logging.getLogger("ftpmon.relay")

Address = Tuple[str, int]

# Receives every chunk copied in one direction
Tap = Callable[[bytes], None]

BUFFER_SIZE = 8192

# Seconds between checks of the stop event while waiting for data
POLL_INTERVAL = 0.1


class RelayHandler(Protocol):
    """Strategy for relaying one accepted connection."""

    def handle(
        self,
        client: socket.socket,
        server: socket.socket,
        stop_event: threading.Event
    ) -> None:
        """
        Relay between two connected sockets until done or stop_event is set.

        The caller closes both sockets afterwards.
        """
        ...


def hex_dump(data: bytes, width: int = 16) -> List[str]:
    """
    Format bytes as classic hex dump lines.

    Example:
        00000000  32 32 36 20 4f 4b 0d 0a                          226 OK..
    """
    lines = []
    for offset in range(0, len(data), width):
        chunk = data[offset:offset + width]
        hex_part = " ".join(f"{b:02x}" for b in chunk)
        text_part = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"{offset:08x}  {hex_part:<{width * 3 - 1}}  {text_part}")
    return lines


def hex_dump_tap(log: logging.Logger, prefix: str) -> Tap:
    """Create a tap that logs each chunk as a hex dump at DEBUG level."""

    def tap(data: bytes) -> None:
        if log.isEnabledFor(logging.DEBUG):
            for line in hex_dump(data):
                log.debug(f"{prefix}{line}")

    return tap


def copy_stream(
    source: socket.socket,
    destination: socket.socket,
    stop_event: threading.Event,
    tap: Optional[Tap] = None,
    poll_interval: float = POLL_INTERVAL
) -> int:
    """
    Copy bytes from source to destination until end of input or stop.

    Args:
        source: Socket to read from
        destination: Socket to write to
        stop_event: Checked at least every poll_interval seconds
        tap: Optional callback receiving each chunk after it was forwarded
        poll_interval: Maximum time to block without checking stop_event

    Returns:
        Number of bytes copied
    """
    total = 0
    with selectors.DefaultSelector() as selector:
        selector.register(source, selectors.EVENT_READ)
        while not stop_event.is_set():
            if not selector.select(poll_interval):
                continue
            try:
                data = source.recv(BUFFER_SIZE)
            except OSError:
                if stop_event.is_set():
                    break
                raise
            if not data:
                break
            destination.sendall(data)
            total += len(data)
            if tap:
                tap(data)
    return total


class CopyingRelayHandler:
    """
    Relays bytes in both directions concurrently.

    The client-to-server direction runs in a background task, the
    server-to-client direction on the calling thread. Whichever direction
    ends first half-closes its destination and sets the shared stop event,
    which ends the other direction within one poll interval.
    """

    def __init__(
        self,
        on_client_data: Optional[Tap] = None,
        on_server_data: Optional[Tap] = None,
        poll_interval: float = POLL_INTERVAL
    ):
        """
        Initialize the handler.

        Args:
            on_client_data: Tap for bytes flowing client -> server
            on_server_data: Tap for bytes flowing server -> client
            poll_interval: Stop event polling interval in seconds
        """
        self._on_client_data = on_client_data
        self._on_server_data = on_server_data
        self._poll_interval = poll_interval

    def _copy(
        self,
        source: socket.socket,
        destination: socket.socket,
        stop_event: threading.Event,
        tap: Optional[Tap]
    ) -> int:
        try:
            return copy_stream(source, destination, stop_event, tap, self._poll_interval)
        finally:
            with suppress(OSError):
                destination.shutdown(socket.SHUT_WR)
            stop_event.set()

    def handle(
        self,
        client: socket.socket,
        server: socket.socket,
        stop_event: threading.Event
    ) -> None:
        upstream = ThreadedTask(
            self._copy,
            args=(client, server, stop_event, self._on_client_data),
            name=f"{threading.current_thread().name}-upstream",
        )
        upstream.start()
        try:
            downstream_bytes = self._copy(server, client, stop_event, self._on_server_data)
        finally:
            result = upstream.get_result()

        if result.status == TaskStatus.FAILED and result.error is not None:
            raise result.error

        logger.debug(
            f"Relay finished: {result.result or 0} bytes upstream, "
            f"{downstream_bytes} bytes downstream"
        )


@dataclass
class RelaySession:
    """One accepted connection and its remote counterpart."""
    client: socket.socket
    client_address: Address
    stop_event: threading.Event = field(default_factory=threading.Event)
    server: Optional[socket.socket] = None

    def shutdown(self) -> None:
        """Signal stop and unblock any thread reading either socket."""
        self.stop_event.set()
        for sock in (self.client, self.server):
            if sock is not None:
                with suppress(OSError):
                    sock.shutdown(socket.SHUT_RDWR)


class RelayServer:
    """
    Accepts connections and relays each one to a remote address.

    Usage:
        server = RelayServer(listener, ("10.0.0.1", 21), CopyingRelayHandler())
        task = ThreadedTask(server.serve)
        task.start()
        ...
        server.stop()
    """

    def __init__(
        self,
        listener: socket.socket,
        remote_address: Address,
        handler: RelayHandler,
        connect_timeout: float = 20.0,
        max_connections: Optional[int] = None,
        poll_interval: float = POLL_INTERVAL
    ):
        """
        Initialize the relay server.

        Args:
            listener: Bound, listening socket (owned by the server from now on)
            remote_address: Where accepted connections are relayed to
            handler: Relays each connection
            connect_timeout: Seconds allowed for connecting to the remote
            max_connections: Stop accepting after this many (None = unlimited)
            poll_interval: Stop event polling interval in seconds
        """
        self._listener = listener
        self._endpoint_address: Address = listener.getsockname()[:2]
        self._remote_address = remote_address
        self._handler = handler
        self._connect_timeout = connect_timeout
        self._max_connections = max_connections
        self._poll_interval = poll_interval

        self._stop = threading.Event()
        self._sessions: List[RelaySession] = []
        self._lock = threading.Lock()

    @property
    def endpoint_address(self) -> Address:
        """Local address the server accepts connections on."""
        return self._endpoint_address

    @property
    def remote_address(self) -> Address:
        return self._remote_address

    @property
    def active_sessions(self) -> int:
        """Number of relay sessions still running."""
        with self._lock:
            return len(self._sessions)

    def serve(self) -> int:
        """
        Accept connections until stopped or max_connections is reached.

        Closes the listener on return; running sessions continue until
        their peers close or stop() is called.

        Returns:
            Number of accepted connections
        """
        accepted = 0
        with closing(self._listener), selectors.DefaultSelector() as selector:
            selector.register(self._listener, selectors.EVENT_READ)
            while not self._stop.is_set():
                if self._max_connections is not None and accepted >= self._max_connections:
                    break
                if not selector.select(self._poll_interval):
                    continue
                try:
                    client, client_address = self._listener.accept()
                except OSError:
                    if self._stop.is_set():
                        break
                    raise
                accepted += 1
                logger.debug(f"Accepted {client_address[:2]} on {self._endpoint_address}")
                self._start_session(RelaySession(client, client_address[:2]))

        logger.debug(f"Stopped accepting on {self._endpoint_address}")
        return accepted

    def _start_session(self, session: RelaySession) -> None:
        with self._lock:
            self._sessions.append(session)
            if self._stop.is_set():
                session.stop_event.set()

        def done(result: TaskResult) -> None:
            if result.status == TaskStatus.FAILED:
                logger.warning(f"Relay session for {session.client_address} failed: {result.error}")
            with self._lock:
                self._sessions.remove(session)

        ThreadedTask(
            self._run_session,
            args=(session,),
            name=f"relay-{session.client_address[0]}:{session.client_address[1]}",
            on_complete=done,
        ).start()

    def _run_session(self, session: RelaySession) -> None:
        with closing(session.client):
            logger.debug(f"Connecting with {self._remote_address}")
            try:
                server = socket.create_connection(self._remote_address, timeout=self._connect_timeout)
            except socket.timeout:
                logger.warning(
                    f"Connecting with {self._remote_address} timed out "
                    f"after {self._connect_timeout:g} seconds"
                )
                return

            with closing(server):
                server.settimeout(None)
                session.server = server
                if session.stop_event.is_set():
                    return
                logger.debug(f"Connected {server.getsockname()[:2]} => {self._remote_address}")
                self._handler.handle(session.client, server, session.stop_event)

    def stop_accepting(self) -> None:
        """Stop accepting; running sessions continue until their peers close."""
        self._stop.set()

    def stop(self) -> None:
        """Stop accepting and shut down all running sessions."""
        self._stop.set()
        with self._lock:
            sessions = list(self._sessions)
        for session in sessions:
            session.shutdown()
