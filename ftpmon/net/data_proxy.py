"""FTP data connection proxying for ftpmon.

A DataConnectionProxy binds a local port (drawn from a shared
PortAllocator), accepts one data connection on it and relays that
connection to a remote data endpoint in the background.
"""

import logging
from contextlib import suppress
from typing import List, Optional

from ftpmon.net.ports import PortAllocator
from ftpmon.net.relay import (
    Address,
    CopyingRelayHandler,
    RelayHandler,
    RelayServer,
    hex_dump_tap,
)
from ftpmon.utils.threading import ThreadedTask

logger = logging.getLogger("ftpmon.data_proxy")

# Seconds stop() waits for the accept loop to release the listener
STOP_TIMEOUT = 5.0


class DataConnectionProxy:
    """
    Relays one FTP data connection at a time.

    Usage:
        allocator = PortAllocator(50000, 50100)
        proxy = DataConnectionProxy(allocator)
        endpoint = proxy.start("192.168.1.10", ("10.0.0.5", 40123))
        # advertise endpoint in a 227 reply or PORT command
        ...
        proxy.stop()
    """

    def __init__(
        self,
        allocator: PortAllocator,
        server_connection_timeout: float = 20.0,
        handler: Optional[RelayHandler] = None,
        max_connections: Optional[int] = 1
    ):
        """
        Initialize the proxy.

        Args:
            allocator: Port allocator, shared by proxies using the same range
            server_connection_timeout: Seconds allowed for connecting to the remote
            handler: Relay strategy (default copies both ways with hex dump taps)
            max_connections: Connections accepted per start() (None = unlimited)
        """
        self._allocator = allocator
        self._server_connection_timeout = server_connection_timeout
        self._handler = handler or CopyingRelayHandler(
            on_client_data=hex_dump_tap(logger, "> "),
            on_server_data=hex_dump_tap(logger, "< "),
        )
        self._max_connections = max_connections

        self._server: Optional[RelayServer] = None
        self._task: Optional[ThreadedTask[int]] = None
        self._draining: List[RelayServer] = []

    @property
    def is_running(self) -> bool:
        """True while the relay accepts connections or relays one."""
        if self._server is None:
            return False
        return bool(self._task and self._task.is_running) or self._server.active_sessions > 0

    @property
    def endpoint_address(self) -> Optional[Address]:
        """Local endpoint of the current relay, if any."""
        return self._server.endpoint_address if self._server else None

    def start(self, bind_address: str, remote_address: Address) -> Address:
        """
        Start relaying a data connection.

        A relay previously started by this proxy stops accepting first; a
        transfer it is still relaying runs to completion.

        Args:
            bind_address: Local address to accept the data connection on
            remote_address: Data endpoint to relay the connection to

        Returns:
            The bound local (host, port) to hand to the peer

        Raises:
            OSError: If no port of the allocator's range could be bound
        """
        self._retire()

        listener = self._allocator.open_listener(bind_address)
        try:
            server = RelayServer(
                listener,
                remote_address,
                self._handler,
                connect_timeout=self._server_connection_timeout,
                max_connections=self._max_connections,
            )
        except Exception:
            with suppress(OSError):
                listener.close()
            raise

        task = ThreadedTask(server.serve, name=f"data-proxy-{server.endpoint_address[1]}")
        self._server = server
        self._task = task
        task.start()

        logger.debug(f"Relaying {server.endpoint_address} => {remote_address}")
        return server.endpoint_address

    def _retire(self) -> None:
        """Stop accepting on the current relay and wait for its listener to close."""
        server, task = self._server, self._task
        self._server = None
        self._task = None

        if server is None:
            return

        server.stop_accepting()
        if task is not None:
            try:
                task.get_result(timeout=STOP_TIMEOUT)
            except TimeoutError:
                logger.warning(f"Relay on {server.endpoint_address} did not stop in time")

        self._draining = [s for s in self._draining if s.active_sessions]
        if server.active_sessions:
            self._draining.append(server)

    def stop(self) -> None:
        """Stop the relay and any transfer it still relays; safe to call repeatedly."""
        server = self._server
        self._retire()
        if server is not None:
            server.stop()
        draining, self._draining = self._draining, []
        for old_server in draining:
            old_server.stop()
