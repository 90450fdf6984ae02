"""Cyclic local port allocation for ftpmon.

A PortAllocator hands out ports from a configured range in round-robin
order and retries with the next port when a bind fails because the port
is already in use. Proxies that should share one range share one
allocator instance.
"""

import errno
import logging
import socket
import threading
from typing import Callable, Optional, TypeVar

logger = logging.getLogger("ftpmon.ports")

T = TypeVar("T")


def is_address_in_use(error: OSError) -> bool:
    """True if the bind error means "address already in use"."""
    return error.errno == errno.EADDRINUSE


class PortAllocator:
    """
    Round-robin port allocator with bind-conflict retry.

    Usage:
        allocator = PortAllocator(5000, 5100)
        listener = allocator.open_listener("0.0.0.0")

    The range (0, 0) lets the OS choose an ephemeral port on every bind.
    """

    def __init__(self, first: int = 0, last: int = 0):
        """
        Initialize the allocator.

        Args:
            first: First port of the range
            last: Last port of the range (may be below first)
        """
        self._first = first
        self._last = last
        self._next: Optional[int] = None
        self._lock = threading.Lock()

    @property
    def first(self) -> int:
        return self._first

    @property
    def last(self) -> int:
        return self._last

    @property
    def is_ephemeral(self) -> bool:
        """True if the OS picks the port."""
        return self._first == 0 and self._last == 0

    @property
    def size(self) -> int:
        """Number of ports in the range."""
        return abs(self._last - self._first) + 1

    def set_range(self, first: int, last: int) -> None:
        """
        Configure the port range.

        Raises:
            RuntimeError: If a port was already allocated from this allocator
        """
        with self._lock:
            if self._next is not None:
                raise RuntimeError(
                    "The port range must not be changed after the first allocation"
                )
            self._first = first
            self._last = last

    def next_port(self) -> int:
        """
        Return the next candidate port and advance the cursor.

        For the range 5000-5002 the candidates are 5000, 5001, 5002, 5000, ...
        """
        with self._lock:
            if self._next is None:
                self._next = self._first

            port = self._next
            if port == self._last:
                self._next = self._first
            elif self._first < self._last:
                self._next = port + 1
            else:
                self._next = port - 1
            return port

    def allocate(self, bind: Callable[[int], T]) -> T:
        """
        Call bind(port) with successive candidates until one succeeds.

        Only "address already in use" errors are retried, at most once per
        port of the range.

        Args:
            bind: Callable binding to the given port and returning the result

        Returns:
            Whatever bind returned

        Raises:
            OSError: The last bind error when every port of the range was tried,
                or the first error that is not an address conflict
        """
        if self.is_ephemeral:
            # Mark the allocator as used so the range can no longer change.
            with self._lock:
                if self._next is None:
                    self._next = 0
            return bind(0)

        for _ in range(self.size):
            port = self.next_port()
            try:
                return bind(port)
            except OSError as e:
                if not is_address_in_use(e):
                    raise
                last_error = e
                logger.debug(f"Port {port} is in use; trying next")

        logger.warning(f"All ports from {self._first} to {self._last} are in use")
        raise last_error

    def open_listener(self, host: str, backlog: int = 1) -> socket.socket:
        """
        Allocate a listening TCP socket bound to host.

        Args:
            host: Local address to bind to
            backlog: Listen backlog

        Returns:
            Listening socket
        """
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        return self.allocate(
            lambda port: socket.create_server((host, port), family=family, backlog=backlog)
        )
