"""FTP reverse proxy for ftpmon.

Clients connect to the proxy as if it were the FTP server. Control
traffic is relayed line by line and logged; data endpoints announced in
227/229 replies and PORT/EPRT commands are replaced by local data
connection proxies, so data connections flow through the proxy as well.
"""

import logging
import re
import socket
import threading
from contextlib import suppress
from typing import BinaryIO, List, Optional

from ftpmon.ftp.client import format_host_port, parse_host_port
from ftpmon.ftp.exceptions import FTPProtocolError
from ftpmon.ftp.reply import CONTROL_ENCODING, REPLY_PATTERN, decode_line
from ftpmon.net.data_proxy import DataConnectionProxy
from ftpmon.net.ports import PortAllocator
from ftpmon.net.relay import Address, CopyingRelayHandler, RelayServer
from ftpmon.utils.threading import TaskStatus, ThreadedTask

logger = logging.getLogger("ftpmon.reverse_proxy")

# "(|||40123|)" in a 229 reply; the delimiter may be any printable character
EPSV_PATTERN = re.compile(r"\((.)\1\1(\d+)\1\)")

STOP_TIMEOUT = 5.0


def mask_command(line: str) -> str:
    """Hide the argument of a PASS command."""
    if line[:5].upper() == "PASS ":
        return "PASS ***"
    return line


def read_reply_block(readline) -> Optional[List[bytes]]:
    """
    Read one complete reply (all lines of a multi-line block) verbatim.

    Returns:
        Raw lines including terminators, or None if the peer closed

    Raises:
        FTPProtocolError: If the first line is not a reply line or the
            block ends prematurely
    """
    first = readline()
    if not first:
        return None

    match = REPLY_PATTERN.fullmatch(decode_line(first))
    if not match:
        raise FTPProtocolError(f"Invalid reply line '{decode_line(first)}'")

    lines = [first]
    if match.group(2) == "-":
        terminator = f"{match.group(1)} ".encode("ascii")
        while not lines[-1].startswith(terminator):
            line = readline()
            if not line:
                raise FTPProtocolError("Control connection closed within a multi-line reply")
            lines.append(line)
    return lines


class FtpControlHandler:
    """
    Relays one FTP control connection, rewriting data endpoints.

    Server replies are forwarded until a final (non-1xx) reply, then one
    client command is forwarded, and so on until either side closes.
    """

    def __init__(
        self,
        allocator: PortAllocator,
        server_connection_timeout: float = 20.0,
        hex_dump: bool = True
    ):
        """
        Initialize the handler.

        Args:
            allocator: Ports for data connection proxies
            server_connection_timeout: Seconds allowed for data connects
            hex_dump: Log data connection traffic as hex dumps at DEBUG
        """
        self._allocator = allocator
        self._server_connection_timeout = server_connection_timeout
        self._hex_dump = hex_dump

    def _create_data_proxy(self) -> DataConnectionProxy:
        handler = None if self._hex_dump else CopyingRelayHandler()
        return DataConnectionProxy(
            self._allocator,
            server_connection_timeout=self._server_connection_timeout,
            handler=handler,
        )

    def handle(
        self,
        client: socket.socket,
        server: socket.socket,
        stop_event: threading.Event
    ) -> None:
        data_proxy = self._create_data_proxy()
        client_in: BinaryIO = client.makefile("rb")
        client_out: BinaryIO = client.makefile("wb")
        server_in: BinaryIO = server.makefile("rb")
        server_out: BinaryIO = server.makefile("wb")
        try:
            while not stop_event.is_set():
                if not self._forward_replies(server_in, client_out, client, server, data_proxy):
                    logger.debug("Server closed the control connection")
                    return
                if not self._forward_command(client_in, server_out, server, data_proxy):
                    logger.debug("Client closed the control connection")
                    return
        finally:
            data_proxy.stop()
            for stream in (client_in, client_out, server_in, server_out):
                with suppress(OSError):
                    stream.close()

    def _forward_replies(
        self,
        server_in: BinaryIO,
        client_out: BinaryIO,
        client: socket.socket,
        server: socket.socket,
        data_proxy: DataConnectionProxy
    ) -> bool:
        """Forward replies up to and including the first final one; False on EOF."""
        while True:
            block = read_reply_block(server_in.readline)
            if block is None:
                return False

            for raw in block:
                logger.debug(f"<-- {decode_line(raw)}")

            code = int(block[0][:3])
            if code == 227:
                block = [self._rewrite_pasv(block[0], client, data_proxy)]
            elif code == 229:
                block = [self._rewrite_epsv(block[0], client, server, data_proxy)]

            client_out.write(b"".join(block))
            client_out.flush()

            if code >= 200:
                return True

    def _forward_command(
        self,
        client_in: BinaryIO,
        server_out: BinaryIO,
        server: socket.socket,
        data_proxy: DataConnectionProxy
    ) -> bool:
        """Forward one client command; False on EOF."""
        raw = client_in.readline()
        if not raw:
            return False

        line = decode_line(raw)
        logger.debug(f"--> {mask_command(line)}")

        verb = line.split(" ", 1)[0].upper()
        if verb == "PORT":
            line = self._rewrite_port(line, server, data_proxy)
        elif verb == "EPRT":
            line = self._rewrite_eprt(line, server, data_proxy)

        server_out.write(line.encode(CONTROL_ENCODING) + b"\r\n")
        server_out.flush()
        return True

    def _rewrite_pasv(self, raw: bytes, client: socket.socket, data_proxy: DataConnectionProxy) -> bytes:
        remote = parse_host_port(decode_line(raw)[4:])
        endpoint = data_proxy.start(client.getsockname()[0], remote)
        line = f"227 Entering Passive Mode ({format_host_port(endpoint)})"
        logger.debug(f"Rewrote PASV reply: {line}")
        return line.encode(CONTROL_ENCODING) + b"\r\n"

    def _rewrite_epsv(
        self,
        raw: bytes,
        client: socket.socket,
        server: socket.socket,
        data_proxy: DataConnectionProxy
    ) -> bytes:
        text = decode_line(raw)
        match = EPSV_PATTERN.search(text)
        if not match:
            raise FTPProtocolError(f"No port found in '{text}'")

        remote = (server.getpeername()[0], int(match.group(2)))
        endpoint = data_proxy.start(client.getsockname()[0], remote)
        line = f"229 Entering Extended Passive Mode (|||{endpoint[1]}|)"
        logger.debug(f"Rewrote EPSV reply: {line}")
        return line.encode(CONTROL_ENCODING) + b"\r\n"

    def _rewrite_port(self, line: str, server: socket.socket, data_proxy: DataConnectionProxy) -> str:
        remote = parse_host_port(line[5:])
        endpoint = data_proxy.start(server.getsockname()[0], remote)
        line = f"PORT {format_host_port(endpoint)}"
        logger.debug(f"Rewrote command: {line}")
        return line

    def _rewrite_eprt(self, line: str, server: socket.socket, data_proxy: DataConnectionProxy) -> str:
        argument = line[5:].strip()
        fields = argument.split(argument[:1]) if argument else []
        if len(fields) != 5 or not fields[3].isdigit():
            raise FTPProtocolError(f"Invalid EPRT argument '{argument}'")

        remote = (fields[2], int(fields[3]))
        host, port = data_proxy.start(server.getsockname()[0], remote)
        protocol = 2 if ":" in host else 1
        line = f"EPRT |{protocol}|{host}|{port}|"
        logger.debug(f"Rewrote command: {line}")
        return line


class FtpReverseProxy:
    """
    FTP reverse proxy in front of one server.

    Usage:
        proxy = FtpReverseProxy(("0.0.0.0", 2121), ("ftp.example.com", 21),
                                PortAllocator(50000, 50100))
        proxy.serve_forever()
    """

    def __init__(
        self,
        endpoint: Address,
        server_address: Address,
        allocator: PortAllocator,
        server_connection_timeout: float = 20.0,
        backlog: int = 5,
        hex_dump: bool = True
    ):
        """
        Initialize the proxy.

        Args:
            endpoint: Local (host, port) clients connect to
            server_address: The FTP server's (host, port)
            allocator: Ports for data connection proxies
            server_connection_timeout: Seconds allowed for connecting to the server
            backlog: Listen backlog of the control listener
            hex_dump: Log data connection traffic as hex dumps at DEBUG
        """
        self._endpoint = endpoint
        self._server_address = server_address
        self._allocator = allocator
        self._server_connection_timeout = server_connection_timeout
        self._backlog = backlog
        self._hex_dump = hex_dump

        self._relay: Optional[RelayServer] = None
        self._task: Optional[ThreadedTask[int]] = None

    @property
    def endpoint_address(self) -> Optional[Address]:
        """Bound control endpoint once started."""
        return self._relay.endpoint_address if self._relay else None

    @property
    def server_address(self) -> Address:
        return self._server_address

    def start(self) -> Address:
        """
        Bind the control listener and start accepting clients.

        Returns:
            The bound control endpoint

        Raises:
            RuntimeError: If the proxy is already started
            OSError: If the endpoint cannot be bound
        """
        if self._relay is not None:
            raise RuntimeError("Proxy already started")

        host, port = self._endpoint
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        listener = socket.create_server((host, port), family=family, backlog=self._backlog)

        handler = FtpControlHandler(
            self._allocator,
            server_connection_timeout=self._server_connection_timeout,
            hex_dump=self._hex_dump,
        )
        self._relay = RelayServer(
            listener,
            self._server_address,
            handler,
            connect_timeout=self._server_connection_timeout,
        )
        self._task = ThreadedTask(self._relay.serve, name="ftp-proxy")
        self._task.start()

        logger.info(f"Proxying {self._relay.endpoint_address} => {self._server_address}")
        return self._relay.endpoint_address

    def serve_forever(self) -> None:
        """
        Start if needed and block until the proxy is stopped.

        Raises:
            Exception: Whatever ended the accept loop
        """
        if self._relay is None:
            self.start()

        result = self._task.get_result()
        if result.status == TaskStatus.FAILED and result.error is not None:
            raise result.error

    def stop(self) -> None:
        """Stop accepting and end all sessions; safe to call repeatedly."""
        if self._relay is None:
            return

        self._relay.stop()
        try:
            self._task.get_result(timeout=STOP_TIMEOUT)
        except TimeoutError:
            logger.warning("Proxy accept loop did not stop in time")
        logger.info("Proxy stopped")
