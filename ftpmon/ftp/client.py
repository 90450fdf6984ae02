"""FTP client protocol engine for ftpmon.

Provides the FTPClient class, which drives one control connection and
opens a data connection per transfer or listing, in active or passive
mode.
"""

import logging
import re
import socket
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO, Iterator, Optional, Tuple, Union

from ftpmon.ftp.direntry import DirEntry, parse_dir_entry
from ftpmon.ftp.exceptions import (
    FTPAuthenticationError,
    FTPConnectionError,
    FTPError,
    FTPProtocolError,
    FTPReplyError,
    FTPTimeoutError,
)
from ftpmon.ftp.reply import CONTROL_ENCODING, Reply, ReplyReader, decode_line

logger = logging.getLogger("ftpmon.client")

Address = Tuple[str, int]

# Six comma-separated octets anywhere in a 227 reply, e.g. "(127,0,0,1,19,136)"
HOST_PORT_PATTERN = re.compile(r"(\d+),(\d+),(\d+),(\d+),(\d+),(\d+)")

# Quoted directory name in a 257 reply; embedded quotes are doubled
QUOTED_PATH_PATTERN = re.compile(r'"((?:[^"]|"")*)"')

# "total 42" header line of many LIST implementations
TOTAL_LINE_PATTERN = re.compile(r"total \d+")

DEFAULT_ACCEPT_TIMEOUT = 20000


class DataTransferMode(Enum):
    """How data connections are established."""
    ACTIVE = "active"
    PASSIVE = "passive"


@dataclass
class ActiveMode:
    """The server connects to our listener; the listener is created lazily."""
    listener: Optional[socket.socket] = None

    @property
    def kind(self) -> DataTransferMode:
        return DataTransferMode.ACTIVE


@dataclass(frozen=True)
class PassiveMode:
    """We connect to the address the server announced in its 227 reply."""
    address: Address

    @property
    def kind(self) -> DataTransferMode:
        return DataTransferMode.PASSIVE


Mode = Union[ActiveMode, PassiveMode]


def parse_host_port(text: str) -> Address:
    """
    Extract an address from six comma-separated decimal octets.

    Surrounding text is ignored, so both a 227 reply text and a PORT
    argument can be passed.

    Raises:
        FTPProtocolError: If no six octets are found or one is out of range
    """
    match = HOST_PORT_PATTERN.search(text)
    if not match:
        raise FTPProtocolError(f"No host/port found in '{text}'")

    octets = [int(group) for group in match.groups()]
    if any(octet > 255 for octet in octets):
        raise FTPProtocolError(f"Invalid host/port '{match.group(0)}'")

    host = ".".join(str(octet) for octet in octets[:4])
    return host, 256 * octets[4] + octets[5]


def format_host_port(address: Address) -> str:
    """
    Encode an IPv4 address as six comma-separated octets (PORT argument).

    Raises:
        ValueError: If the host is not an IPv4 address
    """
    host, port = address[:2]
    parts = host.split(".")
    if len(parts) != 4 or not all(part.isdigit() and int(part) <= 255 for part in parts):
        raise ValueError(f"PORT requires an IPv4 address, got '{host}'")
    return ",".join(parts + [str(port >> 8 & 0xff), str(port & 0xff)])


class DataStream:
    """
    File-like wrapper around a data connection of store() or retrieve().

    Closing the stream closes the data socket and then reads the server's
    transfer-complete reply.
    """

    def __init__(self, client: "FTPClient", sock: socket.socket, writable: bool, name: str):
        self._client = client
        self._sock = sock
        self._writable = writable
        self._name = name
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def readable(self) -> bool:
        return not self._writable

    def writable(self) -> bool:
        return self._writable

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes (all remaining bytes if size < 0); b"" at end."""
        if size is None or size < 0:
            chunks = []
            while True:
                chunk = self._sock.recv(65536)
                if not chunk:
                    return b"".join(chunks)
                chunks.append(chunk)
        return self._sock.recv(size)

    def readinto(self, buffer) -> int:
        return self._sock.recv_into(buffer)

    def write(self, data: bytes) -> int:
        self._sock.sendall(data)
        return len(data)

    def close(self) -> None:
        """Close the data connection, then await the transfer-complete reply."""
        if self._closed:
            return
        self._closed = True

        logger.debug(f"Transfer of '{self._name}' complete, closing data connection")
        self._sock.close()
        self._client._finish_transfer()

    def __enter__(self) -> "DataStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.close()
            return
        # Keep the original error
        with suppress(FTPError, OSError):
            self.close()


class LineProducer:
    """
    Lazy, finite, non-restartable iterator over listing lines.

    At end of data the data connection is closed and the final reply
    consumed. Closing early closes the data connection and consumes the
    server's final reply whatever its code.
    """

    def __init__(self, client: "FTPClient", sock: socket.socket, what: str):
        self._client = client
        self._sock = sock
        self._reader: BinaryIO = sock.makefile("rb")
        self._what = what
        self._count = 0
        self._done = False

    def __iter__(self) -> "LineProducer":
        return self

    def _release(self) -> None:
        self._done = True
        self._reader.close()
        self._sock.close()

    def __next__(self) -> str:
        if self._done:
            raise StopIteration

        try:
            raw = self._reader.readline()
        except Exception:
            self._release()
            raise

        if not raw:
            self._release()
            logger.debug(f"{self._what} complete after {self._count} lines")
            self._client._finish_transfer()
            raise StopIteration

        line = decode_line(raw)
        logger.debug(f"Received {self._what.lower()} line #{self._count}: {line}")
        self._count += 1
        return line

    def close(self) -> None:
        """Abandon the listing."""
        if self._done:
            return
        self._release()
        logger.debug(f"{self._what} abandoned after {self._count} lines")
        self._client._reader.receive_reply()

    def __enter__(self) -> "LineProducer":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.close()
            return
        with suppress(FTPError, OSError):
            self.close()


class FTPClient:
    """
    Synchronous FTP client on one control connection.

    Usage:
        with FTPClient.connect("ftp.example.com") as ftp:
            ftp.login("anonymous", "guest@")
            ftp.passive()
            for entry in ftp.list_entries("/pub"):
                print(entry.name)

    Data connections are single-use on most servers: call passive() or
    active() again before each transfer.
    """

    def __init__(
        self,
        control_in: BinaryIO,
        control_out: BinaryIO,
        local_address: str,
        accept_timeout: int = DEFAULT_ACCEPT_TIMEOUT,
        data_timeout: Optional[float] = None,
        control_socket: Optional[socket.socket] = None
    ):
        """
        Initialize the client and read the server's greeting.

        Args:
            control_in: Binary stream the server's replies are read from
            control_out: Binary stream commands are written to
            local_address: Local IP of the control connection (used for PORT)
            accept_timeout: Milliseconds to wait for an active data connection
            data_timeout: Socket timeout in seconds for data connections
            control_socket: Socket to close with the client, if any

        Raises:
            FTPReplyError: If the greeting is not 220
        """
        self._control_in = control_in
        self._control_out = control_out
        self._reader = ReplyReader(control_in.readline)
        self._local_address = local_address
        self._accept_timeout = accept_timeout
        self._data_timeout = data_timeout
        self._control_socket = control_socket
        self._mode: Mode = ActiveMode()

        self.welcome = self._reader.expect_one_of(220).text

    @classmethod
    def connect(
        cls,
        host: str,
        port: int = 21,
        timeout: Optional[float] = 30.0,
        accept_timeout: int = DEFAULT_ACCEPT_TIMEOUT
    ) -> "FTPClient":
        """
        Open a control connection.

        Raises:
            FTPTimeoutError: If connecting times out
            FTPConnectionError: If the connection fails
        """
        logger.debug(f"Connecting to {host}:{port}")
        try:
            sock = socket.create_connection((host, port), timeout=timeout)
        except socket.timeout:
            raise FTPTimeoutError("Connection", timeout)
        except OSError as e:
            raise FTPConnectionError(host, port, e)

        try:
            return cls(
                sock.makefile("rb"),
                sock.makefile("wb"),
                sock.getsockname()[0],
                accept_timeout=accept_timeout,
                data_timeout=timeout,
                control_socket=sock,
            )
        except Exception:
            with suppress(OSError):
                sock.close()
            raise

    @property
    def mode(self) -> DataTransferMode:
        """Current data transfer mode."""
        return self._mode.kind

    @property
    def passive_address(self) -> Optional[Address]:
        """Data endpoint announced by the last successful PASV, if passive."""
        return self._mode.address if isinstance(self._mode, PassiveMode) else None

    @property
    def accept_timeout(self) -> int:
        """Milliseconds to wait for the server's active data connection."""
        return self._accept_timeout

    @accept_timeout.setter
    def accept_timeout(self, value: int) -> None:
        self._accept_timeout = value

    # Control channel

    def _send_command(self, command: str, argument: Optional[str] = None) -> None:
        line = command if argument is None else f"{command} {argument}"
        if command == "PASS" and argument is not None:
            logger.debug(">>> PASS ***")
        else:
            logger.debug(f">>> {line}")
        self._control_out.write(line.encode(CONTROL_ENCODING) + b"\r\n")
        self._control_out.flush()

    def _finish_transfer(self) -> Reply:
        """Read the final reply of a transfer; any 2xx is success."""
        reply = self._reader.receive_reply()
        if not 200 <= reply.status_code < 300:
            raise FTPReplyError(reply.status_code, reply.text)
        return reply

    def _check_login_reply(self, reply: Reply, user: str, *accepted: int) -> None:
        if reply.status_code in accepted:
            return
        if reply.status_code == 530:
            raise FTPAuthenticationError(user, reply.status_code, reply.text)
        raise FTPReplyError(reply.status_code, reply.text)

    # Commands

    def login(self, user: str, password: str) -> None:
        """
        Log in with USER and, if the server asks for it, PASS.

        Raises:
            FTPAuthenticationError: If the server rejects the credentials
        """
        self._send_command("USER", user)
        reply = self._reader.receive_reply()
        self._check_login_reply(reply, user, 230, 331)

        if reply.status_code == 331:
            self._send_command("PASS", password)
            self._check_login_reply(self._reader.receive_reply(), user, 230, 202)

        logger.info(f"Logged in as '{user}'")

    def pwd(self) -> str:
        """Return the current working directory."""
        self._send_command("PWD")
        text = self._reader.expect_one_of(257, 250).text
        match = QUOTED_PATH_PATTERN.search(text)
        if match:
            return match.group(1).replace('""', '"')
        return text

    def cwd(self, directory: str) -> None:
        """Change the working directory."""
        self._send_command("CWD", directory)
        self._reader.expect(250)

    def delete(self, name: str) -> None:
        """Delete a file."""
        self._send_command("DELE", name)
        self._reader.expect_one_of(250, 200)

    def rename(self, from_name: str, to_name: str) -> None:
        """Rename a file or directory."""
        self._send_command("RNFR", from_name)
        self._reader.expect_one_of(350, 300)
        self._send_command("RNTO", to_name)
        self._reader.expect_one_of(250, 200)

    def site(self, argument: str) -> str:
        """Send a SITE command and return the reply text."""
        self._send_command("SITE", argument)
        return self._reader.expect_one_of(200, 202, 220, 250).text

    def quit(self) -> None:
        """Say goodbye and close the connection."""
        try:
            self._send_command("QUIT")
            self._reader.expect(221)
        finally:
            self.close()

    # Mode switching

    def _close_listener(self) -> None:
        mode = self._mode
        if isinstance(mode, ActiveMode) and mode.listener is not None:
            listener, mode.listener = mode.listener, None
            listener.close()

    def passive(self) -> Address:
        """
        Switch to passive mode with PASV.

        Returns:
            The data endpoint announced by the server

        Raises:
            FTPReplyError: If the server does not reply 227
            FTPProtocolError: If the 227 text carries no valid address
        """
        logger.debug("Switching to passive mode")
        self._close_listener()

        self._send_command("PASV")
        text = self._reader.expect(227)
        address = parse_host_port(text)

        self._mode = PassiveMode(address)
        return address

    def active(self, port: int = 0) -> Address:
        """
        Switch to active mode with PORT.

        Args:
            port: Local port to listen on (0 = any free port)

        Returns:
            The local endpoint announced to the server

        Raises:
            FTPReplyError: If the server does not reply 200
        """
        logger.debug("Switching to active mode")
        self._close_listener()
        self._mode = ActiveMode()

        listener = socket.create_server((self._local_address, port), backlog=1)
        try:
            listener.settimeout(self._accept_timeout / 1000)
            address = listener.getsockname()[:2]
            try:
                argument = format_host_port(address)
            except ValueError as e:
                raise FTPError("Active mode is not available", e)
            self._send_command("PORT", argument)
            self._reader.expect(200)
        except Exception:
            with suppress(OSError):
                listener.close()
            raise

        self._mode = ActiveMode(listener)
        return address

    # Data connections

    def _prepare_data_connection(self) -> Optional[socket.socket]:
        """Connect in passive mode; make sure a listener exists in active mode."""
        mode = self._mode
        if isinstance(mode, PassiveMode):
            logger.debug(f"Creating data connection to {mode.address}")
            return socket.create_connection(mode.address, timeout=self._data_timeout)
        if isinstance(mode, ActiveMode):
            if mode.listener is None:
                self.active(0)
            return None
        raise AssertionError(f"Invalid data transfer mode {mode!r}")

    def _complete_data_connection(self, sock: Optional[socket.socket]) -> socket.socket:
        """Accept the server's connection in active mode."""
        if sock is not None:
            return sock

        mode = self._mode
        assert isinstance(mode, ActiveMode) and mode.listener is not None
        logger.debug(f"Accepting data connection on {mode.listener.getsockname()[:2]}")
        try:
            mode.listener.settimeout(self._accept_timeout / 1000)
            sock, _ = mode.listener.accept()
        except socket.timeout:
            raise FTPTimeoutError("Accepting the data connection", self._accept_timeout / 1000)
        sock.settimeout(self._data_timeout)
        return sock

    def _open_data_connection(self, command: str, argument: Optional[str]) -> socket.socket:
        """Switch to binary, send the transfer command and return the data socket."""
        self._send_command("TYPE", "I")
        self._reader.expect(200)

        sock = self._prepare_data_connection()
        try:
            self._send_command(command, argument)
            self._reader.expect_preliminary(125, 150)
            return self._complete_data_connection(sock)
        except Exception:
            if sock is not None:
                with suppress(OSError):
                    sock.close()
            raise

    # Transfers

    def store(self, name: str) -> DataStream:
        """
        Start uploading a file.

        Returns:
            Writable stream; closing it completes the upload
        """
        logger.debug(f"Storing '{name}'")
        sock = self._open_data_connection("STOR", name)
        return DataStream(self, sock, writable=True, name=name)

    def retrieve(self, name: str) -> DataStream:
        """
        Start downloading a file.

        Returns:
            Readable stream; closing it completes the download
        """
        logger.debug(f"Retrieving '{name}'")
        sock = self._open_data_connection("RETR", name)
        return DataStream(self, sock, writable=False, name=name)

    def list(self, name: Optional[str] = None) -> LineProducer:
        """List a directory (LIST); yields raw listing lines."""
        logger.debug("Listing cwd" if name is None else f"Listing dir '{name}'")
        sock = self._open_data_connection("LIST", name)
        return LineProducer(self, sock, "Listing")

    def nlist(self, name: Optional[str] = None) -> LineProducer:
        """List names in a directory (NLST)."""
        logger.debug("Nlisting cwd" if name is None else f"Nlisting dir '{name}'")
        sock = self._open_data_connection("NLST", name)
        return LineProducer(self, sock, "Nlisting")

    def list_entries(self, name: Optional[str] = None) -> Iterator[DirEntry]:
        """
        List a directory as DirEntry records.

        Raises:
            FTPProtocolError: While iterating, for a line that is not UNIX-style
        """
        return self._parse_entries(self.list(name))

    @staticmethod
    def _parse_entries(lines: LineProducer) -> Iterator[DirEntry]:
        with lines:
            for line in lines:
                if TOTAL_LINE_PATTERN.fullmatch(line):
                    continue
                yield parse_dir_entry(line)

    # Teardown

    def dispose(self) -> None:
        """Close the active-mode listener, if any; never raises."""
        mode = self._mode
        if isinstance(mode, ActiveMode) and mode.listener is not None:
            logger.debug("Closing active data connection listener")
            with suppress(OSError):
                self._close_listener()
            mode.listener = None

    def close(self) -> None:
        """Dispose and close the control connection."""
        self.dispose()
        for stream in (self._control_out, self._control_in):
            with suppress(OSError):
                stream.close()
        if self._control_socket is not None:
            with suppress(OSError):
                self._control_socket.close()
            self._control_socket = None

    def __enter__(self) -> "FTPClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
