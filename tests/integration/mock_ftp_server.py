"""Mock FTP server for integration testing.

Uses pyftpdlib to run a local FTP server on an ephemeral port with a
small directory tree in a temporary directory.
"""

import tempfile
import threading
import time
from pathlib import Path
from typing import Optional

from pyftpdlib.authorizers import DummyAuthorizer
from pyftpdlib.handlers import FTPHandler
from pyftpdlib.servers import FTPServer


class MockFTPServer:
    """
    Local FTP server backed by a temporary directory.

    Usage:
        with MockFTPServer() as server:
            # Connect to server.host:server.port
            # server.root_dir contains the served filesystem
            pass
    """

    DEFAULT_USER = "testuser"
    DEFAULT_PASS = "testpass"

    def __init__(
        self,
        port: int = 0,
        username: str = DEFAULT_USER,
        password: str = DEFAULT_PASS,
    ):
        """
        Initialize the mock FTP server.

        Args:
            port: Port to listen on (0 = any free port)
            username: FTP username
            password: FTP password
        """
        self.port = port
        self.username = username
        self.password = password

        self._server: Optional[FTPServer] = None
        self._thread: Optional[threading.Thread] = None
        self._temp_dir: Optional[tempfile.TemporaryDirectory] = None
        self._root_dir: Optional[Path] = None

    @property
    def root_dir(self) -> Path:
        """Root directory of the served filesystem."""
        if self._root_dir is None:
            raise RuntimeError("Server not started")
        return self._root_dir

    @property
    def host(self) -> str:
        """Server host address."""
        return "127.0.0.1"

    @property
    def address(self):
        return self.host, self.port

    def _create_structure(self) -> None:
        """Create the initial directory tree."""
        root = self._root_dir

        pub = root / "pub"
        pub.mkdir()
        (pub / "readme.txt").write_text("Welcome to the test server\n")
        (pub / "data.bin").write_bytes(bytes(range(256)) * 64)
        (pub / "archive").mkdir()

        (root / "incoming").mkdir()

    def start(self) -> None:
        """Start the FTP server in a background thread."""
        self._temp_dir = tempfile.TemporaryDirectory(prefix="mock_ftp_")
        self._root_dir = Path(self._temp_dir.name)

        self._create_structure()

        authorizer = DummyAuthorizer()
        authorizer.add_user(
            self.username,
            self.password,
            str(self._root_dir),
            perm="elradfmwMT"  # Full permissions
        )

        # Subclass so handler settings do not leak between servers
        handler = type("MockFTPHandler", (FTPHandler,), {})
        handler.authorizer = authorizer
        handler.auth_failed_timeout = 0.1

        self._server = FTPServer((self.host, self.port), handler)
        self.port = self._server.address[1]

        self._thread = threading.Thread(target=self._server.serve_forever, daemon=True)
        self._thread.start()

        # Give server time to start
        time.sleep(0.2)

    def stop(self) -> None:
        """Stop the FTP server and clean up."""
        if self._server:
            self._server.close_all()

        if self._temp_dir:
            self._temp_dir.cleanup()

        self._server = None
        self._thread = None
        self._temp_dir = None
        self._root_dir = None

    def __enter__(self) -> "MockFTPServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()

