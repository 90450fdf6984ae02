"""Pytest configuration and shared fixtures for ftpmon tests."""

import io
import socket
import threading
from pathlib import Path
from typing import Callable, Generator, Tuple

import pytest

from ftpmon.ftp.client import FTPClient


# Test constants
TEST_FTP_HOST = "127.0.0.1"
TEST_FTP_USER = "testuser"
TEST_FTP_PASS = "testpass"


@pytest.fixture
def temp_settings_file(tmp_path: Path) -> Generator[Path, None, None]:
    """Provide a temporary settings file path for testing."""
    settings_file = tmp_path / "settings.json"
    yield settings_file


@pytest.fixture
def scripted_client() -> Callable[..., Tuple[FTPClient, io.BytesIO]]:
    """
    Build an FTPClient whose server replies are scripted.

    The factory takes reply lines (without terminators) that follow the
    "220" greeting and returns the client plus the stream its commands
    are written to.
    """

    def factory(*replies: str, local_address: str = TEST_FTP_HOST):
        lines = ("220 Service ready",) + replies
        control_in = io.BytesIO("".join(f"{line}\r\n" for line in lines).encode("utf-8"))
        control_out = io.BytesIO()
        return FTPClient(control_in, control_out, local_address), control_out

    return factory


@pytest.fixture
def free_port() -> int:
    """Return a TCP port that was free a moment ago."""
    with socket.socket() as sock:
        sock.bind((TEST_FTP_HOST, 0))
        return sock.getsockname()[1]


@pytest.fixture
def echo_server() -> Generator[Tuple[str, int], None, None]:
    """Run a TCP echo server; yields its address."""
    listener = socket.create_server((TEST_FTP_HOST, 0))
    listener.settimeout(0.1)
    stop = threading.Event()

    def echo(conn: socket.socket) -> None:
        with conn:
            while True:
                data = conn.recv(4096)
                if not data:
                    return
                conn.sendall(data)

    def serve() -> None:
        while not stop.is_set():
            try:
                conn, _ = listener.accept()
            except socket.timeout:
                continue
            conn.settimeout(None)
            threading.Thread(target=echo, args=(conn,), daemon=True).start()

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield listener.getsockname()[:2]
    stop.set()
    thread.join(timeout=2)
    listener.close()
