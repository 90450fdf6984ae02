"""Control-channel reply parsing for ftpmon.

Reads FTP replies line by line, folding multi-line replies
("123-first line" ... "123 last line") into a single Reply.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable

from ftpmon.ftp.exceptions import FTPProtocolError, FTPReplyError

logger = logging.getLogger("ftpmon.reply")

# Status codes run from 100 to 599
REPLY_PATTERN = re.compile(r"([1-5]\d\d)([ -])(.*)")

# Undecodable bytes on the control channel are replaced, not rejected.
CONTROL_ENCODING = "utf-8"


@dataclass(frozen=True)
class Reply:
    """One (possibly multi-line) reply from the server."""
    status_code: int
    text: str

    @property
    def is_preliminary(self) -> bool:
        """True for 1xx replies, which precede the final reply."""
        return self.status_code < 200

    def __str__(self) -> str:
        return f"{self.status_code} {self.text}"


def decode_line(raw: bytes) -> str:
    """Decode one raw control line and strip its terminator."""
    return raw.decode(CONTROL_ENCODING, errors="replace").rstrip("\r\n")


class ReplyReader:
    """
    Reads replies from a control connection.

    Usage:
        reader = ReplyReader(control_file.readline)
        welcome = reader.expect(220)
    """

    def __init__(self, readline: Callable[[], bytes]):
        """
        Initialize the reader.

        Args:
            readline: Callable returning the next raw line (b"" at end of input)
        """
        self._readline = readline

    def _read_line(self) -> str:
        raw = self._readline()
        if not raw:
            raise FTPProtocolError("Control connection closed by server")
        line = decode_line(raw)
        logger.debug(f"<<< {line}")
        return line

    def receive_one_reply(self) -> Reply:
        """
        Read exactly one reply, including 1xx replies.

        Returns:
            The parsed Reply

        Raises:
            FTPProtocolError: On end of input or a malformed reply line
        """
        line = self._read_line()

        match = REPLY_PATTERN.fullmatch(line)
        if not match:
            raise FTPProtocolError(f"Invalid reply '{line}' received")

        code, separator, text = match.groups()
        if separator == " ":
            return Reply(int(code), text)

        parts = [text]
        while True:
            try:
                line = self._read_line()
            except FTPProtocolError:
                raise FTPProtocolError(
                    f"Connection closed in the middle of multi-line reply {code}"
                )
            if line.startswith(code + " "):
                parts.append(line[4:])
                break
            if line.startswith(code + "-"):
                parts.append(line[4:])
            else:
                parts.append(line)

        return Reply(int(code), "\n".join(parts))

    def receive_reply(self) -> Reply:
        """Read replies until one that is not preliminary (code >= 200)."""
        while True:
            reply = self.receive_one_reply()
            if not reply.is_preliminary:
                return reply

    def expect(self, status_code: int) -> str:
        """
        Read the final reply and check its code.

        Args:
            status_code: The only acceptable code

        Returns:
            The reply text

        Raises:
            FTPReplyError: If the server replied with another code
        """
        reply = self.receive_reply()
        if reply.status_code != status_code:
            raise FTPReplyError(reply.status_code, reply.text)
        return reply.text

    def expect_one_of(self, *status_codes: int) -> Reply:
        """
        Read the final reply and check it against several accepted codes.

        Raises:
            FTPReplyError: If the code is not among status_codes
        """
        reply = self.receive_reply()
        if reply.status_code not in status_codes:
            raise FTPReplyError(reply.status_code, reply.text)
        return reply

    def expect_preliminary(self, *status_codes: int) -> Reply:
        """Read one reply without skipping 1xx replies and check its code."""
        reply = self.receive_one_reply()
        if reply.status_code not in status_codes:
            raise FTPReplyError(reply.status_code, reply.text)
        return reply
