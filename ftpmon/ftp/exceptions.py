"""FTP-specific exceptions for ftpmon.

Custom exception hierarchy for the FTP protocol engine, separating
framing problems from replies the server sent but the caller did not
accept.
"""


class FTPError(Exception):
    """Base exception for all FTP-related errors."""

    def __init__(self, message: str, original_error: Exception = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


class FTPProtocolError(FTPError):
    """The peer violated the FTP wire grammar (or closed the connection)."""


class FTPReplyError(FTPError):
    """The server replied with a status code the caller did not accept."""

    def __init__(self, status_code: int, text: str):
        self.status_code = status_code
        self.text = text
        super().__init__(f"{status_code} {text}")


class FTPAuthenticationError(FTPReplyError):
    """FTP authentication (login) failed."""

    def __init__(self, username: str, status_code: int, text: str):
        self.username = username
        super().__init__(status_code, text)
        self.message = f"Authentication failed for user '{username}' ({status_code} {text})"


class FTPConnectionError(FTPError):
    """Failed to establish the FTP control connection."""

    def __init__(self, host: str, port: int, original_error: Exception = None):
        self.host = host
        self.port = port
        message = f"Failed to connect to {host}:{port}"
        super().__init__(message, original_error)


class FTPTimeoutError(FTPError):
    """FTP operation timed out."""

    def __init__(self, operation: str = "Operation", timeout: float = 20.0):
        self.timeout = timeout
        message = f"{operation} timed out after {timeout:g} seconds"
        super().__init__(message)
