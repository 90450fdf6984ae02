"""ftpmon: FTP client, data connection relay and monitoring proxy."""

__version__ = "1.0.0"
