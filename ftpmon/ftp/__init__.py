"""FTP protocol module for ftpmon.

This module handles all FTP-related functionality:
- FTPClient: Control connection, mode switching, transfers and listings
- ReplyReader: Status reply parsing, including multi-line replies
- DirEntry: UNIX-style listing line parsing and formatting
- FtpReverseProxy: Logging FTP proxy that relays data connections
- Exceptions: FTP-specific error types
"""
