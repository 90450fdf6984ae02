"""Networking module for ftpmon.

This module provides the data-connection plumbing:
- PortAllocator: Cyclic local port range with bind-conflict retry
- RelayServer / CopyingRelayHandler: Bidirectional TCP relaying
- DataConnectionProxy: Relays one FTP data connection per start()
"""
