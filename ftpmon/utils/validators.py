"""Input validators for ftpmon.

Provides validation functions for command-line and settings inputs
like hosts, ports, port ranges and timeouts.
"""

import re
from typing import Optional, Tuple


# IPv4 address pattern
IPV4_PATTERN = re.compile(
    r'^(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}'
    r'(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)$'
)

# Hostname pattern (simplified)
HOSTNAME_PATTERN = re.compile(
    r'^(?=.{1,253}$)(?!-)[A-Za-z0-9-]{1,63}(?<!-)(\.[A-Za-z0-9-]{1,63})*$'
)

# "5000" or "5000-5100"
PORT_RANGE_PATTERN = re.compile(r'^(\d+)(?:-(\d+))?$')


def validate_ip_address(ip: str) -> Tuple[bool, Optional[str]]:
    """
    Validate an IPv4 address.

    Args:
        ip: IP address string to validate

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not ip or not ip.strip():
        return False, "IP address is required"

    ip = ip.strip()

    if IPV4_PATTERN.match(ip):
        return True, None

    return False, f"Invalid IP address format: {ip}"


def validate_host(host: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a host (IP address or hostname).

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not host or not host.strip():
        return False, "Host is required"

    host = host.strip()

    is_valid_ip, _ = validate_ip_address(host)
    if is_valid_ip:
        return True, None

    if HOSTNAME_PATTERN.match(host):
        return True, None

    return False, f"Invalid host: {host}. Must be a valid IP address or hostname."


def validate_port(port: int, allow_zero: bool = False) -> Tuple[bool, Optional[str]]:
    """
    Validate a port number.

    Args:
        port: Port number to validate
        allow_zero: Accept 0 (let the OS choose)

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(port, int):
        try:
            port = int(port)
        except (ValueError, TypeError):
            return False, "Port must be a number"

    lowest = 0 if allow_zero else 1
    if port < lowest or port > 65535:
        return False, f"Port must be between {lowest} and 65535, got {port}"

    return True, None


def parse_port_range(text: str) -> Tuple[int, int]:
    """
    Parse "N" or "N-M" into a (first, last) port range.

    A single port N yields (N, N). first may be greater than last; the
    allocator then counts downwards.

    Raises:
        ValueError: If the text is not a valid range
    """
    match = PORT_RANGE_PATTERN.match(text.strip()) if text else None
    if not match:
        raise ValueError(f"Invalid port range '{text}', expected N or N-M")

    first = int(match.group(1))
    last = int(match.group(2)) if match.group(2) is not None else first

    for port in (first, last):
        is_valid, error = validate_port(port, allow_zero=True)
        if not is_valid:
            raise ValueError(error)

    if (first == 0) != (last == 0):
        raise ValueError("Port 0 (ephemeral) cannot be combined with a fixed port")

    return first, last


def validate_timeout(timeout: int, lowest: int = 1, highest: int = 600000) -> Tuple[bool, Optional[str]]:
    """
    Validate a timeout value in milliseconds.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(timeout, int):
        try:
            timeout = int(timeout)
        except (ValueError, TypeError):
            return False, "Timeout must be a number"

    if timeout < lowest or timeout > highest:
        return False, f"Timeout must be between {lowest} and {highest} ms, got {timeout}"

    return True, None
