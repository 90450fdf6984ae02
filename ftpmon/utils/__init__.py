"""Utility module for ftpmon.

This module provides cross-cutting utilities:
- Logging: Configured logging with credential redaction
- Validators: Input validation for hosts, ports, port ranges and timeouts
- Threading: Background task helper for relay and accept loops
"""
