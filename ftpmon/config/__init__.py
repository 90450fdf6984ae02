"""Configuration module for ftpmon.

This module handles settings and credentials:
- SettingsManager: JSON-based settings persistence
- CredentialManager: Password storage via keyring
- Paths: Config and log file locations
- MonitorSettings: Settings dataclass
"""
