"""Settings management for ftpmon.

Provides MonitorSettings dataclass and SettingsManager for persistence.
"""

import json
import logging
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional

from ftpmon.config.paths import get_settings_path
from ftpmon.utils.validators import validate_port, validate_timeout

logger = logging.getLogger("ftpmon.settings")

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass
class MonitorSettings:
    """Settings that persist between runs; command-line options override them."""

    # Proxy listener and data ports (0-0 = OS chooses)
    bind_address: str = "0.0.0.0"
    data_port_first: int = 0
    data_port_last: int = 0

    # Timeouts in milliseconds
    server_connection_timeout: int = 20000
    accept_timeout: int = 20000

    # Client defaults
    passive_mode: bool = True

    # Diagnostics
    log_level: str = "INFO"
    hex_dump: bool = False

    def __post_init__(self):
        for port in (self.data_port_first, self.data_port_last):
            is_valid, error = validate_port(port, allow_zero=True)
            if not is_valid:
                raise ValueError(error)
        if (self.data_port_first == 0) != (self.data_port_last == 0):
            raise ValueError("Port 0 (ephemeral) cannot be combined with a fixed port")

        for timeout in (self.server_connection_timeout, self.accept_timeout):
            is_valid, error = validate_timeout(timeout)
            if not is_valid:
                raise ValueError(error)

        if self.log_level.upper() not in LOG_LEVELS:
            raise ValueError(f"Unknown log level '{self.log_level}'")

    @property
    def data_port_range(self) -> str:
        """Port range as "N" or "N-M"."""
        if self.data_port_first == self.data_port_last:
            return str(self.data_port_first)
        return f"{self.data_port_first}-{self.data_port_last}"

    def to_dict(self) -> dict:
        """Convert settings to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "MonitorSettings":
        """Create settings from dictionary, ignoring unknown keys."""
        valid_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in valid_fields}
        return cls(**filtered)


class SettingsManager:
    """Manages settings persistence."""

    def __init__(self, config_path: Optional[Path] = None):
        """
        Initialize settings manager.

        Args:
            config_path: Optional custom path, defaults to platform standard
        """
        self._config_path = config_path or get_settings_path()
        self._settings: Optional[MonitorSettings] = None

    @property
    def config_path(self) -> Path:
        """Path to settings file."""
        return self._config_path

    def load(self) -> MonitorSettings:
        """
        Load settings from disk.

        Returns:
            MonitorSettings instance (defaults if file not found or invalid)
        """
        if self._config_path.exists():
            try:
                with open(self._config_path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                self._settings = MonitorSettings.from_dict(data)
            except (json.JSONDecodeError, IOError, TypeError, ValueError) as e:
                logger.warning(f"Ignoring invalid settings file {self._config_path}: {e}")
                self._settings = MonitorSettings()
        else:
            self._settings = MonitorSettings()

        return self._settings

    def save(self, settings: MonitorSettings) -> None:
        """
        Persist settings to disk.

        Args:
            settings: Settings to save
        """
        self._settings = settings

        self._config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self._config_path, "w", encoding="utf-8") as f:
            json.dump(settings.to_dict(), f, indent=2)

    def reset(self) -> MonitorSettings:
        """
        Reset to default settings.

        Returns:
            Default MonitorSettings instance
        """
        self._settings = MonitorSettings()

        if self._config_path.exists():
            self._config_path.unlink()

        return self._settings

    def update(self, **kwargs) -> MonitorSettings:
        """
        Update specific settings fields.

        Args:
            **kwargs: Field names and new values

        Returns:
            Updated MonitorSettings instance

        Raises:
            ValueError: If the updated settings are invalid
        """
        if self._settings is None:
            self.load()

        data = self._settings.to_dict()
        data.update({k: v for k, v in kwargs.items() if k in data})
        self.save(MonitorSettings.from_dict(data))
        return self._settings
