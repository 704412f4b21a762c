#!/usr/bin/env python3
"""
Therapeia Configuration Manager

Loads the optional JSON configuration from ~/.therapeia/config.json (or a
path given with --config or $THERAPEIA_CONFIG). The file is read-only input:
nothing is written back between runs.
"""

import json
import logging
import os
import pathlib
import tempfile
from dataclasses import asdict, dataclass, field, fields
from typing import Optional

CONFIG_ENV_VAR = "THERAPEIA_CONFIG"

logger = logging.getLogger("therapeia.config")

DEFAULT_SLEEP_INHIBITOR = ["caffeinate", "-dims", "-w", "{pid}"]


def default_report_dir() -> str:
    """Desktop if present, else the home directory"""
    desktop = pathlib.Path.home() / "Desktop"
    return str(desktop if desktop.is_dir() else pathlib.Path.home())


@dataclass
class TherapeiaConfig:
    """Settings for a maintenance run"""

    version: str = "1.0"
    min_free_gb: float = 5
    report_dir: str = field(default_factory=default_report_dir)
    log_dir: str = field(default_factory=tempfile.gettempdir)
    keepalive_interval: float = 50
    command_timeout: float = 600
    operation_timeout: float = 1800
    sleep_inhibitor: list[str] = field(default_factory=lambda: list(DEFAULT_SLEEP_INHIBITOR))
    confirmation_policy: dict[str, str] = field(default_factory=dict)
    operations_file: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "TherapeiaConfig":
        """Create from dictionary, ignoring unknown keys.

        A value of the wrong type falls back to that field's default.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            try:
                values[key] = _COERCE[key](value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid config value for {key}: {value!r}")
        return cls(**values)


def _number(value) -> float:
    if isinstance(value, bool):
        raise TypeError("expected a number")
    number = float(value)
    if number != number or number < 0:
        raise ValueError("expected a non-negative number")
    return number


def _text(value) -> str:
    if not isinstance(value, str):
        raise TypeError("expected a string")
    return value


def _optional_text(value) -> Optional[str]:
    return None if value is None else _text(value)


def _argv(value) -> list[str]:
    if not isinstance(value, list):
        raise TypeError("expected a list of strings")
    return [_text(v) for v in value]


def _policy(value) -> dict[str, str]:
    if not isinstance(value, dict):
        raise TypeError("expected an object")
    return {_text(k): _text(v) for k, v in value.items()}


_COERCE = {
    "version": _text,
    "min_free_gb": _number,
    "report_dir": _text,
    "log_dir": _text,
    "keepalive_interval": _number,
    "command_timeout": _number,
    "operation_timeout": _number,
    "sleep_inhibitor": _argv,
    "confirmation_policy": _policy,
    "operations_file": _optional_text,
}


class ConfigManager:
    """Locates and loads the Therapeia configuration file"""

    def __init__(self, config_file: Optional[pathlib.Path] = None):
        """Initialize configuration manager

        Args:
            config_file: Override default config file location
        """
        if config_file:
            self.config_file = pathlib.Path(config_file).expanduser()
        elif os.environ.get(CONFIG_ENV_VAR):
            self.config_file = pathlib.Path(os.environ[CONFIG_ENV_VAR]).expanduser()
        else:
            self.config_file = pathlib.Path.home() / ".therapeia" / "config.json"

    def load(self) -> TherapeiaConfig:
        """Load configuration from file"""
        if self.config_file.exists():
            try:
                with self.config_file.open() as f:
                    data = json.load(f)
                    return TherapeiaConfig.from_dict(data)
            except (json.JSONDecodeError, TypeError, AttributeError, OSError):
                # If config is corrupted, return default
                return TherapeiaConfig()
        else:
            # Return default configuration
            return TherapeiaConfig()
