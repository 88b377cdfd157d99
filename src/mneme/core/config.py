"""Configuration management for Mneme.

This module handles loading and saving application configuration to/from
a JSON file. The config directory can be customized via CLI argument.

The device identity (a UUID7 generated once and persisted here) is the
precondition every sync request relies on.

CRITICAL: This module must have NO UI dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
import socket
from pathlib import Path
from typing import Any, Dict, Optional

from uuid6 import uuid7

from .validation import ValidationError, validate_device_id

logger = logging.getLogger(__name__)

__all__ = ["Config", "DEFAULT_SYNC_CONFIG", "DEFAULT_SERVER_CONFIG"]

DEFAULT_SYNC_CONFIG: Dict[str, Any] = {
    "enabled": False,
    "server_url": None,
    "debounce_seconds": 2.0,
    "request_timeout": 30,
    "tombstone_retention_days": 30,
}

DEFAULT_SERVER_CONFIG: Dict[str, Any] = {
    "database_file": None,
    "host": "127.0.0.1",
    "port": 8385,
}


class Config:
    """Manages application configuration stored in JSON format.

    Attributes:
        config_dir: Path to the configuration directory
        config_file: Path to config.json inside config_dir
    """

    def __init__(self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Custom config directory path. If None, uses ~/.config/mneme/
        """
        if config_dir is None:
            config_dir = Path.home() / ".config" / "mneme"
        self.config_dir = Path(config_dir)
        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.config_file = self.config_dir / "config.json"
        self.config_data = self.load_config()

    def _defaults(self) -> Dict[str, Any]:
        return {
            "database_file": str(self.config_dir / "mneme.db"),
            "device_id": uuid7().hex,
            "device_name": socket.gethostname() or "Mneme device",
            "sync": copy.deepcopy(DEFAULT_SYNC_CONFIG),
            "server": {
                **copy.deepcopy(DEFAULT_SERVER_CONFIG),
                "database_file": str(self.config_dir / "mneme-server.db"),
            },
        }

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file, filling in missing defaults.

        The file is (re)written when defaults had to be added, so that a
        generated device ID is persisted the first time it is created.
        """
        defaults = self._defaults()
        data: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except json.JSONDecodeError as e:
                raise ValidationError(
                    "config_file", f"{self.config_file} is not valid JSON: {e}"
                ) from None
            if not isinstance(data, dict):
                raise ValidationError("config_file", "top-level value must be an object")

        changed = False
        for key, value in defaults.items():
            if key not in data:
                data[key] = value
                changed = True
            elif isinstance(value, dict):
                if not isinstance(data[key], dict):
                    raise ValidationError(key, "must be an object")
                for sub_key, sub_value in value.items():
                    if sub_key not in data[key]:
                        data[key][sub_key] = sub_value
                        changed = True

        data["device_id"] = validate_device_id(data["device_id"])

        if changed:
            self.save_config(data)
            logger.info(f"Wrote default configuration to {self.config_file}")
        return data

    def save_config(self, config: Optional[Dict[str, Any]] = None) -> None:
        """Save configuration to file."""
        if config is not None:
            self.config_data = config
        with open(self.config_file, "w", encoding="utf-8") as f:
            json.dump(self.config_data, f, indent=2)

    def get(self, key: str, default: Any = None) -> Any:
        """Get a top-level configuration value."""
        return self.config_data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Set a top-level configuration value and save to file."""
        self.config_data[key] = value
        self.save_config()

    def get_config_dir(self) -> Path:
        """Get the configuration directory path."""
        return self.config_dir

    def get_database_file(self) -> Path:
        """Get the Local Store database path."""
        return Path(self.config_data["database_file"])

    # ===== Device identity =====

    def get_device_id_hex(self) -> str:
        """Get the device ID as hex string."""
        return self.config_data["device_id"]

    def get_device_name(self) -> str:
        """Get the human-readable device name."""
        return self.config_data["device_name"]

    def set_device_name(self, name: str) -> None:
        """Set the device name."""
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("device_name", "cannot be empty")
        self.set("device_name", name.strip())

    # ===== Sync configuration =====

    def get_sync_config(self) -> Dict[str, Any]:
        """Get a copy of the sync configuration."""
        return dict(self.config_data["sync"])

    def _set_sync_value(self, key: str, value: Any) -> None:
        self.config_data["sync"][key] = value
        self.save_config()

    def is_sync_enabled(self) -> bool:
        """Check if sync is enabled."""
        return bool(self.config_data["sync"].get("enabled", False))

    def set_sync_enabled(self, enabled: bool) -> None:
        """Enable or disable sync."""
        self._set_sync_value("enabled", bool(enabled))

    def get_server_url(self) -> Optional[str]:
        """Get the Remote Store base URL, or None if not configured."""
        return self.config_data["sync"].get("server_url")

    def set_server_url(self, url: Optional[str]) -> None:
        """Set the Remote Store base URL."""
        if url is not None:
            if not isinstance(url, str) or not url.startswith(("http://", "https://")):
                raise ValidationError("server_url", "must start with http:// or https://")
            url = url.rstrip("/")
        self._set_sync_value("server_url", url)

    def get_debounce_seconds(self) -> float:
        """Get the quiet period before a scheduled push runs."""
        value = self.config_data["sync"].get("debounce_seconds")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
            raise ValidationError("debounce_seconds", "must be a non-negative number")
        return float(value)

    def get_request_timeout(self) -> float:
        """Get the timeout applied to every Remote Store request."""
        value = self.config_data["sync"].get("request_timeout")
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValidationError("request_timeout", "must be a positive number")
        return float(value)

    def get_tombstone_retention_days(self) -> int:
        """Get how long synced soft-deleted rows are kept (0 keeps forever)."""
        value = self.config_data["sync"].get("tombstone_retention_days")
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(
                "tombstone_retention_days", "must be a non-negative integer"
            )
        return value

    # ===== Remote Store server configuration =====

    def get_server_config(self) -> Dict[str, Any]:
        """Get a copy of the Remote Store server configuration."""
        return dict(self.config_data["server"])
