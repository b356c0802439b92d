"""Configuration for the OTA Hub device agent."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATHS = (
    Path("/etc/otahub-agent/config.json"),
    Path.home() / ".otahub-agent" / "config.json",
)


@dataclass
class AgentConfig:
    """Agent settings, persisted as config.json."""

    device_id: str = ""
    device_token: str = ""
    server_url: str = "ws://localhost:8600/ws/device"
    api_url: str = "http://localhost:8600"
    hardware_model: str = ""
    firmware_version: str = "0.0.0"
    data_dir: str = "/var/lib/otahub-agent"

    # Intervals (seconds)
    poll_interval: float = 300.0
    heartbeat_interval: float = 30.0

    # Installer
    health_check_command: str = ""
    health_check_timeout: float = 60.0

    # Provisioning channel
    provisioning_enabled: bool = True
    provisioning_channel: int = 1  # RFCOMM channel
    provisioning_timeout: float = 60.0
    provisioning_attempts: int = 3
    wifi_interface: str = "wlan0"
    wifi_ssid: str = ""
    wifi_country: str = ""

    @classmethod
    def load(cls, path: str | Path) -> AgentConfig:
        path = Path(path)
        if path.exists():
            with open(path) as f:
                data = json.load(f)
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        """Write the config atomically; the file holds the device token."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        with open(tmp, "w") as f:
            json.dump(asdict(self), f, indent=2)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)

    def use_server(self, server_url: str, api_url: str | None = None) -> None:
        """Point both channels at a hub; *api_url* defaults to the channel's host."""
        self.server_url = server_url
        if api_url:
            self.api_url = api_url.rstrip("/")
            return
        parts = urlsplit(server_url)
        scheme = {"ws": "http", "wss": "https"}.get(parts.scheme, parts.scheme)
        self.api_url = urlunsplit((scheme, parts.netloc, "", "", ""))

    @property
    def slots_dir(self) -> Path:
        return Path(self.data_dir) / "slots"

    @property
    def provisioned(self) -> bool:
        return bool(self.wifi_ssid)

    @property
    def registered(self) -> bool:
        return bool(self.device_token)


def find_config() -> Path | None:
    for candidate in DEFAULT_CONFIG_PATHS:
        if candidate.exists():
            return candidate
    return None
