"""Configuration for the RDM agent."""

from __future__ import annotations

import json
import logging
import os
import socket
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when a config file exists but cannot be read."""


@dataclass
class AgentConfig:
    """Agent configuration — loaded from config.json."""

    device_id: str = ""
    server_url: str = "ws://localhost:8443/ws/device"

    # Connection
    reconnect_delay: float = 5.0  # fixed, not exponential
    connect_timeout: float = 30.0
    ping_interval: float = 30.0  # keep-alive probe
    ping_timeout: float = 30.0
    close_timeout: float = 30.0

    # Telemetry
    heartbeat_interval: float = 60.0
    send_device_info: bool = True

    # Commands
    shell: str = "/bin/sh"
    escalation_command: list = field(default_factory=lambda: ["su", "-c"])
    command_timeout: float = 300.0

    @classmethod
    def load(cls, path: str | Path) -> AgentConfig:
        path = Path(path)
        if path.exists():
            try:
                with open(path) as f:
                    data = json.load(f)
            except (OSError, ValueError) as exc:
                raise ConfigError(f"Cannot read config {path}: {exc}") from exc
            if not isinstance(data, dict):
                raise ConfigError(f"Config {path} must be a JSON object")
            known = {k for k in cls.__dataclass_fields__}
            filtered = {k: v for k, v in data.items() if k in known}
            return cls(**filtered)
        logger.warning("Config not found at %s, using defaults", path)
        return cls()

    def save(self, path: str | Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(dict(self.__dict__), f, indent=2)

    def apply_env(self) -> None:
        """Override settings from RDM_SERVER_URL / RDM_DEVICE_ID."""
        self.server_url = os.environ.get("RDM_SERVER_URL", self.server_url)
        self.device_id = os.environ.get("RDM_DEVICE_ID", self.device_id)

    def generate_id(self) -> str:
        """Generate a device ID from hostname."""
        hostname = socket.gethostname()
        return f"dev-{hostname}"
