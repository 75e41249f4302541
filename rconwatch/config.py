"""
Service configuration.

Loaded from JSON. Two shapes are accepted and may be mixed:

    {"server": {"host": "1.2.3.4", "rconPort": 2302, "rconPassword": "..."}}

    {"host": "1.2.3.4", "port": 2302, "password": "...", "poll_interval": 30}

Flat keys win over the "server" section.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from pathlib import Path

from rconwatch.transport.session import SERVER_SILENCE_LIMIT

# Keys of the "server" section → ServiceConfig field
_SERVER_KEYS = {
    "host": "host",
    "rconPort": "port",
    "rconPassword": "password",
}


@dataclass
class ServiceConfig:
    """RCON connection and timing settings. All times in seconds."""
    host: str = "127.0.0.1"
    port: int = 2302
    password: str = ""
    # How often the players command is sent
    poll_interval: float = 30.0
    # Empty command sent after this much outbound silence (server limit 45s)
    keepalive_interval: float = 30.0
    # Session is considered dead after this much inbound silence
    watchdog_timeout: float = 60.0
    # players: wait for first response / close gather window after last line
    response_timeout: float = 5.0
    gather_debounce: float = 1.0
    # players timeouts in a row before forcing a reconnect
    max_consecutive_timeouts: int = 3
    # Roster entries unconfirmed for this long are dropped
    liveness_timeout: float = 120.0
    # Reconnect backoff
    reconnect_initial_delay: float = 5.0
    reconnect_max_delay: float = 60.0
    reconnect_max_attempts: int | None = None
    # Wait before retrying a rejected login
    auth_retry_delay: float = 5.0
    # Wait between teardown and reopen on an explicit restart()
    restart_delay: float = 2.0

    def validate(self) -> None:
        """Raise ValueError for settings the server or protocol won't accept."""
        if not self.host:
            raise ValueError("host must not be empty")
        if not 0 < self.port < 65536:
            raise ValueError(f"port {self.port} out of range")
        if not 0 < self.keepalive_interval <= SERVER_SILENCE_LIMIT:
            raise ValueError(
                f"keepalive_interval must be in (0, {SERVER_SILENCE_LIMIT:.0f}]s, "
                f"got {self.keepalive_interval}"
            )
        for name in ("poll_interval", "watchdog_timeout", "response_timeout",
                     "gather_debounce", "liveness_timeout", "reconnect_initial_delay"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.reconnect_max_delay < self.reconnect_initial_delay:
            raise ValueError("reconnect_max_delay is below reconnect_initial_delay")
        if self.max_consecutive_timeouts < 1:
            raise ValueError("max_consecutive_timeouts must be at least 1")

    @classmethod
    def from_dict(cls, data: dict) -> ServiceConfig:
        known = {f.name for f in fields(cls)}
        values = {}
        server = data.get("server") or {}
        for key, name in _SERVER_KEYS.items():
            if key in server:
                values[name] = server[key]
        for key, value in data.items():
            if key in known:
                values[key] = value
        if "port" in values:
            values["port"] = int(values["port"])
        return cls(**values)

    @classmethod
    def load(cls, path: str | Path) -> ServiceConfig:
        """Read a JSON config file."""
        data = json.loads(Path(path).read_text())
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object")
        return cls.from_dict(data)

    def redacted(self) -> dict:
        """Settings as a dict with the password masked, for logging."""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        if out["password"]:
            out["password"] = "***"
        return out
