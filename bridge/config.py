# bridge/config.py

import os
from dataclasses import dataclass, field
from typing import Any, Dict

from dotenv import load_dotenv

DEFAULT_PORT = 8080
DEFAULT_HOST = "0.0.0.0"


class ConfigError(ValueError):
    """Raised when an environment setting cannot be parsed"""


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from None


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name, "").strip()
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {value!r}") from None


@dataclass
class BridgeConfig:
    """Runtime settings for the bridge process"""

    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT
    secret: str = ""
    upstream: Dict[str, Any] = field(default_factory=dict)

    @property
    def open_access(self) -> bool:
        return not self.secret

    @classmethod
    def from_env(cls) -> "BridgeConfig":
        """
        Build the configuration from environment variables (and a .env file)

        Environment Variables:
            PORT: Listen port (default: 8080)
            BRIDGE_HOST: Listen address (default: 0.0.0.0)
            BRIDGE_SECRET: Shared secret clients must send; empty means open access
            KITE_WS_URL: Kite ticker root URI override
            KITE_RECONNECT_MAX_TRIES: Upstream reconnect attempts before giving up
            KITE_RECONNECT_MAX_DELAY: Upper bound of the reconnect backoff in seconds
            KITE_CONNECT_TIMEOUT: Upstream handshake timeout in seconds

        Raises:
            ConfigError: If a numeric setting is malformed or the port is out of range
        """
        load_dotenv(override=False)

        port = _get_int("PORT", DEFAULT_PORT)
        if not 0 <= port <= 65535:
            raise ConfigError(f"PORT must be between 0 and 65535, got {port}")

        upstream = {}
        root_uri = os.getenv("KITE_WS_URL", "").strip()
        if root_uri:
            upstream["root_uri"] = root_uri
        if os.getenv("KITE_RECONNECT_MAX_TRIES"):
            upstream["reconnect_max_tries"] = _get_int("KITE_RECONNECT_MAX_TRIES", 0)
        if os.getenv("KITE_RECONNECT_MAX_DELAY"):
            upstream["reconnect_max_delay"] = _get_float("KITE_RECONNECT_MAX_DELAY", 0)
        if os.getenv("KITE_CONNECT_TIMEOUT"):
            upstream["connect_timeout"] = _get_float("KITE_CONNECT_TIMEOUT", 0)

        return cls(
            host=os.getenv("BRIDGE_HOST", DEFAULT_HOST).strip() or DEFAULT_HOST,
            port=port,
            secret=os.getenv("BRIDGE_SECRET", ""),
            upstream=upstream,
        )
