"""Configuration for the remote conversation client.

Simple configuration loader from environment variables (optionally
seeded from a .env file by the CLI), plus the platform data directory
used by the file-based conversation store.
"""

import os
import platform
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Optional

from .errors import ConfigurationError

DEFAULT_API_URL = "https://neo.character.ai"
DEFAULT_WEB_URL = "https://beta.character.ai"
DEFAULT_STREAM_URL = "wss://neo.character.ai/ws/"

# Browser-like UA; the backend rejects obvious bot agents on some routes
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/115.0.0.0 Safari/537.36"
)

MAX_NUMBERED_TOKENS = 9


# =============================================================================
# Data directory
# =============================================================================

def get_data_dir() -> Path:
    """Get the data directory for remotechat."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "remotechat"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_store_path() -> Path:
    """Default location of the JSON conversation store."""
    override = os.getenv("REMOTECHAT_STORE_PATH")
    if override:
        return Path(override)
    return get_data_dir() / "conversations.json"


# =============================================================================
# Environment Variable Configuration
# =============================================================================


def _collect_tokens() -> list[str]:
    tokens = []
    # Comma-separated list first, then numbered variables
    for token in os.getenv("REMOTECHAT_TOKENS", "").split(","):
        if token.strip():
            tokens.append(token.strip())
    numbered = ["REMOTECHAT_TOKEN"] + [
        f"REMOTECHAT_TOKEN_{i}" for i in range(2, MAX_NUMBERED_TOKENS + 1)
    ]
    for name in numbered:
        value = os.getenv(name, "").strip()
        if value:
            tokens.append(value)
    return tokens


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load application configuration from environment variables.

    Returns:
        dict with raw configuration values (strings / lists)
    """
    return {
        # Credentials (order matters: first one is used first)
        "TOKENS": _collect_tokens(),
        "PERSONA_ID": os.getenv("REMOTECHAT_PERSONA_ID", ""),

        # Endpoints
        "API_URL": os.getenv("REMOTECHAT_API_URL", DEFAULT_API_URL),
        "WEB_URL": os.getenv("REMOTECHAT_WEB_URL", DEFAULT_WEB_URL),
        "STREAM_URL": os.getenv("REMOTECHAT_STREAM_URL", DEFAULT_STREAM_URL),
        "USER_AGENT": os.getenv("REMOTECHAT_USER_AGENT", DEFAULT_USER_AGENT),

        # Timeouts in seconds; each is independent of the others
        "UNARY_TIMEOUT": os.getenv("REMOTECHAT_UNARY_TIMEOUT", "30"),
        "STREAM_TIMEOUT": os.getenv("REMOTECHAT_STREAM_TIMEOUT", "45"),
        "BOOTSTRAP_TIMEOUT": os.getenv("REMOTECHAT_BOOTSTRAP_TIMEOUT", "10"),
        "CONNECT_TIMEOUT": os.getenv("REMOTECHAT_CONNECT_TIMEOUT", "10"),

        # Local HTTP bridge
        "HOST": os.getenv("REMOTECHAT_HOST", "127.0.0.1"),
        "PORT": os.getenv("REMOTECHAT_PORT", "8091"),
    }


def get_config_value(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)


def _positive_float(config: dict, key: str) -> float:
    raw = config[key]
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise ConfigurationError(f"Configuration '{key}' must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigurationError(f"Configuration '{key}' must be positive, got {value}")
    return value


@dataclass
class ClientSettings:
    """Typed settings consumed by the client and its transports."""
    tokens: list[str] = field(default_factory=list)
    persona_id: str = ""
    api_url: str = DEFAULT_API_URL
    web_url: str = DEFAULT_WEB_URL
    stream_url: str = DEFAULT_STREAM_URL
    user_agent: str = DEFAULT_USER_AGENT
    unary_timeout: float = 30.0
    stream_timeout: float = 45.0
    bootstrap_timeout: float = 10.0
    connect_timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "ClientSettings":
        config = load_config()
        return cls(
            tokens=list(config["TOKENS"]),
            persona_id=config["PERSONA_ID"],
            api_url=config["API_URL"].rstrip("/"),
            web_url=config["WEB_URL"].rstrip("/"),
            stream_url=config["STREAM_URL"],
            user_agent=config["USER_AGENT"],
            unary_timeout=_positive_float(config, "UNARY_TIMEOUT"),
            stream_timeout=_positive_float(config, "STREAM_TIMEOUT"),
            bootstrap_timeout=_positive_float(config, "BOOTSTRAP_TIMEOUT"),
            connect_timeout=_positive_float(config, "CONNECT_TIMEOUT"),
        )

    def base_url(self, name: str) -> str:
        """Resolve a strategy's base name ("api", "web") to a URL."""
        if name == "api":
            return self.api_url
        if name == "web":
            return self.web_url
        raise ConfigurationError(f"Unknown base URL name: {name}")
