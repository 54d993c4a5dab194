"""Settings for the rendezvous endpoints, channel and STUN server.

Values are resolved in this order, highest first: explicit CLI options,
``RAAS_RTC_*`` environment variables, the ``[environments.<env>]`` table of
a TOML file, then the built-in defaults below. The TOML file is the first of
``./raas-rtc.toml`` and ``~/.raas-rtc/config.toml`` that exists; the table is
picked by ``RAAS_RTC_ENV`` (development, staging or production).

Example ``raas-rtc.toml``::

    [environments.development]
    signaling_websocket = "ws://127.0.0.1:8080"
    signaling_http = "http://127.0.0.1:8001"
    channel_name = "bench-lab"
"""

import os
import tomllib
from pathlib import Path
from typing import Optional

from loguru import logger

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_SIGNALING_HTTP = "http://localhost:8001"
DEFAULT_CHANNEL_NAME = "raas-lab"
DEFAULT_STUN_URL = "stun:stun.l.google.com:19302"

DEFAULT_ENVIRONMENT = "production"
ENVIRONMENTS = ("development", "staging", "production")

# Keys read from an [environments.<env>] table
CONFIG_KEYS = ("signaling_websocket", "signaling_http", "channel_name", "stun_url")

ENV_OVERRIDES = {
    "signaling_websocket": "RAAS_RTC_SIGNALING_WS",
    "signaling_http": "RAAS_RTC_SIGNALING_HTTP",
    "channel_name": "RAAS_RTC_CHANNEL",
    "stun_url": "RAAS_RTC_STUN_URL",
}


def _config_candidates():
    return (Path.cwd() / "raas-rtc.toml", Path.home() / ".raas-rtc" / "config.toml")


class Config:
    """Resolved raas-rtc settings. Call ``load()`` to read files and env."""

    def __init__(self):
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.signaling_http: str = DEFAULT_SIGNALING_HTTP
        self.channel_name: str = DEFAULT_CHANNEL_NAME
        self.stun_url: str = DEFAULT_STUN_URL
        self.environment: str = DEFAULT_ENVIRONMENT
        self.config_file: Optional[Path] = None

    def load(self) -> None:
        self.environment = self._get_environment()
        path = self._find_config_file()
        if path is not None:
            self._load_config_file(path)
        self._apply_env_overrides()

    def _get_environment(self) -> str:
        name = os.getenv("RAAS_RTC_ENV", DEFAULT_ENVIRONMENT).strip().lower()
        if name in ENVIRONMENTS:
            return name
        logger.warning(
            f"Unknown RAAS_RTC_ENV {name!r} (expected one of {', '.join(ENVIRONMENTS)}), "
            f"using {DEFAULT_ENVIRONMENT}"
        )
        return DEFAULT_ENVIRONMENT

    def _find_config_file(self) -> Optional[Path]:
        for path in _config_candidates():
            if path.is_file():
                logger.info(f"Using config file {path}")
                return path
        logger.debug("No raas-rtc config file, built-in defaults apply")
        return None

    def _load_config_file(self, path: Path) -> None:
        """Apply the table for the current environment from ``path``.

        An unreadable or malformed file is logged and skipped.
        """
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError) as e:
            logger.warning(f"Ignoring config file {path}: {e}")
            return

        self.config_file = path
        section = data.get("environments", {}).get(self.environment) or {}
        if not section:
            logger.debug(f"{path} has no [environments.{self.environment}] table")
            return

        for key in CONFIG_KEYS:
            value = section.get(key)
            if value is not None:
                setattr(self, key, value)
                logger.debug(f"{key} = {value} ({path.name})")

    def _apply_env_overrides(self) -> None:
        for key, env_var in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if value:
                setattr(self, key, value)
                logger.info(f"{key} overridden by {env_var}: {value}")

    def get_http_endpoint(self, endpoint: str) -> str:
        """Join ``endpoint`` (e.g. ``/ice-servers``) onto the HTTP base URL."""
        return f"{self.signaling_http.rstrip('/')}/{endpoint.lstrip('/')}"

    def as_dict(self) -> dict:
        return {
            "environment": self.environment,
            "config_file": str(self.config_file) if self.config_file else None,
            **{key: getattr(self, key) for key in CONFIG_KEYS},
        }


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide Config, loading it on first use."""
    global _config
    if _config is None:
        _config = reload_config()
    return _config


def reload_config() -> Config:
    """Discard the cached Config and load a fresh one."""
    global _config
    config = Config()
    config.load()
    _config = config
    return config
