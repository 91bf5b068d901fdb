"""
SAPNote Config Management

Unified configuration loading from multiple sources:
1. ~/.sapnote/config.yaml (persistent)
2. .env file (project-local)
3. Environment variables (override)

Priority: ENV > .env > config.yaml

``Config`` is the raw key/value view; ``ServerConfig`` is the typed settings
object handed to the authenticator, token deriver and retrieval pipeline.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from dotenv import dotenv_values

from sapnote.errors import ConfigError

# ═══════════════════════════════════════════════════════════════════════════
# Config Paths
# ═══════════════════════════════════════════════════════════════════════════

SAPNOTE_HOME = Path.home() / ".sapnote"
CONFIG_FILE = SAPNOTE_HOME / "config.yaml"
DEFAULT_TOKEN_CACHE = SAPNOTE_HOME / "token-cache.json"

KNOWN_KEYS = (
    "PFX_PATH",
    "PFX_PASSPHRASE",
    "MAX_JWT_AGE_H",
    "HEADFUL",
    "PLAYWRIGHT_BROWSER_TYPE",
    "TOKEN_CACHE_FILE",
    "COVEO_ORG",
    "COVEO_HOST",
    "BROWSER_IDLE_TIMEOUT_S",
    "HTTP_HOST",
    "HTTP_PORT",
    "ACCESS_TOKEN",
    "LOG_LEVEL",
)

REQUIRED_KEYS = ("PFX_PATH", "PFX_PASSPHRASE")

SUPPORTED_BROWSERS = ("chromium", "firefox", "webkit")


# ═══════════════════════════════════════════════════════════════════════════
# Config Loader
# ═══════════════════════════════════════════════════════════════════════════


class Config:
    """Unified configuration management."""

    def __init__(self, config_file: Path | None = None, search_from: Path | None = None):
        self.data: dict[str, Any] = {}
        self._config_file = config_file or CONFIG_FILE
        self._search_from = search_from or Path.cwd()
        self._load()

    def _load(self):
        """Load config from all sources (priority: ENV > .env > config.yaml)."""
        # 1. Load from ~/.sapnote/config.yaml
        if self._config_file.exists():
            with open(self._config_file) as f:
                self.data = yaml.safe_load(f) or {}

        # 2. Load from .env file (project-local)
        self._load_dotenv()

        # 3. Environment variables override everything
        self._apply_env_overrides()

    def _load_dotenv(self):
        """Load .env file from cwd or parent directories."""
        check = self._search_from
        for _ in range(5):  # Check up to 5 parent directories
            env_file = check / ".env"
            if env_file.exists():
                for key, value in dotenv_values(env_file).items():
                    if value is not None and key not in os.environ:
                        self.data[key] = value
                return
            check = check.parent

    def _apply_env_overrides(self):
        """Environment variables override config file."""
        for key in KNOWN_KEYS:
            if key in os.environ:
                self.data[key] = os.environ[key]

    def get(self, key: str, default: Any = None) -> Any:
        """Get config value."""
        return self.data.get(key, default)

    def missing_required(self) -> list[str]:
        return [key for key in REQUIRED_KEYS if not self.get(key)]


# ═══════════════════════════════════════════════════════════════════════════
# Typed settings
# ═══════════════════════════════════════════════════════════════════════════


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _as_number(key: str, value: Any, kind: type) -> Any:
    try:
        return kind(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}")


def resolve_cert_path(raw: str, base_dir: Path | None = None) -> Path:
    """Expand ``~`` and resolve relative paths against ``base_dir`` (cwd)."""
    path = Path(raw).expanduser()
    if not path.is_absolute():
        path = (base_dir or Path.cwd()) / path
    return path


@dataclass
class ServerConfig:
    """Settings consumed by the session lifecycle and retrieval code."""

    pfx_path: Path
    pfx_passphrase: str
    max_session_age_h: float = 12.0
    headful: bool = False
    browser_type: str = "chromium"
    token_cache_file: Path = DEFAULT_TOKEN_CACHE
    coveo_org: str = "sapamericaproductiontyfzmfz0"
    coveo_host: str = "platform.cloud.coveo.com"
    browser_idle_timeout_s: float = 300.0
    http_host: str = "127.0.0.1"
    http_port: int = 3002
    access_token: str | None = None
    log_level: str = "INFO"

    @classmethod
    def from_config(cls, config: Config | None = None, base_dir: Path | None = None) -> "ServerConfig":
        """Build typed settings, raising ConfigError when required keys are absent."""
        config = config or Config()

        missing = config.missing_required()
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        browser_type = str(config.get("PLAYWRIGHT_BROWSER_TYPE", "chromium")).strip().lower()
        if browser_type not in SUPPORTED_BROWSERS:
            raise ConfigError(
                f"PLAYWRIGHT_BROWSER_TYPE must be one of {', '.join(SUPPORTED_BROWSERS)}, got {browser_type!r}"
            )

        max_age = _as_number("MAX_JWT_AGE_H", config.get("MAX_JWT_AGE_H", 12), float)
        if max_age <= 0:
            raise ConfigError("MAX_JWT_AGE_H must be positive")

        token_cache = config.get("TOKEN_CACHE_FILE")
        access_token = str(config.get("ACCESS_TOKEN") or "").strip() or None

        return cls(
            pfx_path=resolve_cert_path(str(config.get("PFX_PATH")), base_dir),
            pfx_passphrase=str(config.get("PFX_PASSPHRASE")),
            max_session_age_h=max_age,
            headful=_as_bool(config.get("HEADFUL", False)),
            browser_type=browser_type,
            token_cache_file=Path(token_cache).expanduser() if token_cache else DEFAULT_TOKEN_CACHE,
            coveo_org=str(config.get("COVEO_ORG", cls.coveo_org)),
            coveo_host=str(config.get("COVEO_HOST", cls.coveo_host)),
            browser_idle_timeout_s=_as_number(
                "BROWSER_IDLE_TIMEOUT_S", config.get("BROWSER_IDLE_TIMEOUT_S", 300), float
            ),
            http_host=str(config.get("HTTP_HOST", cls.http_host)),
            http_port=_as_number("HTTP_PORT", config.get("HTTP_PORT", 3002), int),
            access_token=access_token,
            log_level=str(config.get("LOG_LEVEL", "INFO")).upper(),
        )

    def describe(self) -> dict[str, Any]:
        """Loggable summary without secrets."""
        return {
            "pfx_path": str(self.pfx_path),
            "max_session_age_h": self.max_session_age_h,
            "headful": self.headful,
            "browser_type": self.browser_type,
            "token_cache_file": str(self.token_cache_file),
            "coveo_host": self.coveo_host,
        }


# ═══════════════════════════════════════════════════════════════════════════
# Public API
# ═══════════════════════════════════════════════════════════════════════════


def load_config() -> Config:
    """Load config from all sources."""
    return Config()


def load_server_config() -> ServerConfig:
    """Load and validate the typed server settings."""
    return ServerConfig.from_config(Config())
