"""
config/settings.py — ClawDesk Runtime Settings

Merges config.yaml (defaults/structure) with .env and environment variables
(secrets). Pydantic-powered — all fields are validated and typed.

  - GatewayConfig rejects non-WebSocket URLs and inverted protocol ranges
  - ReconnectConfig validates the strategy name and its delays
  - resolve_gateway_token() falls back to the token the onboarding wizard
    wrote into the OpenClaw config file (gateway.auth.token)
  - load_settings() respects CLAWDESK_CONFIG env var as a fallback
    when no explicit config_path argument is given
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from clawdesk.exceptions import ClawDeskError
from clawdesk.gateway.protocol import PROTOCOL_VERSION, default_platform


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(ClawDeskError):
    """Raised when settings are unusable (e.g. no gateway token anywhere)."""


_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_STRATEGIES = {"fixed", "exponential"}


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ReconnectConfig(BaseModel):
    """How long to wait between reconnect attempts. Retries never stop."""
    strategy: str = "fixed"
    delay_seconds: float = 3.0
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.5

    @field_validator("strategy")
    @classmethod
    def _known_strategy(cls, v: str) -> str:
        v = v.lower()
        if v not in _VALID_STRATEGIES:
            raise ValueError(
                f"gateway.reconnect.strategy must be one of "
                f"{sorted(_VALID_STRATEGIES)}, got '{v}'"
            )
        return v

    @field_validator("delay_seconds", "jitter")
    @classmethod
    def _non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("gateway.reconnect delays must be >= 0")
        return v

    @field_validator("base_delay")
    @classmethod
    def _positive_base(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("gateway.reconnect.base_delay must be > 0")
        return v

    @model_validator(mode="after")
    def _cap_above_base(self) -> "ReconnectConfig":
        if self.max_delay < self.base_delay:
            raise ValueError("gateway.reconnect.max_delay must be >= base_delay")
        return self


class GatewayConfig(BaseModel):
    url: str = "ws://127.0.0.1:18789"
    token: Optional[str] = None
    role: str = "operator"
    min_protocol: int = PROTOCOL_VERSION
    max_protocol: int = PROTOCOL_VERSION
    request_timeout_seconds: Optional[float] = 30.0
    require_auth: bool = True
    openclaw_config_path: str = "~/.openclaw/openclaw.json"
    reconnect: ReconnectConfig = Field(default_factory=ReconnectConfig)

    @field_validator("url")
    @classmethod
    def _websocket_url(cls, v: str) -> str:
        parsed = urlparse(v)
        if parsed.scheme not in ("ws", "wss") or not parsed.hostname:
            raise ValueError(f"gateway.url must be a ws:// or wss:// URL, got '{v}'")
        try:
            port = parsed.port
        except ValueError:
            raise ValueError(f"gateway.url has an invalid port: '{v}'") from None
        if port is not None and not (1 <= port <= 65535):
            raise ValueError(f"gateway.url port must be 1-65535, got {port}")
        return v

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("gateway.request_timeout_seconds must be > 0 (or null to disable)")
        return v

    @field_validator("min_protocol", "max_protocol")
    @classmethod
    def _positive_protocol(cls, v: int) -> int:
        if v < 1:
            raise ValueError("gateway protocol versions must be >= 1")
        return v

    @model_validator(mode="after")
    def _protocol_range(self) -> "GatewayConfig":
        if self.min_protocol > self.max_protocol:
            raise ValueError(
                f"gateway.min_protocol ({self.min_protocol}) must be <= "
                f"gateway.max_protocol ({self.max_protocol})"
            )
        return self


class ClientConfig(BaseModel):
    """Identity declared in the connect handshake."""
    id: str = "openclaw-macos"
    version: str = "0.1.0"
    platform: str = Field(default_factory=default_platform)
    mode: str = "webchat"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "~/.clawdesk/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    ClawDesk runtime settings.

    Priority (highest to lowest):
      1. Environment variables (CLAWDESK_GATEWAY__URL, ...)
      2. .env file
      3. config.yaml
      4. Field defaults
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CLAWDESK_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    # -- Secrets from .env ---------------------------------------------------
    gateway_token: Optional[str] = Field(default=None, alias="OPENCLAW_GATEWAY_TOKEN")

    # -- Structured config (from config.yaml) --------------------------------
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    client: ClientConfig = Field(default_factory=ClientConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # config.yaml arrives as init kwargs; env and .env must win over it.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("gateway", mode="before")
    @classmethod
    def _coerce_gateway(cls, v: Any) -> Any:
        return GatewayConfig(**v) if isinstance(v, dict) else v

    @field_validator("client", mode="before")
    @classmethod
    def _coerce_client(cls, v: Any) -> Any:
        return ClientConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def gateway_url(self) -> str:
        return self.gateway.url

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir).expanduser()

    @property
    def openclaw_config_path(self) -> Path:
        return Path(self.gateway.openclaw_config_path).expanduser()

    def resolve_gateway_token(self) -> str:
        """
        Return the bearer token for the gateway handshake.

        Lookup order:
          1. gateway.token (config.yaml / CLAWDESK_GATEWAY__TOKEN)
          2. OPENCLAW_GATEWAY_TOKEN
          3. gateway.auth.token in the OpenClaw config written by onboarding
        """
        if self.gateway.token:
            return self.gateway.token
        if self.gateway_token:
            return self.gateway_token
        token = read_openclaw_token(self.openclaw_config_path)
        if token:
            return token
        raise ConfigError(
            "No gateway token found. Finish onboarding, set gateway.token in "
            f"config.yaml, or export OPENCLAW_GATEWAY_TOKEN "
            f"(looked in {self.openclaw_config_path})."
        )


def read_openclaw_token(path: Path) -> Optional[str]:
    """Read gateway.auth.token from an OpenClaw JSON config; None if absent."""
    if not path.exists():
        return None
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read OpenClaw config {path}: {e}") from e
    token = (((data or {}).get("gateway") or {}).get("auth") or {}).get("token")
    return token if isinstance(token, str) and token else None


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = threading.Lock()

_KNOWN_SECTIONS = {"gateway", "client", "logging"}


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a YAML mapping at the top level")
    return data


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. CLAWDESK_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("CLAWDESK_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton
    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}

    instance = Settings(**init_kwargs)
    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """Return the global Settings singleton, loading defaults on first use."""
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is not None:
            return _singleton
    return load_settings()
