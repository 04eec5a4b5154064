"""Server settings: a small YAML file with environment-variable overrides.

Example ``server.yaml``::

    server:
      listen_host: "0.0.0.0"
      listen_port: 9876
      users_path: "users.json"
      max_body_bytes: 1048576
      rate_limit_seconds: 5
      provider: "aliyun"
      provider_timeout_seconds: 10
      request_timeout_seconds: 15

Environment overrides: DDNS_LISTEN_PORT, DDNS_USERS_PATH, DNS_PROVIDER.
Provider credentials are only read from the environment
(ALIBABA_CLOUD_ACCESS_KEY_ID, ALIBABA_CLOUD_ACCESS_KEY_SECRET).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = "server.yaml"


class SettingsError(Exception):
    """The settings file exists but cannot be used."""


@dataclass(frozen=True)
class Settings:
    listen_host: str = "0.0.0.0"
    listen_port: int = 9876
    users_path: str = "users.json"
    max_body_bytes: int = 1024 * 1024
    rate_limit_seconds: float = 5.0
    provider: str = "aliyun"
    provider_timeout_seconds: float = 10.0
    request_timeout_seconds: float = 15.0
    access_key_id: str = ""
    access_key_secret: str = ""


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise SettingsError(f"'{name}' must be an integer, got {value!r}") from None


def _as_float(value: Any, name: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise SettingsError(f"'{name}' must be a number, got {value!r}") from None


def _read_section(path: Path) -> Dict[str, Any]:
    if not path.exists():
        logger.warning(f"Settings file {path} not found, using defaults")
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise SettingsError(f"Cannot parse settings file {path}: {e}") from e

    if not data:
        return {}
    if not isinstance(data, dict) or not isinstance(data.get("server", {}), dict):
        raise SettingsError(f"Settings file {path} must contain a 'server' mapping")
    return data.get("server") or {}


def load_settings(
    path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> Settings:
    env = os.environ if environ is None else environ
    settings_path = Path(path or env.get("DDNS_SETTINGS_PATH", DEFAULT_SETTINGS_PATH))
    section = _read_section(settings_path)

    defaults = Settings()
    settings = Settings(
        listen_host=str(section.get("listen_host", defaults.listen_host)),
        listen_port=_as_int(section.get("listen_port", defaults.listen_port), "listen_port"),
        users_path=str(section.get("users_path", defaults.users_path)),
        max_body_bytes=_as_int(
            section.get("max_body_bytes", defaults.max_body_bytes), "max_body_bytes"
        ),
        rate_limit_seconds=_as_float(
            section.get("rate_limit_seconds", defaults.rate_limit_seconds), "rate_limit_seconds"
        ),
        provider=str(section.get("provider", defaults.provider)).lower().strip(),
        provider_timeout_seconds=_as_float(
            section.get("provider_timeout_seconds", defaults.provider_timeout_seconds),
            "provider_timeout_seconds",
        ),
        request_timeout_seconds=_as_float(
            section.get("request_timeout_seconds", defaults.request_timeout_seconds),
            "request_timeout_seconds",
        ),
    )

    if env.get("DDNS_LISTEN_PORT"):
        settings = replace(
            settings, listen_port=_as_int(env["DDNS_LISTEN_PORT"], "DDNS_LISTEN_PORT")
        )
    if env.get("DDNS_USERS_PATH"):
        settings = replace(settings, users_path=env["DDNS_USERS_PATH"])
    if env.get("DNS_PROVIDER"):
        settings = replace(settings, provider=env["DNS_PROVIDER"].lower().strip())

    settings = replace(
        settings,
        access_key_id=env.get("ALIBABA_CLOUD_ACCESS_KEY_ID", ""),
        access_key_secret=env.get("ALIBABA_CLOUD_ACCESS_KEY_SECRET", ""),
    )

    if not 0 < settings.listen_port < 65536:
        raise SettingsError(f"listen_port out of range: {settings.listen_port}")
    if settings.max_body_bytes <= 0:
        raise SettingsError("max_body_bytes must be positive")
    if settings.request_timeout_seconds <= 0:
        raise SettingsError("request_timeout_seconds must be positive")
    return settings
