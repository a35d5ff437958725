"""membership_sync.config

Runtime settings for the webhook service and the CLI.

Resolution order (later wins):
  1. dataclass defaults
  2. optional YAML file (lower-case keys matching Settings fields)
  3. environment variables (upper-case field names, e.g. DATABASE_URL);
     a .env file in the working directory is loaded first via python-dotenv
  4. explicit overrides (CLI flags)

Usage:
    from membership_sync.config import load_settings

    settings = load_settings(Path("config/membership_sync.yml"))
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from membership_sync.normalize import parse_flag

# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigError(ValueError):
    """Raised when settings are missing, unknown, or cannot be coerced."""


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@dataclass
class Settings:
    database_url: str
    host: str = "127.0.0.1"
    port: int = 3000
    webhook_secret: str = ""
    paypal_client_id: str = ""
    paypal_client_secret: str = ""
    paypal_webhook_id: str = ""
    paypal_base_url: str = "https://api.paypal.com"
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10
    db_pool_max_idle: float = 300.0
    db_pool_timeout: float = 30.0
    always_acknowledge: bool = True
    log_level: str = "INFO"


# Field annotations are strings under `from __future__ import annotations`.
_COERCE = {
    "str": str,
    "int": int,
    "float": float,
    "bool": parse_flag,
}

FIELD_TYPES = {f.name: f.type for f in fields(Settings)}


def _coerce(name: str, value: Any) -> Any:
    convert = _COERCE[FIELD_TYPES[name]]
    if FIELD_TYPES[name] == "str" and value is None:
        return ""
    try:
        return convert(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {value!r}") from exc


def _read_yaml(config_path: Path) -> dict[str, Any]:
    data = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{config_path}: top level must be a mapping")
    unknown = set(data) - set(FIELD_TYPES)
    if unknown:
        raise ConfigError(f"{config_path}: unknown settings {sorted(unknown)}")
    return data


def _clean_database_url(value: str) -> str:
    # Tolerate values pasted as "DATABASE_URL=postgres://..." from a .env file.
    value = value.strip()
    if value.startswith("DATABASE_URL="):
        value = value[len("DATABASE_URL="):]
    return value


def load_settings(
    config_path: Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Build Settings from YAML, environment and overrides.

    When env is None the process environment is used, after loading .env.

    Raises:
        ConfigError: unknown YAML keys, uncoercible values, or no DATABASE_URL.
        FileNotFoundError: config_path given but missing.
    """
    if env is None:
        load_dotenv()
        env = os.environ

    values: dict[str, Any] = {}
    if config_path is not None:
        values.update(_read_yaml(config_path))

    for name in FIELD_TYPES:
        raw = env.get(name.upper())
        if raw is not None and raw.strip() != "":
            values[name] = raw

    for name, value in (overrides or {}).items():
        if name not in FIELD_TYPES:
            raise ConfigError(f"unknown setting {name!r}")
        if value is not None:
            values[name] = value

    coerced = {name: _coerce(name, value) for name, value in values.items()}
    coerced["database_url"] = _clean_database_url(coerced.get("database_url", ""))
    if not coerced["database_url"]:
        raise ConfigError("DATABASE_URL environment variable is required")

    settings = Settings(**coerced)
    if settings.db_pool_min_size > settings.db_pool_max_size:
        raise ConfigError("db_pool_min_size must not exceed db_pool_max_size")
    return settings
