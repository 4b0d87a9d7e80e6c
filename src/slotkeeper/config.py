"""Slotkeeper configuration loading and validation.

Reads ``slotkeeper.toml``, resolves ``${VAR}`` references from the
environment, and returns a validated ``SlotkeeperConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "slotkeeper.toml"

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_STORAGE_BACKENDS = ("postgres", "memory")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class GoogleConfig:
    """OAuth client and calendar selection from the [google] section."""

    client_id: str
    client_secret: str
    calendar_id: str = "primary"
    request_timeout_seconds: float = 10.0

    def __repr__(self) -> str:
        return (
            f"GoogleConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"calendar_id={self.calendar_id!r})"
        )


@dataclass
class WebhookConfig:
    base_url: str


@dataclass
class RenewalConfig:
    """Watch renewal cadence from the [renewal] section.

    ``horizon_hours`` should exceed ``interval_seconds`` so that no watch
    can lapse between two runs.
    """

    interval_seconds: int = 12 * 60 * 60
    horizon_hours: int = 24
    provider_timeout_seconds: float = 15.0


@dataclass
class DatabaseConfig:
    backend: str = "postgres"
    dsn: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class SlotkeeperConfig:
    """Parsed and validated slotkeeper configuration."""

    google: GoogleConfig
    webhook: WebhookConfig
    renewal: RenewalConfig = field(default_factory=RenewalConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    server: ServerConfig = field(default_factory=ServerConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _required_str(section: dict[str, Any], path: str, key: str) -> str:
    value = section.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Missing required field: {path}.{key}")
    return value.strip()


def _positive_int(section: dict[str, Any], path: str, key: str, default: int) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be a positive integer.")
    return value


def _positive_float(section: dict[str, Any], path: str, key: str, default: float) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be positive.")
    return value


def parse_config(data: dict[str, Any]) -> SlotkeeperConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    # --- [google] section (required) ---
    if not isinstance(data.get("google"), dict):
        raise ConfigError("Missing [google] section in config")
    google_section = _section(data, "google")
    google = GoogleConfig(
        client_id=_required_str(google_section, "google", "client_id"),
        client_secret=_required_str(google_section, "google", "client_secret"),
        calendar_id=str(google_section.get("calendar_id", "primary")).strip() or "primary",
        request_timeout_seconds=_positive_float(
            google_section, "google", "request_timeout_seconds", 10.0
        ),
    )

    # --- [webhook] section (required) ---
    if not isinstance(data.get("webhook"), dict):
        raise ConfigError("Missing [webhook] section in config")
    webhook_section = _section(data, "webhook")
    base_url = _required_str(webhook_section, "webhook", "base_url")
    if not base_url.startswith(("https://", "http://")):
        raise ConfigError(f"Invalid webhook.base_url: {base_url!r}. Expected an http(s) URL.")
    webhook = WebhookConfig(base_url=base_url.rstrip("/"))

    # --- [renewal] section ---
    renewal_section = _section(data, "renewal")
    renewal = RenewalConfig(
        interval_seconds=_positive_int(
            renewal_section, "renewal", "interval_seconds", 12 * 60 * 60
        ),
        horizon_hours=_positive_int(renewal_section, "renewal", "horizon_hours", 24),
        provider_timeout_seconds=_positive_float(
            renewal_section, "renewal", "provider_timeout_seconds", 15.0
        ),
    )

    # --- [database] section ---
    database_section = _section(data, "database")
    backend = str(database_section.get("backend", "postgres")).strip().lower()
    if backend not in _STORAGE_BACKENDS:
        raise ConfigError(
            f"Invalid database.backend: {backend!r}. Expected 'postgres' or 'memory'."
        )
    dsn = database_section.get("dsn")
    min_pool_size = _positive_int(database_section, "database", "min_pool_size", 2)
    max_pool_size = _positive_int(database_section, "database", "max_pool_size", 10)
    if min_pool_size > max_pool_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    database = DatabaseConfig(
        backend=backend,
        dsn=dsn.strip() if isinstance(dsn, str) and dsn.strip() else None,
        min_pool_size=min_pool_size,
        max_pool_size=max_pool_size,
    )

    # --- [logging] section ---
    logging_section = _section(data, "logging")
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    logging_config = LoggingConfig(
        level=str(logging_section.get("level", "INFO")).upper(),
        format=log_format,
        file=logging_section.get("file"),
    )

    # --- [server] section ---
    server_section = _section(data, "server")
    server = ServerConfig(
        host=str(server_section.get("host", "127.0.0.1")),
        port=_positive_int(server_section, "server", "port", 8000),
    )

    return SlotkeeperConfig(
        google=google,
        webhook=webhook,
        renewal=renewal,
        database=database,
        logging=logging_config,
        server=server,
    )


def load_config(path: Path) -> SlotkeeperConfig:
    """Load and validate a ``slotkeeper.toml``.

    *path* may be the file itself or a directory containing it.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
