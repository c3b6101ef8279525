"""Configuration for the dual-listener daemon.

Resolution order (later wins):
1. Built-in defaults (ServerConfig field defaults)
2. YAML config file: --config, or $DUALSERVE_CONFIG
3. Command-line flags
"""

import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "DUALSERVE_CONFIG"

# Defaults
DEFAULT_HTTP_PORT = 8080
DEFAULT_HTTPS_PORT = 8085
DEFAULT_BIND = ""
DEFAULT_STATIC_DIR = Path("./public")
DEFAULT_UPLOAD_DIR = Path(".")
DEFAULT_CERT_FILE = Path("localhost.crt")
DEFAULT_KEY_FILE = Path("localhost.key")
DEFAULT_LOG_FILE = Path("./server.log")
DEFAULT_LOG_MAX_SIZE_MB = 5
DEFAULT_LOG_BACKUPS = 10
DEFAULT_LOG_MAX_AGE_DAYS = 30
DEFAULT_SHUTDOWN_TIMEOUT = 10.0
DEFAULT_UNMATCHED_STATUS = 200


class ConfigError(Exception):
    """Configuration error."""


@dataclass(frozen=True)
class ServerConfig:
    """Resolved daemon configuration."""

    bind: str = DEFAULT_BIND
    http_port: int = DEFAULT_HTTP_PORT
    https_port: int = DEFAULT_HTTPS_PORT
    static_dir: Path = DEFAULT_STATIC_DIR
    upload_dir: Path = DEFAULT_UPLOAD_DIR
    cert_file: Path = DEFAULT_CERT_FILE
    key_file: Path = DEFAULT_KEY_FILE
    generate_cert: bool = False
    log_file: Path = DEFAULT_LOG_FILE
    log_max_size_mb: int = DEFAULT_LOG_MAX_SIZE_MB
    log_backups: int = DEFAULT_LOG_BACKUPS
    log_max_age_days: int = DEFAULT_LOG_MAX_AGE_DAYS
    log_compress: bool = True
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
    unmatched_status: int = DEFAULT_UNMATCHED_STATUS
    verbose: bool = False

    def validate(self) -> "ServerConfig":
        """Check value ranges.

        Returns:
            self, for chaining

        Raises:
            ConfigError: If any value is out of range
        """
        for name in ("http_port", "https_port"):
            port = getattr(self, name)
            if not 0 <= port <= 65535:
                raise ConfigError(f"{name} out of range: {port}")
        if self.http_port and self.http_port == self.https_port:
            raise ConfigError(f"http_port and https_port are both {self.http_port}")
        if self.log_max_size_mb <= 0:
            raise ConfigError(f"log_max_size_mb must be positive: {self.log_max_size_mb}")
        if self.log_backups < 0:
            raise ConfigError(f"log_backups must not be negative: {self.log_backups}")
        if self.log_max_age_days < 0:
            raise ConfigError(f"log_max_age_days must not be negative: {self.log_max_age_days}")
        if self.shutdown_timeout < 0:
            raise ConfigError(f"shutdown_timeout must not be negative: {self.shutdown_timeout}")
        if not 200 <= self.unmatched_status <= 599:
            raise ConfigError(f"unmatched_status must be a final status (200-599): {self.unmatched_status}")
        return self

    def with_overrides(self, overrides: dict[str, Any]) -> "ServerConfig":
        """Return a copy with non-None overrides applied and coerced."""
        values = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **_coerce(values))


_FIELD_TYPES = {f.name: f.type for f in fields(ServerConfig)}


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    """Coerce raw values (YAML scalars, argparse results) to field types."""
    coerced = {}
    for key, value in values.items():
        if key not in _FIELD_TYPES:
            raise ConfigError(f"Unknown config key: {key}")
        field_type = _FIELD_TYPES[key]
        try:
            if field_type is Path:
                coerced[key] = Path(value)
            elif field_type is bool:
                if not isinstance(value, bool):
                    raise TypeError(f"expected true/false, got {value!r}")
                coerced[key] = value
            else:
                coerced[key] = field_type(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid value for {key}: {e}") from e
    return coerced


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    with open(path, encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def load_config_file(path: Path) -> dict[str, Any]:
    """Load a YAML config file.

    Nested `log:` and `tls:` sections are flattened, so
    `log: {max_size_mb: 5}` is the same as `log_max_size_mb: 5`, and
    `tls: {cert: a.crt}` the same as `cert_file: a.crt`.

    Raises:
        ConfigError: If the file is missing, unparseable or not a mapping
    """
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        data = _parse_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a mapping: {path}")

    flat: dict[str, Any] = {}
    for key, value in data.items():
        if key == "log" and isinstance(value, dict):
            flat.update({f"log_{k}": v for k, v in value.items()})
        elif key == "tls" and isinstance(value, dict):
            for k, v in value.items():
                flat[{"cert": "cert_file", "key": "key_file"}.get(k, k)] = v
        else:
            flat[key] = value
    return flat


def resolve_config_path(cli_path: Optional[Path] = None) -> Optional[Path]:
    """Pick the config file: explicit path first, then $DUALSERVE_CONFIG."""
    if cli_path is not None:
        return cli_path
    if env_path := os.environ.get(CONFIG_ENV_VAR):
        return Path(env_path)
    return None


def load_config(
    config_path: Optional[Path] = None,
    overrides: Optional[dict[str, Any]] = None,
) -> ServerConfig:
    """Build the effective configuration.

    Args:
        config_path: Explicit YAML file (falls back to $DUALSERVE_CONFIG)
        overrides: Command-line values; None entries are ignored

    Returns:
        Validated ServerConfig

    Raises:
        ConfigError: On unreadable files, unknown keys or bad values
    """
    config = ServerConfig()

    path = resolve_config_path(config_path)
    if path is not None:
        logger.debug("Loading config from %s", path)
        config = config.with_overrides(load_config_file(path))

    if overrides:
        config = config.with_overrides(overrides)

    return config.validate()
