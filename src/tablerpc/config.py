"""
Server configuration.

Configuration lives in ``config/<run_mode>.yaml`` (``development`` by
default) with secrets kept apart in ``config/passwords.yaml``::

    api_server:
      host: 127.0.0.1
      port: 8080
    database:
      path: .tablerpc/data.db
    migrations_dir: migrations
    models_dir: models
    log_level: INFO

Environment overrides: TABLERPC_DATABASE_PATH, TABLERPC_PORT,
TABLERPC_LOG_LEVEL.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from tablerpc.errors import NotFoundError, ValidationError

DEFAULT_RUN_MODE = "development"
PASSWORDS_FILE = "passwords.yaml"


@dataclass
class ApiServerConfig:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class DatabaseConfig:
    path: str = ".tablerpc/data.db"
    busy_timeout_ms: int = 5000


@dataclass
class ServerConfig:
    """Everything a server process needs to start."""

    api_server: ApiServerConfig = field(default_factory=ApiServerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    migrations_dir: str = "migrations"
    models_dir: str = "models"
    log_dir: str | None = ".tablerpc/logs"
    log_level: str = "INFO"
    passwords: dict[str, str] = field(default_factory=dict, repr=False)


def config_path(run_mode: str = DEFAULT_RUN_MODE, project_root: Path | None = None) -> Path:
    """Path of the config file for a run mode."""
    return (project_root or Path.cwd()) / "config" / f"{run_mode}.yaml"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError(f"{path} must contain a mapping")
    return data


def _section(data: dict[str, Any], key: str, path: Path) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"'{key}' in {path} must be a mapping")
    return value


def _parse_config(data: dict[str, Any], path: Path) -> ServerConfig:
    api = _section(data, "api_server", path)
    database = _section(data, "database", path)
    try:
        return ServerConfig(
            api_server=ApiServerConfig(
                host=str(api.get("host", ApiServerConfig.host)),
                port=int(api.get("port", ApiServerConfig.port)),
            ),
            database=DatabaseConfig(
                path=str(database.get("path", DatabaseConfig.path)),
                busy_timeout_ms=int(
                    database.get("busy_timeout_ms", DatabaseConfig.busy_timeout_ms)
                ),
            ),
            migrations_dir=str(data.get("migrations_dir", ServerConfig.migrations_dir)),
            models_dir=str(data.get("models_dir", ServerConfig.models_dir)),
            log_dir=data.get("log_dir", ServerConfig.log_dir),
            log_level=str(data.get("log_level", ServerConfig.log_level)).upper(),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid configuration in {path}: {e}") from e


def _apply_env_overrides(config: ServerConfig) -> None:
    if db_path := os.environ.get("TABLERPC_DATABASE_PATH"):
        config.database.path = db_path
    if port := os.environ.get("TABLERPC_PORT"):
        try:
            config.api_server.port = int(port)
        except ValueError:
            raise ValidationError(f"TABLERPC_PORT must be an integer, got '{port}'") from None
    if level := os.environ.get("TABLERPC_LOG_LEVEL"):
        config.log_level = level.upper()


def load_passwords(path: Path) -> dict[str, str]:
    """Load secrets; a missing file means no secrets."""
    if not path.exists():
        return {}
    return {str(k): str(v) for k, v in _read_yaml(path).items()}


def load_config(
    path: Path | str | None = None,
    passwords_path: Path | str | None = None,
) -> ServerConfig:
    """
    Load configuration from YAML and the environment.

    Args:
        path: Config file; None uses defaults (plus environment overrides)
        passwords_path: Secrets file; defaults to ``passwords.yaml`` next to ``path``

    Raises:
        NotFoundError: An explicit config file does not exist
        ValidationError: The file is not valid YAML or has bad values
    """
    if path is None:
        config = ServerConfig()
    else:
        path = Path(path)
        if not path.exists():
            raise NotFoundError(f"Config file not found: {path}")
        config = _parse_config(_read_yaml(path), path)
        if passwords_path is None:
            passwords_path = path.parent / PASSWORDS_FILE

    if passwords_path is not None:
        config.passwords = load_passwords(Path(passwords_path))

    _apply_env_overrides(config)
    return config
