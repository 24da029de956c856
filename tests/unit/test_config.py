"""Tests for server configuration loading."""

from pathlib import Path

import pytest

from tablerpc.config import ServerConfig, config_path, load_config, load_passwords
from tablerpc.errors import NotFoundError, ValidationError

CONFIG_YAML = """\
api_server:
  host: 0.0.0.0
  port: 9000
database:
  path: data/recipes.db
migrations_dir: db/migrations
models_dir: db/models
log_level: debug
"""


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("TABLERPC_DATABASE_PATH", "TABLERPC_PORT", "TABLERPC_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_dir(tmp_path: Path) -> Path:
    directory = tmp_path / "config"
    directory.mkdir()
    (directory / "development.yaml").write_text(CONFIG_YAML)
    return directory


class TestLoadConfig:
    def test_defaults(self) -> None:
        config = load_config()

        assert config == ServerConfig()
        assert config.api_server.port == 8080
        assert config.passwords == {}

    def test_from_file(self, config_dir: Path) -> None:
        config = load_config(config_dir / "development.yaml")

        assert config.api_server.host == "0.0.0.0"
        assert config.api_server.port == 9000
        assert config.database.path == "data/recipes.db"
        assert config.database.busy_timeout_ms == 5000
        assert config.migrations_dir == "db/migrations"
        assert config.models_dir == "db/models"
        assert config.log_level == "DEBUG"

    def test_passwords_next_to_config(self, config_dir: Path) -> None:
        (config_dir / "passwords.yaml").write_text("api_key: s3cret\nretries: 3\n")

        config = load_config(config_dir / "development.yaml")

        assert config.passwords == {"api_key": "s3cret", "retries": "3"}
        assert "s3cret" not in repr(config)

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            load_config(tmp_path / "production.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert load_config(path).api_server == ServerConfig().api_server

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("api_server: [\n")

        with pytest.raises(ValidationError, match="Invalid YAML"):
            load_config(path)

    def test_bad_value(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("api_server:\n  port: eighty\n")

        with pytest.raises(ValidationError, match="Invalid configuration"):
            load_config(path)

    def test_section_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("database: data.db\n")

        with pytest.raises(ValidationError, match="database"):
            load_config(path)

    def test_env_overrides(self, config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TABLERPC_DATABASE_PATH", "/tmp/other.db")
        monkeypatch.setenv("TABLERPC_PORT", "9100")
        monkeypatch.setenv("TABLERPC_LOG_LEVEL", "warning")

        config = load_config(config_dir / "development.yaml")

        assert config.database.path == "/tmp/other.db"
        assert config.api_server.port == 9100
        assert config.log_level == "WARNING"

    def test_bad_port_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TABLERPC_PORT", "http")

        with pytest.raises(ValidationError, match="TABLERPC_PORT"):
            load_config()


class TestHelpers:
    def test_config_path(self, tmp_path: Path) -> None:
        assert config_path("staging", tmp_path) == tmp_path / "config" / "staging.yaml"

    def test_missing_passwords_file(self, tmp_path: Path) -> None:
        assert load_passwords(tmp_path / "passwords.yaml") == {}
