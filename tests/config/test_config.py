"""Tests for medminder.toml loading, validation, and env var resolution."""

from __future__ import annotations

from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from medminder.config import (
    ConfigError,
    MedminderConfig,
    StorageBackend,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit


def _write_toml(tmp_path: Path, content: str) -> Path:
    """Write *content* to medminder.toml inside *tmp_path* and return the directory."""
    (tmp_path / "medminder.toml").write_text(content)
    return tmp_path


# ---------------------------------------------------------------------------
# resolve_env_vars
# ---------------------------------------------------------------------------


class TestResolveEnvVars:
    def test_simple_string(self, monkeypatch):
        monkeypatch.setenv("MED_PROFILE", "mum")
        assert resolve_env_vars("${MED_PROFILE}") == "mum"

    def test_partial_string(self, monkeypatch):
        monkeypatch.setenv("LOG_DIR", "/var/log")
        assert resolve_env_vars("${LOG_DIR}/medminder") == "/var/log/medminder"

    def test_nested_structures(self, monkeypatch):
        monkeypatch.setenv("SCHEMA", "patient_a")
        data = {"db": {"schema": "${SCHEMA}"}, "tags": ["${SCHEMA}", 3]}
        assert resolve_env_vars(data) == {
            "db": {"schema": "patient_a"},
            "tags": ["patient_a", 3],
        }

    def test_non_strings_pass_through(self):
        assert resolve_env_vars(42) == 42
        assert resolve_env_vars(None) is None
        assert resolve_env_vars(True) is True

    def test_missing_vars_reported_together(self, monkeypatch):
        monkeypatch.delenv("NOPE_A", raising=False)
        monkeypatch.delenv("NOPE_B", raising=False)
        with pytest.raises(ConfigError, match="NOPE_A, NOPE_B"):
            resolve_env_vars("${NOPE_A}-${NOPE_B}")


# ---------------------------------------------------------------------------
# load_config
# ---------------------------------------------------------------------------


def test_missing_file_yields_defaults(tmp_path: Path):
    config = load_config(tmp_path)

    assert config == MedminderConfig()
    assert config.storage is StorageBackend.MEMORY
    assert config.doses_per_day == 2
    assert config.supply.medium_threshold == 50
    assert config.db.name == "medminder"


def test_full_config(tmp_path: Path):
    _write_toml(
        tmp_path,
        """
[medminder]
profile = "mum"
timezone = "Europe/Berlin"
doses_per_day = 3
cas_retries = 5

[medminder.storage]
backend = "Postgres"

[medminder.db]
name = "meds"
schema = "patient_a"

[medminder.logging]
level = "debug"
format = "JSON"
file = "/tmp/medminder-logs/mum.log"

[medminder.supply]
medium_threshold = 40
""",
    )

    config = load_config(tmp_path)

    assert config.profile == "mum"
    assert config.tz == ZoneInfo("Europe/Berlin")
    assert config.doses_per_day == 3
    assert config.cas_retries == 5
    assert config.storage is StorageBackend.POSTGRES
    assert config.db.name == "meds"
    assert config.db.schema == "patient_a"
    assert config.logging.level == "DEBUG"
    assert config.logging.format == "json"
    assert config.logging.file == "/tmp/medminder-logs/mum.log"
    assert config.supply.medium_threshold == 40


def test_env_var_in_file(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("MEDMINDER_TZ", "America/New_York")
    _write_toml(tmp_path, '[medminder]\ntimezone = "${MEDMINDER_TZ}"\n')
    assert load_config(tmp_path).timezone == "America/New_York"


def test_invalid_toml(tmp_path: Path):
    _write_toml(tmp_path, "[medminder\nprofile = ")
    with pytest.raises(ConfigError, match="Invalid TOML"):
        load_config(tmp_path)


@pytest.mark.parametrize(
    ("data", "message"),
    [
        ({"medminder": {"timezone": "Mars/Olympus"}}, "timezone"),
        ({"medminder": {"doses_per_day": 0}}, "doses_per_day"),
        ({"medminder": {"cas_retries": "many"}}, "cas_retries"),
        ({"medminder": {"storage": {"backend": "sqlite"}}}, "storage.backend"),
        ({"medminder": {"logging": {"format": "xml"}}}, "logging.format"),
        ({"medminder": {"supply": {"medium_threshold": 150}}}, "medium_threshold"),
        ({"medminder": {"db": {"schema": "bad-name"}}}, "db.schema"),
        ({"medminder": {"db": {"name": "  "}}}, "db.name"),
        ({"medminder": "oops"}, "must be a table"),
    ],
)
def test_invalid_values(data, message):
    with pytest.raises(ConfigError, match=message):
        parse_config(data)


def test_empty_document_yields_defaults():
    assert parse_config({}) == MedminderConfig()
