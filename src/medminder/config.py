"""Configuration loading and validation.

Reads medminder.toml from a config directory, parses all sections, and returns
a validated MedminderConfig dataclass.
"""

from __future__ import annotations

import enum
import os
import re
import tomllib
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

CONFIG_FILENAME = "medminder.toml"

# Expected doses per active medication per day (two-dose daily assumption).
DEFAULT_DOSES_PER_DAY = 2
# Supply percentage at or below which a medication is at least "Medium".
DEFAULT_MEDIUM_THRESHOLD = 50
DEFAULT_CAS_RETRIES = 3

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_DB_SCHEMA_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


class StorageBackend(enum.StrEnum):
    """Which record store backs the engine."""

    MEMORY = "memory"
    POSTGRES = "postgres"


@dataclass
class LoggingConfig:
    """Logging configuration from [medminder.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    file: str | None = None


@dataclass
class DatabaseConfig:
    """Database configuration from [medminder.db] section.

    Connection credentials come from the environment (``DATABASE_URL`` or
    ``POSTGRES_*``); only the database name and schema live in the file.
    """

    name: str = "medminder"
    schema: str | None = None


@dataclass
class SupplyConfig:
    """Supply tier configuration from [medminder.supply] section."""

    medium_threshold: int = DEFAULT_MEDIUM_THRESHOLD


@dataclass
class MedminderConfig:
    """Parsed representation of medminder.toml."""

    profile: str = "default"
    timezone: str = "UTC"
    doses_per_day: int = DEFAULT_DOSES_PER_DAY
    cas_retries: int = DEFAULT_CAS_RETRIES
    storage: StorageBackend = StorageBackend.MEMORY
    db: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    supply: SupplyConfig = field(default_factory=SupplyConfig)

    @property
    def tz(self) -> tzinfo:
        """The user's local timezone as a tzinfo."""
        return ZoneInfo(self.timezone)


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
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _positive_int(section: dict, key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}: {raw!r}. Must be a positive integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {path}: {value!r}. Must be a positive integer.")
    return value


def _parse_db(section: dict) -> DatabaseConfig:
    """Parse the optional [medminder.db] sub-section."""
    name = str(section.get("name", "medminder")).strip()
    if not name:
        raise ConfigError("medminder.db.name must be a non-empty string")

    schema_raw = section.get("schema")
    schema: str | None = None
    if schema_raw is not None:
        if not isinstance(schema_raw, str):
            raise ConfigError("medminder.db.schema must be a string when set")
        normalized = schema_raw.strip()
        if _DB_SCHEMA_PATTERN.fullmatch(normalized) is None:
            raise ConfigError(
                "Invalid medminder.db.schema: "
                f"{schema_raw!r}. Expected a valid SQL identifier-style value."
            )
        schema = normalized
    return DatabaseConfig(name=name, schema=schema)


def _parse_logging(section: dict) -> LoggingConfig:
    """Parse the optional [medminder.logging] sub-section."""
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid medminder.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    return LoggingConfig(level=log_level, format=log_format, file=section.get("file"))


def _parse_supply(section: dict) -> SupplyConfig:
    """Parse the optional [medminder.supply] sub-section."""
    raw = section.get("medium_threshold", DEFAULT_MEDIUM_THRESHOLD)
    try:
        medium = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid medminder.supply.medium_threshold: {raw!r}") from exc
    if not 0 <= medium <= 100:
        raise ConfigError(
            f"Invalid medminder.supply.medium_threshold: {medium!r}. Must be within 0-100."
        )
    return SupplyConfig(medium_threshold=medium)


def parse_config(data: dict[str, Any]) -> MedminderConfig:
    """Build a :class:`MedminderConfig` from already-parsed TOML data."""
    data = resolve_env_vars(data)

    section = data.get("medminder")
    if section is None:
        section = {}
    if not isinstance(section, dict):
        raise ConfigError("[medminder] must be a table")

    profile = str(section.get("profile", "default")).strip() or "default"

    timezone = str(section.get("timezone", "UTC"))
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f"Unknown medminder.timezone: {timezone!r}") from exc

    raw_storage = str(section.get("storage", {}).get("backend", StorageBackend.MEMORY))
    try:
        storage = StorageBackend(raw_storage.lower())
    except ValueError as exc:
        raise ConfigError(
            f"Invalid medminder.storage.backend: {raw_storage!r}. Expected 'memory' or 'postgres'."
        ) from exc

    return MedminderConfig(
        profile=profile,
        timezone=timezone,
        doses_per_day=_positive_int(
            section, "doses_per_day", DEFAULT_DOSES_PER_DAY, "medminder.doses_per_day"
        ),
        cas_retries=_positive_int(
            section, "cas_retries", DEFAULT_CAS_RETRIES, "medminder.cas_retries"
        ),
        storage=storage,
        db=_parse_db(section.get("db", {})),
        logging=_parse_logging(section.get("logging", {})),
        supply=_parse_supply(section.get("supply", {})),
    )


def load_config(config_dir: Path) -> MedminderConfig:
    """Load and validate medminder.toml from *config_dir*.

    A missing file yields the defaults; a present but invalid file raises.

    Raises
    ------
    ConfigError
        If the file contains invalid TOML or invalid values.
    """
    toml_path = Path(config_dir) / CONFIG_FILENAME

    if not toml_path.exists():
        return MedminderConfig()

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
