"""
Central configuration using Pydantic BaseSettings.

Every timer, row guard and cache TTL used by the polling and diagnosis
engine is read from the environment (or a .env file) once, validated, and
shared through a cached singleton.

Usage:
    from config.settings import get_settings

    settings = get_settings()
    print(settings.cli.hard_timeout)

Lazy initialization: get_settings() creates the singleton on first call.
Tests can reset via get_settings.cache_clear().
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


# =============================================================================
# Nested Settings Groups
# =============================================================================


class SnmpSettings(BaseSettings):
    """SNMP walk and GET limits."""

    model_config = {"env_prefix": "SNMP_", "extra": "ignore"}

    # Full-column walks are multi-packet, so they get their own deadline
    column_timeout: float = Field(30.0, gt=0)
    max_rows: int = Field(1000, gt=0)
    get_grace: float = Field(2.0, ge=0)
    bulk_max_repetitions: int = Field(25, gt=0)

    # Interface discovery profile overrides
    discovery_min_timeout: float = Field(15.0, gt=0)
    discovery_retries: int = Field(2, ge=0)

    # Entity-MIB
    entity_walk_timeout: float = Field(60.0, gt=0)
    entity_sensor_timeout: float = Field(10.0, gt=0)


class CliSettings(BaseSettings):
    """Interactive session timers (seconds)."""

    model_config = {"env_prefix": "CLI_", "extra": "ignore"}

    hard_timeout: float = Field(30.0, gt=0)
    inactivity_timeout: float = Field(5.0, gt=0)
    fallback_timeout: float = Field(3.0, gt=0)
    connect_timeout: float = Field(20.0, gt=0)
    read_chunk: int = Field(4096, gt=0)

    @model_validator(mode="after")
    def _check_ordering(self):
        """The hard deadline is the backstop; it must outlast the others."""
        if self.inactivity_timeout >= self.hard_timeout:
            raise ValueError("CLI_INACTIVITY_TIMEOUT must be shorter than CLI_HARD_TIMEOUT")
        return self


class DiagnosisSettings(BaseSettings):
    """Alarm cache and vendor fallback."""

    model_config = {"env_prefix": "DIAGNOSIS_", "extra": "ignore"}

    cache_ttl: float = Field(60.0, ge=0)
    default_vendor: str = "datacom"


class TelemetrySettings(BaseSettings):
    """Mirrored telemetry database used by SQL-backed vendors."""

    model_config = {"env_prefix": "TELEMETRY_", "extra": "ignore"}

    db_url: Optional[str] = None  # PostgreSQL URL (optional)
    db_path: Optional[str] = None  # SQLite file (used when db_url is unset)
    lookup_query: str = (
        "SELECT slot, port, onu_id, last_down_reason "
        "FROM onu_telemetry WHERE serial = ? "
        "ORDER BY updated_at DESC LIMIT 1"
    )

    @property
    def configured(self) -> bool:
        return bool(self.db_url or self.db_path)


# =============================================================================
# Root Settings
# =============================================================================


class AppSettings(BaseSettings):
    """Root application settings composing all sub-settings."""

    model_config = {"env_prefix": "", "extra": "ignore", "env_file": ".env", "env_file_encoding": "utf-8"}

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""

    # Device inventory (YAML)
    inventory_path: Path = Path("devices.yaml")

    # Nested groups (initialized separately to support env_prefix)
    snmp: SnmpSettings = None  # type: ignore[assignment]
    cli: CliSettings = None  # type: ignore[assignment]
    diagnosis: DiagnosisSettings = None  # type: ignore[assignment]
    telemetry: TelemetrySettings = None  # type: ignore[assignment]

    @model_validator(mode="before")
    @classmethod
    def _init_nested(cls, values):
        """Initialize nested settings from environment."""
        if values.get("snmp") is None:
            values["snmp"] = SnmpSettings()
        if values.get("cli") is None:
            values["cli"] = CliSettings()
        if values.get("diagnosis") is None:
            values["diagnosis"] = DiagnosisSettings()
        if values.get("telemetry") is None:
            values["telemetry"] = TelemetrySettings()
        return values


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """
    Get the application settings singleton.

    Lazy-initialized on first call. Validates all env vars (fail-fast).
    Tests can reset via: get_settings.cache_clear()
    """
    return AppSettings()
