"""
Read-only access to the mirrored ONU telemetry database.

Some OLT families are not queried live: a collector mirrors their ONU state
into SQL and the diagnosis path reads it from there by serial. The query is
configurable (TELEMETRY_LOOKUP_QUERY) and must return the columns slot,
port, onu_id and last_down_reason for one '?' parameter, the serial.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Optional

import psycopg2

from config.settings import TelemetrySettings, get_settings
from linkdiag.db import connect
from linkdiag.errors import ConfigurationError, TelemetryError
from linkdiag.models import OnuCoordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TelemetryRecord:
    serial: str
    coordinates: Optional[OnuCoordinates]
    last_down_reason: Optional[str]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TelemetryStore:
    """Serial lookups against the telemetry database.

    The DB-API drivers block, so lookups run in a worker thread.
    """

    def __init__(
        self,
        db_url: Optional[str] = None,
        db_path: Optional[str] = None,
        query: Optional[str] = None,
    ):
        self.db_url = db_url
        self.db_path = db_path
        self.query = query or TelemetrySettings.model_fields["lookup_query"].default

    @classmethod
    def from_settings(cls, settings: Optional[TelemetrySettings] = None) -> "TelemetryStore":
        settings = settings or get_settings().telemetry
        return cls(db_url=settings.db_url, db_path=settings.db_path, query=settings.lookup_query)

    @property
    def configured(self) -> bool:
        return bool(self.db_url or self.db_path)

    def _lookup_sync(self, serial: str) -> Optional[TelemetryRecord]:
        with connect(db_url=self.db_url, db_path=self.db_path) as conn:
            data = conn.query_one(self.query, (serial,))
        if data is None:
            return None

        slot, port, onu_id = (_as_int(data.get(k)) for k in ("slot", "port", "onu_id"))
        coords = None
        if slot is not None and port is not None and onu_id is not None:
            coords = OnuCoordinates(slot=slot, port=port, onu_id=onu_id)
        reason = data.get("last_down_reason")
        return TelemetryRecord(
            serial=serial,
            coordinates=coords,
            last_down_reason=str(reason).strip() if reason not in (None, "") else None,
        )

    async def lookup(self, serial: str) -> Optional[TelemetryRecord]:
        """Latest telemetry row for a serial, or None if the serial is unknown.

        Raises:
            ConfigurationError: No database configured
            TelemetryError: The query failed
        """
        if not self.configured:
            raise ConfigurationError("telemetry database is not configured (TELEMETRY_DB_URL / TELEMETRY_DB_PATH)")
        try:
            return await asyncio.to_thread(self._lookup_sync, serial)
        except (sqlite3.Error, psycopg2.Error) as e:
            raise TelemetryError(f"telemetry lookup for {serial} failed: {e}") from e
