"""
SNMP v1/v2c/v3 session factory and bulk column collector.

Every call opens its own SNMPClient (one engine, one transport) and closes it
exactly once, whatever the outcome. Carrier access equipment frequently
rejects overlapping requests, so sessions are never shared between walks.

Features:
- v1/v2c community and v3 USM authentication built from profile strings
- Single GET of one or more scalar OIDs, bounded by profile timeout + grace
- Column walks (GETBULK on v2c/v3, GETNEXT on v1) returning index -> value
- Partial results on walk timeout and a row-count guard
- noSuchObject/noSuchInstance/endOfMibView varbinds filtered per varbind

Usage:
    from linkdiag.snmp import collect_column, get_scalars

    descr = await collect_column(profile, CommonOIDs.IF_DESCR)
    facts = await get_scalars(profile, [CommonOIDs.SYS_NAME])
"""

import asyncio
import logging
import re
from contextlib import aclosing
from enum import Enum
from typing import Any, Iterable, Optional

from pyasn1.error import PyAsn1Error
from pysnmp.hlapi.v3arch.asyncio import (
    SnmpEngine,
    CommunityData,
    UsmUserData,
    UdpTransportTarget,
    ContextData,
    ObjectType,
    ObjectIdentity,
    get_cmd,
    walk_cmd,
    bulk_walk_cmd,
    USM_AUTH_NONE,
    USM_AUTH_HMAC96_MD5,
    USM_AUTH_HMAC96_SHA,
    USM_PRIV_NONE,
    USM_PRIV_CBC56_DES,
    USM_PRIV_CFB128_AES,
)
from pysnmp.proto.rfc1902 import (
    Counter32,
    Counter64,
    Gauge32,
    Integer,
    Integer32,
    IpAddress,
    OctetString,
    TimeTicks,
    Unsigned32,
)
from pysnmp.error import PySnmpError
from pysnmp.proto.rfc1905 import EndOfMibView, NoSuchInstance, NoSuchObject

from config.settings import get_settings
from linkdiag.errors import ConfigurationError, SessionTimeoutError, SnmpError, TransportError
from linkdiag.models import DeviceProfile, TransportKind

logger = logging.getLogger(__name__)


# =============================================================================
# Common OIDs
# =============================================================================

class CommonOIDs:
    """Standard SNMP OIDs used by discovery and connectivity tests."""

    # System MIB (1.3.6.1.2.1.1)
    SYS_DESCR = "1.3.6.1.2.1.1.1.0"
    SYS_UPTIME = "1.3.6.1.2.1.1.3.0"
    SYS_NAME = "1.3.6.1.2.1.1.5.0"

    # Interface MIB (1.3.6.1.2.1.2)
    IF_NUMBER = "1.3.6.1.2.1.2.1.0"
    IF_INDEX = "1.3.6.1.2.1.2.2.1.1"
    IF_DESCR = "1.3.6.1.2.1.2.2.1.2"
    IF_SPEED = "1.3.6.1.2.1.2.2.1.5"
    IF_ADMIN_STATUS = "1.3.6.1.2.1.2.2.1.7"
    IF_OPER_STATUS = "1.3.6.1.2.1.2.2.1.8"

    # ifXTable
    IF_NAME = "1.3.6.1.2.1.31.1.1.1.1"
    IF_HIGH_SPEED = "1.3.6.1.2.1.31.1.1.1.15"
    IF_ALIAS = "1.3.6.1.2.1.31.1.1.1.18"

    # ENTITY-MIB
    ENT_PHYSICAL_NAME = "1.3.6.1.2.1.47.1.1.1.1.7"

    # CISCO-ENTITY-SENSOR-MIB
    CISCO_ENT_SENSOR_VALUE = "1.3.6.1.4.1.9.9.91.1.1.1.1.4"


# =============================================================================
# SNMPv3 String Resolution
# =============================================================================

class SecurityLevel(Enum):
    """SNMPv3 security levels."""
    NO_AUTH_NO_PRIV = "noauthnopriv"
    AUTH_NO_PRIV = "authnopriv"
    AUTH_PRIV = "authpriv"


class SNMPv3AuthProtocol(Enum):
    """SNMPv3 authentication protocols."""
    NONE = "none"
    MD5 = "md5"
    SHA = "sha"


class SNMPv3PrivProtocol(Enum):
    """SNMPv3 privacy (encryption) protocols."""
    NONE = "none"
    DES = "des"
    AES = "aes"


AUTH_PROTOCOL_MAP = {
    SNMPv3AuthProtocol.NONE: USM_AUTH_NONE,
    SNMPv3AuthProtocol.MD5: USM_AUTH_HMAC96_MD5,
    SNMPv3AuthProtocol.SHA: USM_AUTH_HMAC96_SHA,
}

PRIV_PROTOCOL_MAP = {
    SNMPv3PrivProtocol.NONE: USM_PRIV_NONE,
    SNMPv3PrivProtocol.DES: USM_PRIV_CBC56_DES,
    SNMPv3PrivProtocol.AES: USM_PRIV_CFB128_AES,
}

# Spellings seen in device inventories
_AUTH_ALIASES = {"sha1": "sha", "hmac-sha": "sha", "hmac-md5": "md5"}
_PRIV_ALIASES = {"aes128": "aes", "aes-128": "aes", "cfb128-aes": "aes", "cbc-des": "des"}


def _normalize_token(raw: Optional[str]) -> str:
    return (raw or "").strip().lower().replace("_", "")


def resolve_security_level(raw: Optional[str]) -> SecurityLevel:
    """Map a configured security level; anything unrecognized is noAuthNoPriv."""
    token = _normalize_token(raw).replace("-", "")
    try:
        return SecurityLevel(token)
    except ValueError:
        return SecurityLevel.NO_AUTH_NO_PRIV


def resolve_auth_protocol(raw: Optional[str]) -> SNMPv3AuthProtocol:
    token = _normalize_token(raw)
    try:
        return SNMPv3AuthProtocol(_AUTH_ALIASES.get(token, token))
    except ValueError:
        return SNMPv3AuthProtocol.NONE


def resolve_priv_protocol(raw: Optional[str]) -> SNMPv3PrivProtocol:
    token = _normalize_token(raw)
    try:
        return SNMPv3PrivProtocol(_PRIV_ALIASES.get(token, token))
    except ValueError:
        return SNMPv3PrivProtocol.NONE


# =============================================================================
# Value Decoding
# =============================================================================

_MISSING_TYPES = (NoSuchObject, NoSuchInstance, EndOfMibView)
_INTEGER_TYPES = (Integer, Integer32, Unsigned32, Counter32, Counter64, Gauge32, TimeTicks)


def is_missing(value: Any) -> bool:
    """True for the exception varbinds a v2c/v3 agent returns in place of a value."""
    return isinstance(value, _MISSING_TYPES)


def decode_value(value: Any) -> Any:
    """Convert a pysnmp value to a plain Python value.

    Octet strings decode as UTF-8; integer types pass through as int.
    """
    if isinstance(value, IpAddress):
        return value.prettyPrint()
    if isinstance(value, OctetString):
        return value.asOctets().decode("utf-8", errors="replace").rstrip("\x00")
    if isinstance(value, _INTEGER_TYPES):
        return int(value)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if hasattr(value, "prettyPrint"):
        return value.prettyPrint()
    return value


def _oid_str(name: Any) -> str:
    # ObjectIdentity when MIB lookup is on, ObjectName otherwise
    if hasattr(name, "get_oid"):
        name = name.get_oid()
    return str(name).lstrip(".")


_NUMERIC_OID_RE = re.compile(r"^\d+(?:\.\d+)*$")


def numeric_oid(oid: str) -> str:
    """Strip leading dots and insist on a dotted-decimal OID.

    Raises:
        SnmpError: for anything else (MIB names are not resolved here)
    """
    cleaned = (oid or "").strip().strip(".")
    if not _NUMERIC_OID_RE.match(cleaned):
        raise SnmpError(f"malformed OID {oid!r}")
    return cleaned


def _raise_for_error(error_indication, error_status, error_index, where: str) -> None:
    if error_indication:
        message = f"{where}: {error_indication}"
        if "timeout" in str(error_indication).lower() or "timed out" in str(error_indication).lower():
            raise SessionTimeoutError(message)
        raise SnmpError(message)
    if error_status:
        raise SnmpError(f"{where}: {error_status.prettyPrint()} at {error_index}")


# =============================================================================
# SNMP Client
# =============================================================================

class SNMPClient:
    """One SNMP session against one device; close() is idempotent."""

    def __init__(self, profile: DeviceProfile):
        """Initialize SNMP client for a profile.

        Args:
            profile: Device profile with an SNMP transport kind

        Raises:
            ConfigurationError: If the profile is not an SNMP profile
        """
        if not profile.is_snmp:
            raise ConfigurationError(f"{profile.device_id}: {profile.kind.value} is not an SNMP transport")
        self.profile = profile
        self._engine = SnmpEngine()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_auth_data(self):
        """Get authentication data based on SNMP version."""
        profile = self.profile
        if profile.kind is TransportKind.SNMP_V1:
            return CommunityData(profile.community, mpModel=0)
        if profile.kind is TransportKind.SNMP_V2C:
            return CommunityData(profile.community, mpModel=1)

        level = resolve_security_level(profile.security_level)
        auth_proto = resolve_auth_protocol(profile.auth_protocol)
        priv_proto = resolve_priv_protocol(profile.priv_protocol)

        if level is SecurityLevel.NO_AUTH_NO_PRIV or auth_proto is SNMPv3AuthProtocol.NONE:
            return UsmUserData(profile.username)

        if level is SecurityLevel.AUTH_NO_PRIV or priv_proto is SNMPv3PrivProtocol.NONE:
            return UsmUserData(
                profile.username,
                authKey=profile.auth_password,
                authProtocol=AUTH_PROTOCOL_MAP[auth_proto],
                privProtocol=USM_PRIV_NONE,
            )

        return UsmUserData(
            profile.username,
            authKey=profile.auth_password,
            privKey=profile.priv_password,
            authProtocol=AUTH_PROTOCOL_MAP[auth_proto],
            privProtocol=PRIV_PROTOCOL_MAP[priv_proto],
        )

    async def _get_transport(self):
        """Get UDP transport target."""
        try:
            return await UdpTransportTarget.create(
                (self.profile.host, self.profile.resolved_port),
                timeout=self.profile.timeout,
                retries=self.profile.retries,
            )
        except OSError as e:
            raise SnmpError(f"{self.profile.host}: cannot resolve or bind transport ({e})") from e

    async def get(self, oids: Iterable[str]) -> dict[str, Any]:
        """Perform one SNMP GET for several scalar OIDs.

        Args:
            oids: Object identifiers to retrieve

        Returns:
            Dict of OID -> decoded value; missing instances are omitted

        Raises:
            TransportError: On error indication or error status
        """
        oids = [numeric_oid(oid) for oid in oids]
        try:
            error_indication, error_status, error_index, var_binds = await get_cmd(
                self._engine,
                self._get_auth_data(),
                await self._get_transport(),
                ContextData(),
                *[ObjectType(ObjectIdentity(oid)) for oid in oids],
                lookupMib=False,
            )
        except (PySnmpError, PyAsn1Error) as e:
            raise SnmpError(f"{self.profile.host}: GET failed ({e})") from e
        _raise_for_error(error_indication, error_status, error_index, self.profile.host)

        values = {}
        for name, value in var_binds:
            if is_missing(value):
                continue
            values[_oid_str(name)] = decode_value(value)
        return values

    async def walk_into(self, base_oid: str, sink: dict[str, Any], max_rows: int) -> None:
        """Walk a subtree, storing index suffix -> value into ``sink``.

        Rows are written as they arrive so a caller that times the walk out
        still holds everything gathered so far.

        Raises:
            TransportError: On error indication or error status
        """
        base = numeric_oid(base_oid)

        if self.profile.kind is TransportKind.SNMP_V1:
            rows = walk_cmd(
                self._engine,
                self._get_auth_data(),
                await self._get_transport(),
                ContextData(),
                ObjectType(ObjectIdentity(base)),
                lexicographicMode=False,
                lookupMib=False,
            )
        else:
            rows = bulk_walk_cmd(
                self._engine,
                self._get_auth_data(),
                await self._get_transport(),
                ContextData(),
                0,
                get_settings().snmp.bulk_max_repetitions,
                ObjectType(ObjectIdentity(base)),
                lexicographicMode=False,
                lookupMib=False,
            )

        try:
            await self._store_rows(rows, base, sink, max_rows)
        except (PySnmpError, PyAsn1Error) as e:
            raise SnmpError(f"{self.profile.host}: walk of {base} failed ({e})") from e

    async def _store_rows(self, rows, base: str, sink: dict[str, Any], max_rows: int) -> None:
        prefix = base + "."
        async with aclosing(rows):
            async for error_indication, error_status, error_index, var_binds in rows:
                _raise_for_error(error_indication, error_status, error_index, self.profile.host)

                for name, value in var_binds:
                    oid = _oid_str(name)

                    # Stop if we've walked past the base OID
                    if not oid.startswith(prefix):
                        return
                    if is_missing(value):
                        continue

                    sink[oid[len(prefix):]] = decode_value(value)

                    if len(sink) >= max_rows:
                        logger.warning(
                            f"{self.profile.device_id}: {base} reached {max_rows} rows, stopping walk"
                        )
                        return

    def close(self) -> None:
        """Release the engine's transport dispatcher (once)."""
        if self._closed:
            return
        self._closed = True
        self._engine.close_dispatcher()


# =============================================================================
# High-Level Functions
# =============================================================================

async def get_scalars(
    profile: DeviceProfile,
    oids: list[str],
    timeout: Optional[float] = None,
) -> dict[str, Any]:
    """GET scalar OIDs with a dedicated session.

    Args:
        profile: SNMP device profile
        oids: OIDs to fetch in one request
        timeout: Overall bound; defaults to profile timeout + grace margin

    Returns:
        Dict of OID -> decoded value (missing instances omitted)

    Raises:
        TransportError: On timeout or SNMP error
    """
    if timeout is None:
        timeout = profile.timeout + get_settings().snmp.get_grace

    client = SNMPClient(profile)
    try:
        return await asyncio.wait_for(client.get(oids), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise SessionTimeoutError(f"{profile.host}: GET timed out after {timeout}s") from e
    finally:
        client.close()


async def get_scalar(profile: DeviceProfile, oid: str, timeout: Optional[float] = None) -> Any:
    """GET one OID; None when the agent has no such instance."""
    values = await get_scalars(profile, [oid], timeout=timeout)
    return values.get(oid.strip("."))


async def collect_column(
    profile: DeviceProfile,
    oid: str,
    max_rows: Optional[int] = None,
    timeout: Optional[float] = None,
) -> dict[str, Any]:
    """Collect one table column as index -> value.

    Never raises for transport problems: on timeout or error the rows
    collected so far are returned.

    Args:
        profile: SNMP device profile
        oid: Column OID (e.g. CommonOIDs.IF_DESCR)
        max_rows: Row guard; defaults to SNMP_MAX_ROWS
        timeout: Whole-walk deadline; defaults to SNMP_COLUMN_TIMEOUT

    Returns:
        Dict keyed by the OID suffix below the column ("12" or "1.2.3")
    """
    settings = get_settings().snmp
    max_rows = max_rows or settings.max_rows
    timeout = timeout or settings.column_timeout

    values: dict[str, Any] = {}
    client = SNMPClient(profile)
    try:
        await asyncio.wait_for(client.walk_into(oid, values, max_rows), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning(
            f"{profile.device_id}: walk of {oid} timed out after {timeout}s, "
            f"keeping {len(values)} partial rows"
        )
    except TransportError as e:
        logger.warning(f"{profile.device_id}: walk of {oid} failed ({e}), keeping {len(values)} rows")
    finally:
        client.close()

    logger.debug(f"{profile.device_id}: {oid} -> {len(values)} rows")
    return values


def format_uptime(timeticks: int) -> str:
    """Convert SNMP timeticks to human-readable format.

    Args:
        timeticks: Time in hundredths of seconds

    Returns:
        Formatted string like "5d 3h 20m"
    """
    seconds = timeticks // 100
    days = seconds // 86400
    hours = (seconds % 86400) // 3600
    mins = (seconds % 3600) // 60
    return f"{days}d {hours}h {mins}m"
