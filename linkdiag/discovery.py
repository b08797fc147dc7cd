"""
Interface and optical-sensor discovery over SNMP.

Columns are collected one after another, never concurrently, so low-power
CPE is not flooded with parallel walks.

Usage:
    from linkdiag.discovery import discover_interfaces, find_interface_by_name

    interfaces = await discover_interfaces(profile)
    match = await find_interface_by_name(profile, "pppoe-cliente01", alias="cliente01")
"""

import logging
import re
from dataclasses import replace
from typing import Any, Optional

from config.settings import get_settings
from linkdiag.errors import TransportError, error_reason
from linkdiag.models import (
    ConnectionTestResult,
    DeviceProfile,
    InterfaceRecord,
    InterfaceSearchResult,
    MatchType,
    SensorMapping,
)
from linkdiag.snmp import CommonOIDs, collect_column, format_uptime, get_scalar, get_scalars
from linkdiag.timestamps import elapsed_ms, monotonic

logger = logging.getLogger(__name__)

OPER_STATUS_MAP = {
    1: "up",
    2: "down",
    3: "testing",
    4: "unknown",
    5: "dormant",
    6: "notPresent",
    7: "lowerLayerDown",
}

ADMIN_STATUS_MAP = {
    1: "up",
    2: "down",
    3: "testing",
}

MAX_CANDIDATES = 10


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_oper_status(code: Any) -> str:
    """Convert ifOperStatus to a string; unmapped codes are "unknown"."""
    return OPER_STATUS_MAP.get(_as_int(code), "unknown")


def parse_admin_status(code: Any) -> str:
    """Convert ifAdminStatus to a string; unmapped codes are "testing"."""
    return ADMIN_STATUS_MAP.get(_as_int(code), "testing")


def _by_int_index(column: dict[str, Any]) -> dict[int, Any]:
    out = {}
    for suffix, value in column.items():
        index = _as_int(suffix)
        if index is not None:
            out[index] = value
    return out


def _discovery_profile(profile: DeviceProfile) -> DeviceProfile:
    """Slow equipment needs a longer per-packet timeout while walking."""
    settings = get_settings().snmp
    return replace(
        profile,
        timeout=max(profile.timeout, settings.discovery_min_timeout),
        retries=settings.discovery_retries,
    )


async def _row_guard(profile: DeviceProfile) -> int:
    """Bound walks by ifNumber (+10 slack) when the agent reports it."""
    max_rows = get_settings().snmp.max_rows
    try:
        count = await get_scalar(profile, CommonOIDs.IF_NUMBER)
    except TransportError as e:
        logger.debug(f"{profile.device_id}: ifNumber unavailable ({e})")
        return max_rows

    count = _as_int(count)
    if count and count > 0:
        return min(count + 10, max_rows)
    return max_rows


# =============================================================================
# Interface Discovery
# =============================================================================

async def discover_interfaces(profile: DeviceProfile) -> list[InterfaceRecord]:
    """Build the IF-MIB interface table for a device.

    Args:
        profile: SNMP device profile

    Returns:
        InterfaceRecord list sorted by ifIndex (possibly partial, possibly empty)
    """
    profile = _discovery_profile(profile)
    max_rows = await _row_guard(profile)

    index_col = await collect_column(profile, CommonOIDs.IF_INDEX, max_rows)
    descr_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_DESCR, max_rows))
    speed_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_SPEED, max_rows))
    admin_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_ADMIN_STATUS, max_rows))
    oper_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_OPER_STATUS, max_rows))

    # ifXTable is optional on older agents
    name_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_NAME, max_rows))
    high_speed_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_HIGH_SPEED, max_rows))
    alias_col = _by_int_index(await collect_column(profile, CommonOIDs.IF_ALIAS, max_rows))

    if index_col:
        indexes = {_as_int(v) for v in index_col.values()} - {None}
    else:
        logger.info(f"{profile.device_id}: ifIndex column empty, deriving indexes from ifDescr")
        indexes = set(descr_col)

    interfaces = []
    for if_index in sorted(indexes):
        descr = str(descr_col.get(if_index, "") or "")
        speed = _as_int(speed_col.get(if_index)) or 0
        high_speed = _as_int(high_speed_col.get(if_index)) or 0
        if high_speed > 0:
            speed = high_speed * 1_000_000

        interfaces.append(InterfaceRecord(
            if_index=if_index,
            name=str(name_col.get(if_index) or descr),
            descr=descr,
            alias=str(alias_col.get(if_index, "") or ""),
            speed=speed,
            oper_status=parse_oper_status(oper_col.get(if_index)),
            admin_status=parse_admin_status(admin_col.get(if_index)),
        ))

    logger.info(f"{profile.device_id}: discovered {len(interfaces)} interfaces")
    return interfaces


def match_interface(
    interfaces: list[InterfaceRecord],
    name: str,
    descr: Optional[str] = None,
    alias: Optional[str] = None,
) -> InterfaceSearchResult:
    """Pick the interface an operator meant, without guessing between ties.

    Precedence: exact name, exact alias, exact descr, then a unique partial
    match on name, alias, descr. Matching is case-insensitive and partial
    means either string contains the other.
    """
    if not interfaces:
        return InterfaceSearchResult(found=False, match_type=MatchType.NOT_FOUND)

    wanted_name = (name or "").lower()
    wanted_descr = (descr or "").lower()
    wanted_alias = (alias or "").lower()

    def found(iface, match_type):
        return InterfaceSearchResult(found=True, match_type=match_type, interface=iface)

    def partial(field_value: str, wanted: str) -> bool:
        value = field_value.lower()
        return bool(value) and bool(wanted) and (wanted in value or value in wanted)

    if wanted_name:
        for iface in interfaces:
            if iface.name.lower() == wanted_name:
                return found(iface, MatchType.EXACT_NAME)

    if wanted_alias:
        for iface in interfaces:
            if iface.alias and iface.alias.lower() == wanted_alias:
                return found(iface, MatchType.EXACT_ALIAS)

    if wanted_descr:
        for iface in interfaces:
            if iface.descr.lower() == wanted_descr:
                return found(iface, MatchType.EXACT_DESCR)

    name_matches = [i for i in interfaces if partial(i.name, wanted_name)]
    if len(name_matches) == 1:
        return found(name_matches[0], MatchType.PARTIAL_NAME)

    alias_matches = [i for i in interfaces if partial(i.alias, wanted_alias)]
    if len(alias_matches) == 1:
        return found(alias_matches[0], MatchType.PARTIAL_ALIAS)

    descr_matches = [i for i in interfaces if partial(i.descr, wanted_descr)]
    if len(descr_matches) == 1:
        return found(descr_matches[0], MatchType.PARTIAL_DESCR)

    candidates = name_matches if name_matches else interfaces[:MAX_CANDIDATES]
    return InterfaceSearchResult(found=False, match_type=MatchType.NOT_FOUND, candidates=candidates)


async def find_interface_by_name(
    profile: DeviceProfile,
    name: str,
    descr: Optional[str] = None,
    alias: Optional[str] = None,
) -> InterfaceSearchResult:
    """Discover a device's interfaces and resolve one by name/descr/alias."""
    try:
        interfaces = await discover_interfaces(profile)
    except Exception as e:
        return InterfaceSearchResult(
            found=False,
            match_type=MatchType.NOT_FOUND,
            error=error_reason(e, f"interface search on {profile.device_id}"),
        )

    result = match_interface(interfaces, name, descr, alias)
    if result.found:
        logger.info(
            f"{profile.device_id}: '{name}' -> ifIndex {result.interface.if_index} "
            f"({result.match_type.value})"
        )
    else:
        logger.info(f"{profile.device_id}: '{name}' not found, {len(result.candidates)} candidates")
    return result


async def get_interface_status(profile: DeviceProfile, if_index: int) -> Optional[dict[str, str]]:
    """Read oper/admin status of one interface.

    Returns:
        {"oper_status": ..., "admin_status": ...} or None on transport failure
        or when the index does not exist
    """
    oper_oid = f"{CommonOIDs.IF_OPER_STATUS}.{if_index}"
    admin_oid = f"{CommonOIDs.IF_ADMIN_STATUS}.{if_index}"
    try:
        values = await get_scalars(profile, [oper_oid, admin_oid])
    except TransportError as e:
        logger.warning(f"{profile.device_id}: status of ifIndex {if_index} unavailable ({e})")
        return None

    if oper_oid not in values:
        return None
    return {
        "oper_status": parse_oper_status(values[oper_oid]),
        "admin_status": parse_admin_status(values.get(admin_oid)),
    }


async def validate_if_index(
    profile: DeviceProfile,
    if_index: int,
    expected_name: Optional[str] = None,
) -> bool:
    """Check that an ifIndex still exists (and still carries the same name).

    Indexes are renumbered on some equipment after reboots or line-card
    swaps; callers use this before trusting a stored ifIndex.
    """
    name_oid = f"{CommonOIDs.IF_NAME}.{if_index}"
    descr_oid = f"{CommonOIDs.IF_DESCR}.{if_index}"
    try:
        values = await get_scalars(profile, [name_oid, descr_oid])
    except TransportError as e:
        logger.warning(f"{profile.device_id}: cannot validate ifIndex {if_index} ({e})")
        return False

    current = values.get(name_oid) or values.get(descr_oid)
    if current is None:
        return False
    if expected_name is None:
        return True
    return str(current).lower() == expected_name.lower()


async def test_snmp_connection(profile: DeviceProfile) -> ConnectionTestResult:
    """Read sysDescr/sysName/sysUpTime to prove the profile works."""
    started = monotonic()
    try:
        values = await get_scalars(
            profile,
            [CommonOIDs.SYS_DESCR, CommonOIDs.SYS_NAME, CommonOIDs.SYS_UPTIME],
        )
    except Exception as e:
        reason = error_reason(e, f"SNMP test on {profile.device_id}")
        return ConnectionTestResult(success=False, message=reason)

    uptime = values.get(CommonOIDs.SYS_UPTIME)
    return ConnectionTestResult(
        success=True,
        message="SNMP connection successful",
        sys_descr=values.get(CommonOIDs.SYS_DESCR),
        sys_name=values.get(CommonOIDs.SYS_NAME),
        uptime=format_uptime(uptime) if isinstance(uptime, int) else None,
        response_time_ms=elapsed_ms(started),
    )


# =============================================================================
# Entity-MIB Sensor Discovery
# =============================================================================

_PORT_PREFIX_RE = re.compile(r"^(Ethernet\d+/\d+(?:/\d+)?|Eth\d+/\d+(?:/\d+)?)", re.IGNORECASE)
_LANE_RE = re.compile(r"Lane\s*(\d+)", re.IGNORECASE)

_SENSOR_KINDS = (
    ("receive power", "rx_sensor_index"),
    ("transmit power", "tx_sensor_index"),
    ("temperature", "temp_sensor_index"),
)


def _canonical_port(raw: str) -> str:
    if raw.lower().startswith("ethernet"):
        return "Ethernet" + raw[len("ethernet"):]
    return "Ethernet" + raw[len("eth"):]


def _sensor_attribute(name: str) -> Optional[str]:
    lowered = name.lower()
    for needle, attribute in _SENSOR_KINDS:
        if needle in lowered:
            return attribute
    return None


def map_entity_sensors(physical_names: dict[str, Any]) -> list[SensorMapping]:
    """Group entPhysicalName rows into per-port optical sensor mappings.

    Args:
        physical_names: entPhysicalIndex -> entPhysicalName

    Returns:
        SensorMappings for ports with at least an RX or TX sensor, in
        discovery order
    """
    ports: dict[str, SensorMapping] = {}

    def assign(port_name: str, attribute: str, index: str, only_if_unset: bool = False):
        mapping = ports.setdefault(port_name, SensorMapping(port_name=port_name))
        if only_if_unset and getattr(mapping, attribute) is not None:
            return
        setattr(mapping, attribute, index)

    for index, raw_name in physical_names.items():
        name = str(raw_name or "")
        match = _PORT_PREFIX_RE.match(name)
        if not match:
            continue
        attribute = _sensor_attribute(name)
        if attribute is None:
            continue

        port_name = _canonical_port(match.group(1))
        lane = _LANE_RE.search(name)
        if not lane:
            assign(port_name, attribute, str(index))
            continue

        lane_number = int(lane.group(1))
        already_broken_out = port_name.count("/") >= 2
        lane_port = port_name if already_broken_out else f"{port_name}/{lane_number}"
        assign(lane_port, attribute, str(index))

        # Lane 1 stands in for the whole port when it runs unbroken (40G/100G)
        if lane_number == 1 and not already_broken_out:
            assign(port_name, attribute, str(index), only_if_unset=True)

    return [m for m in ports.values() if m.has_optics]


async def discover_entity_sensors(profile: DeviceProfile) -> list[SensorMapping]:
    """Walk entPhysicalName once and map optical sensors to ports."""
    names = await collect_column(
        profile,
        CommonOIDs.ENT_PHYSICAL_NAME,
        timeout=get_settings().snmp.entity_walk_timeout,
    )
    mappings = map_entity_sensors(names)
    logger.info(f"{profile.device_id}: {len(mappings)} ports with optical sensors")
    return mappings
