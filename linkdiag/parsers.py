"""
Parsers for vendor CLI output.

All parsers take text that has already been through strip_ansi() and are
tolerant: lines they do not understand are skipped, never raised on.
"""

import logging
import re
from typing import Callable, Iterable, Optional

from linkdiag.models import AlarmRecord, OnuCoordinates

logger = logging.getLogger(__name__)

AlarmParser = Callable[[str], list[AlarmRecord]]


# =============================================================================
# Alarm Tables
# =============================================================================

# 2025-12-15 05:43:59 UTC-3    CRITICAL gpon-1/1/1/14      Active   GPON_LOSi  ONU Loss of signal
_DATACOM_ALARM_RE = re.compile(
    r"(\d{4}-\d{2}-\d{2}\s+\d{2}:\d{2}:\d{2}\S*(?:\s+UTC[+-]?\d*(?::\d+)?)?)"
    r"\s+(\w+)"
    r"\s+([\w\-/:.]+)"
    r"\s+(\w+)"
    r"\s+(\w+)"
    r"\s*(.*)$"
)


def parse_datacom_alarms(output: str) -> list[AlarmRecord]:
    """Parse a DmOS "show alarm" table."""
    alarms = []
    for line in output.splitlines():
        match = _DATACOM_ALARM_RE.search(line)
        if not match:
            continue
        timestamp, severity, source, status, name, description = (g.strip() for g in match.groups())
        alarms.append(AlarmRecord(
            timestamp=timestamp,
            severity=severity,
            source=source,
            status=status,
            name=name,
            description=description,
            raw_line=line.strip(),
        ))
    return alarms


_TIMESTAMP_RE = re.compile(r"\d{4}[-/]\d{2}[-/]\d{2}[ T]+\d{2}:\d{2}:\d{2}")
_SOURCE_RE = re.compile(
    r"(?:(?:x?gpon|epon)[-_](?:olt|onu)?_?)?\d+/\d+(?:/\d+)?(?:[:/]\d+)+",
    re.IGNORECASE,
)
_SEVERITY_RE = re.compile(r"\b(critical|major|minor|warning|info|notice)\b", re.IGNORECASE)
_STATUS_RE = re.compile(r"\b(active|raised|cleared|clear|restored|recovered)\b", re.IGNORECASE)
_STATUS_NAMES = {"raised": "Active", "active": "Active"}


def make_table_parser(alarm_names: Iterable[str]) -> AlarmParser:
    """Build a parser for free-form alarm lists.

    A line is an alarm when it carries an ONU identifier and one of the
    known alarm names (or a GPON_xxx code). Timestamp, severity and status
    are picked up when present; status defaults to Active.
    """
    names = sorted({n for n in alarm_names if n}, key=len, reverse=True)
    alternatives = "|".join(re.escape(n) for n in names)
    name_re = re.compile(
        r"(?<![\w-])(" + (alternatives + "|" if alternatives else "") + r"GPON_\w+)(?![\w-])",
        re.IGNORECASE,
    )
    canonical_case = {n.lower(): n for n in names}

    def parse(output: str) -> list[AlarmRecord]:
        alarms = []
        for line in output.splitlines():
            timestamp = _TIMESTAMP_RE.search(line)
            # Keep slashed dates from being read as ONU identifiers
            scan = line
            if timestamp:
                scan = line[:timestamp.start()] + " " * len(timestamp.group(0)) + line[timestamp.end():]
            source = _SOURCE_RE.search(scan)
            name = name_re.search(scan)
            if not source or not name:
                continue
            severity = _SEVERITY_RE.search(line)
            status = _STATUS_RE.search(line)
            status_text = status.group(1).lower() if status else "active"
            alarm_name = canonical_case.get(name.group(1).lower(), name.group(1))
            alarms.append(AlarmRecord(
                timestamp=timestamp.group(0) if timestamp else "",
                severity=severity.group(1).upper() if severity else "",
                source=source.group(0),
                status=_STATUS_NAMES.get(status_text, "Cleared"),
                name=alarm_name,
                description=line[name.end():].strip(),
                raw_line=line.strip(),
            ))
        return alarms

    return parse


# =============================================================================
# Single-ONU Diagnosis
# =============================================================================

_DOWN_CAUSE_RE = re.compile(
    r"^\s*(?:last\s+down\s+(?:cause|reason)|down\s*cause|deactivate\s+reason|offline\s+reason)"
    r"[ \t]*[:=]?[ \t]*(.+?)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)


def parse_down_cause(output: str) -> Optional[str]:
    """Extract a "Last down cause" / "deactivate reason" style field."""
    for match in _DOWN_CAUSE_RE.finditer(output or ""):
        value = match.group(1).strip()
        if value and value not in ("-", "--", "N/A", "none"):
            return value
    return None


# =============================================================================
# Serial Search
# =============================================================================

class OnuLocation:
    """An ONU found by serial: the vendor's identifier and its coordinates."""

    __slots__ = ("identifier", "coordinates")

    def __init__(self, identifier: str, coordinates: OnuCoordinates):
        self.identifier = identifier
        self.coordinates = coordinates

    def __eq__(self, other):
        return isinstance(other, OnuLocation) and (self.identifier, self.coordinates) == (
            other.identifier,
            other.coordinates,
        )

    def __repr__(self):
        return f"OnuLocation({self.identifier!r}, {self.coordinates!r})"


# gpon-onu_1/2/1:4, 1/1/3/116, 0/1/0:5
_FOUR_PART_RE = re.compile(
    r"(?:(?:x?gpon|epon)[-_](?:olt|onu)?_?)?(\d+)/(\d+)/(\d+)[:/](\d+)(?![\d/])",
    re.IGNORECASE,
)
# 1/1/3   116   (chassis/slot/port, then the ONU id column)
_PORT_THEN_ID_RE = re.compile(r"(?<![\d/])(\d+)/(\d+)/(\d+)\s+(\d+)\b")
# 1/3:116
_THREE_PART_RE = re.compile(r"(?<![\d/])(\d+)/(\d+)[:/](\d+)(?![\d/])")


def locate_onu(line: str) -> Optional[OnuLocation]:
    """First ONU identifier in a line of text, with its coordinates."""
    match = _FOUR_PART_RE.search(line) or _PORT_THEN_ID_RE.search(line)
    if match:
        shelf, slot, port, onu = (int(g) for g in match.groups())
        return OnuLocation(" ".join(match.group(0).split()), OnuCoordinates(slot=slot, port=port, onu_id=onu, shelf=shelf))
    match = _THREE_PART_RE.search(line)
    if match:
        slot, port, onu = (int(g) for g in match.groups())
        return OnuLocation(match.group(0), OnuCoordinates(slot=slot, port=port, onu_id=onu))
    return None


def parse_onu_locations(output: str, serial: str) -> list[OnuLocation]:
    """Find ONU identifiers in a serial-search reply.

    Lines mentioning the serial are preferred; replies that print only the
    identifier (ZTE "show gpon onu by sn") fall back to every line.
    """
    lines = (output or "").splitlines()
    wanted = serial.lower()

    def collect(candidates):
        found = []
        for line in candidates:
            location = locate_onu(line)
            if location is not None and location not in found:
                found.append(location)
        return found

    found = collect(line for line in lines if wanted in line.lower())
    if not found:
        found = collect(line for line in lines if wanted not in line.lower())
    return found


_HUAWEI_FSP_RE = re.compile(r"F/S/P\s*:\s*(\d+)\s*/\s*(\d+)\s*/\s*(\d+)", re.IGNORECASE)
_HUAWEI_ONT_ID_RE = re.compile(r"ONT-ID\s*:\s*(\d+)", re.IGNORECASE)


def parse_huawei_ont_info(output: str, serial: str) -> list[OnuLocation]:
    """Parse "display ont info by-sn" (F/S/P and ONT-ID on separate lines)."""
    fsp = _HUAWEI_FSP_RE.search(output or "")
    ont_id = _HUAWEI_ONT_ID_RE.search(output or "")
    if not fsp or not ont_id:
        return []
    frame, slot, port = (int(g) for g in fsp.groups())
    onu = int(ont_id.group(1))
    coords = OnuCoordinates(slot=slot, port=port, onu_id=onu, shelf=frame)
    return [OnuLocation(f"{frame}/{slot}/{port} {onu}", coords)]
