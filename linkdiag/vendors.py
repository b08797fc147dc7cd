"""
Vendor registry for alarm queries, ONU diagnosis and serial search.

Each VendorKind member carries a VendorConfig: the command that lists
active alarms, the parser for its output, a table remapping vendor alarm
strings to canonical GPON_xxx codes, and the optional single-ONU and
serial-search commands. Lookup is case-insensitive over names and aliases;
anything unrecognized falls back to the default vendor with a warning.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Mapping, Optional

from linkdiag.parsers import (
    AlarmParser,
    OnuLocation,
    make_table_parser,
    parse_datacom_alarms,
    parse_down_cause,
    parse_huawei_ont_info,
    parse_onu_locations,
)

logger = logging.getLogger(__name__)

SerialParser = Callable[[str, str], list[OnuLocation]]
DownCauseParser = Callable[[str], Optional[str]]


# =============================================================================
# Canonical Alarm Table
# =============================================================================

@dataclass(frozen=True)
class AlarmMapping:
    diagnosis: str
    description: str


ALARM_MAPPINGS: dict[str, AlarmMapping] = {
    "GPON_LOSi": AlarmMapping("Fiber cut", "ONU loss of signal, optical signal lost"),
    "GPON_DGi": AlarmMapping("Power outage", "ONU dying gasp, equipment without power"),
    "GPON_DOWi": AlarmMapping("Fiber attenuation", "ONU downstream wavelength drift"),
    "GPON_SUFi": AlarmMapping("Fiber attenuation", "ONU start-up failure"),
    "GPON_LOAMi": AlarmMapping("Fiber attenuation", "ONU loss of PLOAM"),
    "GPON_LCDGi": AlarmMapping("Fiber attenuation", "ONU loss of GEM channel delineation"),
    "GPON_RDi": AlarmMapping("Communication problem", "ONU remote defect indication"),
}

DIAGNOSIS_UNKNOWN = "Unknown alarm"
DIAGNOSIS_NO_ALARMS = "No active alarms"
DESCRIPTION_NO_ALARMS = "No alarms found for this ONU"
DIAGNOSIS_QUERY_ERROR = "Query error"

_CANONICAL_BY_LOWER = {code.lower(): code for code in ALARM_MAPPINGS}

# Order matters: "loss of PLOAM" must not be read as loss of signal
_DOWN_REASON_RULES = (
    (re.compile(r"dying[\s_-]*gasp|\bdgi\b|power[\s_-]*(?:off|outage|fail\w*|down|loss)", re.IGNORECASE), "GPON_DGi"),
    (re.compile(r"ploam|\bloami\b", re.IGNORECASE), "GPON_LOAMi"),
    (re.compile(r"\blcdgi?\b|gem channel", re.IGNORECASE), "GPON_LCDGi"),
    (re.compile(r"\bdowi?\b|wavelength", re.IGNORECASE), "GPON_DOWi"),
    (re.compile(r"\bsufi?\b|start[\s-]?up", re.IGNORECASE), "GPON_SUFi"),
    (re.compile(r"\brdi\b|remote defect", re.IGNORECASE), "GPON_RDi"),
    (re.compile(r"\blos[i]?\b|loss of signal|\blofi?\b|fiber", re.IGNORECASE), "GPON_LOSi"),
)


# =============================================================================
# Vendor Configuration
# =============================================================================

@dataclass(frozen=True, eq=False)
class VendorConfig:
    """Commands and parsers for one vendor family.

    Command templates use {slot}, {port}, {onuId}, {shelf} and {serial};
    filtered_alarms_command takes {key}, the normalized diagnosis key.
    """

    name: str
    aliases: tuple[str, ...] = ()
    list_alarms_command: Optional[str] = None
    filtered_alarms_command: Optional[str] = None
    alarm_parser: AlarmParser = parse_datacom_alarms
    alarm_remap: Mapping[str, str] = field(default_factory=dict)
    onu_diagnosis_command: Optional[str] = None
    down_cause_parser: DownCauseParser = parse_down_cause
    search_serial_command: Optional[str] = None
    serial_parser: SerialParser = parse_onu_locations
    requires_privilege: bool = False
    telemetry_backed: bool = False
    diagnosis_key_template: str = "1/{slot}/{port}/{onuId}"

    def canonical_code(self, alarm_name: str) -> str:
        """Map a vendor alarm string to its canonical code (or itself)."""
        if not alarm_name:
            return alarm_name
        lowered = alarm_name.strip().lower()
        for vendor_name, code in self.alarm_remap.items():
            if vendor_name.lower() == lowered:
                return code
        return _CANONICAL_BY_LOWER.get(lowered, alarm_name.strip())


_ZTE_REMAP = {
    "LOS": "GPON_LOSi",
    "LOSi": "GPON_LOSi",
    "OnuLos": "GPON_LOSi",
    "DyingGasp": "GPON_DGi",
    "DGi": "GPON_DGi",
    "LOAMi": "GPON_LOAMi",
    "LCDGi": "GPON_LCDGi",
    "SUFi": "GPON_SUFi",
    "DOWi": "GPON_DOWi",
    "RDIi": "GPON_RDi",
}

_HUAWEI_REMAP = {
    "LOS": "GPON_LOSi",
    "LOSi": "GPON_LOSi",
    "LOFi": "GPON_LOSi",
    "dying-gasp": "GPON_DGi",
    "DGi": "GPON_DGi",
    "LOAMi": "GPON_LOAMi",
    "LCDGi": "GPON_LCDGi",
    "SFi": "GPON_SUFi",
    "SUFi": "GPON_SUFi",
    "DOWi": "GPON_DOWi",
    "RDIi": "GPON_RDi",
}

_FIBERHOME_REMAP = {
    "ONU_LOS": "GPON_LOSi",
    "OFFLINE_LOS": "GPON_LOSi",
    "ONU_DYING_GASP": "GPON_DGi",
    "DYING_GASP": "GPON_DGi",
    "ONU_LOAMI": "GPON_LOAMi",
    "ONU_SUFI": "GPON_SUFi",
}

_NOKIA_REMAP = {
    "loss-of-signal": "GPON_LOSi",
    "onu-los": "GPON_LOSi",
    "dying-gasp": "GPON_DGi",
    "loss-of-ploam": "GPON_LOAMi",
    "remote-defect": "GPON_RDi",
}

_FURUKAWA_REMAP = {
    "LOS": "GPON_LOSi",
    "LOSI": "GPON_LOSi",
    "DYING_GASP": "GPON_DGi",
    "DGI": "GPON_DGi",
    "LOAMI": "GPON_LOAMi",
    "LCDGI": "GPON_LCDGi",
    "SUFI": "GPON_SUFi",
    "DOWI": "GPON_DOWi",
    "RDI": "GPON_RDi",
}


def _table_parser(remap: Mapping[str, str]) -> AlarmParser:
    return make_table_parser(list(remap) + list(ALARM_MAPPINGS))


class VendorKind(Enum):
    """Supported vendor families, each bound to its VendorConfig."""

    DATACOM = VendorConfig(
        name="datacom",
        aliases=("dmos", "dm4610", "dm4615"),
        list_alarms_command="show alarm",
        filtered_alarms_command="show alarm | include {key}",
        alarm_parser=parse_datacom_alarms,
        search_serial_command="show interface gpon onu | include {serial}",
        diagnosis_key_template="1/{slot}/{port}/{onuId}",
    )
    ZTE = VendorConfig(
        name="zte",
        aliases=("zxan", "c300", "c320", "c600"),
        list_alarms_command="show alarm current",
        alarm_parser=_table_parser(_ZTE_REMAP),
        alarm_remap=_ZTE_REMAP,
        onu_diagnosis_command="show gpon onu detail-info gpon-onu_1/{slot}/{port}:{onuId}",
        search_serial_command="show gpon onu by sn {serial}",
        diagnosis_key_template="gpon-onu_1/{slot}/{port}:{onuId}",
    )
    HUAWEI = VendorConfig(
        name="huawei",
        aliases=("ma5600", "ma5800", "ma5683t"),
        list_alarms_command="display alarm active all",
        alarm_parser=_table_parser(_HUAWEI_REMAP),
        alarm_remap=_HUAWEI_REMAP,
        onu_diagnosis_command="display ont info {shelf} {slot} {port} {onuId}",
        search_serial_command="display ont info by-sn {serial}",
        serial_parser=parse_huawei_ont_info,
        requires_privilege=True,
        diagnosis_key_template="{shelf}/{slot}/{port}/{onuId}",
    )
    FIBERHOME = VendorConfig(
        name="fiberhome",
        aliases=("an5516", "an6000"),
        list_alarms_command="show alarm current",
        alarm_parser=_table_parser(_FIBERHOME_REMAP),
        alarm_remap=_FIBERHOME_REMAP,
        diagnosis_key_template="1/{slot}/{port}/{onuId}",
    )
    NOKIA = VendorConfig(
        name="nokia",
        aliases=("isam", "alcatel"),
        list_alarms_command="show alarm current table",
        alarm_parser=_table_parser(_NOKIA_REMAP),
        alarm_remap=_NOKIA_REMAP,
        diagnosis_key_template="1/1/{slot}/{port}/{onuId}",
    )
    INTELBRAS = VendorConfig(
        name="intelbras",
        aliases=("g16", "8820g"),
        list_alarms_command="show alarm",
        alarm_parser=_table_parser({}),
        diagnosis_key_template="{slot}/{port}/{onuId}",
    )
    PARKS = VendorConfig(
        name="parks",
        aliases=("fiberlink",),
        list_alarms_command="show alarms",
        alarm_parser=_table_parser({}),
        diagnosis_key_template="{slot}/{port}/{onuId}",
    )
    FURUKAWA = VendorConfig(
        name="furukawa",
        aliases=("fk",),
        alarm_remap=_FURUKAWA_REMAP,
        telemetry_backed=True,
        diagnosis_key_template="{serial}",
    )

    @property
    def config(self) -> VendorConfig:
        return self.value


DEFAULT_VENDOR = VendorKind.DATACOM

_LOOKUP: dict[str, VendorKind] = {}
for _kind in VendorKind:
    _LOOKUP[_kind.config.name] = _kind
    for _alias in _kind.config.aliases:
        _LOOKUP[_alias] = _kind


def lookup_vendor(name: Optional[str]) -> Optional[VendorKind]:
    """Case-insensitive lookup by name or alias; None if unknown."""
    if not name:
        return None
    return _LOOKUP.get(name.strip().lower())


def resolve_vendor(
    name: Optional[str],
    default: Optional[str] = None,
) -> tuple[VendorKind, Optional[str]]:
    """Resolve a vendor name, falling back to the default vendor.

    Args:
        name: Vendor name or alias as configured on the device
        default: Fallback vendor name (datacom when None or itself unknown)

    Returns:
        (VendorKind, warning) where warning is None for a known vendor
    """
    kind = lookup_vendor(name)
    if kind is not None:
        return kind, None

    fallback = lookup_vendor(default) or DEFAULT_VENDOR
    warning = f"unknown vendor '{name or ''}', using {fallback.config.name}"
    logger.warning(warning, extra={"vendor": name or ""})
    return fallback, warning


# =============================================================================
# Down-Reason Classification
# =============================================================================

def classify_down_reason(reason: Optional[str], config: Optional[VendorConfig] = None) -> Optional[str]:
    """Map a free-text down reason to a canonical GPON_xxx code.

    Tries the vendor remap table, then a literal canonical code, then
    keyword rules. Returns None when nothing applies.
    """
    if not reason or not reason.strip():
        return None
    text = reason.strip()

    if config is not None:
        code = config.canonical_code(text)
        if code in ALARM_MAPPINGS:
            return code

    lowered = text.lower()
    for canonical_lower, code in _CANONICAL_BY_LOWER.items():
        if canonical_lower in lowered:
            return code

    for pattern, code in _DOWN_REASON_RULES:
        if pattern.search(text):
            return code
    return None


def describe_alarm(code: Optional[str]) -> Optional[AlarmMapping]:
    if not code:
        return None
    return ALARM_MAPPINGS.get(code)
