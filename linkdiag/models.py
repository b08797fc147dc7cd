"""
Data records shared by the polling and diagnosis engine.

Records are plain dataclasses. Profiles and coordinates are frozen because
they are immutable for the duration of a request; results carry a
``to_dict()`` so callers can serialize them without knowing the layout.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional


# =============================================================================
# Device Profile
# =============================================================================

class TransportKind(str, Enum):
    """How the engine talks to a device."""
    SNMP_V1 = "snmp_v1"
    SNMP_V2C = "snmp_v2c"
    SNMP_V3 = "snmp_v3"
    SSH = "ssh"
    TELNET = "telnet"

    @property
    def is_snmp(self) -> bool:
        return self in (TransportKind.SNMP_V1, TransportKind.SNMP_V2C, TransportKind.SNMP_V3)

    @property
    def default_port(self) -> int:
        if self.is_snmp:
            return 161
        return 22 if self is TransportKind.SSH else 23


@dataclass(frozen=True)
class DeviceProfile:
    """Connection parameters for one device, as stored by the caller."""
    device_id: str
    host: str
    kind: TransportKind = TransportKind.SNMP_V2C
    port: Optional[int] = None
    vendor: str = ""

    # SNMP v1/v2c
    community: str = "public"

    # CLI credentials, also the SNMPv3 user name
    username: str = ""
    password: str = field(default="", repr=False)
    enable_password: Optional[str] = field(default=None, repr=False)

    # SNMPv3 (strings, resolved leniently by linkdiag.snmp)
    security_level: str = "noAuthNoPriv"
    auth_protocol: str = "none"
    auth_password: str = field(default="", repr=False)
    priv_protocol: str = "none"
    priv_password: str = field(default="", repr=False)

    timeout: float = 5.0
    retries: int = 1

    def __post_init__(self):
        if not isinstance(self.kind, TransportKind):
            object.__setattr__(self, "kind", TransportKind(str(self.kind).lower()))

    @property
    def resolved_port(self) -> int:
        return self.port or self.kind.default_port

    @property
    def is_snmp(self) -> bool:
        return self.kind.is_snmp


# =============================================================================
# Inventory Records
# =============================================================================

@dataclass
class InterfaceRecord:
    """One row of the IF-MIB interface table."""
    if_index: int
    name: str = ""
    descr: str = ""
    alias: str = ""
    speed: int = 0  # bits/sec
    oper_status: str = "unknown"
    admin_status: str = "testing"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SensorMapping:
    """Entity-MIB sensors attached to one logical port."""
    port_name: str
    rx_sensor_index: Optional[str] = None
    tx_sensor_index: Optional[str] = None
    temp_sensor_index: Optional[str] = None
    # entSensorValue scale; Cisco reports whole dBm
    divisor: float = 1

    @property
    def has_optics(self) -> bool:
        return self.rx_sensor_index is not None or self.tx_sensor_index is not None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class MatchType(str, Enum):
    EXACT_NAME = "exact_name"
    EXACT_ALIAS = "exact_alias"
    EXACT_DESCR = "exact_descr"
    PARTIAL_NAME = "partial_name"
    PARTIAL_ALIAS = "partial_alias"
    PARTIAL_DESCR = "partial_descr"
    NOT_FOUND = "not_found"


@dataclass
class InterfaceSearchResult:
    found: bool
    match_type: MatchType
    interface: Optional[InterfaceRecord] = None
    candidates: list[InterfaceRecord] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "match_type": self.match_type.value,
            "interface": self.interface.to_dict() if self.interface else None,
            "candidates": [c.to_dict() for c in self.candidates],
            "error": self.error,
        }


# =============================================================================
# Optical Signal
# =============================================================================

@dataclass(frozen=True)
class OnuCoordinates:
    """Vendor addressing of a subscriber ONU."""
    slot: int
    port: int
    onu_id: int
    shelf: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class SwitchPortTemplate:
    """Operator-configured OID templates for a switch-side optical port."""
    switch_port: str
    rx_oid_template: str = ""
    tx_oid_template: str = ""
    port_index_formula: Optional[str] = None
    divisor: float = 1000
    if_index: Optional[int] = None


@dataclass(frozen=True)
class OpticalOids:
    """Base OIDs for a vendor's ONU optical table; the instance is appended."""
    rx: Optional[str] = None
    tx: Optional[str] = None
    olt_rx: Optional[str] = None
    distance: Optional[str] = None
    # None means scale automatically (centi-dBm when |raw| > 100)
    divisor: Optional[float] = None


@dataclass
class OpticalSignalReading:
    """Optical levels in dBm; None is "no reading", never 0."""
    rx_power: Optional[float] = None
    tx_power: Optional[float] = None
    olt_rx_power: Optional[float] = None
    onu_distance: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return all(v is None for v in (self.rx_power, self.tx_power, self.olt_rx_power, self.onu_distance))

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# =============================================================================
# Alarms and Diagnosis
# =============================================================================

@dataclass(frozen=True)
class AlarmRecord:
    """One alarm line parsed from a device's alarm table."""
    timestamp: str
    severity: str
    source: str
    status: str
    name: str
    description: str = ""
    raw_line: str = ""

    @property
    def is_active(self) -> bool:
        return self.status.lower() == "active"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LinkDiagnosisData:
    """What the caller knows about the subscriber link being diagnosed."""
    serial: Optional[str] = None
    coordinates: Optional[OnuCoordinates] = None
    onu_identifier: Optional[str] = None
    key_template: Optional[str] = None


@dataclass
class DiagnosisResult:
    alarm_type: Optional[str]
    alarm_code: Optional[str]
    description: str
    diagnosis: str
    raw_output: str = ""
    success: bool = True
    error: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SerialSearchResult:
    found: bool
    serial: str
    onu_identifier: Optional[str] = None
    coordinates: Optional[OnuCoordinates] = None
    last_down_reason: Optional[str] = None
    candidates: list[str] = field(default_factory=list)
    raw_output: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ConnectionTestResult:
    success: bool
    message: str
    sys_descr: Optional[str] = None
    sys_name: Optional[str] = None
    uptime: Optional[str] = None
    response_time_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
