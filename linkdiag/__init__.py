"""
linkdiag: polling and link-diagnosis engine for ISP access equipment.

Talks to OLTs, switches and routers over SNMP and interactive CLI sessions
to discover interfaces and optical sensors, read optical signal levels and
work out why a subscriber link is down.

Public operations:
- discover_interfaces / find_interface_by_name (SNMP IF-MIB)
- get_optical_signal (per-vendor ONU index arithmetic, switch templates,
  Entity-MIB sensors)
- diagnose / query_all_alarms / search_by_serial (CLI alarm tables,
  telemetry database)
"""

from .models import (
    AlarmRecord,
    ConnectionTestResult,
    DeviceProfile,
    DiagnosisResult,
    InterfaceRecord,
    InterfaceSearchResult,
    LinkDiagnosisData,
    MatchType,
    OnuCoordinates,
    OpticalOids,
    OpticalSignalReading,
    SensorMapping,
    SerialSearchResult,
    SwitchPortTemplate,
    TransportKind,
)

from .errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectionFailedError,
    FormulaError,
    LinkDiagError,
    SessionTimeoutError,
    SnmpError,
    StreamClosedError,
    TelemetryError,
    TransportError,
)

from .discovery import (
    discover_entity_sensors,
    discover_interfaces,
    find_interface_by_name,
    get_interface_status,
    match_interface,
    test_snmp_connection,
    validate_if_index,
)

from .optical import compute_onu_index, get_optical_signal

from .cli_engine import CliResult, CliState, run_cli_command

from .diagnosis import (
    DiagnosisService,
    diagnose,
    get_diagnosis_service,
    query_all_alarms,
    search_by_serial,
    test_connection,
)

from .vendors import VendorKind, resolve_vendor

__version__ = "0.4.0"
