"""
Optical signal engine.

Turns subscriber or switch-port addressing into SNMP instance OIDs and
reads RX/TX power (plus OLT-side RX and ONU distance where the vendor
exposes them), converting raw values to dBm.

Three addressing modes:
- OnuCoordinates: per-vendor index formula appended to the vendor's base OIDs
- SwitchPortTemplate: operator OID templates with {portIndex}/{ifIndex}
- SensorMapping: Entity-MIB sensor indexes read via CISCO-ENTITY-SENSOR-MIB

Zero policy: a value that is exactly 0 dBm after conversion is reported as
None. Transceivers that are absent or powered off read as 0 on this class
of hardware.

Usage:
    from linkdiag.optical import get_optical_signal

    reading = await get_optical_signal(profile, "huawei", OnuCoordinates(slot=1, port=0, onu_id=5))
"""

import logging
import math
import re
from enum import Enum
from typing import Any, Callable, Optional, Union

from config.settings import get_settings
from linkdiag.errors import ConfigurationError, SnmpError, TransportError
from linkdiag.formula import calculate_switch_port_index
from linkdiag.models import (
    DeviceProfile,
    OnuCoordinates,
    OpticalOids,
    OpticalSignalReading,
    SensorMapping,
    SwitchPortTemplate,
)
from linkdiag.snmp import CommonOIDs, get_scalars, numeric_oid

logger = logging.getLogger(__name__)

OpticalTarget = Union[OnuCoordinates, SwitchPortTemplate, SensorMapping]


# =============================================================================
# ONU Index Formulas
# =============================================================================

class OnuIndexFormula(Enum):
    """SNMP instance encodings of (shelf, slot, port, onu), one per vendor family."""
    HUAWEI = "huawei"
    ZTE = "zte"
    FIBERHOME = "fiberhome"
    NOKIA = "nokia"
    DATACOM = "datacom"
    FURUKAWA = "furukawa"
    PARKS = "parks"
    INTELBRAS = "intelbras"
    GENERIC = "generic"

    @classmethod
    def for_vendor(cls, vendor: Optional[str]) -> "OnuIndexFormula":
        """Resolve a vendor slug or model alias; unknown vendors get GENERIC."""
        key = (vendor or "").strip().lower()
        if key in _FORMULA_ALIASES:
            return _FORMULA_ALIASES[key]
        try:
            return cls(key)
        except ValueError:
            return cls.GENERIC

    def compute(self, coords: OnuCoordinates) -> str:
        return _FORMULAS[self](coords)


_FORMULA_ALIASES = {
    "huawei-ma5800": OnuIndexFormula.HUAWEI,
    "huawei-ma5608t": OnuIndexFormula.HUAWEI,
    "zte-c300": OnuIndexFormula.ZTE,
    "zte-c320": OnuIndexFormula.ZTE,
    "zte-c600": OnuIndexFormula.ZTE,
    "fiberhome-an5516": OnuIndexFormula.FIBERHOME,
    "an5516": OnuIndexFormula.FIBERHOME,
    "nokia-isam": OnuIndexFormula.NOKIA,
    "alcatel": OnuIndexFormula.NOKIA,
    "alcatel-lucent": OnuIndexFormula.NOKIA,
    "datacom-dm4610": OnuIndexFormula.DATACOM,
    "datacom-dm4615": OnuIndexFormula.DATACOM,
    "furukawa-g4s": OnuIndexFormula.FURUKAWA,
    "furukawa-g8s": OnuIndexFormula.FURUKAWA,
    "parks-fiberlink": OnuIndexFormula.PARKS,
    "intelbras-olt": OnuIndexFormula.INTELBRAS,
    "intelbras-8820g": OnuIndexFormula.INTELBRAS,
    "intelbras-110gi": OnuIndexFormula.INTELBRAS,
}

_FORMULAS: dict[OnuIndexFormula, Callable[[OnuCoordinates], str]] = {
    # hwGponDeviceOntIndex: frame, slot and port packed into one integer
    OnuIndexFormula.HUAWEI: lambda c: str(c.shelf * 8388608 + c.slot * 65536 + c.port * 256 + c.onu_id),
    # gponIfIndex.onuId; PON ports are numbered from 1
    OnuIndexFormula.ZTE: lambda c: f"{c.slot * 32768 + (c.port - 1) * 256 + 1}.{c.onu_id}",
    OnuIndexFormula.FIBERHOME: lambda c: f"{c.slot * 16 + c.port}.{c.onu_id}",
    OnuIndexFormula.NOKIA: lambda c: f"{c.slot * 256 + c.port + 1}.{c.onu_id}",
    OnuIndexFormula.DATACOM: lambda c: str(c.slot * 16777216 + c.onu_id * 256 + (c.port - 1)),
    OnuIndexFormula.FURUKAWA: lambda c: f"{6000 + c.slot * 100 + c.port}.{c.onu_id}",
    OnuIndexFormula.PARKS: lambda c: f"{c.slot}.{c.port}.{c.onu_id}",
    OnuIndexFormula.INTELBRAS: lambda c: str((c.port - 1) * 128 + c.onu_id),
    OnuIndexFormula.GENERIC: lambda c: f"{c.slot}.{c.port}.{c.onu_id}",
}


def compute_onu_index(vendor: Optional[str], coords: OnuCoordinates) -> str:
    """SNMP instance suffix for an ONU on a given vendor's OLT."""
    return OnuIndexFormula.for_vendor(vendor).compute(coords)


# Known optical tables (enterprise 1.3.6.1.4.1)
DEFAULT_OPTICAL_OIDS: dict[OnuIndexFormula, OpticalOids] = {
    OnuIndexFormula.HUAWEI: OpticalOids(
        rx="1.3.6.1.4.1.2011.6.128.1.1.2.51.1.4",  # hwGponOntOpticalDdmRxPower (0.01 dBm)
        tx="1.3.6.1.4.1.2011.6.128.1.1.2.51.1.5",  # hwGponOntOpticalDdmTxPower (0.01 dBm)
        divisor=100,
    ),
    OnuIndexFormula.ZTE: OpticalOids(
        rx="1.3.6.1.4.1.3902.1012.3.50.12.1.1.10",  # zxAnGponOnuRxOpticalLevel
        tx="1.3.6.1.4.1.3902.1012.3.50.12.1.1.11",  # zxAnGponOnuTxOpticalLevel
    ),
    OnuIndexFormula.FIBERHOME: OpticalOids(
        rx="1.3.6.1.4.1.5875.800.3.10.1.1.6",
        tx="1.3.6.1.4.1.5875.800.3.10.1.1.7",
    ),
    OnuIndexFormula.NOKIA: OpticalOids(
        rx="1.3.6.1.4.1.637.61.1.35.11.4.1.7",  # asamOpticalRxLevel
        tx="1.3.6.1.4.1.637.61.1.35.11.4.1.8",  # asamOpticalTxLevel
    ),
    OnuIndexFormula.FURUKAWA: OpticalOids(
        rx="1.3.6.1.4.1.3979.6.4.2.1.2.3.2.1.15",
        tx="1.3.6.1.4.1.3979.6.4.2.1.2.3.2.1.14",
        distance="1.3.6.1.4.1.3979.6.4.2.1.2.1.1.1.21",  # metres
        divisor=100,
    ),
    OnuIndexFormula.DATACOM: OpticalOids(
        rx="1.3.6.1.4.1.3709.3.6.2.1.1.22",  # onuIfOnuPowerRx (dBm)
        tx="1.3.6.1.4.1.3709.3.6.2.1.1.21",  # onuIfOnuPowerTx (dBm)
        divisor=1,
    ),
    OnuIndexFormula.INTELBRAS: OpticalOids(
        rx="1.3.6.1.4.1.26138.1.2.1.1.1.9",  # string dBm, "--" when offline
        olt_rx="1.3.6.1.4.1.26138.1.2.1.1.1.8",
        divisor=1,
    ),
}


# =============================================================================
# Unit Conversion
# =============================================================================

_NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")

def convert_to_dbm(raw: Any, divisor: Optional[float] = None) -> Optional[float]:
    """Convert a raw optical value to dBm.

    Args:
        raw: int, float or numeric string as returned by the agent
        divisor: Scale of the raw value (10 = deci-dBm, 100 = centi-dBm,
            1 = dBm). None scales automatically: |raw| > 100 is centi-dBm.

    Returns:
        dBm rounded to 2 decimals, or None for missing, non-numeric,
        non-finite or exactly-zero readings
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        # "-21.40 dBm", "-2140", "--"
        match = _NUMBER_RE.search(str(raw))
        if not match:
            return None
        value = float(match.group(0))
    if not math.isfinite(value):
        return None

    if divisor is None:
        if abs(value) > 100:
            value = value / 100
    elif divisor > 1:
        value = value / divisor

    value = round(value, 2)
    if value == 0:
        return None
    return value


def _as_distance(raw: Any) -> Optional[float]:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    return value if math.isfinite(value) else None


# =============================================================================
# Readers
# =============================================================================

async def _read(profile: DeviceProfile, oids: dict[str, str]) -> Optional[dict[str, Any]]:
    """GET field -> OID; None on any transport failure."""
    try:
        values = await get_scalars(profile, list(oids.values()))
    except TransportError as e:
        logger.warning(f"{profile.device_id}: optical read failed ({e})")
        return None
    return {field_name: values.get(oid.strip(".")) for field_name, oid in oids.items()}


async def get_onu_optical_signal(
    profile: DeviceProfile,
    vendor: Optional[str],
    coords: OnuCoordinates,
    oids: Optional[OpticalOids] = None,
) -> Optional[OpticalSignalReading]:
    """Read an ONU's optical levels from its OLT.

    Returns:
        OpticalSignalReading (fields None when the agent has no value), or
        None when no OIDs are known or the device did not answer
    """
    formula = OnuIndexFormula.for_vendor(vendor)
    oids = oids or DEFAULT_OPTICAL_OIDS.get(formula)
    if oids is None or not (oids.rx or oids.tx or oids.olt_rx):
        logger.info(f"{profile.device_id}: no optical OIDs for vendor '{vendor}'")
        return None

    index = formula.compute(coords)
    logger.debug(f"{profile.device_id}: {formula.value} {coords} -> index {index}")

    wanted = {
        name: f"{base.rstrip('.')}.{index}"
        for name, base in (("rx", oids.rx), ("tx", oids.tx), ("olt_rx", oids.olt_rx), ("distance", oids.distance))
        if base
    }
    values = await _read(profile, wanted)
    if values is None:
        return None

    reading = OpticalSignalReading(
        rx_power=convert_to_dbm(values.get("rx"), oids.divisor),
        tx_power=convert_to_dbm(values.get("tx"), oids.divisor),
        olt_rx_power=convert_to_dbm(values.get("olt_rx"), oids.divisor),
        onu_distance=_as_distance(values.get("distance")),
    )
    if reading.is_empty:
        logger.info(f"{profile.device_id}: no optical values at index {index}")
    return reading


_INVISIBLE_RE = re.compile(r"[\s\u200b\u200c\u200d\u2060\ufeff]+")


def clean_oid_template(template: Optional[str]) -> str:
    """Remove pasted whitespace, zero-width characters and a leading dot."""
    return _INVISIBLE_RE.sub("", template or "").lstrip(".")


def render_oid_template(template: str, port_index: Optional[int], if_index: Optional[int]) -> str:
    oid = clean_oid_template(template)
    if "{ifIndex}" in oid:
        if if_index is None:
            raise ConfigurationError(f"OID template {oid!r} needs an ifIndex")
        oid = oid.replace("{ifIndex}", str(if_index))
    if "{portIndex}" in oid:
        if port_index is None:
            raise ConfigurationError(f"OID template {oid!r} needs a port index")
        oid = oid.replace("{portIndex}", str(port_index))
    try:
        return numeric_oid(oid)
    except SnmpError as e:
        raise ConfigurationError(f"OID template {template!r} renders to {oid!r}, not a numeric OID") from e


async def get_switch_optical_signal(
    profile: DeviceProfile,
    template: SwitchPortTemplate,
) -> Optional[OpticalSignalReading]:
    """Read a switch transceiver through operator OID templates.

    Returns None when nothing is configured, the templates cannot be
    rendered, the device did not answer, or neither RX nor TX has a value.
    """
    if not (template.rx_oid_template or template.tx_oid_template):
        return None

    try:
        uses_if_index = any(
            "{ifIndex}" in clean_oid_template(t)
            for t in (template.rx_oid_template, template.tx_oid_template)
        )
        port_index = None
        if not uses_if_index:
            port_index = calculate_switch_port_index(template.port_index_formula, template.switch_port)
        wanted = {
            name: render_oid_template(t, port_index, template.if_index)
            for name, t in (("rx", template.rx_oid_template), ("tx", template.tx_oid_template))
            if t
        }
    except ConfigurationError as e:
        logger.warning(f"{profile.device_id}: port {template.switch_port}: {e}")
        return None

    values = await _read(profile, wanted)
    if values is None:
        return None

    reading = OpticalSignalReading(
        rx_power=convert_to_dbm(values.get("rx"), template.divisor),
        tx_power=convert_to_dbm(values.get("tx"), template.divisor),
    )
    if reading.rx_power is None and reading.tx_power is None:
        return None
    return reading


async def get_entity_sensor_signal(
    profile: DeviceProfile,
    sensors: SensorMapping,
    divisor: Optional[float] = None,
) -> Optional[OpticalSignalReading]:
    """Read RX/TX sensors discovered through Entity-MIB (entSensorValue).

    divisor overrides the mapping's own scale (1 unless configured).
    """
    if divisor is None:
        divisor = sensors.divisor
    wanted = {
        name: f"{CommonOIDs.CISCO_ENT_SENSOR_VALUE}.{index}"
        for name, index in (("rx", sensors.rx_sensor_index), ("tx", sensors.tx_sensor_index))
        if index is not None
    }
    if not wanted:
        return None

    try:
        values = await get_scalars(
            profile, list(wanted.values()), timeout=get_settings().snmp.entity_sensor_timeout
        )
    except TransportError as e:
        logger.warning(f"{profile.device_id}: sensor read for {sensors.port_name} failed ({e})")
        return None

    reading = OpticalSignalReading(
        rx_power=convert_to_dbm(values.get(wanted.get("rx", "")), divisor),
        tx_power=convert_to_dbm(values.get(wanted.get("tx", "")), divisor),
    )
    if reading.rx_power is None and reading.tx_power is None:
        return None
    return reading


async def get_optical_signal(
    profile: DeviceProfile,
    vendor: Optional[str],
    target: OpticalTarget,
    oids: Optional[OpticalOids] = None,
) -> Optional[OpticalSignalReading]:
    """Read optical levels for an ONU, a templated switch port or an Entity-MIB port."""
    if isinstance(target, OnuCoordinates):
        return await get_onu_optical_signal(profile, vendor, target, oids)
    if isinstance(target, SwitchPortTemplate):
        return await get_switch_optical_signal(profile, target)
    if isinstance(target, SensorMapping):
        return await get_entity_sensor_signal(profile, target)
    raise TypeError(f"unsupported optical target {type(target).__name__}")
