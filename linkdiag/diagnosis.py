"""
Link diagnosis: why is this subscriber's ONU down?

DiagnosisService ties the vendor registry, the CLI engine, the alarm cache
and the telemetry store together:

    diagnose(profile, link)
        -> telemetry-backed vendor: look the serial up in SQL
        -> vendor with a single-ONU command: run it, read the down cause
        -> otherwise: a fresh cached device-wide list, else the vendor's
           filtered alarm command, else the cached full list; matched to this ONU

Every public method converts failures into result objects; nothing raises
out of the operation boundary.

Usage:
    from linkdiag.diagnosis import diagnose

    result = await diagnose(olt_profile, LinkDiagnosisData(coordinates=OnuCoordinates(1, 3, 116)))
    print(result.diagnosis)   # "Fiber cut"
"""

import logging
import re
from dataclasses import replace
from functools import lru_cache
from typing import Awaitable, Callable, Optional

from config.settings import AppSettings, get_settings
from linkdiag.alarm_cache import AlarmCache
from linkdiag.cli_engine import CliResult, run_cli_command
from linkdiag.discovery import test_snmp_connection
from linkdiag.errors import ConfigurationError, TransportError, error_reason
from linkdiag.models import (
    AlarmRecord,
    ConnectionTestResult,
    DeviceProfile,
    DiagnosisResult,
    LinkDiagnosisData,
    SerialSearchResult,
)
from linkdiag.normalizers import normalize_onu_id
from linkdiag.parsers import locate_onu
from linkdiag.telemetry import TelemetryStore
from linkdiag.timestamps import elapsed_ms, monotonic
from linkdiag.vendors import (
    DESCRIPTION_NO_ALARMS,
    DIAGNOSIS_NO_ALARMS,
    DIAGNOSIS_QUERY_ERROR,
    DIAGNOSIS_UNKNOWN,
    VendorConfig,
    classify_down_reason,
    describe_alarm,
    resolve_vendor,
)

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., Awaitable[CliResult]]

_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")
_COORDINATE_FIELDS = {"slot", "port", "onuid", "onu", "onu_id", "shelf"}


class CommandFailedError(TransportError):
    """A CLI command ended in FAILED; carries whatever output arrived."""

    def __init__(self, result: CliResult, command: str):
        super().__init__(f"{command!r}: {result.message or result.error}", code=result.error or self.code)
        self.output = result.output


# =============================================================================
# Keys and Templates
# =============================================================================

def _template_fields(template: str) -> set[str]:
    return {name.lower() for name in _PLACEHOLDER_RE.findall(template or "")}


def render_template(template: str, link: LinkDiagnosisData) -> str:
    """Substitute {serial}, {slot}, {port}, {onuId}/{onu} and {shelf}.

    Raises:
        ConfigurationError: (MISSING_COORDINATES) a placeholder has no value
    """
    coords = link.coordinates
    values = {"serial": link.serial}
    if coords is not None:
        values.update(
            slot=coords.slot,
            port=coords.port,
            onuid=coords.onu_id,
            onu=coords.onu_id,
            onu_id=coords.onu_id,
            shelf=coords.shelf,
        )

    def substitute(match: re.Match) -> str:
        name = match.group(1).lower()
        value = values.get(name)
        if value is None or value == "":
            raise ConfigurationError(f"no value for {{{match.group(1)}}} in {template!r}", code="MISSING_COORDINATES")
        return str(value)

    return _PLACEHOLDER_RE.sub(substitute, template)


def build_diagnosis_key(link: LinkDiagnosisData, config: VendorConfig) -> str:
    """The identifier alarms are matched against, before normalization.

    Operator template first, then the raw vendor identifier, then the
    vendor's default composition.
    """
    if link.key_template:
        return render_template(link.key_template, link)
    if link.onu_identifier:
        return link.onu_identifier
    return render_template(config.diagnosis_key_template, link)


def source_matches(source: str, key: str) -> bool:
    """True when both identifiers normalize to the same ONU.

    Only exact equality counts: a PON-port source such as "gpon-1/1/5" must
    never be attributed to ONU "1/1/1/5".
    """
    a = normalize_onu_id(source)
    return bool(a) and a == normalize_onu_id(key)


# =============================================================================
# Result Builders
# =============================================================================

def no_alarms_result(raw_output: str = "") -> DiagnosisResult:
    return DiagnosisResult(
        alarm_type=None,
        alarm_code=None,
        description=DESCRIPTION_NO_ALARMS,
        diagnosis=DIAGNOSIS_NO_ALARMS,
        raw_output=raw_output,
    )


def query_error_result(code: str, raw_output: str = "") -> DiagnosisResult:
    return DiagnosisResult(
        alarm_type=None,
        alarm_code=None,
        description=f"Could not query the device ({code})",
        diagnosis=DIAGNOSIS_QUERY_ERROR,
        raw_output=raw_output,
        success=False,
        error=code,
    )


def _mapped_result(code: Optional[str], source: Optional[str], fallback_description: str, raw_output: str):
    mapping = describe_alarm(code)
    return DiagnosisResult(
        alarm_type=code,
        alarm_code=source,
        description=mapping.description if mapping else (fallback_description or code or ""),
        diagnosis=mapping.diagnosis if mapping else DIAGNOSIS_UNKNOWN,
        raw_output=raw_output,
    )


def select_alarm(alarms: list[AlarmRecord]) -> Optional[AlarmRecord]:
    """First Active alarm, else the first alarm of any status."""
    for alarm in alarms:
        if alarm.is_active:
            return alarm
    return alarms[0] if alarms else None


def diagnosis_from_alarms(alarms: list[AlarmRecord], key: str, config: VendorConfig) -> DiagnosisResult:
    """Pick this ONU's alarm out of a device-wide list and map it."""
    matching = [a for a in alarms if source_matches(a.source, key)]
    raw_output = "\n".join(a.raw_line for a in matching)
    chosen = select_alarm(matching)
    if chosen is None:
        return no_alarms_result(raw_output)
    return _mapped_result(config.canonical_code(chosen.name), chosen.source, chosen.description, raw_output)


def diagnosis_from_down_reason(
    reason: Optional[str],
    source: Optional[str],
    config: VendorConfig,
    raw_output: str,
) -> DiagnosisResult:
    if not reason:
        return no_alarms_result(raw_output)
    code = classify_down_reason(reason, config)
    return _mapped_result(code, source, reason, raw_output)


# =============================================================================
# Diagnosis Service
# =============================================================================

class DiagnosisService:
    """Diagnosis operations sharing one alarm cache.

    Args:
        cache: Alarm cache (default: TTL from DIAGNOSIS_CACHE_TTL)
        telemetry: Telemetry store for SQL-backed vendors
        runner: Coroutine running one CLI command; run_cli_command by default
        settings: Application settings (default: get_settings())
    """

    def __init__(
        self,
        cache: Optional[AlarmCache] = None,
        telemetry: Optional[TelemetryStore] = None,
        runner: Optional[CommandRunner] = None,
        settings: Optional[AppSettings] = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache or AlarmCache(ttl=self.settings.diagnosis.cache_ttl)
        self.telemetry = telemetry or TelemetryStore.from_settings(self.settings.telemetry)
        self._runner = runner or run_cli_command

    def _vendor(self, profile: DeviceProfile) -> tuple[VendorConfig, Optional[str]]:
        kind, warning = resolve_vendor(profile.vendor, default=self.settings.diagnosis.default_vendor)
        return kind.config, warning

    async def _run(self, profile: DeviceProfile, config: VendorConfig, command: str) -> str:
        result = await self._runner(profile, command, requires_privilege=config.requires_privilege)
        if not result.ok:
            raise CommandFailedError(result, command)
        return result.output

    async def _fetch_alarms(self, profile: DeviceProfile, config: VendorConfig) -> list[AlarmRecord]:
        if not config.list_alarms_command:
            raise ConfigurationError(f"vendor {config.name} has no alarm list command")
        output = await self._run(profile, config, config.list_alarms_command)
        alarms = config.alarm_parser(output)
        logger.debug(
            f"{profile.device_id}: parsed {len(alarms)} alarms",
            extra={"device_id": profile.device_id, "vendor": config.name},
        )
        return alarms

    async def _cached_alarms(self, profile: DeviceProfile, config: VendorConfig) -> list[AlarmRecord]:
        return await self.cache.get_or_fetch(profile.device_id, lambda: self._fetch_alarms(profile, config))

    # -------------------------------------------------------------------------
    # Batched alarm list
    # -------------------------------------------------------------------------

    async def query_all_alarms(self, profile: DeviceProfile) -> list[AlarmRecord]:
        """Every alarm on the device, at most one CLI round-trip per TTL.

        Returns [] when the query fails; the failure is logged, not cached.
        """
        config, _ = self._vendor(profile)
        try:
            return await self._cached_alarms(profile, config)
        except Exception as e:
            error_reason(e, f"query alarms on {profile.device_id}")
            return []

    # -------------------------------------------------------------------------
    # Single link
    # -------------------------------------------------------------------------

    async def diagnose(self, profile: DeviceProfile, link: LinkDiagnosisData) -> DiagnosisResult:
        """Diagnose one subscriber link on an OLT."""
        started = monotonic()
        config, warning = self._vendor(profile)
        log_extra = {"device_id": profile.device_id, "vendor": config.name}

        try:
            if config.telemetry_backed:
                result = await self._diagnose_from_telemetry(link, config)
            else:
                result = await self._diagnose_live(profile, link, config)
        except CommandFailedError as e:
            error_reason(e, f"diagnose on {profile.device_id}")
            result = query_error_result(e.code, e.output)
        except Exception as e:
            result = query_error_result(error_reason(e, f"diagnose on {profile.device_id}"))

        if warning:
            result.warnings.append(warning)
        logger.info(
            f"{profile.device_id}: {result.diagnosis}",
            extra={**log_extra, "duration_ms": elapsed_ms(started)},
        )
        return result

    async def _diagnose_live(
        self,
        profile: DeviceProfile,
        link: LinkDiagnosisData,
        config: VendorConfig,
    ) -> DiagnosisResult:
        link = await self._with_coordinates(profile, link, config)
        key = build_diagnosis_key(link, config)

        if config.onu_diagnosis_command:
            command = render_template(config.onu_diagnosis_command, link)
            output = await self._run(profile, config, command)
            reason = config.down_cause_parser(output)
            if reason:
                return diagnosis_from_down_reason(reason, key, config, output)
            # No down-cause field: the reply may still be an alarm table
            result = diagnosis_from_alarms(config.alarm_parser(output), key, config)
            if result.alarm_type is None:
                result.raw_output = output
            return result

        # A fresh device-wide list (query_all_alarms) saves a session
        cached = self.cache.get(profile.device_id)
        if cached is not None:
            return diagnosis_from_alarms(cached, key, config)

        if config.filtered_alarms_command:
            command = config.filtered_alarms_command.replace("{key}", normalize_onu_id(key))
            output = await self._run(profile, config, command)
            result = diagnosis_from_alarms(config.alarm_parser(output), key, config)
            if result.alarm_type is None:
                result.raw_output = output
            return result

        alarms = await self._cached_alarms(profile, config)
        return diagnosis_from_alarms(alarms, key, config)

    async def _with_coordinates(
        self,
        profile: DeviceProfile,
        link: LinkDiagnosisData,
        config: VendorConfig,
    ) -> LinkDiagnosisData:
        """Fill in coordinates the key or command templates need."""
        if link.coordinates is not None:
            return link

        if link.onu_identifier:
            location = locate_onu(link.onu_identifier)
            if location is not None:
                return replace(link, coordinates=location.coordinates)

        needed = _template_fields(link.key_template or "")
        if not link.key_template and not link.onu_identifier:
            needed |= _template_fields(config.diagnosis_key_template)
        needed |= _template_fields(config.onu_diagnosis_command or "")
        if not (needed & _COORDINATE_FIELDS) or not link.serial:
            return link

        found = await self._search(profile, link.serial, config)
        if found.error:
            raise ConfigurationError(f"serial search for {link.serial} failed ({found.error})", code=found.error)
        if not found.found or found.coordinates is None:
            raise ConfigurationError(f"ONU {link.serial} not located on {profile.device_id}", code="MISSING_COORDINATES")
        return replace(link, coordinates=found.coordinates, onu_identifier=link.onu_identifier or found.onu_identifier)

    async def _diagnose_from_telemetry(self, link: LinkDiagnosisData, config: VendorConfig) -> DiagnosisResult:
        if not link.serial:
            raise ConfigurationError("telemetry diagnosis needs the ONU serial", code="MISSING_SERIAL")
        record = await self.telemetry.lookup(link.serial)
        if record is None:
            return no_alarms_result()
        raw = f"serial={record.serial} last_down_reason={record.last_down_reason or ''}"
        return diagnosis_from_down_reason(record.last_down_reason, record.serial, config, raw)

    # -------------------------------------------------------------------------
    # Serial search
    # -------------------------------------------------------------------------

    async def search_by_serial(self, profile: DeviceProfile, serial: str) -> SerialSearchResult:
        """Recover an ONU's identifier and coordinates from its serial."""
        config, _ = self._vendor(profile)
        return await self._search(profile, serial, config)

    async def _search(self, profile: DeviceProfile, serial: str, config: VendorConfig) -> SerialSearchResult:
        serial = (serial or "").strip()
        if not serial:
            return SerialSearchResult(found=False, serial=serial, error="MISSING_SERIAL")

        if config.telemetry_backed:
            try:
                record = await self.telemetry.lookup(serial)
            except Exception as e:
                return SerialSearchResult(found=False, serial=serial, error=error_reason(e, f"telemetry search {serial}"))
            if record is None or record.coordinates is None:
                return SerialSearchResult(found=False, serial=serial)
            coords = record.coordinates
            return SerialSearchResult(
                found=True,
                serial=serial,
                onu_identifier=f"{coords.slot}/{coords.port}/{coords.onu_id}",
                coordinates=coords,
                last_down_reason=record.last_down_reason,
            )

        if not config.search_serial_command:
            return SerialSearchResult(found=False, serial=serial, error="UNSUPPORTED_VENDOR")

        command = config.search_serial_command.replace("{serial}", serial)
        try:
            output = await self._run(profile, config, command)
        except CommandFailedError as e:
            return SerialSearchResult(
                found=False,
                serial=serial,
                raw_output=e.output,
                error=error_reason(e, f"serial search on {profile.device_id}"),
            )
        except Exception as e:
            return SerialSearchResult(found=False, serial=serial, error=error_reason(e, f"serial search on {profile.device_id}"))

        locations = config.serial_parser(output, serial)
        if len(locations) == 1:
            location = locations[0]
            return SerialSearchResult(
                found=True,
                serial=serial,
                onu_identifier=location.identifier,
                coordinates=location.coordinates,
                last_down_reason=config.down_cause_parser(output),
                raw_output=output,
            )
        return SerialSearchResult(
            found=False,
            serial=serial,
            candidates=[loc.identifier for loc in locations],
            raw_output=output,
        )

    # -------------------------------------------------------------------------
    # Connectivity
    # -------------------------------------------------------------------------

    async def test_connection(self, profile: DeviceProfile) -> ConnectionTestResult:
        """Prove the profile works: SNMP system group, or the alarm command."""
        if profile.is_snmp:
            return await test_snmp_connection(profile)

        config, warning = self._vendor(profile)
        if not config.list_alarms_command:
            return ConnectionTestResult(success=False, message=f"vendor {config.name} has no CLI command to test with")

        started = monotonic()
        try:
            await self._run(profile, config, config.list_alarms_command)
        except Exception as e:
            return ConnectionTestResult(success=False, message=error_reason(e, f"CLI test on {profile.device_id}"))

        message = "CLI connection successful"
        if warning:
            message = f"{message} ({warning})"
        return ConnectionTestResult(success=True, message=message, response_time_ms=elapsed_ms(started))


# =============================================================================
# Module-level Operations
# =============================================================================

@lru_cache(maxsize=1)
def get_diagnosis_service() -> DiagnosisService:
    """Shared service (and therefore shared alarm cache) for this process."""
    return DiagnosisService()


async def diagnose(profile: DeviceProfile, link: LinkDiagnosisData) -> DiagnosisResult:
    return await get_diagnosis_service().diagnose(profile, link)


async def query_all_alarms(profile: DeviceProfile) -> list[AlarmRecord]:
    return await get_diagnosis_service().query_all_alarms(profile)


async def search_by_serial(profile: DeviceProfile, serial: str) -> SerialSearchResult:
    return await get_diagnosis_service().search_by_serial(profile, serial)


async def test_connection(profile: DeviceProfile) -> ConnectionTestResult:
    return await get_diagnosis_service().test_connection(profile)
