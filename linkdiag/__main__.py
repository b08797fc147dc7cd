"""
Command-line entry point (read-only).

    python -m linkdiag interfaces --device sw-core-01
    python -m linkdiag optical --device olt-centro --slot 1 --port 3 --onu 116
    python -m linkdiag diagnose --device olt-centro --slot 1 --port 3 --onu 116
    python -m linkdiag search --device olt-centro --serial DACM12345678

Devices come from the YAML inventory (--inventory or INVENTORY_PATH).
Every subcommand prints JSON on stdout.
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from config.inventory import get_device
from config.settings import get_settings
from linkdiag.diagnosis import get_diagnosis_service
from linkdiag.discovery import discover_entity_sensors, discover_interfaces, find_interface_by_name
from linkdiag.errors import LinkDiagError
from linkdiag.logging_config import configure_logging
from linkdiag.models import LinkDiagnosisData, OnuCoordinates, SwitchPortTemplate
from linkdiag.optical import get_optical_signal


def _to_json(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, list):
        return [_to_json(v) for v in value]
    return value


def _coordinates(args) -> Optional[OnuCoordinates]:
    if args.slot is None and args.port is None and args.onu is None:
        return None
    if None in (args.slot, args.port, args.onu):
        raise SystemExit("--slot, --port and --onu must be given together")
    return OnuCoordinates(slot=args.slot, port=args.port, onu_id=args.onu, shelf=args.shelf)


def _add_onu_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--slot", type=int)
    parser.add_argument("--port", type=int)
    parser.add_argument("--onu", type=int, help="ONU id on the PON port")
    parser.add_argument("--shelf", type=int, default=0)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="linkdiag", description="Poll and diagnose access-network equipment")
    parser.add_argument("--inventory", help="Device inventory YAML (default: INVENTORY_PATH)")
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    def device_command(name: str, help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.add_argument("--device", required=True, help="Device id from the inventory")
        return p

    device_command("interfaces", "List the IF-MIB interface table")

    p = device_command("find", "Find an interface by name, description or alias")
    p.add_argument("--name", required=True)
    p.add_argument("--descr")
    p.add_argument("--alias")

    device_command("sensors", "Map Entity-MIB optical sensors to ports")

    p = device_command("optical", "Read optical signal levels")
    p.add_argument("--vendor", help="Override the device's vendor")
    _add_onu_arguments(p)
    p.add_argument("--switch-port", help="Switch port such as 1/1/49")
    p.add_argument("--rx-template", default="")
    p.add_argument("--tx-template", default="")
    p.add_argument("--formula", help="Port index formula, e.g. ({slot}-1)*64+{port}")
    p.add_argument("--divisor", type=float, default=1000)
    p.add_argument("--if-index", type=int)

    p = device_command("diagnose", "Diagnose a subscriber link")
    _add_onu_arguments(p)
    p.add_argument("--serial")
    p.add_argument("--onu-id", dest="onu_identifier", help="Vendor ONU identifier, e.g. gpon-onu_1/2/1:4")
    p.add_argument("--template", help="Diagnosis key template")

    device_command("alarms", "List every alarm on an OLT")

    p = device_command("search", "Locate an ONU by serial")
    p.add_argument("--serial", required=True)

    device_command("test", "Test connectivity with the device profile")
    return parser


async def _dispatch(args) -> tuple[Any, bool]:
    """Run one subcommand; returns (payload, success)."""
    profile = get_device(args.device, args.inventory)
    service = get_diagnosis_service()

    if args.command == "interfaces":
        interfaces = await discover_interfaces(profile)
        return interfaces, True

    if args.command == "find":
        result = await find_interface_by_name(profile, args.name, descr=args.descr, alias=args.alias)
        return result, result.found

    if args.command == "sensors":
        return await discover_entity_sensors(profile), True

    if args.command == "optical":
        if args.switch_port:
            target = SwitchPortTemplate(
                switch_port=args.switch_port,
                rx_oid_template=args.rx_template,
                tx_oid_template=args.tx_template,
                port_index_formula=args.formula,
                divisor=args.divisor,
                if_index=args.if_index,
            )
        else:
            target = _coordinates(args)
            if target is None:
                raise SystemExit("optical needs --switch-port or --slot/--port/--onu")
        reading = await get_optical_signal(profile, args.vendor or profile.vendor, target)
        return reading, reading is not None

    if args.command == "diagnose":
        link = LinkDiagnosisData(
            serial=args.serial,
            coordinates=_coordinates(args),
            onu_identifier=args.onu_identifier,
            key_template=args.template,
        )
        result = await service.diagnose(profile, link)
        return result, result.success

    if args.command == "alarms":
        return await service.query_all_alarms(profile), True

    if args.command == "search":
        result = await service.search_by_serial(profile, args.serial)
        return result, result.error is None

    if args.command == "test":
        result = await service.test_connection(profile)
        return result, result.success

    raise SystemExit(f"unknown command {args.command}")


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(level=args.log_level or get_settings().log_level)

    try:
        payload, success = asyncio.run(_dispatch(args))
    except LinkDiagError as e:
        print(json.dumps({"error": e.code, "message": e.message}), file=sys.stderr)
        return 2

    print(json.dumps(_to_json(payload), indent=2, default=str))
    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
