"""
Device inventory loaded from YAML.

The inventory maps device ids to DeviceProfile fields. Secrets should not
live in the file: any string value may reference an environment variable
as ${VAR} (the .env file is loaded first).

Example devices.yaml:

    olt-centro:
      host: 10.20.0.2
      kind: telnet
      vendor: datacom
      username: noc
      password: ${OLT_CENTRO_PASSWORD}

    sw-core-01:
      host: 10.20.0.10
      kind: snmp_v2c
      community: ${SNMP_COMMUNITY}
"""

import logging
import os
import re
from dataclasses import fields
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from dotenv import load_dotenv

from config.settings import get_settings
from linkdiag.errors import ConfigurationError
from linkdiag.models import DeviceProfile, TransportKind

logger = logging.getLogger(__name__)

_ENV_REF_RE = re.compile(r"\$\{(\w+)\}")
_PROFILE_FIELDS = {f.name for f in fields(DeviceProfile)}


def expand_env(value: Any) -> Any:
    """Replace ${VAR} references in strings (recursively in lists/dicts).

    Raises:
        ConfigurationError: A referenced variable is not set
    """
    if isinstance(value, str):
        def substitute(match: re.Match) -> str:
            name = match.group(1)
            if name not in os.environ:
                raise ConfigurationError(f"environment variable {name} is not set")
            return os.environ[name]
        return _ENV_REF_RE.sub(substitute, value)
    if isinstance(value, list):
        return [expand_env(v) for v in value]
    if isinstance(value, dict):
        return {k: expand_env(v) for k, v in value.items()}
    return value


def profile_from_dict(device_id: str, data: dict[str, Any]) -> DeviceProfile:
    """Build one DeviceProfile from an inventory entry."""
    if not isinstance(data, dict):
        raise ConfigurationError(f"{device_id}: inventory entry must be a mapping")

    unknown = set(data) - _PROFILE_FIELDS
    if unknown:
        logger.warning(f"{device_id}: ignoring unknown inventory keys {sorted(unknown)}")

    values = {k: v for k, v in expand_env(data).items() if k in _PROFILE_FIELDS and k != "device_id"}
    if not values.get("host"):
        raise ConfigurationError(f"{device_id}: 'host' is required")
    try:
        values["kind"] = TransportKind(str(values.get("kind", TransportKind.SNMP_V2C.value)).lower())
    except ValueError:
        raise ConfigurationError(f"{device_id}: unknown transport kind {values.get('kind')!r}")
    return DeviceProfile(device_id=device_id, **values)


def load_inventory(path: Optional[Union[str, Path]] = None) -> dict[str, DeviceProfile]:
    """Load every device profile from the inventory file.

    Args:
        path: YAML file; defaults to INVENTORY_PATH

    Raises:
        ConfigurationError: Missing file, bad YAML or invalid entry
    """
    load_dotenv()
    path = Path(path or get_settings().inventory_path)
    if not path.exists():
        raise ConfigurationError(f"inventory file {path} not found")

    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"inventory file {path} is not valid YAML: {e}")

    # Allow either a top-level "devices:" key or a bare mapping
    if isinstance(raw, dict) and isinstance(raw.get("devices"), dict):
        raw = raw["devices"]
    if not isinstance(raw, dict):
        raise ConfigurationError(f"inventory file {path} must map device ids to profiles")

    inventory = {str(device_id): profile_from_dict(str(device_id), entry) for device_id, entry in raw.items()}
    logger.debug(f"Loaded {len(inventory)} devices from {path}")
    return inventory


def get_device(device_id: str, path: Optional[Union[str, Path]] = None) -> DeviceProfile:
    inventory = load_inventory(path)
    try:
        return inventory[device_id]
    except KeyError:
        raise ConfigurationError(f"device {device_id!r} is not in the inventory")
