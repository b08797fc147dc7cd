"""Shared pytest fixtures for linkdiag tests."""
import asyncio
import os
import sys
from typing import Optional
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pysnmp.proto.rfc1905 import NoSuchInstance

# Add project root to path
_PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, _PROJECT_ROOT)

from config.settings import get_settings  # noqa: E402
from linkdiag.cli_transport import CliTransport  # noqa: E402
from linkdiag.diagnosis import get_diagnosis_service  # noqa: E402
from linkdiag.models import DeviceProfile, TransportKind  # noqa: E402
from linkdiag.snmp import SNMPClient  # noqa: E402


# =============================================================================
# Settings Isolation
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_singletons():
    """Every test reads settings and builds the default service afresh."""
    get_settings.cache_clear()
    get_diagnosis_service.cache_clear()
    yield
    get_settings.cache_clear()
    get_diagnosis_service.cache_clear()


# =============================================================================
# Device Profiles
# =============================================================================

@pytest.fixture
def snmp_profile():
    return DeviceProfile(device_id="sw-core-01", host="192.0.2.10", kind=TransportKind.SNMP_V2C, community="public")


@pytest.fixture
def telnet_profile():
    return DeviceProfile(
        device_id="olt-centro",
        host="192.0.2.20",
        kind=TransportKind.TELNET,
        vendor="datacom",
        username="noc",
        password="s3cret",
    )


@pytest.fixture
def ssh_profile():
    return DeviceProfile(
        device_id="olt-norte",
        host="192.0.2.30",
        kind=TransportKind.SSH,
        vendor="huawei",
        username="noc",
        password="s3cret",
        enable_password="en4ble",
    )


# =============================================================================
# Fake SNMP Agent
# =============================================================================

def _oid_key(oid: str) -> tuple[int, ...]:
    return tuple(int(part) for part in oid.split("."))


class FakeSnmpAgent:
    """In-memory MIB served through patched pysnmp command functions.

    values maps full OIDs to pysnmp values. Setting error_indication makes
    every request fail; walk_delay slows walks down row by row.
    """

    def __init__(self):
        self.values: dict = {}
        self.error_indication: Optional[str] = None
        self.walk_delay = 0.0
        self.get_requests: list[tuple[str, ...]] = []
        self.walks: list[tuple[str, bool]] = []
        self.engine_cls: Optional[MagicMock] = None

    def set_column(self, base: str, rows: dict) -> None:
        for suffix, value in rows.items():
            self.values[f"{base}.{suffix}"] = value

    @property
    def close_calls(self) -> int:
        return self.engine_cls.return_value.close_dispatcher.call_count

    async def get_cmd(self, engine, auth, transport, context, *var_binds, **options):
        self.get_requests.append(tuple(var_binds))
        if self.error_indication:
            return self.error_indication, 0, 0, []
        return None, 0, 0, [(oid, self.values.get(oid, NoSuchInstance(""))) for oid in var_binds]

    def _walk(self, base: str, bulk: bool):
        self.walks.append((base, bulk))
        agent = self

        async def rows():
            if agent.error_indication:
                yield agent.error_indication, 0, 0, []
                return
            ordered = sorted(agent.values, key=_oid_key)
            for oid in ordered:
                if _oid_key(oid) <= _oid_key(base):
                    continue
                if agent.walk_delay:
                    await asyncio.sleep(agent.walk_delay)
                yield None, 0, 0, [(oid, agent.values[oid])]

        return rows()

    def walk_cmd(self, engine, auth, transport, context, var_bind, **options):
        return self._walk(var_bind, bulk=False)

    def bulk_walk_cmd(self, engine, auth, transport, context, non_repeaters, max_repetitions, var_bind, **options):
        return self._walk(var_bind, bulk=True)


@pytest.fixture
def snmp_agent():
    """Patch pysnmp so every SNMPClient talks to a FakeSnmpAgent."""
    agent = FakeSnmpAgent()
    with patch("linkdiag.snmp.SnmpEngine") as engine_cls, \
            patch("linkdiag.snmp.ObjectIdentity", side_effect=lambda oid: oid), \
            patch("linkdiag.snmp.ObjectType", side_effect=lambda identity: identity), \
            patch.object(SNMPClient, "_get_transport", AsyncMock(return_value=MagicMock())), \
            patch("linkdiag.snmp.get_cmd", new=agent.get_cmd), \
            patch("linkdiag.snmp.walk_cmd", new=agent.walk_cmd), \
            patch("linkdiag.snmp.bulk_walk_cmd", new=agent.bulk_walk_cmd):
        agent.engine_cls = engine_cls
        yield agent


# =============================================================================
# Fake CLI Transport
# =============================================================================

class FakeTransport(CliTransport):
    """Scripted device shell.

    replies is consumed in order: when a write contains the next trigger,
    its response is queued for reading (None queues nothing, "" closes
    the stream).
    """

    def __init__(self, greeting: str = "", replies=None, newline: str = "\r\n", host: str = "fake"):
        self.host = host
        self.newline = newline
        self.replies = list(replies or [])
        self.written: list[str] = []
        self.close_calls = 0
        self._queue: asyncio.Queue = asyncio.Queue()
        if greeting:
            self.feed(greeting)

    def feed(self, text: str) -> None:
        self._queue.put_nowait(text)

    async def read(self, size: int = 4096) -> str:
        return await self._queue.get()

    def write(self, text: str) -> None:
        self.written.append(text)
        if self.replies and self.replies[0][0] in text:
            _, response = self.replies.pop(0)
            if response is not None:
                self.feed(response)

    async def close(self) -> None:
        self.close_calls += 1

    @property
    def sent_lines(self) -> list[str]:
        return [w.rstrip("\r\n") for w in self.written]


def factory_for(transport: CliTransport):
    """Transport factory that hands out one prepared transport."""
    calls = []

    async def factory(profile, timeout):
        calls.append(profile.device_id)
        return transport

    factory.calls = calls
    return factory


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture(name="factory_for")
def _factory_for_fixture():
    return factory_for
