"""Tests for the optical signal engine."""

import logging

import pytest
from pysnmp.proto.rfc1902 import Integer, OctetString

from linkdiag.errors import ConfigurationError
from linkdiag.models import OnuCoordinates, OpticalOids, SensorMapping, SwitchPortTemplate
from linkdiag.optical import (
    DEFAULT_OPTICAL_OIDS,
    OnuIndexFormula,
    clean_oid_template,
    compute_onu_index,
    convert_to_dbm,
    get_optical_signal,
    render_oid_template,
)
from linkdiag.snmp import CommonOIDs

HUAWEI_RX = DEFAULT_OPTICAL_OIDS[OnuIndexFormula.HUAWEI].rx
HUAWEI_TX = DEFAULT_OPTICAL_OIDS[OnuIndexFormula.HUAWEI].tx


# ---------------------------------------------------------------------------
# Index formulas
# ---------------------------------------------------------------------------

class TestOnuIndex:
    @pytest.mark.parametrize("vendor,coords,expected", [
        ("huawei", OnuCoordinates(shelf=0, slot=1, port=1, onu_id=0), "65792"),
        ("huawei", OnuCoordinates(shelf=1, slot=0, port=0, onu_id=3), "8388611"),
        ("zte", OnuCoordinates(slot=1, port=1, onu_id=5), "32769.5"),
        ("zte-c320", OnuCoordinates(slot=2, port=3, onu_id=1), "66049.1"),
        ("fiberhome", OnuCoordinates(slot=1, port=2, onu_id=7), "18.7"),
        ("nokia", OnuCoordinates(slot=1, port=2, onu_id=3), "259.3"),
        ("datacom", OnuCoordinates(slot=1, port=1, onu_id=1), "16777472"),
        ("furukawa", OnuCoordinates(slot=1, port=2, onu_id=3), "6102.3"),
        ("parks", OnuCoordinates(slot=1, port=2, onu_id=3), "1.2.3"),
        ("intelbras", OnuCoordinates(slot=1, port=2, onu_id=5), "133"),
        ("acme", OnuCoordinates(slot=1, port=2, onu_id=3), "1.2.3"),
    ])
    def test_formulas(self, vendor, coords, expected):
        assert compute_onu_index(vendor, coords) == expected

    def test_aliases(self):
        assert OnuIndexFormula.for_vendor(" Alcatel-Lucent ") is OnuIndexFormula.NOKIA
        assert OnuIndexFormula.for_vendor(None) is OnuIndexFormula.GENERIC


# ---------------------------------------------------------------------------
# Unit conversion
# ---------------------------------------------------------------------------

class TestConvertToDbm:
    @pytest.mark.parametrize("raw,divisor,expected", [
        (-2140, None, -21.4),
        (-21.4, None, -21.4),
        (150, None, 1.5),
        (-2140, 100, -21.4),
        (-214, 10, -21.4),
        (-21, 1, -21.0),
        ("-21.40 dBm", 1, -21.4),
        ("-2140", None, -21.4),
    ])
    def test_scaling(self, raw, divisor, expected):
        assert convert_to_dbm(raw, divisor) == expected

    @pytest.mark.parametrize("raw,divisor", [
        (0, None),
        (0, 1000),
        ("0.00", 1),
        (-0.001, 1),
        (None, None),
        (True, None),
        ("--", 1),
        (float("nan"), None),
        (float("-inf"), None),
    ])
    def test_no_reading(self, raw, divisor):
        assert convert_to_dbm(raw, divisor) is None


# ---------------------------------------------------------------------------
# ONU readings
# ---------------------------------------------------------------------------

class TestOnuSignal:
    @pytest.mark.asyncio
    async def test_huawei_reading(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{HUAWEI_RX}.65792"] = Integer(-2140)
        snmp_agent.values[f"{HUAWEI_TX}.65792"] = Integer(215)

        reading = await get_optical_signal(snmp_profile, "huawei", OnuCoordinates(shelf=0, slot=1, port=1, onu_id=0))

        assert reading.rx_power == -21.4
        assert reading.tx_power == 2.15
        assert reading.olt_rx_power is None
        assert reading.onu_distance is None

    @pytest.mark.asyncio
    async def test_no_instance_gives_empty_reading(self, snmp_agent, snmp_profile, caplog):
        with caplog.at_level(logging.INFO, logger="linkdiag.optical"):
            reading = await get_optical_signal(snmp_profile, "huawei", OnuCoordinates(slot=1, port=1, onu_id=0))
        assert reading is not None
        assert reading.is_empty
        assert "no optical values at index" in caplog.text

    @pytest.mark.asyncio
    async def test_transport_failure_gives_none(self, snmp_agent, snmp_profile):
        snmp_agent.error_indication = "No SNMP response received before timeout"
        assert await get_optical_signal(snmp_profile, "huawei", OnuCoordinates(slot=1, port=1, onu_id=0)) is None

    @pytest.mark.asyncio
    async def test_unknown_vendor_without_oids(self, snmp_agent, snmp_profile):
        assert await get_optical_signal(snmp_profile, "acme", OnuCoordinates(slot=1, port=1, onu_id=1)) is None
        assert snmp_agent.get_requests == []

    @pytest.mark.asyncio
    async def test_caller_oids_and_distance(self, snmp_agent, snmp_profile):
        oids = OpticalOids(rx="1.3.6.1.4.1.99999.1", distance="1.3.6.1.4.1.99999.9", divisor=10)
        snmp_agent.values["1.3.6.1.4.1.99999.1.1.2.3"] = Integer(-195)
        snmp_agent.values["1.3.6.1.4.1.99999.9.1.2.3"] = Integer(1830)

        reading = await get_optical_signal(snmp_profile, "parks", OnuCoordinates(slot=1, port=2, onu_id=3), oids)

        assert reading.rx_power == -19.5
        assert reading.onu_distance == 1830.0

    @pytest.mark.asyncio
    async def test_string_values(self, snmp_agent, snmp_profile):
        base = DEFAULT_OPTICAL_OIDS[OnuIndexFormula.INTELBRAS]
        snmp_agent.values[f"{base.rx}.133"] = OctetString("--")
        snmp_agent.values[f"{base.olt_rx}.133"] = OctetString("-24.10")

        reading = await get_optical_signal(snmp_profile, "intelbras", OnuCoordinates(slot=1, port=2, onu_id=5))

        assert reading.rx_power is None
        assert reading.olt_rx_power == -24.1


# ---------------------------------------------------------------------------
# Switch ports
# ---------------------------------------------------------------------------

class TestSwitchSignal:
    RX = "1.3.6.1.4.1.2011.5.25.31.1.1.3.1.8"
    TX = "1.3.6.1.4.1.2011.5.25.31.1.1.3.1.9"

    def test_clean_template(self):
        assert clean_oid_template(" .1.3.6.1\u200b.4.1 .{portIndex}\n") == "1.3.6.1.4.1.{portIndex}"

    @pytest.mark.asyncio
    async def test_formula_port_index(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{self.RX}.69"] = Integer(-5230)
        snmp_agent.values[f"{self.TX}.69"] = Integer(-2100)
        template = SwitchPortTemplate(
            switch_port="2/1/5",
            rx_oid_template=f"{self.RX}.\u200b{{portIndex}}",
            tx_oid_template=f" {self.TX}.{{portIndex}}",
            port_index_formula="({slot}-1)*64+{port}",
        )

        reading = await get_optical_signal(snmp_profile, None, template)

        assert reading.rx_power == -5.23
        assert reading.tx_power == -2.1

    @pytest.mark.asyncio
    async def test_if_index_template(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{self.RX}.10105"] = Integer(-7100)
        template = SwitchPortTemplate(
            switch_port="Ethernet1/49",
            rx_oid_template=f"{self.RX}.{{ifIndex}}",
            if_index=10105,
        )
        reading = await get_optical_signal(snmp_profile, None, template)
        assert reading.rx_power == -7.1
        assert reading.tx_power is None

    @pytest.mark.asyncio
    async def test_if_index_template_without_if_index(self, snmp_agent, snmp_profile):
        template = SwitchPortTemplate(switch_port="1/1/1", rx_oid_template=f"{self.RX}.{{ifIndex}}")
        assert await get_optical_signal(snmp_profile, None, template) is None
        assert snmp_agent.get_requests == []

    @pytest.mark.asyncio
    async def test_bad_formula(self, snmp_agent, snmp_profile):
        template = SwitchPortTemplate(
            switch_port="1/1/1", rx_oid_template=f"{self.RX}.{{portIndex}}", port_index_formula="{slot} ** 2",
        )
        assert await get_optical_signal(snmp_profile, None, template) is None

    @pytest.mark.asyncio
    async def test_non_numeric_template(self, snmp_agent, snmp_profile):
        template = SwitchPortTemplate(switch_port="1/1/1", rx_oid_template="1.3.6.1.x.{portIndex}")
        assert await get_optical_signal(snmp_profile, "", template) is None
        assert snmp_agent.get_requests == []

    def test_render_rejects_non_numeric_oid(self):
        with pytest.raises(ConfigurationError):
            render_oid_template("ifHCInOctets.{ifIndex}", None, 3)

    @pytest.mark.asyncio
    async def test_malformed_caller_oids(self, snmp_agent, snmp_profile):
        oids = OpticalOids(rx="enterprises.99999.1")
        assert await get_optical_signal(snmp_profile, "parks", OnuCoordinates(slot=1, port=2, onu_id=3), oids) is None
        assert snmp_agent.get_requests == []

    @pytest.mark.asyncio
    async def test_zero_readings_are_absent(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{self.RX}.1"] = Integer(0)
        snmp_agent.values[f"{self.TX}.1"] = Integer(0)
        template = SwitchPortTemplate(
            switch_port="1/1/1", rx_oid_template=f"{self.RX}.{{portIndex}}", tx_oid_template=f"{self.TX}.{{portIndex}}",
        )
        assert await get_optical_signal(snmp_profile, None, template) is None

    @pytest.mark.asyncio
    async def test_nothing_configured(self, snmp_agent, snmp_profile):
        assert await get_optical_signal(snmp_profile, None, SwitchPortTemplate(switch_port="1/1/1")) is None


# ---------------------------------------------------------------------------
# Entity-MIB sensors
# ---------------------------------------------------------------------------

class TestEntitySensorSignal:
    @pytest.mark.asyncio
    async def test_reading(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{CommonOIDs.CISCO_ENT_SENSOR_VALUE}.1001"] = Integer(-3500)
        snmp_agent.values[f"{CommonOIDs.CISCO_ENT_SENSOR_VALUE}.1002"] = Integer(-1250)
        sensors = SensorMapping(port_name="Ethernet1/1", rx_sensor_index="1001", tx_sensor_index="1002", divisor=1000)

        reading = await get_optical_signal(snmp_profile, None, sensors)

        assert reading.rx_power == -3.5
        assert reading.tx_power == -1.25

    @pytest.mark.asyncio
    async def test_whole_dbm_by_default(self, snmp_agent, snmp_profile):
        snmp_agent.values[f"{CommonOIDs.CISCO_ENT_SENSOR_VALUE}.1001"] = Integer(-7)
        reading = await get_optical_signal(snmp_profile, None, SensorMapping(port_name="Gi1/0/1", rx_sensor_index="1001"))
        assert reading.rx_power == -7.0
        assert reading.tx_power is None

    @pytest.mark.asyncio
    async def test_no_sensors(self, snmp_agent, snmp_profile):
        assert await get_optical_signal(snmp_profile, None, SensorMapping(port_name="Ethernet1/3")) is None

    @pytest.mark.asyncio
    async def test_unsupported_target(self, snmp_profile):
        with pytest.raises(TypeError):
            await get_optical_signal(snmp_profile, None, "1/1/1")
