"""Tests for the CLI session state machine and its transports."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from linkdiag.cli_engine import CliSession, CliState, count_prompts, run_cli_command
from linkdiag.cli_transport import TelnetTransport, open_transport, supported_algorithms
from linkdiag.errors import ConfigurationError, ConnectionFailedError, StreamClosedError

ALARM_ROWS = (
    "2025-12-15 05:43:59 UTC-3    CRITICAL gpon-1/1/3/116     Active   GPON_LOSi  ONU Loss of signal\r\n"
)


def _session(profile, transport_factory, **timeouts):
    timeouts.setdefault("hard_timeout", 2.0)
    timeouts.setdefault("inactivity_timeout", 0.5)
    timeouts.setdefault("fallback_timeout", 0.3)
    return CliSession(profile, transport_factory=transport_factory, **timeouts)


# ---------------------------------------------------------------------------
# Prompt counting
# ---------------------------------------------------------------------------

class TestCountPrompts:
    def test_echo_and_trailing_prompt(self):
        text = "DM4610-OLT# show alarm\nrow\nDM4610-OLT# "
        assert count_prompts(text) == 2

    def test_user_mode_prompts(self):
        assert count_prompts("<MA5800>display version\nMA5800>") == 1
        assert count_prompts("switch> show\nswitch>") == 2

    def test_data_rows_are_not_prompts(self):
        assert count_prompts(ALARM_ROWS) == 0


# ---------------------------------------------------------------------------
# Telnet login
# ---------------------------------------------------------------------------

class TestTelnetLogin:
    @pytest.mark.asyncio
    async def test_login_then_command(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(
            greeting="\r\nUsername: ",
            replies=[
                ("noc", "Password: "),
                ("s3cret", "\r\nWelcome\r\nDM4610-OLT# "),
                ("show alarm", "show alarm\r\n" + ALARM_ROWS + "DM4610-OLT# "),
            ],
        )
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")

        assert result.ok
        assert result.state is CliState.CLOSED
        assert "GPON_LOSi" in result.output
        assert "\r" not in result.output
        assert transport.sent_lines == ["noc", "s3cret", "show alarm", "exit"]
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_rejected_credentials(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(
            greeting="Username: ",
            replies=[
                ("noc", "Password: "),
                ("s3cret", "\r\nLogin incorrect\r\n\r\nUsername: "),
            ],
        )
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")

        assert result.state is CliState.FAILED
        assert result.error == "AUTH_FAILED"
        assert "show alarm" not in transport.sent_lines
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_banner_mentioning_denied_is_not_a_failure(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(
            greeting="Unauthorized access denied by law\r\nUsername: ",
            replies=[
                ("noc", "Password: "),
                ("s3cret", "\r\nOLT# "),
                ("show alarm", "show alarm\r\nOLT# "),
            ],
        )
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")
        assert result.ok

    @pytest.mark.asyncio
    async def test_fallback_sends_command_on_unknown_prompt(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(
            greeting="Username: ",
            replies=[
                ("noc", "Password: "),
                ("s3cret", "\r\nolt$ "),
                ("show alarm", ALARM_ROWS),
            ],
        )
        result = await _session(
            telnet_profile, factory_for(transport), fallback_timeout=0.1, inactivity_timeout=0.2,
        ).run("show alarm")

        assert result.ok
        assert "GPON_LOSi" in result.output
        assert "show alarm" in transport.sent_lines

    @pytest.mark.asyncio
    async def test_pager_answered_with_space(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(
            greeting="OLT# ",
            replies=[
                ("show alarm", "show alarm\r\nrow-one\r\n--More--"),
                (" ", "\r\nrow-two\r\nOLT# "),
            ],
        )
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")

        assert result.ok
        assert " " in transport.written
        assert "row-one" in result.output and "row-two" in result.output
        assert "More" not in result.output


# ---------------------------------------------------------------------------
# SSH privilege escalation
# ---------------------------------------------------------------------------

class TestSshEscalation:
    @pytest.mark.asyncio
    async def test_enable_with_enable_password(self, ssh_profile, make_transport, factory_for):
        transport = make_transport(
            newline="\n",
            replies=[
                ("", "\nMA5800> "),
                ("enable", "Password: "),
                ("en4ble", "\nMA5800# "),
                ("display alarm", "display alarm active all\n" + ALARM_ROWS + "MA5800# "),
            ],
        )
        session = _session(ssh_profile, factory_for(transport), requires_privilege=True)
        result = await session.run("display alarm active all")

        assert result.ok
        assert transport.sent_lines == ["", "enable", "en4ble", "display alarm active all", "exit"]

    @pytest.mark.asyncio
    async def test_privileged_prompt_skips_enable(self, ssh_profile, make_transport, factory_for):
        transport = make_transport(
            newline="\n",
            replies=[
                ("", "\nMA5800# "),
                ("display", "display version\nVERSION : MA5800V100R019\nMA5800# "),
            ],
        )
        result = await _session(ssh_profile, factory_for(transport)).run("display version")

        assert result.ok
        assert "enable" not in transport.sent_lines

    @pytest.mark.asyncio
    async def test_no_prompt_forces_escalation_then_command(self, ssh_profile, make_transport, factory_for):
        transport = make_transport(
            newline="\n",
            replies=[
                ("enable", None),
                ("display", "display version\nVERSION : X\n"),
            ],
        )
        result = await _session(
            ssh_profile, factory_for(transport), fallback_timeout=0.1, inactivity_timeout=0.2, requires_privilege=True,
        ).run("display version")

        assert result.ok
        assert transport.sent_lines[:3] == ["", "enable", "display version"]

    @pytest.mark.asyncio
    async def test_user_prompt_without_privilege_sends_command(self, ssh_profile, make_transport, factory_for):
        transport = make_transport(
            newline="\n",
            replies=[
                ("", "\nDM4610> "),
                ("show alarm", "show alarm\n" + ALARM_ROWS + "DM4610> "),
            ],
        )
        result = await _session(ssh_profile, factory_for(transport)).run("show alarm")

        assert result.ok
        assert transport.sent_lines[:2] == ["", "show alarm"]
        assert "enable" not in transport.sent_lines

    @pytest.mark.asyncio
    async def test_no_prompt_without_privilege_forces_command(self, ssh_profile, make_transport, factory_for):
        transport = make_transport(newline="\n", replies=[("show version", "show version\nVersion 5.2\n")])
        result = await _session(
            ssh_profile, factory_for(transport), fallback_timeout=0.1, inactivity_timeout=0.2,
        ).run("show version")

        assert result.ok
        assert transport.sent_lines[:2] == ["", "show version"]


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

class TestTimers:
    @pytest.mark.asyncio
    async def test_silent_device_hits_hard_timeout(self, telnet_profile, make_transport, factory_for):
        transport = make_transport()
        loop = asyncio.get_running_loop()
        started = loop.time()

        result = await _session(telnet_profile, factory_for(transport), hard_timeout=0.3).run("show alarm")

        assert result.state is CliState.FAILED
        assert result.error == "SESSION_TIMEOUT"
        assert loop.time() - started < 2
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_endless_output_hits_hard_timeout(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(greeting="OLT# ", replies=[("show alarm", "show alarm\r\n")])

        async def trickle():
            while True:
                await asyncio.sleep(0.02)
                transport.feed("x")

        feeder = asyncio.create_task(trickle())
        try:
            result = await _session(
                telnet_profile, factory_for(transport), hard_timeout=0.5, inactivity_timeout=0.2,
            ).run("show alarm")
        finally:
            feeder.cancel()

        assert result.state is CliState.FAILED
        assert result.error == "SESSION_TIMEOUT"
        assert "xxx" in result.output
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_quiet_output_completes_on_inactivity(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(greeting="OLT# ", replies=[("show alarm", "show alarm\r\n" + ALARM_ROWS)])
        result = await _session(
            telnet_profile, factory_for(transport), hard_timeout=2.0, inactivity_timeout=0.1,
        ).run("show alarm")

        assert result.ok
        assert "GPON_LOSi" in result.output


# ---------------------------------------------------------------------------
# Stream and connection failures
# ---------------------------------------------------------------------------

class TestFailures:
    @pytest.mark.asyncio
    async def test_closed_before_command(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(greeting="Username: ", replies=[("noc", "")])
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")

        assert result.error == "STREAM_CLOSED" == StreamClosedError.code
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_closed_after_command_keeps_output(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(greeting="OLT# ", replies=[("show alarm", "show alarm\r\n" + ALARM_ROWS)])
        original_write = transport.write

        def write_then_hang_up(text):
            original_write(text)
            if "show alarm" in text:
                transport.feed("")

        transport.write = write_then_hang_up
        result = await _session(telnet_profile, factory_for(transport)).run("show alarm")

        assert result.ok
        assert "GPON_LOSi" in result.output

    @pytest.mark.asyncio
    async def test_connect_refused(self, telnet_profile):
        async def refuse(profile, timeout):
            raise ConnectionFailedError("192.0.2.20:23: Connection refused")

        result = await _session(telnet_profile, refuse).run("show alarm")
        assert result.state is CliState.FAILED
        assert result.error == "CONNECT_FAILED"

    @pytest.mark.asyncio
    async def test_connect_hangs(self, telnet_profile):
        async def hang(profile, timeout):
            await asyncio.sleep(10)

        result = await _session(telnet_profile, hang, hard_timeout=0.2).run("show alarm")
        assert result.error == "SESSION_TIMEOUT"

    @pytest.mark.asyncio
    async def test_run_cli_command_wrapper(self, telnet_profile, make_transport, factory_for):
        transport = make_transport(greeting="OLT# ", replies=[("show alarm", "show alarm\r\nOLT# ")])
        result = await run_cli_command(telnet_profile, "show alarm", transport_factory=factory_for(transport))
        assert result.ok


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------

class TestTelnetTransport:
    @pytest.mark.asyncio
    async def test_option_negotiation_stripped_and_answered(self):
        reader = asyncio.StreamReader()
        writer = MagicMock()
        transport = TelnetTransport(reader, writer, host="olt")

        # IAC DO TERMINAL-TYPE, IAC WILL ECHO, then text
        reader.feed_data(bytes([255, 253, 24, 255, 251, 1]) + b"Username: ")
        assert await transport.read() == "Username: "
        writer.write.assert_called_once_with(bytes([255, 252, 24, 255, 253, 1]))

    @pytest.mark.asyncio
    async def test_command_split_across_reads(self):
        reader = asyncio.StreamReader()
        writer = MagicMock()
        transport = TelnetTransport(reader, writer)

        reader.feed_data(b"abc\xff")
        assert await transport.read() == "abc"
        reader.feed_data(b"\xfd\x03def")
        assert await transport.read() == "def"
        writer.write.assert_called_once_with(bytes([255, 252, 3]))

    @pytest.mark.asyncio
    async def test_eof(self):
        reader = asyncio.StreamReader()
        reader.feed_eof()
        transport = TelnetTransport(reader, MagicMock())
        assert await transport.read() == ""

    def test_write_encodes_utf8_with_crlf_newline(self):
        writer = MagicMock()
        transport = TelnetTransport(MagicMock(), writer)
        assert transport.newline == "\r\n"
        transport.write("ação\r\n")
        writer.write.assert_called_once_with("ação\r\n".encode("utf-8"))

    @pytest.mark.asyncio
    async def test_close_once(self):
        writer = MagicMock()
        writer.wait_closed = AsyncMock()
        transport = TelnetTransport(MagicMock(), writer)
        await transport.close()
        await transport.close()
        writer.close.assert_called_once()


class TestTransportHelpers:
    def test_supported_algorithms_keeps_order(self):
        available = [b"aes256-ctr", b"3des-cbc", b"aes128-ctr"]
        assert supported_algorithms(("aes128-ctr", "aes256-ctr", "chacha"), available) == [
            "aes128-ctr",
            "aes256-ctr",
        ]

    @pytest.mark.asyncio
    async def test_open_transport_rejects_snmp_profile(self, snmp_profile):
        with pytest.raises(ConfigurationError):
            await open_transport(snmp_profile)
