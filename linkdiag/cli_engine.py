"""
CLI automation engine: one interactive session per command.

CliSession drives a Telnet or SSH shell through an explicit state machine:

    CONNECTING -> AUTHENTICATING -> AWAITING_PROMPT -> [ESCALATING_PRIVILEGE]
               -> COMMAND_SENT -> AWAITING_COMPLETION -> CLOSING -> CLOSED
    any state  -> FAILED

A single read loop waits for the next chunk of output, bounded by the
nearest of three deadlines:

- hard: overall session backstop, fires even while data keeps arriving
- inactivity: after the command is sent, slid forward on every chunk;
  expiry means the output has gone quiet and the command is complete
- fallback: a few seconds after connecting (or after the last handshake
  step); forces the escalation or the command when no prompt is recognized

All timers are local to run(), so nothing can fire after it returns. The
transport is closed exactly once on every exit path. No retries happen
here; callers decide whether to run the command again.

Usage:
    from linkdiag.cli_engine import run_cli_command

    result = await run_cli_command(profile, "show alarm")
    if result.ok:
        alarms = parse_datacom_alarms(result.output)
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from config.settings import get_settings
from linkdiag.cli_transport import CliTransport, open_transport
from linkdiag.errors import AuthenticationError, SessionTimeoutError, StreamClosedError, TransportError
from linkdiag.models import DeviceProfile, TransportKind
from linkdiag.normalizers import contains_pager_prompt, strip_ansi, strip_pager_prompts

logger = logging.getLogger(__name__)

TransportFactory = Callable[[DeviceProfile, float], Awaitable[CliTransport]]

ESCALATION_COMMAND = "enable"

_PROMPT_ID = r"[\w.\-()/:@\[\]~]+"
_LOGIN_RE = re.compile(r"(?:user\s*name|login)\s*:\s*$", re.IGNORECASE)
_PASSWORD_RE = re.compile(r"pass(?:word|wd)?\s*:\s*$", re.IGNORECASE)
_LOGIN_FAILED_RE = re.compile(
    r"login incorrect|authentication failed|access denied|bad password|invalid password",
    re.IGNORECASE,
)
_USER_PROMPT_RE = re.compile(_PROMPT_ID + r"\s?>\s*$")
_PRIV_PROMPT_RE = re.compile(_PROMPT_ID + r"\s?#\s*$")
_PROMPT_LINE_RE = re.compile(r"^" + _PROMPT_ID + r"\s?[#>]", re.MULTILINE)


class CliState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    AWAITING_PROMPT = "awaiting_prompt"
    ESCALATING_PRIVILEGE = "escalating_privilege"
    COMMAND_SENT = "command_sent"
    AWAITING_COMPLETION = "awaiting_completion"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class CliResult:
    """Outcome of one CLI command."""
    state: CliState
    output: str = ""
    error: Optional[str] = None
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.state is CliState.CLOSED


def count_prompts(text: str) -> int:
    """Lines that start with a shell prompt (the command echo line included)."""
    return len(_PROMPT_LINE_RE.findall(text))


class CliSession:
    """One command against one device.

    Args:
        profile: SSH or Telnet device profile
        requires_privilege: Escalate with "enable" from a ">" prompt before
            the command. Without it the command goes to whatever prompt the
            shell offers, over Telnet and SSH alike.
        transport_factory: Coroutine opening the shell (tests inject fakes)
        hard_timeout/inactivity_timeout/fallback_timeout/connect_timeout:
            Seconds; default to CLI_* settings
    """

    def __init__(
        self,
        profile: DeviceProfile,
        requires_privilege: bool = False,
        transport_factory: Optional[TransportFactory] = None,
        hard_timeout: Optional[float] = None,
        inactivity_timeout: Optional[float] = None,
        fallback_timeout: Optional[float] = None,
        connect_timeout: Optional[float] = None,
    ):
        settings = get_settings().cli
        self.profile = profile
        self.hard_timeout = hard_timeout or settings.hard_timeout
        self.inactivity_timeout = inactivity_timeout or settings.inactivity_timeout
        self.fallback_timeout = fallback_timeout or settings.fallback_timeout
        self.connect_timeout = connect_timeout or settings.connect_timeout
        self.read_chunk = settings.read_chunk
        self._factory = transport_factory or open_transport
        self._escalate = requires_privilege

        self.state = CliState.CONNECTING
        self._transport: Optional[CliTransport] = None
        self._closed = False

        # Handshake text since the last thing we sent, and command output
        self._buffer = ""
        self._output = ""
        self._username_sent = False
        self._password_sent = False
        self._escalation_sent = False
        self._enable_password_sent = False
        self._command_sent = False

        self._deadline = 0.0
        self._fallback_at: Optional[float] = None
        self._last_data_at = 0.0

    # -------------------------------------------------------------------------
    # Public entry point
    # -------------------------------------------------------------------------

    async def run(self, command: str) -> CliResult:
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self.hard_timeout
        log_extra = {"device_id": self.profile.device_id}
        logger.debug(f"{self.profile.device_id}: running {command!r}", extra=log_extra)

        try:
            try:
                self._transport = await asyncio.wait_for(
                    self._factory(self.profile, min(self.connect_timeout, self.hard_timeout)),
                    timeout=self.hard_timeout,
                )
            except asyncio.TimeoutError:
                return self._fail(SessionTimeoutError.code, "no connection within the session deadline")
            except TransportError as e:
                return self._fail(e.code, str(e))

            return await self._drive(command)
        finally:
            await self._close()

    # -------------------------------------------------------------------------
    # Event loop
    # -------------------------------------------------------------------------

    async def _drive(self, command: str) -> CliResult:
        loop = asyncio.get_running_loop()

        if self.profile.kind is TransportKind.SSH:
            # Already authenticated; wake the shell so it prints a prompt
            self.state = CliState.AWAITING_PROMPT
            self._send("")
            self._arm_fallback()
        else:
            self.state = CliState.AUTHENTICATING

        while True:
            now = loop.time()
            if now >= self._deadline:
                return self._timed_out()

            wait = self._deadline - now
            if self._command_sent:
                wait = min(wait, self._last_data_at + self.inactivity_timeout - now)
            elif self._fallback_at is not None:
                wait = min(wait, self._fallback_at - now)

            try:
                chunk = await asyncio.wait_for(self._transport.read(self.read_chunk), timeout=max(wait, 0))
            except asyncio.TimeoutError:
                now = loop.time()
                if now >= self._deadline:
                    return self._timed_out()
                if self._command_sent:
                    if now >= self._last_data_at + self.inactivity_timeout:
                        logger.debug(f"{self.profile.device_id}: output idle, command complete")
                        return await self._complete()
                elif self._fallback_at is not None and now >= self._fallback_at:
                    self._on_fallback(command)
                continue
            except TransportError as e:
                return self._fail(e.code, str(e))

            if chunk == "":
                if self._command_sent:
                    return await self._complete()
                return self._fail(StreamClosedError.code, f"closed by peer while {self.state.value}")

            text = strip_ansi(chunk)
            if self._command_sent:
                self._last_data_at = loop.time()
                if self._on_output(text):
                    return await self._complete()
            else:
                self._buffer += text
                failure = self._on_handshake(command)
                if failure is not None:
                    return failure

    def _on_handshake(self, command: str) -> Optional[CliResult]:
        """React to prompts seen before the command was sent."""
        tail = self._buffer.rsplit("\n", 1)[-1]

        if (
            self._password_sent
            and self.state is not CliState.ESCALATING_PRIVILEGE
            and _LOGIN_FAILED_RE.search(self._buffer)
        ):
            return self._fail(AuthenticationError.code, "device rejected the credentials")

        if self.state is CliState.ESCALATING_PRIVILEGE and _PASSWORD_RE.search(tail):
            if self._enable_password_sent:
                return self._fail(AuthenticationError.code, "enable password rejected")
            self._enable_password_sent = True
            password = self.profile.enable_password
            self._send(password if password is not None else self.profile.password, secret=True)
            self._arm_fallback()
            return None

        if _LOGIN_RE.search(tail):
            if self._username_sent:
                return self._fail(AuthenticationError.code, "login prompt repeated")
            self._username_sent = True
            self._send(self.profile.username)
            return None

        if _PASSWORD_RE.search(tail):
            if self._password_sent:
                return self._fail(AuthenticationError.code, "password prompt repeated")
            self._password_sent = True
            self._send(self.profile.password, secret=True)
            self.state = CliState.AWAITING_PROMPT
            self._arm_fallback()
            return None

        if _PRIV_PROMPT_RE.search(tail):
            self._send_command(command, tail)
        elif _USER_PROMPT_RE.search(tail):
            if not self._escalate:
                self._send_command(command, tail)
            elif not self._escalation_sent:
                self._escalate_privilege()
            # Still ">" after "enable": the fallback timer sends the command
        return None

    def _on_fallback(self, command: str) -> None:
        tail = self._buffer.rsplit("\n", 1)[-1]
        if self._escalate and not self._escalation_sent:
            logger.debug(f"{self.profile.device_id}: no prompt recognized, forcing escalation")
            self._escalate_privilege()
        else:
            logger.debug(f"{self.profile.device_id}: no prompt recognized, forcing command")
            self._send_command(command, tail)

    def _on_output(self, text: str) -> bool:
        """Accumulate command output; True once completion is detected."""
        self.state = CliState.AWAITING_COMPLETION
        self._output += text
        if contains_pager_prompt(text):
            self._send(" ", newline=False)
        return count_prompts(self._output) >= 2

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def _arm_fallback(self) -> None:
        self._fallback_at = asyncio.get_running_loop().time() + self.fallback_timeout

    def _send(self, text: str, secret: bool = False, newline: bool = True) -> None:
        payload = text + (self._transport.newline if newline else "")
        logger.debug(f"{self.profile.device_id} [{self.state.value}] >> {'***' if secret else text!r}")
        self._transport.write(payload)
        self._buffer = ""

    def _escalate_privilege(self) -> None:
        self.state = CliState.ESCALATING_PRIVILEGE
        self._escalation_sent = True
        self._send(ESCALATION_COMMAND)
        self._arm_fallback()

    def _send_command(self, command: str, prompt_line: str) -> None:
        # The prompt we answered heads the output so its echo line counts
        self._output = prompt_line
        self._send(command)
        self.state = CliState.COMMAND_SENT
        self._command_sent = True
        self._fallback_at = None
        self._last_data_at = asyncio.get_running_loop().time()

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    def _fail(self, code: str, message: str) -> CliResult:
        logger.warning(
            f"{self.profile.device_id}: CLI session failed in {self.state.value}: [{code}] {message}",
            extra={"device_id": self.profile.device_id, "state": self.state.value},
        )
        self.state = CliState.FAILED
        return CliResult(state=CliState.FAILED, output=self._result_text(), error=code, message=message)

    def _timed_out(self) -> CliResult:
        return self._fail(SessionTimeoutError.code, f"session exceeded {self.hard_timeout}s")

    async def _complete(self) -> CliResult:
        self.state = CliState.CLOSING
        try:
            self._send("exit")
        except TransportError as e:
            logger.debug(f"{self.profile.device_id}: exit not sent ({e})")
        await self._close()
        self.state = CliState.CLOSED
        return CliResult(state=CliState.CLOSED, output=self._result_text())

    def _result_text(self) -> str:
        return strip_pager_prompts(self._output if self._command_sent else self._buffer)

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            await self._transport.close()
            logger.debug(f"{self.profile.device_id}: session closed")


async def run_cli_command(
    profile: DeviceProfile,
    command: str,
    requires_privilege: bool = False,
    transport_factory: Optional[TransportFactory] = None,
) -> CliResult:
    """Run one command in a fresh session and return its cleaned output."""
    session = CliSession(profile, requires_privilege=requires_privilege, transport_factory=transport_factory)
    return await session.run(command)
