"""
Interactive CLI transports (Telnet and SSH) for the CLI engine.

A transport is a plain text stream: read() returns the next decoded chunk
("" once the peer has closed), write() queues text, close() is idempotent.
Prompt handling lives in linkdiag.cli_engine; transports know nothing about
prompts.

SSH negotiation offers an explicit, ordered algorithm list that includes
legacy kex/ciphers still found on carrier-grade OLTs, and allows
keyboard-interactive authentication answered with the stored password.
"""

import asyncio
import codecs
import logging
from typing import Iterable, Optional

import asyncssh
from asyncssh.encryption import get_encryption_algs
from asyncssh.kex import get_kex_algs
from asyncssh.mac import get_mac_algs
from asyncssh.public_key import get_public_key_algs

from linkdiag.errors import (
    AuthenticationError,
    ConfigurationError,
    ConnectionFailedError,
    SessionTimeoutError,
)
from linkdiag.models import DeviceProfile, TransportKind

logger = logging.getLogger(__name__)


# Preferred first; legacy entries last
SSH_KEX_ALGS = (
    "diffie-hellman-group-exchange-sha256",
    "diffie-hellman-group14-sha256",
    "diffie-hellman-group14-sha1",
    "diffie-hellman-group1-sha1",
)
SSH_ENCRYPTION_ALGS = (
    "aes128-ctr",
    "aes192-ctr",
    "aes256-ctr",
    "aes128-gcm@openssh.com",
    "aes256-gcm@openssh.com",
    "aes128-cbc",
    "3des-cbc",
)
SSH_HOST_KEY_ALGS = (
    "ssh-ed25519",
    "ecdsa-sha2-nistp256",
    "rsa-sha2-512",
    "rsa-sha2-256",
    "ssh-rsa",
)
SSH_MAC_ALGS = (
    "hmac-sha2-256",
    "hmac-sha2-512",
    "hmac-sha1",
)


def supported_algorithms(wanted: Iterable[str], available: Iterable) -> list[str]:
    """Keep the wanted order, dropping names the local crypto backend lacks."""
    names = {a.decode("ascii") if isinstance(a, bytes) else a for a in available}
    return [alg for alg in wanted if alg in names]


class CliTransport:
    """Text stream to a device shell."""

    host: str = ""
    newline: str = "\n"

    async def read(self, size: int = 4096) -> str:
        raise NotImplementedError

    def write(self, text: str) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        raise NotImplementedError


# =============================================================================
# Telnet
# =============================================================================

IAC = 255
DONT = 254
DO = 253
WONT = 252
WILL = 251
SB = 250
SE = 240
OPT_ECHO = 1
OPT_SGA = 3


class TelnetTransport(CliTransport):
    """Raw TCP stream with minimal Telnet option handling.

    The client refuses every option except server-side ECHO and
    SUPPRESS-GO-AHEAD, and strips negotiation bytes from the text it returns.
    """

    newline = "\r\n"

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, host: str = ""):
        self.host = host
        self._reader = reader
        self._writer = writer
        self._pending = b""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._closed = False

    @classmethod
    async def connect(cls, host: str, port: int, timeout: float) -> "TelnetTransport":
        try:
            reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise SessionTimeoutError(f"{host}:{port}: telnet connect timed out after {timeout}s") from e
        except OSError as e:
            raise ConnectionFailedError(f"{host}:{port}: {e}") from e
        logger.debug(f"Telnet connected to {host}:{port}")
        return cls(reader, writer, host)

    def _negotiate(self, data: bytes) -> bytes:
        """Answer option requests and return the payload bytes."""
        data = self._pending + data
        self._pending = b""
        payload = bytearray()
        replies = bytearray()

        i = 0
        while i < len(data):
            byte = data[i]
            if byte != IAC:
                payload.append(byte)
                i += 1
                continue
            if i + 1 >= len(data):
                self._pending = data[i:]
                break

            command = data[i + 1]
            if command == IAC:
                payload.append(IAC)
                i += 2
            elif command in (DO, DONT, WILL, WONT):
                if i + 2 >= len(data):
                    self._pending = data[i:]
                    break
                option = data[i + 2]
                if command == DO:
                    replies += bytes([IAC, WONT, option])
                elif command == WILL:
                    answer = DO if option in (OPT_ECHO, OPT_SGA) else DONT
                    replies += bytes([IAC, answer, option])
                i += 3
            elif command == SB:
                end = data.find(bytes([IAC, SE]), i + 2)
                if end == -1:
                    self._pending = data[i:]
                    break
                i = end + 2
            else:
                i += 2

        if replies:
            self._writer.write(bytes(replies))
        return bytes(payload)

    async def read(self, size: int = 4096) -> str:
        while True:
            try:
                data = await self._reader.read(size)
            except OSError as e:
                raise ConnectionFailedError(f"{self.host}: {e}") from e
            if not data:
                return self._decoder.decode(b"", final=True)
            text = self._decoder.decode(self._negotiate(data))
            if text:
                return text

    def write(self, text: str) -> None:
        payload = text.encode("utf-8").replace(bytes([IAC]), bytes([IAC, IAC]))
        self._writer.write(payload)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await asyncio.wait_for(self._writer.wait_closed(), timeout=2)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Telnet close to {self.host}: {e!r}")


# =============================================================================
# SSH
# =============================================================================

class SshTransport(CliTransport):
    """Interactive shell (with PTY) on an asyncssh connection."""

    def __init__(self, conn: asyncssh.SSHClientConnection, process: asyncssh.SSHClientProcess, host: str = ""):
        self.host = host
        self._conn = conn
        self._process = process
        self._closed = False

    @classmethod
    async def connect(cls, profile: DeviceProfile, timeout: float) -> "SshTransport":
        host, port = profile.host, profile.resolved_port
        try:
            conn = await asyncio.wait_for(
                asyncssh.connect(
                    host,
                    port=port,
                    username=profile.username,
                    password=profile.password,
                    known_hosts=None,
                    client_keys=None,
                    agent_path=None,
                    password_auth=True,
                    kbdint_auth=True,
                    kex_algs=supported_algorithms(SSH_KEX_ALGS, get_kex_algs()),
                    encryption_algs=supported_algorithms(SSH_ENCRYPTION_ALGS, get_encryption_algs()),
                    server_host_key_algs=supported_algorithms(SSH_HOST_KEY_ALGS, get_public_key_algs()),
                    mac_algs=supported_algorithms(SSH_MAC_ALGS, get_mac_algs()),
                ),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise SessionTimeoutError(f"{host}:{port}: SSH connect timed out after {timeout}s") from e
        except asyncssh.PermissionDenied as e:
            raise AuthenticationError(f"{host}:{port}: {e.reason}") from e
        except (OSError, asyncssh.Error) as e:
            raise ConnectionFailedError(f"{host}:{port}: {e}") from e

        try:
            process = await conn.create_process(
                term_type="vt100",
                term_size=(200, 50),
                encoding="utf-8",
                errors="replace",
            )
        except (OSError, asyncssh.Error) as e:
            conn.close()
            raise ConnectionFailedError(f"{host}:{port}: shell request refused ({e})") from e

        logger.debug(f"SSH shell open on {host}:{port}")
        return cls(conn, process, host)

    async def read(self, size: int = 4096) -> str:
        try:
            return await self._process.stdout.read(size)
        except (OSError, asyncssh.Error) as e:
            raise ConnectionFailedError(f"{self.host}: {e}") from e

    def write(self, text: str) -> None:
        try:
            self._process.stdin.write(text)
        except (OSError, asyncssh.Error) as e:
            raise ConnectionFailedError(f"{self.host}: {e}") from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._process.close()
        self._conn.close()
        try:
            await asyncio.wait_for(self._conn.wait_closed(), timeout=2)
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            logger.debug(f"SSH close to {self.host}: {e!r}")


async def open_transport(profile: DeviceProfile, timeout: Optional[float] = None) -> CliTransport:
    """Open a Telnet or SSH shell for a CLI profile.

    Raises:
        ConfigurationError: Profile is not a CLI profile
        TransportError: Connect/auth failure or timeout
    """
    timeout = timeout or 20.0
    if profile.kind is TransportKind.TELNET:
        return await TelnetTransport.connect(profile.host, profile.resolved_port, timeout)
    if profile.kind is TransportKind.SSH:
        return await SshTransport.connect(profile, timeout)
    raise ConfigurationError(f"{profile.device_id}: {profile.kind.value} is not a CLI transport")
