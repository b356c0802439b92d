"""One-time WiFi provisioning over a short-range serial link.

The phone (or any client) opens a line-oriented stream, normally Bluetooth
RFCOMM, and sends::

    <ssid>\\n
    <password>\\n
    [<country>\\n]

The agent answers ``OK <ssid>`` once the network is joined, or
``ERR <code> <message>`` and lets the client try again (up to
``attempts`` times per session).  A session lasts at most ``timeout``
seconds.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import string
import subprocess
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

MAX_LINE = 128
MAX_SSID_BYTES = 32
SESSION_TIMEOUT = 60.0
MAX_ATTEMPTS = 3
COUNTRY_GRACE = 1.0
JOIN_TIMEOUT = 30

E_SSID = "E_SSID"
E_PASSWORD = "E_PASSWORD"
E_ENCODING = "E_ENCODING"
E_TIMEOUT = "E_TIMEOUT"
E_JOIN = "E_JOIN"

_PRINTABLE = set(string.printable) - set("\t\n\r\x0b\x0c")
_HEX = set(string.hexdigits)


class ProvisioningError(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code

    @property
    def ack(self) -> str:
        return f"ERR {self.code} {self}\n"


@dataclass
class WifiCredentials:
    ssid: str
    password: str = ""
    country: str = ""


JoinFunc = Callable[[WifiCredentials], Awaitable[tuple[bool, str]]]


# ── Validation ────────────────────────────────────────────────────

def _decode(raw: bytes) -> str:
    if len(raw) > MAX_LINE:
        raise ProvisioningError(E_ENCODING, f"line exceeds {MAX_LINE} bytes")
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        raise ProvisioningError(E_ENCODING, "line is not valid UTF-8")


def validate_ssid(raw: bytes) -> str:
    ssid = _decode(raw)
    if not 1 <= len(raw) <= MAX_SSID_BYTES:
        raise ProvisioningError(E_SSID, f"SSID must be 1-{MAX_SSID_BYTES} bytes")
    return ssid


def validate_password(raw: bytes) -> str:
    """Empty (open network), 8-63 printable ASCII, or a 64-digit hex PSK."""
    password = _decode(raw)
    if password == "":
        return password
    if len(password) == 64 and all(c in _HEX for c in password):
        return password
    if 8 <= len(password) <= 63 and all(c in _PRINTABLE for c in password):
        return password
    raise ProvisioningError(
        E_PASSWORD, "password must be empty, 8-63 printable ASCII or 64 hex digits",
    )


def validate_country(raw: bytes) -> str:
    country = _decode(raw).upper()
    if country and not (len(country) == 2 and country.isascii() and country.isalpha()):
        raise ProvisioningError(E_ENCODING, "country must be a 2-letter code")
    return country


def parse_credentials(lines: list[bytes]) -> WifiCredentials:
    """Validate raw lines (without terminators) into credentials."""
    if len(lines) < 2:
        raise ProvisioningError(E_ENCODING, "expected SSID and password lines")
    ssid = validate_ssid(lines[0])
    password = validate_password(lines[1])
    country = validate_country(lines[2]) if len(lines) > 2 else ""
    return WifiCredentials(ssid, password, country)


# ── Session ───────────────────────────────────────────────────────

class ProvisioningSession:
    """Runs the line protocol over one connected stream."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        join: JoinFunc,
        attempts: int = MAX_ATTEMPTS,
        timeout: float = SESSION_TIMEOUT,
        country_grace: float = COUNTRY_GRACE,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.join = join
        self.attempts = attempts
        self.timeout = timeout
        self.country_grace = country_grace

    async def run(self) -> WifiCredentials | None:
        """Return the joined network's credentials, or None on failure."""
        try:
            return await asyncio.wait_for(self._attempts(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Provisioning session timed out")
            await self._send(f"ERR {E_TIMEOUT} session timed out\n")
            return None
        except ConnectionError as e:
            logger.info("Provisioning client went away: %s", e)
            return None
        finally:
            self.writer.close()

    async def _attempts(self) -> WifiCredentials | None:
        for attempt in range(1, self.attempts + 1):
            try:
                creds = parse_credentials(await self._read_message())
                ok, message = await self.join(creds)
                if not ok:
                    raise ProvisioningError(E_JOIN, message or "could not join network")
            except ProvisioningError as e:
                logger.warning("Provisioning attempt %d/%d failed: %s %s",
                               attempt, self.attempts, e.code, e)
                await self._send(e.ack)
                continue
            logger.info("Provisioned network %r", creds.ssid)
            await self._send(f"OK {creds.ssid}\n")
            return creds
        return None

    async def _read_message(self) -> list[bytes]:
        lines = [await self._read_line(), await self._read_line()]
        try:
            extra = await asyncio.wait_for(self._read_raw(), timeout=self.country_grace)
        except asyncio.TimeoutError:
            extra = b""
        if extra.strip(b"\r\n"):
            lines.append(self._strip(extra))
        return lines

    async def _read_raw(self) -> bytes:
        try:
            return await self.reader.readline()
        except ValueError:
            raise ProvisioningError(E_ENCODING, f"line exceeds {MAX_LINE} bytes")

    async def _read_line(self) -> bytes:
        raw = await self._read_raw()
        if not raw:
            raise ConnectionError("stream closed")
        if not raw.endswith(b"\n"):
            raise ConnectionError("stream closed mid-line")
        return self._strip(raw)

    @staticmethod
    def _strip(raw: bytes) -> bytes:
        return raw.rstrip(b"\n").rstrip(b"\r")

    async def _send(self, text: str) -> None:
        try:
            self.writer.write(text.encode("utf-8"))
            await self.writer.drain()
        except ConnectionError:
            logger.debug("Could not send ack, client disconnected")


# ── Network join (NetworkManager) ─────────────────────────────────

def nmcli_join(creds: WifiCredentials, interface: str = "wlan0") -> tuple[bool, str]:
    """Join a WiFi network via NetworkManager."""
    if creds.country:
        try:
            subprocess.run(["iw", "reg", "set", creds.country],
                           capture_output=True, timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("Could not set regulatory domain: %s", e)

    cmd = ["nmcli", "device", "wifi", "connect", creds.ssid]
    if creds.password:
        cmd += ["password", creds.password]
    cmd += ["ifname", interface]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=JOIN_TIMEOUT)
    except subprocess.TimeoutExpired:
        return False, "connection timed out"
    except OSError as e:
        return False, str(e)
    if result.returncode != 0:
        err = result.stderr.strip() or result.stdout.strip()
        return False, err.splitlines()[0] if err else "nmcli failed"
    return True, f"connected to {creds.ssid}"


def save_credentials(path: str | Path, creds: WifiCredentials) -> None:
    """Persist credentials next to the agent config (mode 0600)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w") as f:
        json.dump(asdict(creds), f)
    os.chmod(tmp, 0o600)
    os.replace(tmp, path)
    logger.info("Saved WiFi credentials for %r to %s", creds.ssid, path)


def load_credentials(path: str | Path) -> WifiCredentials | None:
    path = Path(path)
    if not path.exists():
        return None
    with open(path) as f:
        data = json.load(f)
    return WifiCredentials(data.get("ssid", ""), data.get("password", ""), data.get("country", ""))


# ── Transports ────────────────────────────────────────────────────

class Provisioner:
    """Accepts provisioning clients until one session succeeds."""

    def __init__(
        self,
        credentials_path: str | Path,
        interface: str = "wlan0",
        join: JoinFunc | None = None,
        attempts: int = MAX_ATTEMPTS,
        timeout: float = SESSION_TIMEOUT,
    ) -> None:
        self.credentials_path = Path(credentials_path)
        self.interface = interface
        self.join = join or self._nmcli_join
        self.attempts = attempts
        self.timeout = timeout
        self._result: asyncio.Future[WifiCredentials] | None = None

    async def _nmcli_join(self, creds: WifiCredentials) -> tuple[bool, str]:
        return await asyncio.to_thread(nmcli_join, creds, self.interface)

    async def handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
    ) -> WifiCredentials | None:
        session = ProvisioningSession(
            reader, writer, self.join, attempts=self.attempts, timeout=self.timeout,
        )
        creds = await session.run()
        if creds is not None:
            save_credentials(self.credentials_path, creds)
            if self._result is not None and not self._result.done():
                self._result.set_result(creds)
        return creds

    async def serve_rfcomm(self, channel: int = 1) -> WifiCredentials:
        """Listen on a Bluetooth RFCOMM channel until provisioned."""
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        server = socket.socket(socket.AF_BLUETOOTH, socket.SOCK_STREAM, socket.BTPROTO_RFCOMM)
        server.bind((socket.BDADDR_ANY, channel))
        server.listen(1)
        server.setblocking(False)
        logger.info("Waiting for provisioning on RFCOMM channel %d", channel)
        try:
            while not self._result.done():
                client, addr = await loop.sock_accept(server)
                logger.info("Provisioning client connected: %s", addr[0])
                reader, writer = await asyncio.open_connection(sock=client, limit=MAX_LINE * 2)
                await self.handle(reader, writer)
            return self._result.result()
        finally:
            server.close()

    async def serve_tcp(self, host: str = "0.0.0.0", port: int = 8611) -> WifiCredentials:
        """Same protocol over TCP, for bench setups without Bluetooth."""
        self._result = asyncio.get_running_loop().create_future()

        async def _client(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            await self.handle(reader, writer)

        server = await asyncio.start_server(_client, host, port, limit=MAX_LINE * 2)
        logger.info("Waiting for provisioning on tcp://%s:%d", host, port)
        async with server:
            return await self._result
