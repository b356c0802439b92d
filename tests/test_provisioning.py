"""Tests for the WiFi provisioning line protocol."""

from __future__ import annotations

import asyncio
import os

import pytest

from otahub_agent.provisioning import (
    E_ENCODING,
    E_JOIN,
    E_PASSWORD,
    E_SSID,
    MAX_LINE,
    ProvisioningError,
    ProvisioningSession,
    Provisioner,
    WifiCredentials,
    load_credentials,
    parse_credentials,
    validate_country,
    validate_password,
    validate_ssid,
)


# ── Validation ────────────────────────────────────────────────────


class TestValidation:
    def test_ssid(self):
        assert validate_ssid(b"HomeNet") == "HomeNet"
        assert validate_ssid("Café".encode()) == "Café"

    @pytest.mark.parametrize("raw", [b"", b"x" * 33, "é".encode() * 17])
    def test_ssid_length_in_bytes(self, raw):
        with pytest.raises(ProvisioningError) as exc:
            validate_ssid(raw)
        assert exc.value.code == E_SSID

    def test_ssid_not_utf8(self):
        with pytest.raises(ProvisioningError) as exc:
            validate_ssid(b"\xff\xfe")
        assert exc.value.code == E_ENCODING

    @pytest.mark.parametrize("raw", [b"", b"password", b"p" * 63, b"a1" * 32])
    def test_password_accepted(self, raw):
        assert validate_password(raw) == raw.decode()

    @pytest.mark.parametrize("raw", [b"short", b"p" * 64, b"g" * 64, b"tab\tinside"])
    def test_password_rejected(self, raw):
        with pytest.raises(ProvisioningError) as exc:
            validate_password(raw)
        assert exc.value.code == E_PASSWORD

    def test_overlong_line(self):
        with pytest.raises(ProvisioningError) as exc:
            validate_password(b"p" * 129)
        assert exc.value.code == E_ENCODING

    def test_country(self):
        assert validate_country(b"de") == "DE"
        assert validate_country(b"") == ""
        with pytest.raises(ProvisioningError):
            validate_country(b"DEU")

    def test_parse_credentials(self):
        creds = parse_credentials([b"HomeNet", b"password1", b"us"])
        assert creds == WifiCredentials("HomeNet", "password1", "US")
        with pytest.raises(ProvisioningError):
            parse_credentials([b"HomeNet"])

    def test_error_ack(self):
        err = ProvisioningError(E_JOIN, "no such network")
        assert err.ack == "ERR E_JOIN no such network\n"


# ── Session ───────────────────────────────────────────────────────


class FakeWriter:
    """Collects acks; after each one, feeds the client's next message."""

    def __init__(self, reader: asyncio.StreamReader, script: list[bytes] | None = None) -> None:
        self.reader = reader
        self.script = list(script or [])
        self.acks: list[str] = []
        self.closed = False

    def write(self, data: bytes) -> None:
        self.acks.append(data.decode())
        if self.script:
            self.reader.feed_data(self.script.pop(0))
        else:
            self.reader.feed_eof()

    async def drain(self) -> None:
        pass

    def close(self) -> None:
        self.closed = True


def _session(first: bytes, script=(), join=None, **kwargs):
    reader = asyncio.StreamReader()
    reader.feed_data(first)
    writer = FakeWriter(reader, list(script))
    joined: list[WifiCredentials] = []

    async def _join(creds):
        joined.append(creds)
        return (True, "connected") if join is None else join(creds)

    kwargs.setdefault("country_grace", 0.05)
    session = ProvisioningSession(reader, writer, _join, **kwargs)
    return session, writer, joined


class TestSession:
    @pytest.mark.asyncio
    async def test_success_with_country(self):
        session, writer, joined = _session(b"HomeNet\npassword1\nde\n")
        creds = await session.run()
        assert creds == WifiCredentials("HomeNet", "password1", "DE")
        assert writer.acks == ["OK HomeNet\n"]
        assert joined == [creds]
        assert writer.closed

    @pytest.mark.asyncio
    async def test_success_without_country(self):
        session, writer, _ = _session(b"HomeNet\r\n\r\n")
        creds = await session.run()
        assert creds == WifiCredentials("HomeNet", "", "")
        assert writer.acks == ["OK HomeNet\n"]

    @pytest.mark.asyncio
    async def test_retry_after_bad_password(self):
        session, writer, joined = _session(
            b"HomeNet\nshort\n", script=[b"HomeNet\npassword1\n"],
        )
        creds = await session.run()
        assert creds.password == "password1"
        assert writer.acks[0].startswith(f"ERR {E_PASSWORD} ")
        assert writer.acks[1] == "OK HomeNet\n"
        assert len(joined) == 1

    @pytest.mark.asyncio
    async def test_join_failure(self):
        session, writer, joined = _session(
            b"HomeNet\npassword1\n",
            script=[b"HomeNet\npassword2\n"],
            join=lambda c: (c.password == "password2", "wrong key"),
        )
        creds = await session.run()
        assert creds.password == "password2"
        assert writer.acks == ["ERR E_JOIN wrong key\n", "OK HomeNet\n"]
        assert len(joined) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self):
        bad = b"x" * 40 + b"\npassword1\n"
        session, writer, joined = _session(bad, script=[bad, bad], attempts=3)
        assert await session.run() is None
        assert [a.split()[1] for a in writer.acks] == [E_SSID] * 3
        assert joined == []

    @pytest.mark.asyncio
    async def test_overlong_country_line(self):
        reader = asyncio.StreamReader(limit=MAX_LINE * 2)
        reader.feed_data(b"HomeNet\npassword1\n" + b"X" * 300 + b"\n")
        writer = FakeWriter(reader, [b"HomeNet\npassword1\n"])
        joined = []

        async def _join(creds):
            joined.append(creds)
            return True, "connected"

        session = ProvisioningSession(reader, writer, _join, country_grace=0.05)
        creds = await session.run()
        assert creds == WifiCredentials("HomeNet", "password1", "")
        assert writer.acks[0].startswith(f"ERR {E_ENCODING} ")
        assert writer.acks[1] == "OK HomeNet\n"
        assert joined == [creds]

    @pytest.mark.asyncio
    async def test_client_disconnect(self):
        reader = asyncio.StreamReader()
        reader.feed_data(b"HomeNet\n")
        reader.feed_eof()
        writer = FakeWriter(reader)

        async def _join(creds):
            return True, ""

        assert await ProvisioningSession(reader, writer, _join).run() is None
        assert writer.acks == []
        assert writer.closed

    @pytest.mark.asyncio
    async def test_session_timeout(self):
        reader = asyncio.StreamReader()
        writer = FakeWriter(reader)

        async def _join(creds):
            return True, ""

        session = ProvisioningSession(reader, writer, _join, timeout=0.05)
        assert await session.run() is None
        assert writer.acks == ["ERR E_TIMEOUT session timed out\n"]


class TestProvisioner:
    @pytest.mark.asyncio
    async def test_handle_saves_credentials(self, tmp_path):
        path = tmp_path / "wifi.json"

        async def _join(creds):
            return True, "connected"

        provisioner = Provisioner(path, join=_join)
        reader = asyncio.StreamReader()
        reader.feed_data(b"HomeNet\npassword1\nnl\n")
        writer = FakeWriter(reader)

        creds = await provisioner.handle(reader, writer)
        assert creds.country == "NL"
        assert load_credentials(path) == creds
        assert os.stat(path).st_mode & 0o777 == 0o600

    def test_load_missing(self, tmp_path):
        assert load_credentials(tmp_path / "none.json") is None
