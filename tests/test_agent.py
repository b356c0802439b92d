"""Tests for the device agent: config, A/B updater, update state machine."""

from __future__ import annotations

import hashlib
import json
import os
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from otahub_agent.agent import DeviceAgent, State, _is_downgrade
from otahub_agent.config import AgentConfig
from otahub_agent.updater import FirmwareUpdater, UpdateError
from otahub_agent.ws_client import DeviceWSClient

IMAGE = b"\x7fELF" + b"\xa5" * 4096
IMAGE_SHA = hashlib.sha256(IMAGE).hexdigest()
DISK_FULL = OSError(28, "No space left on device")


def _offer(version="1.1.0", payload=IMAGE, **extra):
    offer = {
        "type": "UPDATE_AVAILABLE",
        "rollout_id": "ro-abc123",
        "firmware_id": "fw-1",
        "version": version,
        "sha256": hashlib.sha256(payload).hexdigest(),
        "size_bytes": len(payload),
        "url": "/device-api/firmware/fw-1",
        "allow_downgrade": False,
    }
    offer.update(extra)
    return offer


class FakeHub:
    """httpx handler standing in for the server's device API."""

    def __init__(self, payload: bytes = IMAGE) -> None:
        self.payload = payload
        self.statuses: list[dict] = []
        self.pending: dict | None = None
        self.tokens: set[str] = set()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.tokens.add(request.headers.get("X-Device-Token", ""))
        if request.url.path == "/device-api/firmware/fw-1":
            return httpx.Response(200, content=self.payload)
        if request.url.path == "/device-api/status":
            self.statuses.append(json.loads(request.content))
            return httpx.Response(200, json={"accepted": True})
        if request.url.path == "/device-api/update":
            return httpx.Response(200, json={"update": self.pending, "latest": None})
        return httpx.Response(404, json={"detail": "Not Found"})

    def states(self) -> list[str]:
        return [s["state"] for s in self.statuses]


class FakeChannel:
    def __init__(self, connected: bool = False) -> None:
        self.connected = connected
        self.firmware_version = ""
        self.handlers: dict = {}
        self.sent: list[tuple] = []

    def on(self, msg_type, handler):
        self.handlers[msg_type] = handler

    async def send_update_status(self, rollout_id, state, detail="", version=None):
        self.sent.append((rollout_id, state, detail, version))

    async def disconnect(self):
        self.connected = False


@pytest.fixture()
def hub():
    return FakeHub()


@pytest.fixture()
def config(tmp_path):
    return AgentConfig(
        device_id="dev-1",
        device_token="tok-1",
        api_url="http://hub.test",
        hardware_model="esp32-s3",
        firmware_version="1.0.0",
        data_dir=str(tmp_path / "agent"),
    )


@pytest.fixture()
def agent(config, hub, tmp_path):
    return DeviceAgent(
        config,
        config_path=tmp_path / "config.json",
        ws=FakeChannel(),
        transport=httpx.MockTransport(hub),
    )


# ── Config ────────────────────────────────────────────────────────


class TestConfig:
    def test_defaults_when_missing(self, tmp_path):
        cfg = AgentConfig.load(tmp_path / "nope.json")
        assert cfg.server_url == "ws://localhost:8600/ws/device"
        assert not cfg.registered
        assert not cfg.provisioned

    def test_load_ignores_unknown_keys(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"device_token": "t", "firmware_version": "2.0.0", "legacy": 1}))
        cfg = AgentConfig.load(path)
        assert cfg.device_token == "t"
        assert cfg.firmware_version == "2.0.0"
        assert cfg.registered

    def test_save_is_private(self, tmp_path, config):
        path = tmp_path / "etc" / "config.json"
        config.save(path)
        assert os.stat(path).st_mode & 0o777 == 0o600
        assert AgentConfig.load(path) == config

    def test_slots_dir(self, config):
        assert config.slots_dir.name == "slots"

    @pytest.mark.parametrize("server, api", [
        ("ws://hub.lan:8600/ws/device", "http://hub.lan:8600"),
        ("wss://ota.example.com/ws/device", "https://ota.example.com"),
    ])
    def test_use_server_derives_api_url(self, server, api):
        cfg = AgentConfig()
        cfg.use_server(server)
        assert cfg.server_url == server
        assert cfg.api_url == api

    def test_use_server_explicit_api_url(self):
        cfg = AgentConfig()
        cfg.use_server("ws://hub.lan:8600/ws/device", "http://api.lan:9000/")
        assert cfg.api_url == "http://api.lan:9000"


# ── Updater ───────────────────────────────────────────────────────


class TestUpdater:
    def _updater(self, tmp_path, hub=None, **kwargs):
        return FirmwareUpdater(
            tmp_path / "slots",
            api_url="http://hub.test",
            device_token="tok-1",
            transport=httpx.MockTransport(hub or FakeHub()),
            **kwargs,
        )

    @pytest.mark.asyncio
    async def test_download_and_verify(self, tmp_path):
        hub = FakeHub()
        updater = self._updater(tmp_path, hub)
        path = await updater.download(_offer())
        assert path.read_bytes() == IMAGE
        updater.verify(path, IMAGE_SHA)
        assert hub.tokens == {"tok-1"}

    @pytest.mark.asyncio
    async def test_oversize_download(self, tmp_path):
        updater = self._updater(tmp_path, FakeHub(payload=IMAGE + b"extra"))
        with pytest.raises(UpdateError) as exc:
            await updater.download(_offer())
        assert exc.value.code == "E_SIZE"
        assert list((tmp_path / "slots" / "downloads").iterdir()) == []

    @pytest.mark.asyncio
    async def test_truncated_download(self, tmp_path):
        updater = self._updater(tmp_path, FakeHub(payload=IMAGE[:100]))
        with pytest.raises(UpdateError) as exc:
            await updater.download(_offer())
        assert exc.value.code == "E_SIZE"

    @pytest.mark.asyncio
    async def test_http_error(self, tmp_path):
        updater = self._updater(tmp_path)
        with pytest.raises(UpdateError) as exc:
            await updater.download(_offer(url="/device-api/firmware/missing"))
        assert exc.value.code == "E_DOWNLOAD"

    def test_checksum_mismatch_removes_file(self, tmp_path):
        updater = self._updater(tmp_path)
        path = tmp_path / "image.part"
        path.write_bytes(IMAGE)
        with pytest.raises(UpdateError) as exc:
            updater.verify(path, "0" * 64)
        assert exc.value.code == "E_CHECKSUM"
        assert not path.exists()

    def test_install_flips_slots_and_rollback(self, tmp_path):
        updater = self._updater(tmp_path)
        assert updater.active_slot == "a"

        first = tmp_path / "one.bin"
        first.write_bytes(b"one")
        assert updater.install(first, "1.0.0") == "b"
        second = tmp_path / "two.bin"
        second.write_bytes(b"two")
        assert updater.install(second, "1.1.0") == "a"
        assert updater.active_version() == "1.1.0"
        assert not second.exists()

        assert updater.rollback() == "1.0.0"
        assert updater.active_slot == "b"

    def test_install_io_error(self, tmp_path):
        updater = self._updater(tmp_path)
        image = tmp_path / "one.bin"
        image.write_bytes(b"one")
        with patch("otahub_agent.updater.shutil.copyfile", side_effect=DISK_FULL):
            with pytest.raises(UpdateError) as exc:
                updater.install(image, "1.0.0")
        assert exc.value.code == "E_INSTALL"
        assert updater.active_slot == "a"
        assert updater.active_version() is None

    def test_rollback_without_previous(self, tmp_path):
        updater = self._updater(tmp_path)
        with pytest.raises(UpdateError) as exc:
            updater.rollback()
        assert exc.value.code == "E_ROLLBACK"

    @pytest.mark.asyncio
    async def test_health_check(self, tmp_path):
        assert await self._updater(tmp_path).health_check()
        assert await self._updater(tmp_path, health_check_command="true").health_check()
        assert not await self._updater(tmp_path, health_check_command="false").health_check()
        assert not await self._updater(
            tmp_path, health_check_command="/nonexistent/check",
        ).health_check()

    @pytest.mark.asyncio
    async def test_health_check_timeout(self, tmp_path):
        updater = self._updater(
            tmp_path, health_check_command="sleep 5", health_check_timeout=0.1,
        )
        assert not await updater.health_check()


# ── Update state machine ──────────────────────────────────────────


class TestHandleOffer:
    @pytest.mark.asyncio
    async def test_successful_update(self, agent, hub, tmp_path):
        await agent.handle_offer(_offer())

        assert hub.states() == ["downloading", "downloading", "installing", "succeeded"]
        assert hub.statuses[1]["detail"] == "verifying"
        assert hub.statuses[-1]["version"] == "1.1.0"
        assert all(s["rollout_id"] == "ro-abc123" for s in hub.statuses)

        assert agent.state is State.IDLE
        assert agent.config.firmware_version == "1.1.0"
        assert agent.ws.firmware_version == "1.1.0"
        assert agent.updater.active_version() == "1.1.0"
        saved = json.loads((tmp_path / "config.json").read_text())
        assert saved["firmware_version"] == "1.1.0"

    @pytest.mark.asyncio
    async def test_checksum_failure(self, agent, hub):
        await agent.handle_offer(_offer(sha256="f" * 64))
        assert hub.states()[-1] == "failed"
        assert "E_CHECKSUM" in hub.statuses[-1]["detail"]
        assert agent.state is State.ERROR
        assert agent.config.firmware_version == "1.0.0"
        assert agent.updater.active_version() is None

    @pytest.mark.asyncio
    async def test_install_failure_is_reported(self, agent, hub):
        with patch("otahub_agent.updater.shutil.copyfile", side_effect=DISK_FULL):
            await agent.handle_offer(_offer())
        assert hub.states()[-1] == "failed"
        assert "E_INSTALL" in hub.statuses[-1]["detail"]
        assert agent.state is State.ERROR
        assert agent.config.firmware_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_health_failure_rolls_back(self, agent, hub, tmp_path):
        previous = tmp_path / "prev.bin"
        previous.write_bytes(b"known good")
        agent.updater.install(previous, "1.0.0")

        with patch.object(agent.updater, "health_check", AsyncMock(return_value=False)):
            await agent.handle_offer(_offer())

        assert hub.states()[-1] == "rolled_back"
        assert "restored 1.0.0" in hub.statuses[-1]["detail"]
        assert agent.updater.active_version() == "1.0.0"
        assert agent.config.firmware_version == "1.0.0"

    @pytest.mark.asyncio
    async def test_health_failure_without_previous_slot(self, agent, hub):
        with patch.object(agent.updater, "health_check", AsyncMock(return_value=False)):
            await agent.handle_offer(_offer())
        assert hub.states()[-1] == "failed"
        assert "E_ROLLBACK" not in hub.statuses[-1]["detail"]
        assert "health check failed" in hub.statuses[-1]["detail"]

    @pytest.mark.asyncio
    async def test_same_version_is_success(self, agent, hub):
        await agent.handle_offer(_offer(version="1.0.0"))
        assert hub.states() == ["succeeded"]
        assert hub.statuses[0]["detail"] == "already running"

    @pytest.mark.asyncio
    async def test_refuses_unrequested_downgrade(self, agent, hub):
        await agent.handle_offer(_offer(version="0.9.0"))
        assert hub.states() == ["failed"]
        assert "downgrade" in hub.statuses[0]["detail"]

    @pytest.mark.asyncio
    async def test_allowed_downgrade(self, agent, hub):
        await agent.handle_offer(_offer(version="0.9.0", allow_downgrade=True))
        assert hub.states()[-1] == "succeeded"
        assert agent.config.firmware_version == "0.9.0"

    @pytest.mark.asyncio
    async def test_offer_without_rollout_ignored(self, agent, hub):
        await agent.handle_offer(_offer(rollout_id=None))
        assert hub.statuses == []

    @pytest.mark.asyncio
    async def test_reports_over_channel_when_connected(self, agent, hub):
        agent.ws.connected = True
        await agent.handle_offer(_offer(version="1.0.0"))
        assert hub.statuses == []
        assert agent.ws.sent == [("ro-abc123", "succeeded", "already running", "1.0.0")]

    @pytest.mark.asyncio
    async def test_poll_once(self, agent, hub):
        hub.pending = _offer()
        offer = await agent.poll_once()
        assert offer["rollout_id"] == "ro-abc123"
        assert hub.states()[-1] == "succeeded"

    @pytest.mark.asyncio
    async def test_poll_nothing_pending(self, agent, hub):
        assert await agent.poll_once() is None
        assert hub.statuses == []

    @pytest.mark.asyncio
    async def test_check_update_command_polls(self, agent, hub):
        hub.pending = _offer(version="1.0.0")
        await agent.ws.handlers["COMMAND"]({"type": "COMMAND", "action": "check_update"})
        assert hub.states() == ["succeeded"]

    @pytest.mark.asyncio
    async def test_pushed_offer_runs_in_background(self, agent, hub):
        await agent.ws.handlers["UPDATE_AVAILABLE"](_offer())
        await agent._update_task
        assert hub.states()[-1] == "succeeded"


@pytest.mark.parametrize("candidate,current,expected", [
    ("1.0.0", "1.1.0", True),
    ("1.2.0", "1.1.0", False),
    ("v1.0.0", "1.0.0", False),
    ("junk", "1.0.0", False),
])
def test_is_downgrade(candidate, current, expected):
    assert _is_downgrade(candidate, current) is expected


def test_reconnect_backoff():
    client = DeviceWSClient("ws://hub.test/ws/device", "tok")
    delays = [client.next_delay() for _ in range(7)]
    assert delays == [2, 4, 8, 16, 32, 60, 60]
    assert not client.connected
