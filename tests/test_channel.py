"""Tests for the device WebSocket channel."""

from __future__ import annotations

import asyncio

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from otahub import services
from otahub.devices import channel
from otahub.server import app


@pytest.fixture()
def client():
    return TestClient(app)


def _hello(ws, token, version="1.0.0"):
    ws.send_json({"type": "HELLO", "device_token": token, "firmware_version": version})
    return ws.receive_json()


class TestHandshake:
    def test_welcome(self, client, make_device, registry):
        device, token = make_device(1)
        with client.websocket_connect("/ws/device") as ws:
            welcome = _hello(ws, token, version="1.0.3")
            assert welcome["type"] == "WELCOME"
            assert welcome["device_id"] == device["id"]
            assert welcome["session_id"].startswith("sess-")
            assert welcome["heartbeat_interval"] == 30
            assert device["id"] in channel.get_connected_devices()

            d = registry.get(device["id"])
            assert d["status"] == "online"
            assert d["firmware_version"] == "1.0.3"

    def test_invalid_token(self, client):
        with client.websocket_connect("/ws/device") as ws:
            reply = _hello(ws, "not-a-token")
            assert reply["type"] == "ERROR"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4401
        assert channel.get_connected_devices() == {}

    def test_first_message_must_be_hello(self, client):
        with client.websocket_connect("/ws/device") as ws:
            ws.send_json({"type": "HEARTBEAT"})
            assert ws.receive_json() == {"type": "ERROR", "detail": "Expected HELLO"}

    def test_bad_version_still_connects(self, client, make_device, registry):
        device, token = make_device(1)
        with client.websocket_connect("/ws/device") as ws:
            assert _hello(ws, token, version="nightly")["type"] == "WELCOME"
        assert registry.get(device["id"])["firmware_version"] == "1.0.0"

    def test_offline_after_disconnect(self, client, make_device, registry):
        device, token = make_device(1)
        with client.websocket_connect("/ws/device") as ws:
            _hello(ws, token)
        assert device["id"] not in channel.get_connected_devices()
        assert registry.get(device["id"])["status"] == "offline"


class TestMessages:
    def test_heartbeat_updates_telemetry(self, client, make_device, registry):
        device, token = make_device(1)
        with client.websocket_connect("/ws/device") as ws:
            _hello(ws, token)
            ws.send_json({"type": "HEARTBEAT", "uptime": 3600, "rssi": -58})
            # A bad status round-trips an ERROR, proving the heartbeat was consumed.
            ws.send_json({"type": "UPDATE_STATUS", "state": "bogus"})
            assert ws.receive_json()["type"] == "ERROR"
        d = registry.get(device["id"])
        assert d["uptime_seconds"] == 3600
        assert d["rssi"] == -58

    def test_pending_offer_pushed_on_connect(self, client, make_device, approved):
        device, token = make_device(1)
        fw = approved("1.1.0")
        dispatcher = services.get_dispatcher()
        rollout = dispatcher.create_rollout(fw["id"])
        asyncio.run(dispatcher.tick())

        with client.websocket_connect("/ws/device") as ws:
            assert _hello(ws, token)["type"] == "WELCOME"
            offer = ws.receive_json()
            assert offer["type"] == "UPDATE_AVAILABLE"
            assert offer["rollout_id"] == rollout["id"]
            assert offer["version"] == "1.1.0"

    def test_update_status_reaches_dispatcher(self, client, make_device, approved):
        device, token = make_device(1)
        fw = approved("1.1.0")
        dispatcher = services.get_dispatcher()
        rollout = dispatcher.create_rollout(fw["id"])

        with client.websocket_connect("/ws/device") as ws:
            _hello(ws, token)
            ws.send_json({
                "type": "UPDATE_STATUS", "rollout_id": rollout["id"],
                "state": "succeeded", "version": "1.1.0",
            })
            ws.send_json({"type": "UPDATE_STATUS", "state": "bogus"})
            assert ws.receive_json()["type"] == "ERROR"

        assert dispatcher.get_rollout(rollout["id"])["status"] == "completed"
        assert services.get_registry().get(device["id"])["firmware_version"] == "1.1.0"


class TestCommands:
    @pytest.mark.asyncio
    async def test_unknown_action(self):
        with pytest.raises(ValueError):
            await channel.send_command("dev-x", "self-destruct")

    @pytest.mark.asyncio
    async def test_not_connected(self):
        assert not await channel.send_command("dev-x", "reboot")
        assert not await channel.send_to_device("dev-x", {"type": "PING"})

    def test_command_endpoint(self, client, make_device, admin_header):
        device, _ = make_device(1)
        sent = []

        class FakeSocket:
            async def send_json(self, message):
                sent.append(message)

        channel._connected_devices[device["id"]] = channel.DeviceConnection(FakeSocket(), device["id"])
        resp = client.post(
            f"/devices/{device['id']}/command",
            json={"action": "identify"}, headers=admin_header,
        )
        assert resp.status_code == 200
        assert sent == [{"type": "COMMAND", "action": "identify", "params": {}}]

        resp = client.post(
            f"/devices/{device['id']}/command",
            json={"action": "format"}, headers=admin_header,
        )
        assert resp.status_code == 400

    def test_command_offline_device(self, client, make_device, admin_header):
        device, _ = make_device(1)
        resp = client.post(
            f"/devices/{device['id']}/command",
            json={"action": "reboot"}, headers=admin_header,
        )
        assert resp.status_code == 409
