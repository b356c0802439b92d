"""WebSocket device channel.

Persistent control connection between OTA Hub and registered devices:

  Device → Server:
    HELLO, HEARTBEAT, UPDATE_STATUS

  Server → Device:
    WELCOME, ERROR, UPDATE_AVAILABLE, COMMAND
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid

from fastapi import WebSocket, WebSocketDisconnect

from otahub import services
from otahub.auth import lookup_device
from otahub.db import get_db
from otahub.errors import OtaHubError

logger = logging.getLogger(__name__)

HELLO_TIMEOUT = 10.0
COMMAND_ACTIONS = ("reboot", "identify", "check_update")


# ── Connection registry ───────────────────────────────────────────

_connected_devices: dict[str, DeviceConnection] = {}


class DeviceConnection:
    """Tracks a connected device's WebSocket and metadata."""

    def __init__(self, websocket: WebSocket, device_id: str) -> None:
        self.websocket = websocket
        self.device_id = device_id
        self.connected_at = time.time()
        self.last_heartbeat = time.time()
        self.session_id = f"sess-{uuid.uuid4().hex[:8]}"

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)

    async def send_command(self, action: str, params: dict | None = None) -> None:
        await self.send({"type": "COMMAND", "action": action, "params": params or {}})


def get_connected_devices() -> dict[str, DeviceConnection]:
    """Return all currently connected device connections."""
    return _connected_devices.copy()


def get_connection(device_id: str) -> DeviceConnection | None:
    return _connected_devices.get(device_id)


async def send_to_device(device_id: str, message: dict) -> bool:
    """Push *message* to a connected device.  False if it is not connected."""
    conn = _connected_devices.get(device_id)
    if conn is None:
        return False
    try:
        await conn.send(message)
    except Exception:
        logger.warning("Send to %s failed, dropping connection", device_id)
        if _connected_devices.get(device_id) is conn:
            _connected_devices.pop(device_id, None)
        return False
    return True


async def send_command(device_id: str, action: str, params: dict | None = None) -> bool:
    if action not in COMMAND_ACTIONS:
        raise ValueError(f"Unknown command: {action}")
    conn = _connected_devices.get(device_id)
    if conn is None:
        return False
    await conn.send_command(action, params)
    return True


# ── WebSocket handler ─────────────────────────────────────────────


async def device_ws_handler(websocket: WebSocket) -> None:
    """Handle a device WebSocket connection.

    Mounted via ``app.add_api_websocket_route("/ws/device", device_ws_handler)``.
    """
    await websocket.accept()
    registry = services.get_registry()
    device_id: str | None = None
    conn: DeviceConnection | None = None

    try:
        raw = await asyncio.wait_for(websocket.receive_json(), timeout=HELLO_TIMEOUT)
        if raw.get("type") != "HELLO":
            await websocket.send_json({"type": "ERROR", "detail": "Expected HELLO"})
            await websocket.close()
            return

        device = lookup_device(get_db(), raw.get("device_token", ""))
        if device is None:
            await websocket.send_json({"type": "ERROR", "detail": "Invalid device token"})
            await websocket.close(code=4401)
            return

        device_id = device["id"]
        conn = DeviceConnection(websocket, device_id)
        previous = _connected_devices.get(device_id)
        if previous is not None:
            logger.info("Device %s reconnected, replacing old session", device_id)
        _connected_devices[device_id] = conn

        client_ip = websocket.client.host if websocket.client else None
        try:
            registry.mark_online(device_id, ip_address=client_ip,
                                 firmware_version=raw.get("firmware_version"))
        except OtaHubError as e:
            logger.warning("Ignoring reported version from %s: %s", device_id, e)
            registry.mark_online(device_id, ip_address=client_ip)

        await conn.send({
            "type": "WELCOME",
            "device_id": device_id,
            "session_id": conn.session_id,
            "heartbeat_interval": 30,
        })
        logger.info("Device connected: %s (session %s)", device_id, conn.session_id)

        offer = services.get_dispatcher().pending_offer(device_id)
        if offer is not None:
            await conn.send(offer)

        async for msg in websocket.iter_json():
            msg_type = msg.get("type", "")

            if msg_type == "HEARTBEAT":
                await _handle_heartbeat(conn, msg)

            elif msg_type == "UPDATE_STATUS":
                await _handle_update_status(conn, msg)

            else:
                logger.warning("Unknown message type from %s: %s", device_id, msg_type)

    except WebSocketDisconnect:
        logger.info("Device disconnected: %s", device_id)
    except asyncio.TimeoutError:
        logger.warning("Device connection timed out (no HELLO)")
        try:
            await websocket.send_json({"type": "ERROR", "detail": "HELLO timeout"})
            await websocket.close()
        except Exception:
            logger.debug("Socket already closed")
    except Exception:
        logger.exception("Error in device WebSocket for %s", device_id)
    finally:
        if device_id and _connected_devices.get(device_id) is conn:
            _connected_devices.pop(device_id, None)
            registry.mark_offline(device_id)


# ── Message handlers ──────────────────────────────────────────────


async def _handle_heartbeat(conn: DeviceConnection, msg: dict) -> None:
    conn.last_heartbeat = time.time()
    try:
        services.get_registry().touch(
            conn.device_id,
            uptime_seconds=msg.get("uptime"),
            rssi=msg.get("rssi"),
            firmware_version=msg.get("firmware_version"),
        )
    except OtaHubError as e:
        logger.warning("Bad heartbeat from %s: %s", conn.device_id, e)


async def _handle_update_status(conn: DeviceConnection, msg: dict) -> None:
    try:
        services.get_dispatcher().report(
            conn.device_id,
            msg.get("rollout_id"),
            msg.get("state", ""),
            detail=msg.get("detail", ""),
            version=msg.get("version"),
        )
    except OtaHubError as e:
        logger.warning("Rejected status from %s: %s", conn.device_id, e)
        await conn.send({"type": "ERROR", "detail": str(e)})
