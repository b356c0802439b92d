"""WebSocket client for the OTA Hub device channel.

Handles the device side of the protocol:
  Device → Server: HELLO, HEARTBEAT, UPDATE_STATUS
  Server → Device: WELCOME, ERROR, UPDATE_AVAILABLE, COMMAND
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Awaitable, Callable, Optional

import websockets
from websockets.asyncio.client import ClientConnection

logger = logging.getLogger(__name__)

MessageHandler = Callable[[dict], Awaitable[None]]


class DeviceWSClient:
    """WebSocket client connecting a device to the OTA Hub server."""

    def __init__(self, server_url: str, device_token: str, firmware_version: str = ""):
        self.server_url = server_url
        self.device_token = device_token
        self.firmware_version = firmware_version

        self._ws: Optional[ClientConnection] = None
        self._session_id: Optional[str] = None
        self._device_id: Optional[str] = None
        self._handlers: dict[str, MessageHandler] = {}
        self._connected = False
        self._reconnect_delay = 2
        self._max_reconnect_delay = 60

    def on(self, msg_type: str, handler: MessageHandler) -> None:
        """Register a handler for a server message type."""
        self._handlers[msg_type] = handler

    async def connect(self) -> bool:
        """Connect to the server and complete the HELLO/WELCOME handshake."""
        try:
            self._ws = await websockets.connect(
                self.server_url,
                ping_interval=20,
                ping_timeout=10,
                close_timeout=5,
            )
            await self._send({
                "type": "HELLO",
                "device_token": self.device_token,
                "firmware_version": self.firmware_version,
            })

            raw = await asyncio.wait_for(self._ws.recv(), timeout=10)
            response = json.loads(raw)

            if response.get("type") == "WELCOME":
                self._session_id = response.get("session_id")
                self._device_id = response.get("device_id")
                self._connected = True
                self._reconnect_delay = 2
                logger.info("Connected to server as %s (session: %s)",
                            self._device_id, self._session_id)
                return True
            logger.error("Server rejected connection: %s", response.get("detail", response))
            await self.disconnect()
            return False

        except Exception:
            logger.exception("Failed to connect to %s", self.server_url)
            return False

    async def _send(self, message: dict) -> None:
        if self._ws:
            await self._ws.send(json.dumps(message))

    async def send_heartbeat(self, uptime: float = 0, rssi: int | None = None) -> None:
        await self._send({
            "type": "HEARTBEAT",
            "uptime": int(uptime),
            "rssi": rssi,
            "firmware_version": self.firmware_version,
        })

    async def send_update_status(
        self,
        rollout_id: str | None,
        state: str,
        detail: str = "",
        version: str | None = None,
    ) -> None:
        await self._send({
            "type": "UPDATE_STATUS",
            "rollout_id": rollout_id,
            "state": state,
            "detail": detail,
            "version": version,
        })

    async def listen(self) -> None:
        """Listen for messages from server. Blocks until disconnected."""
        if not self._ws:
            return
        try:
            async for raw in self._ws:
                msg = json.loads(raw)
                msg_type = msg.get("type", "")
                handler = self._handlers.get(msg_type)
                if handler:
                    try:
                        await handler(msg)
                    except Exception:
                        logger.exception("Handler error for %s", msg_type)
                else:
                    logger.debug("Unhandled message type: %s", msg_type)
        except websockets.ConnectionClosed:
            logger.info("Server connection closed")
        except Exception:
            logger.exception("WebSocket listen error")
        finally:
            self._connected = False

    async def disconnect(self) -> None:
        if self._ws:
            await self._ws.close()
            self._ws = None
        self._connected = False

    def next_delay(self) -> float:
        """Current reconnect delay; doubles up to the cap on each call."""
        delay = self._reconnect_delay
        self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)
        return delay

    async def run(self) -> None:
        """Connect, listen, and reconnect with exponential backoff forever."""
        while True:
            if await self.connect():
                await self.listen()
            delay = self.next_delay()
            logger.info("Reconnecting in %ds...", delay)
            await asyncio.sleep(delay)

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def session_id(self) -> Optional[str]:
        return self._session_id
