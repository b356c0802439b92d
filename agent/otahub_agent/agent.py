"""Main device agent: state machine applying OTA updates.

States: IDLE → DOWNLOADING → VERIFYING → INSTALLING → IDLE
                    ↘            ↘            ↘
                                ERROR

  UPDATE_AVAILABLE (push or poll) starts DOWNLOADING
  Size and SHA-256 checks run in VERIFYING
  INSTALLING writes the inactive slot and runs the health check;
  a failed health check rolls back to the previous slot
"""

from __future__ import annotations

import asyncio
import enum
import logging
import subprocess
import time
from pathlib import Path
from typing import Optional

import httpx
import semver

from .config import AgentConfig
from .updater import FirmwareUpdater, UpdateError
from .ws_client import DeviceWSClient

logger = logging.getLogger(__name__)


class State(enum.Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    VERIFYING = "verifying"
    INSTALLING = "installing"
    ERROR = "error"


def _is_downgrade(candidate: str, current: str) -> bool:
    try:
        new = semver.Version.parse(candidate.lstrip("vV"))
        old = semver.Version.parse(current.lstrip("vV"))
    except (ValueError, TypeError):
        return False
    return new < old


class DeviceAgent:
    """Keeps the device connected and applies updates offered by the server."""

    def __init__(
        self,
        config: AgentConfig,
        config_path: str | Path | None = None,
        updater: FirmwareUpdater | None = None,
        ws: DeviceWSClient | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.config_path = Path(config_path) if config_path else None
        self.state = State.IDLE
        self.last_error: Optional[str] = None
        self._running = False
        self._start_time = time.time()
        self._transport = transport
        self._busy = asyncio.Lock()
        self._update_task: Optional[asyncio.Task] = None

        self.updater = updater or FirmwareUpdater(
            config.slots_dir,
            api_url=config.api_url,
            device_token=config.device_token,
            health_check_command=config.health_check_command,
            health_check_timeout=config.health_check_timeout,
            transport=transport,
        )
        self.ws = ws or DeviceWSClient(
            config.server_url, config.device_token, config.firmware_version,
        )
        self._register_ws_handlers()

    def _register_ws_handlers(self) -> None:
        self.ws.on("UPDATE_AVAILABLE", self._on_update_available)
        self.ws.on("COMMAND", self._on_command)
        self.ws.on("ERROR", self._on_error)

    # ── Lifecycle ─────────────────────────────────────────────────

    async def start(self) -> None:
        """Run the channel, heartbeat and poll loops until stopped."""
        if not self.config.device_token:
            raise RuntimeError("Device is not registered: no device_token in config")
        logger.info("=== OTA Hub agent | device %s | firmware %s ===",
                    self.config.device_id or "?", self.config.firmware_version)
        self._start_time = time.time()
        self._running = True
        try:
            await asyncio.gather(
                self.ws.run(),
                self._heartbeat_loop(),
                self._poll_loop(),
            )
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def stop(self) -> None:
        if not self._running:
            return
        logger.info("Shutting down device agent...")
        self._running = False
        await self.ws.disconnect()

    # ── Update flow ───────────────────────────────────────────────

    async def handle_offer(self, offer: dict) -> None:
        """Apply an ``UPDATE_AVAILABLE`` offer."""
        rollout_id = offer.get("rollout_id")
        version = offer.get("version", "")
        if not rollout_id:
            logger.debug("Ignoring offer without a rollout: %s", version)
            return
        if self._busy.locked():
            logger.info("Update already in progress, ignoring offer %s", rollout_id)
            return

        async with self._busy:
            current = self.config.firmware_version
            if version == current and not offer.get("allow_downgrade"):
                logger.info("Already running %s", version)
                await self.report(rollout_id, "succeeded", "already running", version)
                return
            if _is_downgrade(version, current) and not offer.get("allow_downgrade"):
                await self.report(rollout_id, "failed",
                                  f"refusing downgrade {current} -> {version}")
                return
            await self._apply(offer)

    async def _apply(self, offer: dict) -> None:
        rollout_id = offer["rollout_id"]
        version = offer["version"]
        try:
            await self._transition(State.DOWNLOADING, rollout_id, "downloading",
                                   f"fetching {version}")
            path = await self.updater.download(offer)

            await self._transition(State.VERIFYING, rollout_id, "downloading", "verifying")
            self.updater.verify(path, offer.get("sha256", ""))

            await self._transition(State.INSTALLING, rollout_id, "installing",
                                   f"installing {version}")
            slot = self.updater.install(path, version)
        except UpdateError as e:
            await self._fail(rollout_id, "failed", f"{e.code}: {e}")
            return

        if not await self.updater.health_check():
            try:
                restored = self.updater.rollback()
            except UpdateError as e:
                await self._fail(rollout_id, "failed", f"health check failed; {e}")
                return
            await self._fail(rollout_id, "rolled_back",
                             f"health check failed on {version}, restored {restored}")
            return

        self.config.firmware_version = version
        self.ws.firmware_version = version
        if self.config_path:
            self.config.save(self.config_path)
        self.state = State.IDLE
        self.last_error = None
        logger.info("Update to %s complete (slot %s)", version, slot)
        await self.report(rollout_id, "succeeded", f"slot {slot}", version)

    async def _transition(self, state: State, rollout_id: str, reported: str, detail: str) -> None:
        logger.debug("State %s → %s", self.state.value, state.value)
        self.state = state
        await self.report(rollout_id, reported, detail)

    async def _fail(self, rollout_id: str, reported: str, detail: str) -> None:
        logger.error("Update failed: %s", detail)
        self.state = State.ERROR
        self.last_error = detail
        await self.report(rollout_id, reported, detail)

    # ── Reporting ─────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.config.api_url,
            headers={"X-Device-Token": self.config.device_token},
            transport=self._transport,
            timeout=15.0,
        )

    async def report(
        self,
        rollout_id: str | None,
        state: str,
        detail: str = "",
        version: str | None = None,
    ) -> None:
        """Send an UPDATE_STATUS over the channel, or HTTP when disconnected."""
        if self.ws.connected:
            try:
                await self.ws.send_update_status(rollout_id, state, detail, version)
                return
            except Exception:
                logger.warning("Channel send failed, reporting over HTTP")
        payload = {"rollout_id": rollout_id, "state": state, "detail": detail,
                   "version": version}
        try:
            async with self._http() as client:
                resp = await client.post("/device-api/status", json=payload)
                resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning("Could not report %s for %s: %s", state, rollout_id, e)

    async def poll_once(self) -> dict | None:
        """Ask the server for an open update transaction and apply it."""
        try:
            async with self._http() as client:
                resp = await client.get("/device-api/update")
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.warning("Update poll failed: %s", e)
            return None
        offer = data.get("update")
        if offer:
            await self.handle_offer(offer)
        return offer

    # ── Server messages ───────────────────────────────────────────

    async def _on_command(self, msg: dict) -> None:
        action = msg.get("action", "")
        if action == "check_update":
            await self.poll_once()
        elif action == "identify":
            logger.warning("Identify requested: device %s, firmware %s, state %s",
                           self.config.device_id, self.config.firmware_version,
                           self.state.value)
        elif action == "reboot":
            logger.warning("Reboot requested by server")
            subprocess.run(["systemctl", "reboot"], check=False)
        else:
            logger.warning("Unknown command: %s", action)

    async def _on_update_available(self, msg: dict) -> None:
        # The listen loop must not block on an install.
        self._update_task = asyncio.create_task(self.handle_offer(msg))

    async def _on_error(self, msg: dict) -> None:
        logger.warning("Server error: %s", msg.get("detail"))

    # ── Background loops ──────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.heartbeat_interval)
            if self.ws.connected:
                try:
                    await self.ws.send_heartbeat(
                        uptime=time.time() - self._start_time, rssi=_read_wifi_rssi(),
                    )
                except Exception:
                    logger.debug("Heartbeat send failed")

    async def _poll_loop(self) -> None:
        """Poll for updates while the channel is down."""
        while self._running:
            await asyncio.sleep(self.config.poll_interval)
            if not self.ws.connected:
                await self.poll_once()


def _read_wifi_rssi() -> int | None:
    """Read WiFi signal strength (dBm)."""
    try:
        with open("/proc/net/wireless") as f:
            lines = f.readlines()
        if len(lines) >= 3:
            return int(float(lines[2].split()[3]))
    except (OSError, ValueError, IndexError):
        pass
    return None
