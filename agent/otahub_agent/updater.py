"""A/B slot firmware installer.

Layout under ``slots_dir``::

    a/firmware.bin   a/version
    b/firmware.bin   b/version
    active             name of the booted slot ("a" or "b")

An update is written to the inactive slot, then ``active`` is flipped with an
atomic rename.  The previous slot is left untouched so :meth:`rollback` can
flip back.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import shlex
import shutil
from pathlib import Path
from urllib.parse import urljoin

import httpx

logger = logging.getLogger(__name__)

SLOTS = ("a", "b")
_CHUNK = 64 * 1024


class UpdateError(Exception):
    """An update step failed.  ``code`` is reported to the server."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class FirmwareUpdater:
    """Downloads, verifies and installs firmware into A/B slots."""

    def __init__(
        self,
        slots_dir: str | Path,
        api_url: str = "",
        device_token: str = "",
        health_check_command: str = "",
        health_check_timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.slots_dir = Path(slots_dir)
        self.api_url = api_url
        self.device_token = device_token
        self.health_check_command = health_check_command
        self.health_check_timeout = health_check_timeout
        self._transport = transport
        for slot in SLOTS:
            (self.slots_dir / slot).mkdir(parents=True, exist_ok=True)

    # ── Slots ─────────────────────────────────────────────────────

    @property
    def active_slot(self) -> str:
        pointer = self.slots_dir / "active"
        if pointer.exists():
            slot = pointer.read_text().strip()
            if slot in SLOTS:
                return slot
        return "a"

    @property
    def inactive_slot(self) -> str:
        return "b" if self.active_slot == "a" else "a"

    def slot_version(self, slot: str) -> str | None:
        path = self.slots_dir / slot / "version"
        if not path.exists() or not (self.slots_dir / slot / "firmware.bin").exists():
            return None
        return path.read_text().strip() or None

    def active_version(self) -> str | None:
        return self.slot_version(self.active_slot)

    def _set_active(self, slot: str) -> None:
        tmp = self.slots_dir / "active.tmp"
        tmp.write_text(slot)
        os.replace(tmp, self.slots_dir / "active")

    # ── Download ──────────────────────────────────────────────────

    async def download(self, offer: dict) -> Path:
        """Stream the offered artifact to disk, enforcing the declared size."""
        expected_size = int(offer.get("size_bytes") or 0)
        url = urljoin(self.api_url.rstrip("/") + "/", offer["url"].lstrip("/"))

        downloads = self.slots_dir / "downloads"
        downloads.mkdir(parents=True, exist_ok=True)
        part = downloads / f"{offer.get('firmware_id', 'firmware')}.part"

        size = 0
        try:
            async with httpx.AsyncClient(transport=self._transport, timeout=30.0) as client:
                async with client.stream(
                    "GET", url, headers={"X-Device-Token": self.device_token},
                ) as resp:
                    if resp.status_code != 200:
                        raise UpdateError("E_DOWNLOAD", f"HTTP {resp.status_code} for {url}")
                    with open(part, "wb") as out:
                        async for chunk in resp.aiter_bytes(_CHUNK):
                            size += len(chunk)
                            if expected_size and size > expected_size:
                                raise UpdateError(
                                    "E_SIZE", f"artifact exceeds declared {expected_size} bytes",
                                )
                            out.write(chunk)
        except httpx.HTTPError as e:
            part.unlink(missing_ok=True)
            raise UpdateError("E_DOWNLOAD", str(e)) from e
        except UpdateError:
            part.unlink(missing_ok=True)
            raise

        if expected_size and size != expected_size:
            part.unlink(missing_ok=True)
            raise UpdateError("E_SIZE", f"got {size} bytes, expected {expected_size}")

        logger.info("Downloaded %s (%d bytes)", offer.get("version"), size)
        return part

    def verify(self, path: str | Path, sha256: str) -> None:
        """Check the downloaded file against the offered SHA-256."""
        h = hashlib.sha256()
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(_CHUNK), b""):
                h.update(chunk)
        if h.hexdigest() != (sha256 or "").lower():
            Path(path).unlink(missing_ok=True)
            raise UpdateError("E_CHECKSUM", "sha256 mismatch")

    # ── Install ───────────────────────────────────────────────────

    def install(self, path: str | Path, version: str) -> str:
        """Write *path* into the inactive slot and make it active."""
        slot = self.inactive_slot
        slot_dir = self.slots_dir / slot
        tmp = slot_dir / "firmware.bin.tmp"
        try:
            shutil.copyfile(path, tmp)
            os.replace(tmp, slot_dir / "firmware.bin")
            (slot_dir / "version").write_text(version)
            self._set_active(slot)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise UpdateError("E_INSTALL", f"could not write slot {slot}: {e}") from e
        Path(path).unlink(missing_ok=True)
        logger.info("Installed %s into slot %s", version, slot)
        return slot

    async def health_check(self) -> bool:
        """Run the configured health check command; no command means healthy."""
        if not self.health_check_command:
            return True
        try:
            proc = await asyncio.create_subprocess_exec(
                *shlex.split(self.health_check_command),
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.error("Health check could not start: %s", e)
            return False
        try:
            rc = await asyncio.wait_for(proc.wait(), timeout=self.health_check_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.error("Health check timed out after %.0fs", self.health_check_timeout)
            return False
        if rc != 0:
            logger.error("Health check failed (exit %d)", rc)
        return rc == 0

    def rollback(self) -> str:
        """Flip back to the other slot.  Returns the restored version."""
        previous = self.inactive_slot
        version = self.slot_version(previous)
        if version is None:
            raise UpdateError("E_ROLLBACK", "no previous firmware to roll back to")
        self._set_active(previous)
        logger.warning("Rolled back to slot %s (%s)", previous, version)
        return version
