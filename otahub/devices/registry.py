"""Device registration service.

Binds device identities (hardware address + model) to user accounts, issues
the device token used on the device channel, and keeps connection/telemetry
state current.  The admin API, the device channel and the rollout dispatcher
all go through this class.
"""

from __future__ import annotations

import logging
import re
import sqlite3
import uuid
from datetime import datetime, timezone

from otahub.auth import issue_device_token
from otahub.db import get_db
from otahub.errors import ConflictError, NotFoundError, ValidationError
from otahub.versioning import normalize_version

logger = logging.getLogger(__name__)

_MAC_RE = re.compile(r"^[0-9a-f]{2}([:-]?)[0-9a-f]{2}(\1[0-9a-f]{2}){4}$")
MAX_NAME_LENGTH = 64

DEVICE_STATUSES = ("registered", "online", "offline", "updating", "error")


def normalize_mac(address: str) -> str:
    """Return *address* as ``aa:bb:cc:dd:ee:ff`` or raise ValidationError."""
    text = (address or "").strip().lower()
    if not _MAC_RE.match(text):
        raise ValidationError(f"Invalid hardware address: {address!r}")
    digits = re.sub(r"[^0-9a-f]", "", text)
    return ":".join(digits[i:i + 2] for i in range(0, 12, 2))


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class DeviceRegistry:
    """Central registry for all device records."""

    def __init__(self, conn: sqlite3.Connection | None = None) -> None:
        self._conn = conn

    @property
    def db(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_db()

    # ── Registration ───────────────────────────────────────────────

    def register(
        self,
        owner_id: int,
        display_name: str,
        hardware_address: str,
        hardware_model: str,
        firmware_version: str = "0.0.0",
        is_test_target: bool = False,
    ) -> tuple[dict, str]:
        """Register a device and return ``(device, plaintext_token)``.

        Re-registering an address already bound to the same owner re-issues
        the token (factory reset + re-pair).  Binding it to a different
        owner is a conflict.
        """
        mac = normalize_mac(hardware_address)
        name = (display_name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Display name must be 1-{MAX_NAME_LENGTH} characters")
        model = (hardware_model or "").strip()
        if not model:
            raise ValidationError("Hardware model is required")
        version = normalize_version(firmware_version)

        token, token_hash = issue_device_token()
        db = self.db

        existing = db.execute(
            "SELECT id, owner_id FROM devices WHERE hardware_address = ?", (mac,)
        ).fetchone()
        if existing:
            if existing["owner_id"] != owner_id:
                raise ConflictError("Device is registered to another account")
            db.execute(
                """UPDATE devices
                   SET display_name = ?, hardware_model = ?, firmware_version = ?,
                       token_hash = ?, is_test_target = ?, status = 'registered'
                   WHERE id = ?""",
                (name, model, version, token_hash, is_test_target, existing["id"]),
            )
            db.commit()
            self.log_event(existing["id"], "re-registered")
            logger.info("Device re-registered: %s (%s)", existing["id"], mac)
            return self.get(existing["id"]), token

        device_id = f"dev-{uuid.uuid4().hex[:12]}"
        db.execute(
            """INSERT INTO devices
               (id, owner_id, display_name, hardware_address, hardware_model,
                firmware_version, is_test_target, token_hash)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (device_id, owner_id, name, mac, model, version, is_test_target, token_hash),
        )
        db.commit()
        self.log_event(device_id, "registered", f"model={model} version={version}")
        logger.info("New device registered: %s (%s) for user %s", device_id, mac, owner_id)
        return self.get(device_id), token

    def rotate_token(self, device_id: str) -> str:
        self.require(device_id)
        token, token_hash = issue_device_token()
        self.db.execute("UPDATE devices SET token_hash = ? WHERE id = ?", (token_hash, device_id))
        self.db.commit()
        self.log_event(device_id, "token_rotated")
        return token

    # ── Queries ────────────────────────────────────────────────────

    def get(self, device_id: str) -> dict | None:
        row = self.db.execute(
            "SELECT * FROM devices WHERE id = ?", (device_id,)
        ).fetchone()
        if row is None:
            return None
        device = dict(row)
        device.pop("token_hash", None)
        return device

    def require(self, device_id: str) -> dict:
        device = self.get(device_id)
        if device is None:
            raise NotFoundError(f"Device not found: {device_id}")
        return device

    def list_devices(
        self,
        owner_id: int | None = None,
        status: str | None = None,
        hardware_model: str | None = None,
        test_targets: bool | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> tuple[list[dict], int]:
        """Return ``(devices, total)`` matching the filters."""
        where, params = [], []
        if owner_id is not None:
            where.append("owner_id = ?")
            params.append(owner_id)
        if status:
            where.append("status = ?")
            params.append(status)
        if hardware_model:
            where.append("hardware_model = ?")
            params.append(hardware_model)
        if test_targets is not None:
            where.append("is_test_target = ?")
            params.append(test_targets)
        where_sql = " AND ".join(where) if where else "1=1"

        total = self.db.execute(
            f"SELECT COUNT(*) FROM devices WHERE {where_sql}", params
        ).fetchone()[0]
        query = f"SELECT * FROM devices WHERE {where_sql} ORDER BY registered_at DESC, id"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params = params + [limit, offset]
        devices = []
        for row in self.db.execute(query, params).fetchall():
            device = dict(row)
            device.pop("token_hash", None)
            devices.append(device)
        return devices, total

    def events(self, device_id: str, limit: int = 50) -> list[dict]:
        cur = self.db.execute(
            "SELECT event, detail, created_at FROM device_events "
            "WHERE device_id = ? ORDER BY id DESC LIMIT ?",
            (device_id, limit),
        )
        return [dict(r) for r in cur.fetchall()]

    # ── Management ─────────────────────────────────────────────────

    def rename(self, device_id: str, display_name: str) -> dict:
        name = (display_name or "").strip()
        if not name or len(name) > MAX_NAME_LENGTH:
            raise ValidationError(f"Display name must be 1-{MAX_NAME_LENGTH} characters")
        self.require(device_id)
        self._update(device_id, display_name=name)
        return self.get(device_id)

    def set_test_target(self, device_id: str, enabled: bool) -> dict:
        self.require(device_id)
        self._update(device_id, is_test_target=bool(enabled))
        self.log_event(device_id, "test_target", "on" if enabled else "off")
        return self.get(device_id)

    def remove(self, device_id: str) -> None:
        self.require(device_id)
        self.db.execute("DELETE FROM devices WHERE id = ?", (device_id,))
        self.db.commit()
        logger.info("Removed device: %s", device_id)

    # ── Connection state ───────────────────────────────────────────

    def mark_online(
        self,
        device_id: str,
        ip_address: str | None = None,
        firmware_version: str | None = None,
    ) -> None:
        updates: dict = {"status": "online", "last_seen": _now()}
        if ip_address:
            updates["ip_address"] = ip_address
        if firmware_version:
            updates["firmware_version"] = normalize_version(firmware_version)
        self._update(device_id, **updates)
        self.log_event(device_id, "connected", ip_address)

    def mark_offline(self, device_id: str) -> None:
        self._update(device_id, status="offline", last_seen=_now())
        self.log_event(device_id, "disconnected")

    def set_status(self, device_id: str, status: str) -> None:
        if status not in DEVICE_STATUSES:
            raise ValidationError(f"Unknown device status: {status}")
        self._update(device_id, status=status)

    def set_firmware_version(self, device_id: str, version: str) -> None:
        self._update(device_id, firmware_version=normalize_version(version))
        self.log_event(device_id, "firmware_version", version)

    def touch(self, device_id: str, **telemetry) -> None:
        """Record a heartbeat: last_seen plus any known telemetry fields."""
        allowed = {"uptime_seconds", "rssi", "ip_address"}
        updates = {k: v for k, v in telemetry.items() if k in allowed and v is not None}
        version = telemetry.get("firmware_version")
        if version:
            updates["firmware_version"] = normalize_version(version)
        updates["last_seen"] = _now()
        self._update(device_id, **updates)

    def log_event(self, device_id: str, event: str, detail: str | None = None) -> None:
        try:
            self.db.execute(
                "INSERT INTO device_events (device_id, event, detail) VALUES (?, ?, ?)",
                (device_id, event, detail),
            )
            self.db.commit()
        except sqlite3.IntegrityError:
            logger.debug("Dropping event %s for unknown device %s", event, device_id)

    # ── Internal ───────────────────────────────────────────────────

    def _update(self, device_id: str, **kwargs) -> None:
        """Update device fields."""
        if not kwargs:
            return
        sets = ", ".join(f"{k} = ?" for k in kwargs)
        values = list(kwargs.values()) + [device_id]
        self.db.execute(f"UPDATE devices SET {sets} WHERE id = ?", values)
        self.db.commit()
