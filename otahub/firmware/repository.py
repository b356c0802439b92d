"""Firmware repository: artifact storage plus metadata.

Artifacts are written to ``<storage_dir>/<firmware_id>.bin``; the SHA-256
digest and size are computed while streaming so large images never sit in
memory.  Metadata lives in the ``firmware`` table.
"""

from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
import uuid
from pathlib import Path
from typing import BinaryIO

from otahub.db import data_dir, get_db
from otahub.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from otahub.versioning import highest, normalize_version

logger = logging.getLogger(__name__)

MAX_FIRMWARE_BYTES = int(os.environ.get("OTAHUB_MAX_FIRMWARE_BYTES", str(64 * 1024 * 1024)))
_CHUNK = 1024 * 1024

FIRMWARE_STATUSES = (
    "uploaded", "staged", "testing", "verified", "approved", "rejected", "revoked",
)


def sha256_file(path: str | Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


class FirmwareRepository:
    """Stores firmware artifacts on disk and their metadata in SQLite."""

    def __init__(
        self,
        storage_dir: str | Path | None = None,
        conn: sqlite3.Connection | None = None,
        max_bytes: int = MAX_FIRMWARE_BYTES,
    ) -> None:
        self.storage_dir = Path(storage_dir) if storage_dir else data_dir() / "firmware"
        self.max_bytes = max_bytes
        self._conn = conn

    @property
    def db(self) -> sqlite3.Connection:
        return self._conn if self._conn is not None else get_db()

    # ── Upload ─────────────────────────────────────────────────────

    def add(
        self,
        version: str,
        hardware_model: str,
        data: BinaryIO,
        description: str = "",
        uploaded_by: int | None = None,
    ) -> dict:
        """Store a new build read from the file-like *data*."""
        version = normalize_version(version)
        model = (hardware_model or "").strip()
        if not model:
            raise ValidationError("Hardware model is required")

        exists = self.db.execute(
            "SELECT id FROM firmware WHERE hardware_model = ? AND version = ?",
            (model, version),
        ).fetchone()
        if exists:
            raise ConflictError(f"Firmware {version} for {model} already exists")

        firmware_id = f"fw-{uuid.uuid4().hex[:12]}"
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        path = self.storage_dir / f"{firmware_id}.bin"

        try:
            digest, size = self._write(data, path)
            if size == 0:
                raise ValidationError("Firmware artifact is empty")
            self.db.execute(
                """INSERT INTO firmware
                   (id, version, hardware_model, description, artifact_path,
                    sha256, size_bytes, uploaded_by)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (firmware_id, version, model, description or "", str(path),
                 digest, size, uploaded_by),
            )
            self.db.commit()
        except sqlite3.IntegrityError:
            path.unlink(missing_ok=True)
            raise ConflictError(f"Firmware {version} for {model} already exists")
        except Exception:
            path.unlink(missing_ok=True)
            raise

        logger.info(
            "Stored firmware %s (%s %s, %d bytes, sha256=%s)",
            firmware_id, model, version, size, digest[:12],
        )
        return self.get(firmware_id)

    def _write(self, data: BinaryIO, path: Path) -> tuple[str, int]:
        h = hashlib.sha256()
        size = 0
        with open(path, "wb") as out:
            for chunk in iter(lambda: data.read(_CHUNK), b""):
                size += len(chunk)
                if size > self.max_bytes:
                    raise ValidationError(
                        f"Firmware artifact exceeds {self.max_bytes} bytes"
                    )
                h.update(chunk)
                out.write(chunk)
        return h.hexdigest(), size

    # ── Queries ────────────────────────────────────────────────────

    def get(self, firmware_id: str) -> dict | None:
        row = self.db.execute("SELECT * FROM firmware WHERE id = ?", (firmware_id,)).fetchone()
        return dict(row) if row else None

    def require(self, firmware_id: str) -> dict:
        fw = self.get(firmware_id)
        if fw is None:
            raise NotFoundError(f"Firmware not found: {firmware_id}")
        return fw

    def list_firmware(
        self,
        hardware_model: str | None = None,
        status: str | None = None,
        visible_only: bool = False,
    ) -> list[dict]:
        where, params = [], []
        if hardware_model:
            where.append("hardware_model = ?")
            params.append(hardware_model)
        if visible_only:
            where.append("status = 'approved'")
        elif status:
            where.append("status = ?")
            params.append(status)
        where_sql = " AND ".join(where) if where else "1=1"
        cur = self.db.execute(
            f"SELECT * FROM firmware WHERE {where_sql} ORDER BY created_at DESC, id", params
        )
        return [dict(r) for r in cur.fetchall()]

    def latest_approved(self, hardware_model: str) -> dict | None:
        """The approved build with the highest version for *hardware_model*."""
        builds = self.list_firmware(hardware_model=hardware_model, visible_only=True)
        top = highest([b["version"] for b in builds])
        if top is None:
            return None
        return next(b for b in builds if b["version"] == top)

    # ── Artifacts ──────────────────────────────────────────────────

    def open_artifact(self, firmware_id: str) -> Path:
        fw = self.require(firmware_id)
        path = Path(fw["artifact_path"])
        if not path.exists():
            raise NotFoundError(f"Artifact missing for {firmware_id}")
        return path

    def verify_artifact(self, firmware_id: str) -> bool:
        """Re-hash the stored artifact and compare against the recorded digest."""
        fw = self.require(firmware_id)
        path = Path(fw["artifact_path"])
        if not path.exists():
            return False
        return sha256_file(path) == fw["sha256"]

    # ── Mutations ──────────────────────────────────────────────────

    def set_status(self, firmware_id: str, status: str, **fields) -> dict:
        if status not in FIRMWARE_STATUSES:
            raise ValidationError(f"Unknown firmware status: {status}")
        fields["status"] = status
        sets = ", ".join(f"{k} = ?" for k in fields)
        self.db.execute(
            f"UPDATE firmware SET {sets} WHERE id = ?", list(fields.values()) + [firmware_id]
        )
        self.db.commit()
        return self.require(firmware_id)

    def delete(self, firmware_id: str) -> None:
        fw = self.require(firmware_id)
        if fw["status"] not in ("uploaded", "rejected"):
            raise InvalidStateError(f"Cannot delete firmware in state {fw['status']}")
        self.db.execute("DELETE FROM firmware WHERE id = ?", (firmware_id,))
        self.db.commit()
        Path(fw["artifact_path"]).unlink(missing_ok=True)
        logger.info("Deleted firmware %s", firmware_id)
