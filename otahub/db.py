"""Database initialisation for OTA Hub.

Creates (or migrates) the SQLite database holding users, devices, firmware
builds, verification results and rollouts.  The database path is taken from
the ``OTAHUB_DATA_DIR`` environment variable (default: ``./data``).

Usage::

    from otahub.db import get_db, init_db
    init_db()                  # creates missing tables only
    conn = get_db()            # returns a per-thread connection
"""

from __future__ import annotations

import os
import sqlite3
import threading
from pathlib import Path

_DB_PATH: Path | None = None
_LOCAL = threading.local()


def data_dir() -> Path:
    """Root directory for the database and firmware storage."""
    path = Path(os.environ.get("OTAHUB_DATA_DIR", "./data"))
    path.mkdir(parents=True, exist_ok=True)
    return path


def _db_path() -> Path:
    global _DB_PATH
    if _DB_PATH is None:
        _DB_PATH = data_dir() / "otahub.db"
    return _DB_PATH


def set_db_path(path: str | Path) -> None:
    """Override the database path (useful for tests)."""
    global _DB_PATH, _LOCAL
    _DB_PATH = Path(path)
    _LOCAL = threading.local()


def get_db() -> sqlite3.Connection:
    """Return a per-thread SQLite connection (WAL mode, FK enabled)."""
    conn = getattr(_LOCAL, "conn", None)
    if conn is None:
        conn = sqlite3.connect(str(_db_path()), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        _LOCAL.conn = conn
    return conn


def init_db(path: str | Path | None = None) -> None:
    """Create any missing tables; existing data is kept."""
    if path:
        set_db_path(path)
    conn = get_db()
    _create_schema(conn)
    conn.commit()


_SCHEMA_SQL = """
-- ───────── Accounts ─────────

CREATE TABLE IF NOT EXISTS users (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    email         TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    role          TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('admin', 'user')),
    is_active     BOOLEAN DEFAULT TRUE,
    created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_login    TIMESTAMP
);

-- ───────── Devices ─────────

CREATE TABLE IF NOT EXISTS devices (
    id               TEXT PRIMARY KEY,
    owner_id         INTEGER NOT NULL,
    display_name     TEXT NOT NULL,
    hardware_address TEXT NOT NULL UNIQUE,
    hardware_model   TEXT NOT NULL,
    firmware_version TEXT NOT NULL DEFAULT '0.0.0',
    status           TEXT NOT NULL DEFAULT 'registered'
                     CHECK (status IN ('registered', 'online', 'offline', 'updating', 'error')),
    is_test_target   BOOLEAN DEFAULT FALSE,
    token_hash       TEXT NOT NULL UNIQUE,
    ip_address       TEXT,
    uptime_seconds   REAL,
    rssi             INTEGER,
    registered_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    last_seen        TIMESTAMP,
    FOREIGN KEY (owner_id) REFERENCES users(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_devices_owner ON devices(owner_id);
CREATE INDEX IF NOT EXISTS idx_devices_model ON devices(hardware_model);

CREATE TABLE IF NOT EXISTS device_events (
    id         INTEGER PRIMARY KEY AUTOINCREMENT,
    device_id  TEXT NOT NULL,
    event      TEXT NOT NULL,
    detail     TEXT,
    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_device_events_device ON device_events(device_id, created_at);

-- ───────── Firmware ─────────

CREATE TABLE IF NOT EXISTS firmware (
    id             TEXT PRIMARY KEY,
    version        TEXT NOT NULL,
    hardware_model TEXT NOT NULL,
    description    TEXT DEFAULT '',
    artifact_path  TEXT NOT NULL,
    sha256         TEXT NOT NULL,
    size_bytes     INTEGER NOT NULL,
    status         TEXT NOT NULL DEFAULT 'uploaded'
                   CHECK (status IN ('uploaded', 'staged', 'testing', 'verified',
                                     'approved', 'rejected', 'revoked')),
    uploaded_by    INTEGER,
    approved_by    INTEGER,
    approved_at    TIMESTAMP,
    notes          TEXT,
    created_at     TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (hardware_model, version),
    FOREIGN KEY (uploaded_by) REFERENCES users(id) ON DELETE SET NULL,
    FOREIGN KEY (approved_by) REFERENCES users(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_firmware_model_status ON firmware(hardware_model, status);

CREATE TABLE IF NOT EXISTS verification_checks (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    firmware_id TEXT NOT NULL,
    check_name  TEXT NOT NULL,
    passed      BOOLEAN NOT NULL,
    detail      TEXT,
    created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (firmware_id) REFERENCES firmware(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_checks_firmware ON verification_checks(firmware_id);

-- ───────── Rollouts ─────────

CREATE TABLE IF NOT EXISTS rollouts (
    id                TEXT PRIMARY KEY,
    firmware_id       TEXT NOT NULL,
    kind              TEXT NOT NULL DEFAULT 'release'
                      CHECK (kind IN ('verification', 'release', 'manual')),
    status            TEXT NOT NULL DEFAULT 'running'
                      CHECK (status IN ('pending', 'running', 'paused', 'halted',
                                        'completed', 'failed', 'cancelled')),
    canary_percent    REAL DEFAULT 10,
    max_in_flight     INTEGER DEFAULT 10,
    failure_threshold REAL DEFAULT 0.2,
    allow_downgrade   BOOLEAN DEFAULT FALSE,
    current_wave      INTEGER DEFAULT 0,
    wave_count        INTEGER DEFAULT 1,
    created_by        INTEGER,
    created_at        TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    finished_at       TIMESTAMP,
    FOREIGN KEY (firmware_id) REFERENCES firmware(id) ON DELETE CASCADE,
    FOREIGN KEY (created_by) REFERENCES users(id) ON DELETE SET NULL
);
CREATE INDEX IF NOT EXISTS idx_rollouts_status ON rollouts(status);

CREATE TABLE IF NOT EXISTS rollout_targets (
    rollout_id      TEXT NOT NULL,
    device_id       TEXT NOT NULL,
    wave            INTEGER NOT NULL DEFAULT 0,
    state           TEXT NOT NULL DEFAULT 'pending'
                    CHECK (state IN ('pending', 'notified', 'downloading', 'installing',
                                     'succeeded', 'failed', 'rolled_back', 'cancelled')),
    attempts        INTEGER DEFAULT 0,
    next_attempt_at REAL DEFAULT 0,
    deadline_at     REAL,
    detail          TEXT,
    updated_at      TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (rollout_id, device_id),
    FOREIGN KEY (rollout_id) REFERENCES rollouts(id) ON DELETE CASCADE,
    FOREIGN KEY (device_id) REFERENCES devices(id) ON DELETE CASCADE
);
CREATE INDEX IF NOT EXISTS idx_targets_device ON rollout_targets(device_id, state);
"""


def _create_schema(conn: sqlite3.Connection) -> None:
    """Execute all CREATE TABLE / INDEX statements in one transaction."""
    conn.executescript(_SCHEMA_SQL)
