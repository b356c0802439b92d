"""Authentication for OTA Hub.

User accounts authenticate with email + password (bcrypt) and receive a JWT.
On first run a default admin account is seeded from ``OTAHUB_ADMIN_EMAIL`` /
``OTAHUB_ADMIN_PASSWORD`` (default ``admin@localhost`` / ``otahub-admin``).
Change it immediately.

Devices never hold a JWT.  Registration issues an opaque device token which
is stored only as a SHA-256 digest and presented in the ``X-Device-Token``
header (HTTP) or the ``HELLO`` message (WebSocket).
"""

from __future__ import annotations

import hashlib
import os
import re
import secrets
import sqlite3
import time
from datetime import datetime, timezone

import bcrypt
import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from otahub.db import get_db
from otahub.errors import ConflictError, ValidationError

# ── Configuration ─────────────────────────────────────────────────
JWT_SECRET = os.environ.get("OTAHUB_JWT_SECRET", "otahub-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_SECONDS = int(os.environ.get("OTAHUB_JWT_EXPIRY", "86400"))  # 24h

ADMIN_EMAIL = os.environ.get("OTAHUB_ADMIN_EMAIL", "admin@localhost")
ADMIN_PASSWORD = os.environ.get("OTAHUB_ADMIN_PASSWORD", "otahub-admin")

MIN_PASSWORD_LENGTH = 8
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")

_bearer = HTTPBearer(auto_error=False)
_device_header = APIKeyHeader(name="X-Device-Token", auto_error=False)


# ── Password helpers ──────────────────────────────────────────────

def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def verify_password(password: str, hashed: str) -> bool:
    return bcrypt.checkpw(password.encode(), hashed.encode())


# ── JWT helpers ───────────────────────────────────────────────────

def create_token(user_id: int, email: str, role: str = "user") -> str:
    payload = {
        "sub": str(user_id),
        "email": email,
        "role": role,
        "iat": int(time.time()),
        "exp": int(time.time()) + JWT_EXPIRY_SECONDS,
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


# ── Device tokens ─────────────────────────────────────────────────

def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def issue_device_token() -> tuple[str, str]:
    """Return ``(plaintext_token, sha256_hex)``.  Only the digest is stored."""
    token = secrets.token_urlsafe(32)
    return token, hash_device_token(token)


def lookup_device(conn: sqlite3.Connection, token: str) -> dict | None:
    """Resolve a plaintext device token to its device row."""
    if not token:
        return None
    row = conn.execute(
        "SELECT * FROM devices WHERE token_hash = ?", (hash_device_token(token),)
    ).fetchone()
    return dict(row) if row else None


# ── FastAPI dependencies ──────────────────────────────────────────

async def require_user(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> dict:
    """Dependency that ensures the caller has a valid user JWT."""
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return decode_token(creds.credentials)


async def require_admin(user: dict = Depends(require_user)) -> dict:
    """Dependency that additionally requires the ``admin`` role."""
    if user.get("role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user


async def require_device(token: str | None = Depends(_device_header)) -> dict:
    """Dependency resolving ``X-Device-Token`` to the calling device."""
    device = lookup_device(get_db(), token or "")
    if device is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid device token")
    return device


def is_admin(user: dict) -> bool:
    return user.get("role") == "admin"


# ── Database helpers ──────────────────────────────────────────────

def seed_admin(conn: sqlite3.Connection) -> None:
    """Create the default admin user if no admin exists yet."""
    row = conn.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'").fetchone()
    if row[0] == 0:
        conn.execute(
            "INSERT OR IGNORE INTO users (email, password_hash, role) VALUES (?, ?, 'admin')",
            (ADMIN_EMAIL.lower(), hash_password(ADMIN_PASSWORD)),
        )
        conn.commit()


def create_user(
    conn: sqlite3.Connection,
    email: str,
    password: str,
    role: str = "user",
) -> dict:
    """Create an account and return it (without the password hash)."""
    email = email.strip().lower()
    if not _EMAIL_RE.match(email):
        raise ValidationError("Invalid email address")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if role not in ("admin", "user"):
        raise ValidationError(f"Unknown role: {role}")
    try:
        cur = conn.execute(
            "INSERT INTO users (email, password_hash, role) VALUES (?, ?, ?)",
            (email, hash_password(password), role),
        )
        conn.commit()
    except sqlite3.IntegrityError:
        raise ConflictError("Email already registered")
    return get_user(conn, cur.lastrowid)


def get_user(conn: sqlite3.Connection, user_id: int | str) -> dict | None:
    row = conn.execute(
        "SELECT id, email, role, is_active, created_at, last_login FROM users WHERE id = ?",
        (int(user_id),),
    ).fetchone()
    return dict(row) if row else None


def authenticate(conn: sqlite3.Connection, email: str, password: str) -> dict | None:
    """Validate credentials and return user dict, or *None* on failure."""
    row = conn.execute(
        "SELECT id, email, role, password_hash, is_active FROM users WHERE email = ?",
        (email.strip().lower(),),
    ).fetchone()
    if row is None:
        return None
    if not row["is_active"]:
        return None
    if not verify_password(password, row["password_hash"]):
        return None
    # Touch last_login
    conn.execute(
        "UPDATE users SET last_login = ? WHERE id = ?",
        (datetime.now(timezone.utc).isoformat(), row["id"]),
    )
    conn.commit()
    return {"id": row["id"], "email": row["email"], "role": row["role"]}
