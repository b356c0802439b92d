"""Tests for accounts, JWTs and device tokens."""

from __future__ import annotations

import time

import jwt
import pytest
from fastapi import HTTPException

from otahub import auth
from otahub.auth import (
    ADMIN_EMAIL,
    ADMIN_PASSWORD,
    authenticate,
    create_token,
    create_user,
    decode_token,
    hash_password,
    issue_device_token,
    lookup_device,
    seed_admin,
    verify_password,
)
from otahub.errors import ConflictError, ValidationError


class TestPasswordHashing:
    def test_hash_and_verify(self):
        h = hash_password("secret123")
        assert verify_password("secret123", h)

    def test_wrong_password(self):
        h = hash_password("secret123")
        assert not verify_password("wrong", h)


class TestJWT:
    def test_create_and_decode(self):
        token = create_token(1, "ops@example.com", "admin")
        payload = decode_token(token)
        assert payload["sub"] == "1"
        assert payload["email"] == "ops@example.com"
        assert payload["role"] == "admin"
        assert payload["exp"] > payload["iat"]

    def test_invalid_token(self):
        with pytest.raises(HTTPException) as exc:
            decode_token("garbage.token.here")
        assert exc.value.status_code == 401

    def test_expired_token(self):
        token = jwt.encode(
            {"sub": "1", "exp": int(time.time()) - 10},
            auth.JWT_SECRET,
            algorithm=auth.JWT_ALGORITHM,
        )
        with pytest.raises(HTTPException) as exc:
            decode_token(token)
        assert exc.value.detail == "Token expired"


class TestSeedAdmin:
    def test_seeds_default_admin(self, db):
        row = db.execute("SELECT * FROM users WHERE role = 'admin'").fetchone()
        assert row["email"] == ADMIN_EMAIL
        assert verify_password(ADMIN_PASSWORD, row["password_hash"])

    def test_does_not_duplicate(self, db):
        seed_admin(db)
        seed_admin(db)
        count = db.execute("SELECT COUNT(*) FROM users WHERE role = 'admin'").fetchone()[0]
        assert count == 1


class TestUsers:
    def test_create_user_normalises_email(self, db):
        user = create_user(db, "  Bob@Example.COM ", "long-enough")
        assert user["email"] == "bob@example.com"
        assert user["role"] == "user"
        assert "password_hash" not in user

    def test_duplicate_email(self, db):
        create_user(db, "bob@example.com", "long-enough")
        with pytest.raises(ConflictError):
            create_user(db, "BOB@example.com", "long-enough")

    def test_short_password(self, db):
        with pytest.raises(ValidationError):
            create_user(db, "bob@example.com", "short")

    def test_bad_email(self, db):
        with pytest.raises(ValidationError):
            create_user(db, "not-an-email", "long-enough")

    def test_authenticate(self, db, user):
        result = authenticate(db, "ALICE@example.com", "alice-password")
        assert result == {"id": user["id"], "email": "alice@example.com", "role": "user"}
        row = db.execute("SELECT last_login FROM users WHERE id = ?", (user["id"],)).fetchone()
        assert row["last_login"] is not None

    def test_authenticate_wrong_password(self, db, user):
        assert authenticate(db, "alice@example.com", "wrong") is None

    def test_authenticate_inactive(self, db, user):
        db.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user["id"],))
        db.commit()
        assert authenticate(db, "alice@example.com", "alice-password") is None


class TestDeviceTokens:
    def test_issue_stores_only_digest(self):
        token, digest = issue_device_token()
        assert token != digest
        assert len(digest) == 64

    def test_lookup(self, db, make_device):
        device, token = make_device(1)
        found = lookup_device(db, token)
        assert found["id"] == device["id"]
        assert lookup_device(db, "nope") is None
        assert lookup_device(db, "") is None
