"""pytest configuration for OTA Hub tests."""

from __future__ import annotations

import io

import pytest

from otahub import services
from otahub.auth import create_token, create_user, seed_admin
from otahub.db import get_db, init_db, set_db_path
from otahub.devices import channel


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


@pytest.fixture(autouse=True)
def _temp_db(tmp_path, monkeypatch):
    """Fresh database, firmware storage and service instances per test."""
    monkeypatch.setenv("OTAHUB_DATA_DIR", str(tmp_path / "data"))
    set_db_path(tmp_path / "test.db")
    init_db()
    seed_admin(get_db())
    services.reset_services()
    channel._connected_devices.clear()
    yield
    services.reset_services()
    channel._connected_devices.clear()


@pytest.fixture()
def db():
    return get_db()


@pytest.fixture()
def admin(db):
    row = db.execute("SELECT id, email FROM users WHERE role = 'admin'").fetchone()
    return {"id": row["id"], "email": row["email"]}


@pytest.fixture()
def user(db):
    return create_user(db, "alice@example.com", "alice-password")


@pytest.fixture()
def admin_header(admin):
    return {"Authorization": f"Bearer {create_token(admin['id'], admin['email'], 'admin')}"}


@pytest.fixture()
def user_header(user):
    return {"Authorization": f"Bearer {create_token(user['id'], user['email'], 'user')}"}


@pytest.fixture()
def registry():
    return services.get_registry()


@pytest.fixture()
def repository():
    return services.get_repository()


@pytest.fixture()
def make_device(registry, admin):
    """Factory: register device number *n*, returns ``(device, token)``."""

    def _make(n, model="esp32-s3", version="1.0.0", test_target=False, owner_id=None):
        return registry.register(
            owner_id if owner_id is not None else admin["id"],
            f"node-{n}",
            f"aa:bb:cc:00:00:{n:02x}",
            model,
            firmware_version=version,
            is_test_target=test_target,
        )

    return _make


@pytest.fixture()
def upload(repository):
    """Factory: store a firmware build and return its record."""

    def _upload(version="1.1.0", model="esp32-s3", payload=b"\x7fELF firmware image"):
        return repository.add(version, model, io.BytesIO(payload), description="test build")

    return _upload


@pytest.fixture()
def approved(upload, repository):
    """Factory: a build forced straight to ``approved``."""

    def _approved(version="1.1.0", model="esp32-s3", payload=b"\x7fELF firmware image"):
        fw = upload(version, model, payload)
        return repository.set_status(fw["id"], "approved")

    return _approved
