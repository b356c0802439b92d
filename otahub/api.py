"""HTTP API for OTA Hub.

Routers for user accounts, devices, firmware builds and rollouts.  Users
authenticate with a bearer JWT (see :mod:`otahub.auth`); admin-only
endpoints use :func:`require_admin`.  Device-facing endpoints live in
:mod:`otahub.device_api`.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel, Field

from otahub import services
from otahub.auth import (
    authenticate,
    create_token,
    create_user,
    get_user,
    hash_password,
    is_admin,
    require_admin,
    require_user,
    seed_admin,
    verify_password,
    MIN_PASSWORD_LENGTH,
)
from otahub.db import get_db, init_db
from otahub.devices import channel
from otahub.errors import NotFoundError, OtaHubError, http_error

auth_router = APIRouter(prefix="/auth", tags=["auth"])
devices_router = APIRouter(prefix="/devices", tags=["devices"])
firmware_router = APIRouter(prefix="/firmware", tags=["firmware"])
rollouts_router = APIRouter(prefix="/rollouts", tags=["rollouts"])


# ── Helpers ───────────────────────────────────────────────────────

def _db() -> sqlite3.Connection:
    init_db()
    conn = get_db()
    seed_admin(conn)
    return conn


@contextmanager
def _translate() -> Iterator[None]:
    """Re-raise service errors as HTTP errors."""
    try:
        yield
    except OtaHubError as e:
        raise http_error(e) from e


def _user_id(user: dict) -> int:
    return int(user["sub"])


def _owned_device(device_id: str, user: dict) -> dict:
    """Load a device the caller may see.  Other users' devices are 404."""
    device = services.get_registry().get(device_id)
    if device is None or (not is_admin(user) and device["owner_id"] != _user_id(user)):
        raise HTTPException(status_code=404, detail="Device not found")
    return device


# ══════════════════════════════════════════════════════════════════
# AUTH
# ══════════════════════════════════════════════════════════════════

class SignupRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str


@auth_router.post("/signup", status_code=201)
async def signup(req: SignupRequest):
    conn = _db()
    with _translate():
        user = create_user(conn, req.email, req.password)
    return {"token": create_token(user["id"], user["email"], user["role"]), "user": user}


@auth_router.post("/login")
async def login(req: LoginRequest):
    conn = _db()
    user = authenticate(conn, req.email, req.password)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"token": create_token(user["id"], user["email"], user["role"]), "user": user}


@auth_router.get("/me")
async def me(user: dict = Depends(require_user)):
    account = get_user(_db(), user["sub"])
    if account is None:
        raise HTTPException(status_code=404, detail="User not found")
    return account


@auth_router.post("/change-password")
async def change_password(req: ChangePasswordRequest, user: dict = Depends(require_user)):
    conn = _db()
    row = conn.execute(
        "SELECT password_hash FROM users WHERE id = ?", (_user_id(user),)
    ).fetchone()
    if not row or not verify_password(req.current_password, row["password_hash"]):
        raise HTTPException(status_code=400, detail="Current password is incorrect")
    if len(req.new_password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
        )
    conn.execute(
        "UPDATE users SET password_hash = ? WHERE id = ?",
        (hash_password(req.new_password), _user_id(user)),
    )
    conn.commit()
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# DEVICES
# ══════════════════════════════════════════════════════════════════

class DeviceRegisterRequest(BaseModel):
    display_name: str
    hardware_address: str
    hardware_model: str
    firmware_version: str = "0.0.0"
    is_test_target: bool = False
    owner_id: int | None = None


class DeviceUpdateRequest(BaseModel):
    display_name: str | None = None
    is_test_target: bool | None = None


class UpdateTriggerRequest(BaseModel):
    firmware_id: str | None = None
    allow_downgrade: bool = False


class CommandRequest(BaseModel):
    action: str
    params: dict = Field(default_factory=dict)


@devices_router.post("", status_code=201)
async def register_device(req: DeviceRegisterRequest, user: dict = Depends(require_user)):
    _db()
    admin = is_admin(user)
    if (req.is_test_target or req.owner_id is not None) and not admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    owner_id = req.owner_id if req.owner_id is not None else _user_id(user)
    with _translate():
        device, token = services.get_registry().register(
            owner_id,
            req.display_name,
            req.hardware_address,
            req.hardware_model,
            firmware_version=req.firmware_version,
            is_test_target=req.is_test_target,
        )
    return {"device": device, "device_token": token}


@devices_router.get("")
async def list_devices(
    status: str | None = None,
    hardware_model: str | None = None,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=200),
    user: dict = Depends(require_user),
):
    _db()
    owner = None if is_admin(user) else _user_id(user)
    devices, total = services.get_registry().list_devices(
        owner_id=owner,
        status=status,
        hardware_model=hardware_model,
        limit=per_page,
        offset=(page - 1) * per_page,
    )
    connected = channel.get_connected_devices()
    for d in devices:
        d["connected"] = d["id"] in connected
    return {"devices": devices, "total": total, "page": page, "per_page": per_page}


@devices_router.get("/{device_id}")
async def get_device(device_id: str, user: dict = Depends(require_user)):
    _db()
    device = _owned_device(device_id, user)
    device["connected"] = channel.get_connection(device_id) is not None
    return device


@devices_router.patch("/{device_id}")
async def update_device(
    device_id: str, req: DeviceUpdateRequest, user: dict = Depends(require_user),
):
    _db()
    _owned_device(device_id, user)
    registry = services.get_registry()
    with _translate():
        if req.is_test_target is not None:
            if not is_admin(user):
                raise HTTPException(status_code=403, detail="Admin role required")
            registry.set_test_target(device_id, req.is_test_target)
        if req.display_name is not None:
            registry.rename(device_id, req.display_name)
    return registry.get(device_id)


@devices_router.delete("/{device_id}")
async def delete_device(device_id: str, user: dict = Depends(require_user)):
    _db()
    _owned_device(device_id, user)
    services.get_registry().remove(device_id)
    return {"ok": True}


@devices_router.post("/{device_id}/token")
async def rotate_device_token(device_id: str, user: dict = Depends(require_user)):
    _db()
    _owned_device(device_id, user)
    token = services.get_registry().rotate_token(device_id)
    return {"device_id": device_id, "device_token": token}


@devices_router.get("/{device_id}/events")
async def device_events(
    device_id: str,
    limit: int = Query(50, ge=1, le=500),
    user: dict = Depends(require_user),
):
    _db()
    _owned_device(device_id, user)
    return {"events": services.get_registry().events(device_id, limit=limit)}


@devices_router.post("/{device_id}/update", status_code=201)
async def trigger_update(
    device_id: str, req: UpdateTriggerRequest, user: dict = Depends(require_user),
):
    """Manual OTA trigger for one device."""
    _db()
    _owned_device(device_id, user)
    if req.allow_downgrade and not is_admin(user):
        raise HTTPException(status_code=403, detail="Downgrades require the admin role")
    if req.firmware_id is not None:
        fw = services.get_repository().get(req.firmware_id)
        if fw is None or fw["status"] != "approved":
            raise HTTPException(status_code=404, detail="Firmware not found")
    with _translate():
        rollout = await services.get_dispatcher().trigger_device_update(
            device_id,
            firmware_id=req.firmware_id,
            allow_downgrade=req.allow_downgrade,
            created_by=_user_id(user),
        )
    return rollout


@devices_router.post("/{device_id}/command")
async def device_command(
    device_id: str, req: CommandRequest, _: dict = Depends(require_admin),
):
    _db()
    with _translate():
        services.get_registry().require(device_id)
    try:
        delivered = await channel.send_command(device_id, req.action, req.params)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if not delivered:
        raise HTTPException(status_code=409, detail="Device is not connected")
    return {"ok": True}


# ══════════════════════════════════════════════════════════════════
# FIRMWARE
# ══════════════════════════════════════════════════════════════════

class ReasonRequest(BaseModel):
    reason: str = ""


@firmware_router.post("", status_code=201)
async def upload_firmware(
    version: str = Form(...),
    hardware_model: str = Form(...),
    description: str = Form(""),
    file: UploadFile = File(...),
    admin: dict = Depends(require_admin),
):
    _db()
    with _translate():
        fw = services.get_repository().add(
            version, hardware_model, file.file,
            description=description, uploaded_by=_user_id(admin),
        )
    return fw


@firmware_router.get("")
async def list_firmware(
    hardware_model: str | None = None,
    status: str | None = None,
    user: dict = Depends(require_user),
):
    _db()
    builds = services.get_repository().list_firmware(
        hardware_model=hardware_model,
        status=status,
        visible_only=not is_admin(user),
    )
    return {"firmware": builds}


@firmware_router.get("/{firmware_id}")
async def get_firmware(firmware_id: str, user: dict = Depends(require_user)):
    _db()
    fw = services.get_repository().get(firmware_id)
    if fw is None or (not is_admin(user) and fw["status"] != "approved"):
        raise HTTPException(status_code=404, detail="Firmware not found")
    return fw


@firmware_router.get("/{firmware_id}/artifact")
async def download_firmware(firmware_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        path = services.get_repository().open_artifact(firmware_id)
    return FileResponse(path, media_type="application/octet-stream",
                        filename=f"{firmware_id}.bin")


@firmware_router.delete("/{firmware_id}")
async def delete_firmware(firmware_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        services.get_repository().delete(firmware_id)
    return {"ok": True}


@firmware_router.get("/{firmware_id}/checks")
async def firmware_checks(firmware_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        return {"checks": services.get_pipeline().checks(firmware_id)}


@firmware_router.post("/{firmware_id}/stage")
async def stage_firmware(firmware_id: str, _: dict = Depends(require_admin)):
    _db()
    pipeline = services.get_pipeline()
    with _translate():
        fw = pipeline.stage(firmware_id)
        return {"firmware": fw, "checks": pipeline.checks(firmware_id)}


@firmware_router.post("/{firmware_id}/test")
async def test_firmware(firmware_id: str, admin: dict = Depends(require_admin)):
    _db()
    dispatcher = services.get_dispatcher()
    with _translate():
        rollout = services.get_pipeline().start_testing(
            firmware_id, dispatcher, created_by=_user_id(admin),
        )
    await dispatcher.tick()
    return {
        "firmware": services.get_repository().get(firmware_id),
        "rollout": dispatcher.get_rollout(rollout["id"]),
    }


@firmware_router.post("/{firmware_id}/approve")
async def approve_firmware(firmware_id: str, admin: dict = Depends(require_admin)):
    _db()
    with _translate():
        return services.get_pipeline().approve(firmware_id, _user_id(admin))


@firmware_router.post("/{firmware_id}/reject")
async def reject_firmware(
    firmware_id: str, req: ReasonRequest, _: dict = Depends(require_admin),
):
    _db()
    with _translate():
        return services.get_pipeline().reject(
            firmware_id, req.reason, dispatcher=services.get_dispatcher(),
        )


@firmware_router.post("/{firmware_id}/revoke")
async def revoke_firmware(
    firmware_id: str, req: ReasonRequest, _: dict = Depends(require_admin),
):
    _db()
    with _translate():
        return services.get_pipeline().revoke(
            firmware_id, req.reason, dispatcher=services.get_dispatcher(),
        )


# ══════════════════════════════════════════════════════════════════
# ROLLOUTS
# ══════════════════════════════════════════════════════════════════

class RolloutCreateRequest(BaseModel):
    firmware_id: str
    device_ids: list[str] | None = None
    canary_percent: float = Field(10.0, gt=0, le=100)
    max_in_flight: int = Field(10, ge=1)
    failure_threshold: float = Field(0.2, ge=0, le=1)


@rollouts_router.post("", status_code=201)
async def create_rollout(req: RolloutCreateRequest, admin: dict = Depends(require_admin)):
    _db()
    dispatcher = services.get_dispatcher()
    with _translate():
        rollout = dispatcher.create_rollout(
            req.firmware_id,
            created_by=_user_id(admin),
            device_ids=req.device_ids,
            canary_percent=req.canary_percent,
            max_in_flight=req.max_in_flight,
            failure_threshold=req.failure_threshold,
        )
    await dispatcher.tick()
    return dispatcher.get_rollout(rollout["id"])


@rollouts_router.get("")
async def list_rollouts(
    firmware_id: str | None = None,
    status: str | None = None,
    _: dict = Depends(require_admin),
):
    _db()
    return {"rollouts": services.get_dispatcher().list_rollouts(
        firmware_id=firmware_id, status=status,
    )}


@rollouts_router.get("/{rollout_id}")
async def get_rollout(rollout_id: str, _: dict = Depends(require_admin)):
    _db()
    dispatcher = services.get_dispatcher()
    rollout = dispatcher.get_rollout(rollout_id)
    if rollout is None:
        raise http_error(NotFoundError(f"Rollout not found: {rollout_id}"))
    rollout["targets"] = dispatcher.targets(rollout_id)
    return rollout


@rollouts_router.post("/{rollout_id}/pause")
async def pause_rollout(rollout_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        return services.get_dispatcher().pause(rollout_id)


@rollouts_router.post("/{rollout_id}/resume")
async def resume_rollout(rollout_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        return services.get_dispatcher().resume(rollout_id)


@rollouts_router.post("/{rollout_id}/cancel")
async def cancel_rollout(rollout_id: str, _: dict = Depends(require_admin)):
    _db()
    with _translate():
        return services.get_dispatcher().cancel(rollout_id)
