"""Device-facing HTTP API.

Used by agents that are not (or not yet) connected to the WebSocket
channel.  Every endpoint authenticates with the ``X-Device-Token`` header.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse
from pydantic import BaseModel

from otahub import services
from otahub.api import _db, _translate
from otahub.auth import require_device

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/device-api", tags=["device-api"])


class StatusReport(BaseModel):
    rollout_id: str | None = None
    state: str
    detail: str = ""
    version: str | None = None


class Heartbeat(BaseModel):
    uptime: int | None = None
    rssi: int | None = None
    firmware_version: str | None = None


@router.get("/update")
async def poll_update(device: dict = Depends(require_device)):
    """Return the device's open update transaction, if any."""
    _db()
    registry = services.get_registry()
    registry.touch(device["id"])
    offer = services.get_dispatcher().pending_offer(device["id"])

    latest = services.get_repository().latest_approved(device["hardware_model"])
    return {
        "update": offer,
        "latest": {"firmware_id": latest["id"], "version": latest["version"]} if latest else None,
    }


@router.post("/status")
async def report_status(req: StatusReport, device: dict = Depends(require_device)):
    _db()
    with _translate():
        target = services.get_dispatcher().report(
            device["id"], req.rollout_id, req.state,
            detail=req.detail, version=req.version,
        )
    return {"accepted": target is not None, "target": target}


@router.post("/heartbeat")
async def heartbeat(req: Heartbeat, device: dict = Depends(require_device)):
    _db()
    with _translate():
        services.get_registry().touch(
            device["id"],
            uptime_seconds=req.uptime,
            rssi=req.rssi,
            firmware_version=req.firmware_version,
        )
    return {"ok": True}


@router.get("/firmware/{firmware_id}")
async def download_firmware(firmware_id: str, device: dict = Depends(require_device)):
    """Artifact download for builds that are approved or targeted at the caller."""
    _db()
    repository = services.get_repository()
    fw = repository.get(firmware_id)
    allowed = fw is not None and fw["hardware_model"] == device["hardware_model"] and (
        fw["status"] == "approved"
        or services.get_dispatcher().is_targeted(device["id"], firmware_id)
    )
    if not allowed:
        logger.info("Device %s denied download of %s", device["id"], firmware_id)
        raise HTTPException(status_code=404, detail="Firmware not found")
    with _translate():
        path = repository.open_artifact(firmware_id)
    return FileResponse(path, media_type="application/octet-stream",
                        filename=f"{firmware_id}.bin")
