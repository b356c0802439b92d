"""OTA Hub server.

Exposes:
  /auth, /devices, /firmware, /rollouts     user and admin HTTP API
  /device-api                               device HTTP API (X-Device-Token)
  /ws/device                                device WebSocket channel
  GET /health                               liveness check

Start with::

    python -m otahub.server
    # or
    uvicorn otahub.server:app --host 0.0.0.0 --port 8600
"""

from __future__ import annotations

import argparse
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from otahub import __version__, services
from otahub.api import auth_router, devices_router, firmware_router, rollouts_router
from otahub.auth import seed_admin
from otahub.db import get_db, init_db
from otahub.device_api import router as device_api_router
from otahub.devices.channel import device_ws_handler, get_connected_devices

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    seed_admin(get_db())
    dispatcher = services.get_dispatcher()
    await dispatcher.start()
    try:
        yield
    finally:
        await dispatcher.stop()


# ──────────────────────────────────────────────────────────────────
# FastAPI app
# ──────────────────────────────────────────────────────────────────

app = FastAPI(title="OTA Hub", version=__version__, lifespan=lifespan)

app.include_router(auth_router)
app.include_router(devices_router)
app.include_router(firmware_router)
app.include_router(rollouts_router)
app.include_router(device_api_router)
app.add_api_websocket_route("/ws/device", device_ws_handler)


@app.get("/health")
async def health():
    dispatcher = services.get_dispatcher()
    return {
        "status": "ok",
        "version": __version__,
        "dispatcher_running": dispatcher.running,
        "connected_devices": len(get_connected_devices()),
    }


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn

    parser = argparse.ArgumentParser(description="OTA Hub server")
    parser.add_argument("--host", default=os.environ.get("OTAHUB_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("OTAHUB_PORT", "8600")))
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format=LOG_FORMAT,
    )
    logger.info("Starting OTA Hub server on %s:%d", args.host, args.port)
    uvicorn.run("otahub.server:app", host=args.host, port=args.port, reload=False)


if __name__ == "__main__":
    main()
