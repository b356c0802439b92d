"""Process-wide service instances.

The HTTP routers, the device channel and the server lifespan share one
registry, repository, pipeline and dispatcher.  They are created lazily on
first use; :func:`reset_services` drops them (tests, or after
``set_db_path``).
"""

from __future__ import annotations

import logging

from otahub.devices.registry import DeviceRegistry
from otahub.firmware.pipeline import VerificationPipeline
from otahub.firmware.repository import FirmwareRepository
from otahub.rollout.dispatcher import RolloutDispatcher

logger = logging.getLogger(__name__)

_registry: DeviceRegistry | None = None
_repository: FirmwareRepository | None = None
_pipeline: VerificationPipeline | None = None
_dispatcher: RolloutDispatcher | None = None


def get_registry() -> DeviceRegistry:
    global _registry
    if _registry is None:
        _registry = DeviceRegistry()
    return _registry


def get_repository() -> FirmwareRepository:
    global _repository
    if _repository is None:
        _repository = FirmwareRepository()
    return _repository


def get_pipeline() -> VerificationPipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = VerificationPipeline(get_repository(), get_registry())
    return _pipeline


def get_dispatcher() -> RolloutDispatcher:
    """The dispatcher, wired to push over the device channel."""
    global _dispatcher
    if _dispatcher is None:
        from otahub.devices.channel import send_to_device

        _dispatcher = RolloutDispatcher(
            get_repository(), get_registry(), notifier=send_to_device,
        )
        _dispatcher.on_finished(get_pipeline().on_rollout_finished)
        logger.debug("Rollout dispatcher created")
    return _dispatcher


def reset_services() -> None:
    global _registry, _repository, _pipeline, _dispatcher
    _registry = _repository = _pipeline = _dispatcher = None
