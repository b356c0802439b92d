"""Exceptions raised by OTA Hub services.

Routers translate these into HTTP status codes (see :func:`http_error`).
"""

from __future__ import annotations

from fastapi import HTTPException, status


class OtaHubError(Exception):
    """Base exception for OTA Hub."""


class NotFoundError(OtaHubError, LookupError):
    """A referenced user, device, firmware build or rollout does not exist."""


class ConflictError(OtaHubError):
    """The operation collides with existing state (duplicate, ownership)."""


class InvalidStateError(OtaHubError):
    """The entity's lifecycle state does not allow the requested transition."""


class ValidationError(OtaHubError, ValueError):
    """Input failed validation."""


_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ConflictError: status.HTTP_409_CONFLICT,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ValidationError: status.HTTP_400_BAD_REQUEST,
}


def http_error(exc: OtaHubError) -> HTTPException:
    """Map a service exception onto an :class:`HTTPException`."""
    for cls, code in _STATUS.items():
        if isinstance(exc, cls):
            return HTTPException(status_code=code, detail=str(exc))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
