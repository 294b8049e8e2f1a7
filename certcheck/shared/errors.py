"""Error kinds shared by the services, routes and CLI."""

from __future__ import annotations


class CertcheckError(Exception):
    """Base class for failures surfaced to organizers."""

    status_code = 500


class ValidationError(CertcheckError, ValueError):
    """Raised when input parameters fail validation."""

    status_code = 400


class TransientStorageError(CertcheckError):
    """Raised when an object store write fails and may succeed later."""

    status_code = 503


class NotFoundError(CertcheckError, LookupError):
    """Raised when a record, badge or resource cannot be resolved."""

    status_code = 404


class AuthError(CertcheckError, PermissionError):
    """Raised when no acting organizer is available."""

    status_code = 401


class DecodeError(CertcheckError):
    """Raised when an image carries no readable QR code."""

    status_code = 422
