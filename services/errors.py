"""Typed service-layer errors mapped to HTTP status codes."""

from __future__ import annotations

from typing import Optional


class DesklyError(Exception):
    """Base error raised by the service layer."""

    status_code = 500

    def __init__(self, message: str, meta: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.meta = meta


class ValidationError(DesklyError):
    status_code = 400


class ForbiddenError(DesklyError):
    status_code = 403


class NotFoundError(DesklyError):
    status_code = 404


class ConflictError(DesklyError):
    status_code = 409


class ProviderError(DesklyError):
    """The billing provider or media store rejected a call."""

    status_code = 502
