# tripod/admin/errors.py
"""
Typed errors raised by the application services.

Each error carries the HTTP status code the transport layer answers with;
route handlers map them without embedding business rules.
"""
from __future__ import annotations


class AdminError(Exception):
    """Base class for application errors."""

    status_code: int = 500

    def __init__(self, detail: str = "Internal error"):
        self.detail = detail
        super().__init__(detail)


class ValidationError(AdminError):
    """Invalid request or a business rule rejected it (400)."""

    status_code = 400


class NotFoundError(AdminError):
    """Resource not found (404)."""

    status_code = 404


class ConflictError(AdminError):
    """Duplicate or conflicting resource (409)."""

    status_code = 409
