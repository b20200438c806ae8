from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """A taskman failure that the API renders as an error envelope.

    Subclasses pin the HTTP status and the ``error.code`` string clients
    switch on. ``message`` becomes ``error.message`` and ``detail``, when
    non-empty, becomes ``error.details`` (for example the gate's
    ``{"reason": "token_revoked"}``).
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """A task field failed a check the request schema could not express."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Wrong credentials at login, or the gate refused the bearer token."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """No such task for this user, or the token's user has been deleted."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Signup with an email that already has an account."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """A store, revocation backend or hasher failed; the cause is only logged."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
