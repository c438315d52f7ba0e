from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """An error the API renders as the standard error envelope.

    ``status_code`` and ``error_code`` are class defaults that a caller may
    override per instance; ``detail`` ends up in ``error.details``.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code


class AuthenticationError(ServiceError):
    """No authenticated session on a route that needs one."""

    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated, but lacking the role the route requires."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class UnprocessableError(ServiceError):
    """Well-formed input that fails a business rule, e.g. a weak password."""

    status_code = 422
    error_code = "unprocessable"


class TokenError(Exception):
    """Base class for access-token codec failures."""


class EncodeError(TokenError):
    """The signing configuration or the session cannot produce a token."""


class DecodeError(TokenError):
    """A token failed verification.

    Raised with the same message whatever the cause (bad signature, expiry,
    wrong issuer, malformed input) so callers cannot tell them apart.
    """

    def __init__(self, message: str = "invalid token") -> None:
        super().__init__(message)


class SessionLifecycleError(Exception):
    """Raised by session refresh; never rendered verbatim to clients."""


class TokenRevokedError(SessionLifecycleError):
    """The session was revoked."""


class TokenExpiredError(SessionLifecycleError):
    """The session's refresh token is past its expiry."""


class RefreshConflictError(SessionLifecycleError):
    """The refresh token was rotated by a concurrent request."""


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "UnprocessableError",
    "TokenError",
    "EncodeError",
    "DecodeError",
    "SessionLifecycleError",
    "TokenRevokedError",
    "TokenExpiredError",
    "RefreshConflictError",
]
