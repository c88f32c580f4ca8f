from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    - service_unavailable (503)
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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Request conflicts with the current state (409)."""
    status_code = 409
    error_code = "conflict"


class ExchangeInProgressError(ConflictError):
    """A second identity exchange was submitted while one is pending."""


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationError(ServerError):
    """Identity provider settings are missing or malformed.

    Operators, not end users, have to act on this; the message lists the
    offending settings and is logged, while clients only see that the
    service is misconfigured.
    """

    def __init__(self, problems: list[str]) -> None:
        super().__init__(
            "identity provider is not configured: " + "; ".join(problems),
            detail={"kind": "configuration", "problems": list(problems)},
        )
        self.problems = list(problems)


class ServiceUnavailableError(ServiceError):
    """Upstream identity provider unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "ExchangeInProgressError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationError",
    "ServiceUnavailableError",
]
