"""
Domain error families shared by every app.

    BaseApplicationError
    ├── ValidationError        400  request rejected before any mutation
    ├── NotFoundError          404
    ├── PermissionDeniedError  403  caller may not act, or request is not authentic
    ├── ConflictError          409  state does not allow the operation
    └── ExternalServiceError   502  a provider (Stripe) failed

App exceptions subclass one of these and set default_error_code. Services
raise them; ServiceResult.from_exception() and the API views turn them into
responses, so views never need their own except blocks per error type.
"""

from __future__ import annotations

from typing import Any


class BaseApplicationError(Exception):
    """
    Error with a stable machine code and an HTTP status.

    Attributes:
        message: Human-readable description
        error_code: Machine-readable code clients switch on
        details: Extra context such as ids or field errors
        http_status: Status the API layer answers with
    """

    default_error_code: str = "APPLICATION_ERROR"
    http_status: int = 400

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Response body: error and error_code, plus details when there are any."""
        body: dict[str, Any] = {"error": self.message, "error_code": self.error_code}
        if self.details:
            body["details"] = self.details
        return body

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, error_code={self.error_code!r})"


class ValidationError(BaseApplicationError):
    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    default_error_code: str = "NOT_FOUND"
    http_status = 404


class PermissionDeniedError(BaseApplicationError):
    """Also used for inbound requests whose signature does not verify."""

    default_error_code: str = "PERMISSION_DENIED"
    http_status = 403


class ConflictError(BaseApplicationError):
    """The record exists but its current state forbids the operation."""

    default_error_code: str = "CONFLICT"
    http_status = 409


class ExternalServiceError(BaseApplicationError):
    """
    A third-party call failed.

    The message reaches API clients; keep provider internals in the logs.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
    http_status = 502
