"""
Service layer conventions.

Services are classes of classmethods that return a ServiceResult for
outcomes the caller is expected to handle (a rejected transition, a bad
dispute split, a missing payment). Conditions worth retrying, such as a
Stripe timeout or lock contention, propagate as exceptions instead so the
retry loop or Celery can see them.

    result = SettlementService.settle_payment(payment_id, actor=request.user)
    if not result:
        return Response(result.to_response(), status=result.http_status or 400)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from core.exceptions import BaseApplicationError

T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Outcome of a service call.

    Failures carry the same error_code and details as the exception they
    came from, so an illegal transition is distinguishable from a
    validation failure without string matching.
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    errors: dict[str, list[str]] | None = None
    details: dict[str, Any] | None = None
    http_status: int | None = None

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        errors: dict[str, list[str]] | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Build a failed result by hand.

        Args:
            error: Human-readable message
            error_code: Machine-readable code
            errors: Per-field messages
            details: Extra context for the caller
        """
        return cls(success=False, error=error, error_code=error_code, errors=errors, details=details)

    @classmethod
    def from_exception(cls, exc: BaseApplicationError) -> ServiceResult[T]:
        """Failed result mirroring an application error, HTTP status included."""
        return cls(
            success=False,
            error=exc.message,
            error_code=exc.error_code,
            details=exc.details or None,
            http_status=exc.http_status,
        )

    def to_response(self) -> dict[str, Any]:
        """API body for this result; empty optional keys are left out."""
        if self.success:
            return {"success": True, "data": self.data}

        body: dict[str, Any] = {"success": False, "error": self.error}
        for key in ("error_code", "errors", "details"):
            value = getattr(self, key)
            if value:
                body[key] = value
        return body

    def __bool__(self) -> bool:
        return self.success


class BaseService:
    """Stateless base for service classes."""

    @classmethod
    def get_logger(cls) -> logging.Logger:
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    def handle_exception(
        cls,
        exc: BaseApplicationError,
        context: str = "",
        log_level: int = logging.WARNING,
    ) -> ServiceResult:
        """
        Log a rejected operation and turn the error into a failed result.

        Args:
            exc: The application error that stopped the operation
            context: Operation name for the log line, e.g. "Settlement"
            log_level: Level to log at

        Returns:
            ServiceResult.from_exception(exc)
        """
        cls.get_logger().log(
            log_level,
            f"{context or 'Operation'} rejected: {exc.error_code}",
            extra={"error_code": exc.error_code, "details": exc.details},
        )
        return ServiceResult.from_exception(exc)
