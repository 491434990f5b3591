"""
Tests for ServiceResult and BaseService.
"""

import logging

from core.exceptions import ConflictError, ValidationError
from core.services import BaseService, ServiceResult


class TestServiceResult:
    """Tests for the ServiceResult wrapper."""

    def test_success_carries_data(self):
        """Should expose data and be truthy on success."""
        result = ServiceResult.success({"id": 1})

        assert result.success is True
        assert result.data == {"id": 1}
        assert bool(result) is True

    def test_failure_is_falsy(self):
        """Should be falsy and carry the error code on failure."""
        result = ServiceResult.failure("Nope", error_code="NOPE")

        assert bool(result) is False
        assert result.error == "Nope"
        assert result.error_code == "NOPE"

    def test_from_exception_keeps_typed_reason(self):
        """Should copy code and details from an application error."""
        exc = ConflictError(
            "Cannot release",
            error_code="INVALID_STATE_TRANSITION",
            details={"current_state": "pending"},
        )

        result = ServiceResult.from_exception(exc)

        assert result.error == "Cannot release"
        assert result.error_code == "INVALID_STATE_TRANSITION"
        assert result.details == {"current_state": "pending"}

    def test_to_response_for_failure(self):
        """Should render error, code, field errors and details."""
        result = ServiceResult.failure(
            "Invalid",
            error_code="VALIDATION_ERROR",
            errors={"amount": ["Must be positive"]},
            details={"total": 0},
        )

        assert result.to_response() == {
            "success": False,
            "error": "Invalid",
            "error_code": "VALIDATION_ERROR",
            "errors": {"amount": ["Must be positive"]},
            "details": {"total": 0},
        }


class TestBaseService:
    """Tests for BaseService helpers."""

    def test_logger_named_after_service(self):
        """Should name the logger after module and class."""

        class SampleService(BaseService):
            pass

        assert SampleService.get_logger().name.endswith("SampleService")

    def test_handle_exception_logs_and_converts(self, caplog):
        """Should log the rejection and return a failed result."""
        exc = ValidationError("Bad split", error_code="SPLIT_VALIDATION_ERROR")

        with caplog.at_level(logging.WARNING):
            result = BaseService.handle_exception(exc, "Dispute resolution")

        assert result.success is False
        assert result.error_code == "SPLIT_VALIDATION_ERROR"
        assert "Dispute resolution rejected" in caplog.text
