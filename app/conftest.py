"""
Root pytest configuration for the Django project.

This module adjusts settings for the test run. App-specific fixtures are
defined in each app's tests/conftest.py.
"""

import pytest


def pytest_configure():
    """Adjust Django settings before tests run."""
    from django.conf import settings

    # Disable throttling during tests to prevent rate limit failures
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_CLASSES"] = []
    settings.REST_FRAMEWORK["DEFAULT_THROTTLE_RATES"] = {}

    # Test client talks plain HTTP
    settings.SECURE_SSL_REDIRECT = False

    # Use fast password hasher for tests
    settings.PASSWORD_HASHERS = [
        "django.contrib.auth.hashers.MD5PasswordHasher",
    ]

    settings.STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    settings.PLATFORM_FEE_PERCENT = 10
    settings.ESCROW_DRIVER_SHARE_PERCENT_CARD = 0
    settings.ESCROW_DRIVER_SHARE_PERCENT_CASH = 0
    settings.ESCROW_SETTLEMENT_RETRY_BASE_DELAY = 0


def pytest_collection_modifyitems(items):
    """
    Auto-mark tests based on filename patterns.

    Mapping:
    - test_integration.py → e2e (full payment journeys)
    - test_views.py, test_*_service.py, test_tasks.py, etc. → integration
    - test_models.py, test_split.py, test_locks.py, etc. → unit
    - Unmatched files → integration (safe default for Django)

    Explicit markers on test functions/classes take precedence.
    """
    e2e_patterns = ["test_integration.py"]

    integration_patterns = [
        "test_views.py",
        "test_tasks.py",
        "test_webhooks.py",
        "test_settlement_service.py",
        "test_dispute_service.py",
        "test_payment_service.py",
        "test_disbursement_service.py",
        "test_workers.py",
    ]

    unit_patterns = [
        "test_models.py",
        "test_split.py",
        "test_adapters.py",
        "test_state_transitions.py",
        "test_locks.py",
        "test_retry.py",
        "test_exceptions.py",
        "test_services.py",
        "test_audit.py",
    ]

    for item in items:
        # Skip if test already has unit/integration/e2e marker
        existing_markers = {m.name for m in item.iter_markers()}
        if existing_markers & {"unit", "integration", "e2e"}:
            continue

        filename = str(item.fspath).split("/")[-1]

        if any(pattern in filename for pattern in e2e_patterns):
            item.add_marker(pytest.mark.e2e)
        elif any(pattern in filename for pattern in integration_patterns):
            item.add_marker(pytest.mark.integration)
        elif any(pattern in filename for pattern in unit_patterns):
            item.add_marker(pytest.mark.unit)
        else:
            item.add_marker(pytest.mark.integration)
