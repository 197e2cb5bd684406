"""
MedTrack Engine Test Suite
==========================

This package contains all tests for the MedTrack medication command/event engine.

Test Structure:
- test_api/: API endpoint tests for FastAPI routes
- test_services/: Service tests against an in-memory SQLite database
- test_tools/: Time calculation and notification dispatch tests
- conftest.py: Shared pytest fixtures (database, fake clock, factories)

Running Tests:
    # Run all tests
    pytest

    # Run specific test module
    pytest tests/test_services/

    # Run only marked tests
    pytest -m "unit"
    pytest -m "api"
"""

# Test configuration
TEST_DATABASE_URL = "sqlite:///:memory:"
TEST_TIMEZONE = "America/Chicago"

__all__ = [
    "TEST_DATABASE_URL",
    "TEST_TIMEZONE",
]
