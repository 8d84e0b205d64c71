"""
tests/conftest.py

Pytest configuration and shared fixtures for the Fiscalismia test suite.

Unit tests never touch a real database or network: settings are pinned to
test values and outbound HTTP goes through httpx.MockTransport. Tests marked
`integration` run against the PostgreSQL instance in DATABASE_URL and are
skipped when it is not set.
"""

from __future__ import annotations

from typing import Generator

import jwt
import pytest

from fiscalismia.core.config import reset_settings

TEST_JWT_SECRET = "test-jwt-secret"
TEST_GATEWAY_SECRET = "test-gateway-secret"
TEST_GATEWAY_ENDPOINT = "https://gateway.example.test"


def pytest_configure(config: pytest.Config) -> None:
    """
    Registers custom markers:
      - integration: Tests that require a live PostgreSQL database
    """
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring a live PostgreSQL database (DATABASE_URL)",
    )


@pytest.fixture(autouse=True)
def test_settings(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    """Pin settings to test values and drop the cached Settings instance."""
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.setenv("DATABASE_URL", "")
    monkeypatch.setenv("FISCALISMIA_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("API_GW_SECRET_KEY", TEST_GATEWAY_SECRET)
    monkeypatch.setenv("AWS_API_GATEWAY_ENDPOINT", TEST_GATEWAY_ENDPOINT)
    monkeypatch.delenv("INTERNAL_API_BASE_URL", raising=False)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def bearer_token() -> str:
    token = jwt.encode({"sub": "admin"}, TEST_JWT_SECRET, algorithm="HS256")
    return f"Bearer {token}"
