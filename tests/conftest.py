"""Shared fixtures for unit tests."""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

# Force test-safe settings before any module imports Settings()
os.environ["AC2_CODE_STORE"] = "memory"
os.environ["AC2_TOKEN_MODE"] = "credential"
os.environ["AC2_MCP_API_KEY"] = ""
os.environ["AC2_AUTH_SECRET_KEY"] = "test-secret-key-for-jwt-signing-0123456789"
os.environ["AC2_CREDENTIAL_ENCRYPTION_KEY"] = ""
os.environ["AC2_API_BASE_URL"] = "http://localhost:8000"
os.environ["AC2_APP_URL"] = "http://localhost:3000"

from ac2.settings import Settings  # noqa: E402


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings():
    return Settings(_env_file=None)
