"""Shared fixtures and utilities for esi-client tests."""

import base64
import json
import os
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from cryptography.fernet import Fernet

from esi_client.providers.memory import MemoryProvider
from esi_client.records import Token
from esi_client.sso import AccessTokenClaims, SingleSignOn, TokenResponse


# ============================================================================
# Helpers
# ============================================================================


def _b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _make_jwt(payload: dict[str, Any]) -> str:
    """Build an unsigned JWT carrying the given payload."""
    header = _b64(json.dumps({"alg": "RS256", "typ": "JWT"}).encode())
    body = _b64(json.dumps(payload).encode())
    return f"{header}.{body}.signature"


def _make_token_response(
    owner: str = "o1",
    character_id: int = 42,
    name: str = "Jane Doe",
    scopes: Any = "skills.read",
    expires_in: int = 1200,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
) -> TokenResponse:
    """Build a TokenResponse as returned by SingleSignOn.get_access_token."""
    return TokenResponse(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_in=expires_in,
        decoded_access_token=AccessTokenClaims.from_payload(
            {
                "owner": owner,
                "sub": f"CHARACTER:EVE:{character_id}",
                "name": name,
                "scp": scopes,
                "exp": 1700000000,
            }
        ),
    )


def _make_token(
    character_id: int = 42,
    access_token: str = "access-1",
    refresh_token: str = "refresh-1",
    expires_in: int = 1200,
    scopes: Any = "skills.read",
) -> Token:
    """Build a token expiring expires_in seconds from now (negative = expired)."""
    return Token(
        character_id=character_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scopes=scopes,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def provider() -> MemoryProvider:
    """Create an empty in-memory provider."""
    return MemoryProvider()


@pytest.fixture
def sso() -> SingleSignOn:
    """Create an SSO client whose token exchange is mocked."""
    client = SingleSignOn(
        "client-id",
        "secret-key",
        "http://localhost:8080/sso",
        user_agent="test-agent",
    )
    client.get_access_token = AsyncMock(return_value=_make_token_response())  # type: ignore[method-assign]
    return client


@pytest.fixture
def mock_keyring() -> Generator[MagicMock, None, None]:
    """Patch keyring so tests never touch the user's real keyring."""
    key = Fernet.generate_key().decode("ascii")
    with patch("esi_client.providers.encrypted.keyring") as mocked:
        mocked.get_password.return_value = key
        yield mocked


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    """Directory for an encrypted store."""
    return tmp_path / "store"


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Generator[pytest.MonkeyPatch, None, None]:
    """Remove ESI_* variables so the host environment cannot leak into tests."""
    from esi_client.config import ENV_VARS

    for env_var in ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)
    yield monkeypatch

    # load_dotenv writes straight to os.environ
    for env_var in ENV_VARS:
        os.environ.pop(env_var, None)


@pytest.fixture
def make_jwt() -> Any:
    """Factory for unsigned JWT access tokens."""
    return _make_jwt


@pytest.fixture
def make_token_response() -> Any:
    """Factory for SSO token responses."""
    return _make_token_response


@pytest.fixture
def make_token() -> Any:
    """Factory for tokens expiring relative to now."""
    return _make_token
