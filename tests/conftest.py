"""
Shared fixtures.

Environment is set before the application is imported so the cached
settings pick it up.
"""

import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("APPLE_SHARED_SECRET", "test-apple-secret")
os.environ.setdefault("GOOGLE_PLAY_SERVICE_ACCOUNT_JSON", "")
os.environ.setdefault("PUBSUB_VERIFICATION_TOKEN", "")
os.environ.setdefault("CONTINUATION_WORKER_ENABLED", "false")

import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

from entitlement_core.core.security import create_access_token
from entitlement_core.db.session import get_db
from entitlement_core.main import app

USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
INTERNAL_KEY = "test-internal-key"


@pytest.fixture(scope="session")
def rsa_key_pair() -> tuple[str, str]:
    """(private PEM, public PEM) for signing service-account assertions."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return private_pem, public_pem


@pytest.fixture
def service_account(rsa_key_pair) -> dict:
    private_pem, _ = rsa_key_pair
    return {
        "type": "service_account",
        "project_id": "test-project",
        "client_email": "publisher@test-project.iam.gserviceaccount.com",
        "private_key": private_pem,
        "token_uri": "https://oauth2.googleapis.com/token",
    }


@pytest.fixture
def db_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture
def auth_headers() -> dict:
    token = create_access_token({"sub": str(USER_ID)})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def internal_headers() -> dict:
    return {"X-Internal-Key": INTERNAL_KEY}


@pytest_asyncio.fixture
async def client(db_session) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app with the database session mocked out."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
