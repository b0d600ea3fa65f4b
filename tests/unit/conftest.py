"""
Unit test fixtures: a throwaway SQLite database per test and the services wired over it.
"""

import base64
import hashlib
from datetime import datetime
from unittest.mock import Mock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine

from authserver.audit import AuditEmitter
from authserver.constants import (
    GRANT_AUTHORIZATION_CODE,
    GRANT_DEVICE_CODE,
    GRANT_REFRESH_TOKEN,
)
from authserver.database import Base, create_session_factory
from authserver.idp.clients import ClientRegistry
from authserver.idp.device import DeviceAuthorizationGrant
from authserver.idp.registration import ClientRegistrar
from authserver.idp.schemas import OAuthClientCreateRequest
from authserver.idp.service import AuthorizationServer
from authserver.idp.store import OAuthStore
from authserver.profiles import StaticProfileProvider, UserProfile

REDIRECT_URI = "https://app.example.com/callback"
OTHER_REDIRECT_URI = "https://app.example.com/other"
USER_ID = "user-1"
VERIFIER = "dBjftJeZ4CVP-mJ92K1sPMWXx8n2f7N1Kk1QvAqLqZ0Example"


def s256(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode()).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()


@pytest_asyncio.fixture
async def engine(tmp_path):
    import authserver.idp.schemas  # noqa: F401

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'oauth.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def store(engine):
    return OAuthStore(create_session_factory(engine))


@pytest.fixture
def audit():
    return Mock(spec=AuditEmitter)


@pytest.fixture
def profiles():
    return StaticProfileProvider(
        {
            USER_ID: UserProfile(
                user_id=USER_ID,
                username="alice",
                display_name="Alice Liddell",
                avatar_url="https://cdn.example.com/alice.png",
                email="alice@example.com",
                email_verified=True,
                updated_at=datetime(2026, 1, 1),
            )
        }
    )


@pytest.fixture
def registry(store, audit):
    return ClientRegistry(store, audit)


@pytest.fixture
def server(store, registry, profiles, audit):
    return AuthorizationServer(store, registry, profiles, audit)


@pytest.fixture
def device_grant(server):
    return DeviceAuthorizationGrant(server)


@pytest.fixture
def registrar(store, audit):
    return ClientRegistrar(store, audit)


@pytest_asyncio.fixture
async def confidential_client(registry):
    """Third-party confidential client with PKCE required; returns (client, secret)."""
    return await registry.create_client(
        OAuthClientCreateRequest(
            name="Example App",
            redirect_uris=[REDIRECT_URI, OTHER_REDIRECT_URI],
            allowed_scopes=["openid", "profile", "email", "offline_access"],
            allowed_grant_types=[GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN],
            is_confidential=True,
            require_pkce=True,
        ),
        owner_id="owner-1",
    )


@pytest_asyncio.fixture
async def public_client(registry):
    client, _ = await registry.create_client(
        OAuthClientCreateRequest(
            name="Example SPA",
            redirect_uris=[REDIRECT_URI],
            allowed_scopes=["openid", "profile", "offline_access"],
            is_confidential=False,
            require_pkce=True,
        )
    )
    return client


@pytest_asyncio.fixture
async def first_party_client(registry):
    client, secret = await registry.create_client(
        OAuthClientCreateRequest(
            name="Dashboard",
            redirect_uris=[REDIRECT_URI],
            is_first_party=True,
            require_pkce=False,
        )
    )
    return client


@pytest_asyncio.fixture
async def device_client(registry):
    client, _ = await registry.create_client(
        OAuthClientCreateRequest(
            name="CLI",
            redirect_uris=["http://127.0.0.1/callback"],
            allowed_scopes=["openid", "profile", "repo:read", "repo:write", "offline_access"],
            allowed_grant_types=[GRANT_DEVICE_CODE, GRANT_REFRESH_TOKEN],
            is_confidential=False,
        )
    )
    return client


@pytest.fixture
def issue_code(server, confidential_client):
    """Issue an S256 code for the confidential client."""
    client, _ = confidential_client

    async def _issue(scopes=("openid", "profile"), redirect_uri=REDIRECT_URI, **kwargs):
        kwargs.setdefault("code_challenge", s256(VERIFIER))
        kwargs.setdefault("code_challenge_method", "S256")
        return await server.create_authorization_code(
            client_id=client.client_id,
            user_id=USER_ID,
            redirect_uri=redirect_uri,
            scopes=list(scopes),
            **kwargs,
        )

    return _issue
