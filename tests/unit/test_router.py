"""HTTP tests for the OAuth endpoints, run against the full app."""

import base64
import functools
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from authserver.audit import AuditEmitter
from authserver.constants import GRANT_DEVICE_CODE
from authserver.main import create_app
from authserver.profiles import StaticProfileProvider, UserProfile

from .conftest import REDIRECT_URI, USER_ID, VERIFIER, s256


@pytest.fixture
def client(tmp_path):
    profiles = StaticProfileProvider(
        {USER_ID: UserProfile(user_id=USER_ID, username="alice", email="alice@example.com")}
    )
    app = create_app(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'oauth.db'}",
        profiles=profiles,
        audit_emitter=AuditEmitter(),
    )
    with TestClient(app) as test_client:
        yield test_client


def register(client, **metadata):
    metadata.setdefault("client_name", "Test App")
    metadata.setdefault("redirect_uris", [REDIRECT_URI])
    response = client.post("/oauth/register", json=metadata)
    assert response.status_code == 201, response.text
    return response.json()


def basic_auth(client_id, client_secret):
    raw = base64.b64encode(f"{client_id}:{client_secret}".encode()).decode()
    return {"Authorization": f"Basic {raw}"}


def issue_code(client, client_id, scopes):
    server = client.app.state.authorization_server
    return client.portal.call(
        functools.partial(
            server.create_authorization_code,
            client_id=client_id,
            user_id=USER_ID,
            redirect_uri=REDIRECT_URI,
            scopes=scopes,
            code_challenge=s256(VERIFIER),
            code_challenge_method="S256",
        )
    )


def exchange(client, registered, code, **overrides):
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "redirect_uri": REDIRECT_URI,
        "code_verifier": VERIFIER,
    }
    data.update(overrides)
    return client.post(
        "/oauth/token",
        data=data,
        headers=basic_auth(registered["client_id"], registered["client_secret"]),
    )


class TestTokenEndpoint:
    def test_authorization_code_grant(self, client):
        registered = register(client, scope="openid profile offline_access")
        code = issue_code(client, registered["client_id"], ["openid", "offline_access"])
        response = exchange(client, registered, code)
        assert response.status_code == 200
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["pragma"] == "no-cache"
        body = response.json()
        assert body["token_type"] == "Bearer"
        assert body["expires_in"] == 3600
        assert body["scope"] == "openid offline_access"
        assert body["refresh_token"]
        assert body["id_token"].count(".") == 2

        again = exchange(client, registered, code)
        assert again.status_code == 400
        assert again.json()["error"] == "invalid_grant"

    def test_form_credentials_and_refresh(self, client):
        registered = register(
            client,
            scope="openid offline_access",
            token_endpoint_auth_method="client_secret_post",
        )
        code = issue_code(client, registered["client_id"], ["openid", "offline_access"])
        first = client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": VERIFIER,
                "client_id": registered["client_id"],
                "client_secret": registered["client_secret"],
            },
        ).json()
        refreshed = client.post(
            "/oauth/token",
            data={
                "grant_type": "refresh_token",
                "refresh_token": first["refresh_token"],
                "client_id": registered["client_id"],
                "client_secret": registered["client_secret"],
            },
        )
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] != first["refresh_token"]
        assert "id_token" not in refreshed.json()

    def test_wrong_secret_is_invalid_client(self, client):
        registered = register(client)
        code = issue_code(client, registered["client_id"], ["openid"])
        response = client.post(
            "/oauth/token",
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": REDIRECT_URI,
                "code_verifier": VERIFIER,
            },
            headers=basic_auth(registered["client_id"], "wrong"),
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"
        assert "WWW-Authenticate" in response.headers

    def test_malformed_basic_header(self, client):
        response = client.post(
            "/oauth/token",
            data={"grant_type": "authorization_code"},
            headers={"Authorization": "Basic !!!"},
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"

    def test_unsupported_grant_type(self, client):
        response = client.post("/oauth/token", data={"grant_type": "password"})
        assert response.status_code == 400
        assert response.json()["error"] == "unsupported_grant_type"
        assert response.headers["cache-control"] == "no-store"

    def test_missing_parameters(self, client):
        response = client.post("/oauth/token", data={"grant_type": "authorization_code"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"
        missing = client.post("/oauth/token", data={})
        assert missing.json()["error"] == "invalid_request"

    def test_unexpected_failure_is_server_error(self, client):
        registered = register(client)
        server = client.app.state.authorization_server
        with patch.object(
            server, "exchange_authorization_code", AsyncMock(side_effect=RuntimeError("db down"))
        ):
            response = exchange(client, registered, "any-code")
        assert response.status_code == 500
        assert response.json()["error"] == "server_error"
        assert "db down" not in response.text
        assert response.headers["cache-control"] == "no-store"

    def test_wrong_verifier(self, client):
        registered = register(client)
        code = issue_code(client, registered["client_id"], ["openid"])
        response = exchange(client, registered, code, code_verifier="x" * 43)
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_grant"


class TestRevokeAndIntrospect:
    def test_revoke_always_ok(self, client):
        registered = register(client)
        code = issue_code(client, registered["client_id"], ["openid", "email"])
        tokens = exchange(client, registered, code).json()
        headers = basic_auth(registered["client_id"], registered["client_secret"])

        for _ in range(2):
            response = client.post(
                "/oauth/revoke", data={"token": tokens["access_token"]}, headers=headers
            )
            assert response.status_code == 200
        unknown = client.post("/oauth/revoke", data={"token": "nope"}, headers=headers)
        assert unknown.status_code == 200

        userinfo = client.get(
            "/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert userinfo.status_code == 401

    def test_revoke_with_bad_client(self, client):
        registered = register(client)
        response = client.post(
            "/oauth/revoke",
            data={"token": "anything"},
            headers=basic_auth(registered["client_id"], "wrong"),
        )
        assert response.status_code == 401

    def test_introspect(self, client):
        registered = register(client)
        code = issue_code(client, registered["client_id"], ["openid", "email"])
        tokens = exchange(client, registered, code).json()
        headers = basic_auth(registered["client_id"], registered["client_secret"])

        active = client.post(
            "/oauth/introspect", data={"token": tokens["access_token"]}, headers=headers
        ).json()
        assert active["active"] is True
        assert active["sub"] == USER_ID
        assert active["username"] == "alice@example.com"

        inactive = client.post("/oauth/introspect", data={"token": "nope"}, headers=headers)
        assert inactive.json() == {"active": False}

    def test_introspect_requires_confidential_client(self, client):
        public = register(client, token_endpoint_auth_method="none")
        response = client.post(
            "/oauth/introspect", data={"token": "t", "client_id": public["client_id"]}
        )
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_client"


class TestRegistrationEndpoint:
    def test_register(self, client):
        body = register(client, scope="openid repo:read")
        assert body["scope"] == "openid repo:read"
        assert body["token_endpoint_auth_method"] == "client_secret_basic"
        assert body["client_secret_expires_at"] == 0

    def test_invalid_redirect_uri(self, client):
        response = client.post(
            "/oauth/register", json={"client_name": "Bad", "redirect_uris": ["not a uri"]}
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_redirect_uri"

    def test_invalid_metadata(self, client):
        response = client.post("/oauth/register", json={"redirect_uris": [REDIRECT_URI]})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"

    def test_non_json_body(self, client):
        response = client.post(
            "/oauth/register",
            content=b"client_name=x",
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_client_metadata"


class TestDeviceEndpoints:
    def test_device_authorize_and_poll(self, client):
        registered = register(
            client,
            token_endpoint_auth_method="none",
            grant_types=[GRANT_DEVICE_CODE, "refresh_token"],
            scope="repo:read profile",
        )
        response = client.post(
            "/oauth/device/authorize",
            data={"client_id": registered["client_id"], "scope": "repo:read"},
        )
        assert response.status_code == 200
        device = response.json()
        assert device["interval"] == 5
        assert device["expires_in"] == 900

        poll = client.post(
            "/oauth/token",
            data={
                "grant_type": GRANT_DEVICE_CODE,
                "device_code": device["device_code"],
                "client_id": registered["client_id"],
            },
        )
        assert poll.status_code == 400
        assert poll.json()["error"] == "authorization_pending"

    def test_device_authorize_requires_client_id(self, client):
        response = client.post("/oauth/device/authorize", data={"scope": "repo:read"})
        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"


class TestUserinfo:
    def test_userinfo(self, client):
        registered = register(client)
        code = issue_code(client, registered["client_id"], ["openid", "email"])
        tokens = exchange(client, registered, code).json()
        response = client.get(
            "/oauth/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )
        assert response.status_code == 200
        assert response.json() == {
            "sub": USER_ID,
            "email": "alice@example.com",
            "email_verified": False,
        }

    def test_missing_bearer(self, client):
        response = client.get("/oauth/userinfo")
        assert response.status_code == 401
        assert response.json()["error"] == "invalid_token"


class TestDiscovery:
    def test_openid_configuration(self, client):
        body = client.get("/.well-known/openid-configuration").json()
        assert body["code_challenge_methods_supported"] == ["S256"]
        assert body["response_types_supported"] == ["code"]
        assert GRANT_DEVICE_CODE in body["grant_types_supported"]
        assert body["token_endpoint"].endswith("/oauth/token")
        assert body["device_authorization_endpoint"].endswith("/oauth/device/authorize")
        assert client.get("/.well-known/oauth-authorization-server").json() == body

    def test_protected_resource(self, client):
        body = client.get("/.well-known/oauth-protected-resource").json()
        assert body["authorization_servers"]
        assert body["bearer_methods_supported"] == ["header"]

    def test_scopes(self, client):
        scopes = {s["name"] for s in client.get("/oauth/scopes").json()["scopes"]}
        assert {"openid", "profile", "email", "offline_access"} <= scopes

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["audit_queue_depth"] >= 0
