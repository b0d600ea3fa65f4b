"""
OAuth2/OIDC HTTP endpoints: token, revocation, introspection, registration,
device authorization, userinfo and discovery.
"""

import base64
import binascii
from typing import Optional, Tuple
from urllib.parse import unquote_plus

from fastapi import APIRouter, Depends, Form, Request, Response, status
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import ValidationError

from authserver.config import settings
from authserver.constants import (
    CLAIMS_SUPPORTED,
    GRANT_AUTHORIZATION_CODE,
    GRANT_DEVICE_CODE,
    GRANT_REFRESH_TOKEN,
    STANDARD_SCOPES,
    SUPPORTED_GRANT_TYPES,
)
from authserver.idp.clients import ClientRegistry
from authserver.idp.device import DeviceAuthorizationGrant
from authserver.idp.errors import (
    InvalidClientError,
    InvalidClientMetadataError,
    InvalidRequestError,
    OAuthError,
    ServerError,
    UnsupportedGrantTypeError,
)
from authserver.idp.registration import ClientRegistrar
from authserver.idp.response import ScopeResponse
from authserver.idp.schemas import ClientRegistrationRequest
from authserver.idp.service import AuthorizationServer, parse_scope

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

router = APIRouter()
well_known_router = APIRouter()


def get_authorization_server(request: Request) -> AuthorizationServer:
    return request.app.state.authorization_server


def get_client_registry(request: Request) -> ClientRegistry:
    return request.app.state.client_registry


def get_device_grant(request: Request) -> DeviceAuthorizationGrant:
    return request.app.state.device_grant


def get_registrar(request: Request) -> ClientRegistrar:
    return request.app.state.registrar


def parse_basic_auth(request: Request) -> Optional[Tuple[str, str]]:
    """
    Client credentials from an Authorization: Basic header (RFC 6749 2.3.1),
    None when the header is absent. A malformed header is invalid_client.
    """
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.lower().startswith("basic "):
        return None
    try:
        decoded = base64.b64decode(auth_header[6:].strip(), validate=True).decode()
        header_client_id, header_client_secret = decoded.split(":", 1)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise InvalidClientError("Malformed Basic authorization header")
    return unquote_plus(header_client_id), unquote_plus(header_client_secret)


def client_credentials(
    request: Request, client_id: Optional[str], client_secret: Optional[str]
) -> Tuple[Optional[str], Optional[str]]:
    """HTTP Basic credentials take precedence over form parameters."""
    basic = parse_basic_auth(request)
    if basic:
        return basic
    return client_id, client_secret


def oauth_error_response(exc: OAuthError) -> JSONResponse:
    headers = dict(NO_STORE)
    if exc.status_code == status.HTTP_401_UNAUTHORIZED:
        headers["WWW-Authenticate"] = 'Basic realm="oauth"'
    return JSONResponse(content=exc.to_dict(), status_code=exc.status_code, headers=headers)


@router.get("/scopes")
async def list_scopes():
    """
    List the supported scopes with descriptions (consent screens, documentation).
    """
    return {
        "scopes": [
            ScopeResponse(name=name, description=description).model_dump()
            for name, description in STANDARD_SCOPES.items()
        ]
    }


@router.post("/token")
async def token_endpoint(
    request: Request,
    grant_type: Optional[str] = Form(None),
    code: Optional[str] = Form(None),
    redirect_uri: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    refresh_token: Optional[str] = Form(None),
    code_verifier: Optional[str] = Form(None),
    device_code: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
    device_grant: DeviceAuthorizationGrant = Depends(get_device_grant),
):
    """OAuth2 Token Endpoint."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    if not grant_type:
        raise InvalidRequestError("grant_type is required")
    if grant_type not in SUPPORTED_GRANT_TYPES:
        raise UnsupportedGrantTypeError(f"Unsupported grant type: {grant_type}")

    try:
        if grant_type == GRANT_AUTHORIZATION_CODE:
            if not code or not redirect_uri or not client_id:
                raise InvalidRequestError("Missing required parameters")
            await server.authenticate_client(client_id, client_secret, grant_type)
            grant = await server.exchange_authorization_code(
                code=code,
                client_id=client_id,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
            )
        elif grant_type == GRANT_REFRESH_TOKEN:
            if not refresh_token or not client_id:
                raise InvalidRequestError("Missing required parameters")
            grant = await server.refresh_access_token(
                refresh_token=refresh_token,
                client_id=client_id,
                client_secret=client_secret,
            )
        else:
            if not device_code or not client_id:
                raise InvalidRequestError("Missing required parameters")
            await server.authenticate_client(client_id, client_secret, GRANT_DEVICE_CODE)
            grant = await device_grant.exchange_device_code(device_code, client_id)
    except OAuthError:
        raise
    except Exception as exc:
        logger.error(f"Token request failed for client {client_id} ({grant_type}): {exc}")
        raise ServerError() from exc

    return JSONResponse(
        content=grant.to_response().model_dump(exclude_none=True),
        headers=NO_STORE,
    )


@router.post("/revoke")
async def revoke_token_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
    registry: ClientRegistry = Depends(get_client_registry),
):
    """OAuth2 Token Revocation Endpoint (RFC 7009)."""
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    if client_id:
        valid, _ = await registry.validate_client_credentials(client_id, client_secret)
        if not valid:
            raise InvalidClientError()
    if token:
        await server.revoke_token(token, token_type_hint)
    # Always 200, whether or not the token existed.
    return Response(status_code=status.HTTP_200_OK)


@router.post("/introspect")
async def introspect_endpoint(
    request: Request,
    token: Optional[str] = Form(None),
    token_type_hint: Optional[str] = Form(None),
    client_id: Optional[str] = Form(None),
    client_secret: Optional[str] = Form(None),
    server: AuthorizationServer = Depends(get_authorization_server),
    registry: ClientRegistry = Depends(get_client_registry),
):
    """
    OAuth2 Token Introspection Endpoint (RFC 7662).

    Only confidential clients that authenticate may introspect.
    """
    client_id, client_secret = client_credentials(request, client_id, client_secret)
    if not client_id or not client_secret:
        raise InvalidClientError("Client authentication required")
    valid, client = await registry.validate_client_credentials(client_id, client_secret)
    if not valid or not client.is_confidential:
        raise InvalidClientError()
    if not token:
        raise InvalidRequestError("token is required")
    result = await server.introspect_token(token, token_type_hint)
    return JSONResponse(content=result.model_dump(exclude_none=True), headers=NO_STORE)


@router.post("/register", status_code=status.HTTP_201_CREATED)
async def register_endpoint(
    request: Request,
    registrar: ClientRegistrar = Depends(get_registrar),
):
    """Dynamic Client Registration Endpoint (RFC 7591)."""
    try:
        body = await request.json()
    except ValueError:
        raise InvalidClientMetadataError("Request body must be JSON")
    try:
        registration = ClientRegistrationRequest.model_validate(body)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise InvalidClientMetadataError(f"{field}: {first.get('msg')}")
    result = await registrar.register_client(registration)
    return JSONResponse(
        content=result.model_dump(exclude_none=True),
        status_code=status.HTTP_201_CREATED,
        headers=NO_STORE,
    )


@router.post("/device/authorize")
async def device_authorization_endpoint(
    client_id: Optional[str] = Form(None),
    scope: Optional[str] = Form(None),
    device_grant: DeviceAuthorizationGrant = Depends(get_device_grant),
):
    """Device Authorization Endpoint (RFC 8628 3.1)."""
    if not client_id:
        raise InvalidRequestError("client_id is required")
    result = await device_grant.create_device_authorization(client_id, parse_scope(scope))
    return JSONResponse(content=result.model_dump(), headers=NO_STORE)


@router.get("/userinfo")
async def userinfo_endpoint(
    request: Request,
    server: AuthorizationServer = Depends(get_authorization_server),
):
    """OpenID Connect UserInfo Endpoint."""
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return JSONResponse(
            content={
                "error": "invalid_token",
                "error_description": "Missing or invalid authorization header",
            },
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = await server.get_userinfo(auth_header[7:].strip())
    if claims is None:
        return JSONResponse(
            content={"error": "invalid_token", "error_description": "Invalid or expired token"},
            status_code=status.HTTP_401_UNAUTHORIZED,
            headers={"WWW-Authenticate": 'Bearer error="invalid_token"'},
        )
    return claims


def openid_configuration() -> dict:
    issuer = settings.issuer.rstrip("/")
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth/authorize",
        "token_endpoint": f"{issuer}/oauth/token",
        "userinfo_endpoint": f"{issuer}/oauth/userinfo",
        "revocation_endpoint": f"{issuer}/oauth/revoke",
        "introspection_endpoint": f"{issuer}/oauth/introspect",
        "registration_endpoint": f"{issuer}/oauth/register",
        "device_authorization_endpoint": f"{issuer}/oauth/device/authorize",
        "scopes_supported": list(STANDARD_SCOPES),
        "response_types_supported": ["code"],
        "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
        "subject_types_supported": ["public"],
        "id_token_signing_alg_values_supported": [settings.id_token_algorithm],
        "token_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "revocation_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "introspection_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
        ],
        "code_challenge_methods_supported": settings.code_challenge_methods,
        "claims_supported": CLAIMS_SUPPORTED,
    }


@well_known_router.get("/.well-known/openid-configuration")
async def openid_configuration_endpoint():
    """OpenID Connect Discovery document."""
    return openid_configuration()


@well_known_router.get("/.well-known/oauth-authorization-server")
async def authorization_server_metadata_endpoint():
    """RFC 8414 metadata; same document as OIDC discovery."""
    return openid_configuration()


@well_known_router.get("/.well-known/oauth-protected-resource")
async def protected_resource_endpoint():
    """Protected resource metadata (RFC 9728)."""
    issuer = settings.issuer.rstrip("/")
    return {
        "resource": settings.resource_url or issuer,
        "authorization_servers": [issuer],
        "scopes_supported": list(STANDARD_SCOPES),
        "bearer_methods_supported": ["header"],
    }
