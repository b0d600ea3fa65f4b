"""
Dynamic client registration (RFC 7591).

Anyone may register, so registered clients are always third party and always
required to use PKCE, whatever the request says.
"""

import time
from typing import Optional

from loguru import logger

from authserver import audit
from authserver.audit import AuditEmitter
from authserver.constants import (
    DCR_ALLOWED_SCOPES,
    DCR_AUTH_METHODS,
    DCR_DEFAULT_SCOPES,
    DCR_MAX_REDIRECT_URIS,
    DEFAULT_CLIENT_GRANT_TYPES,
    SUPPORTED_GRANT_TYPES,
)
from authserver.idp.errors import InvalidClientMetadataError, InvalidRedirectUriError
from authserver.idp.response import ClientRegistrationResponse
from authserver.idp.schemas import (
    ClientRegistrationRequest,
    OAuthClient,
    is_absolute_uri,
)
from authserver.idp.store import OAuthStore

DEFAULT_AUTH_METHOD = "client_secret_basic"
SUPPORTED_RESPONSE_TYPES = ("code",)


class ClientRegistrar:
    def __init__(self, store: OAuthStore, audit_emitter: Optional[AuditEmitter] = None):
        self.store = store
        self.audit = audit_emitter

    async def register_client(
        self, request: ClientRegistrationRequest
    ) -> ClientRegistrationResponse:
        redirect_uris = list(request.redirect_uris or [])
        if not redirect_uris:
            raise InvalidRedirectUriError("redirect_uris is required")
        if len(redirect_uris) > DCR_MAX_REDIRECT_URIS:
            raise InvalidRedirectUriError(
                f"At most {DCR_MAX_REDIRECT_URIS} redirect_uris may be registered"
            )
        for uri in redirect_uris:
            if not is_absolute_uri(uri):
                raise InvalidRedirectUriError(f"Invalid redirect_uri: {uri}")

        grant_types = list(request.grant_types or DEFAULT_CLIENT_GRANT_TYPES)
        unsupported = [g for g in grant_types if g not in SUPPORTED_GRANT_TYPES]
        if unsupported:
            raise InvalidClientMetadataError(f"Unsupported grant_types: {' '.join(unsupported)}")

        response_types = list(request.response_types or SUPPORTED_RESPONSE_TYPES)
        if any(r not in SUPPORTED_RESPONSE_TYPES for r in response_types):
            raise InvalidClientMetadataError("Only the code response type is supported")

        auth_method = request.token_endpoint_auth_method or DEFAULT_AUTH_METHOD
        if auth_method not in DCR_AUTH_METHODS:
            raise InvalidClientMetadataError(
                f"Unsupported token_endpoint_auth_method: {auth_method}"
            )
        is_confidential = auth_method != "none"

        requested = request.scope.split() if request.scope else []
        scopes = []
        for scope in requested:
            if scope in DCR_ALLOWED_SCOPES and scope not in scopes:
                scopes.append(scope)
        if not scopes:
            scopes = list(DCR_DEFAULT_SCOPES)

        client_secret = None
        client = OAuthClient(
            client_id=OAuthClient.generate_client_id(),
            name=request.client_name,
            description="Dynamically registered client",
            redirect_uris=redirect_uris,
            website_url=request.client_uri,
            logo_url=request.logo_uri,
            privacy_policy_url=request.policy_uri,
            terms_of_service_url=request.tos_uri,
            allowed_scopes=scopes,
            allowed_grant_types=grant_types,
            is_confidential=is_confidential,
            is_first_party=False,
            require_pkce=True,
            is_active=True,
        )
        if is_confidential:
            client_secret = client.regenerate_secret()

        async with self.store.session() as session:
            session.add(client)
            await session.commit()

        logger.success(
            f"Registered client {client.client_id} ({request.client_name}) "
            f"scopes={scopes} grant_types={grant_types}"
        )
        if self.audit:
            self.audit.emit(
                audit.CLIENT_REGISTERED,
                client_id=client.client_id,
                client_name=request.client_name,
                scopes=scopes,
            )

        return ClientRegistrationResponse(
            client_id=client.client_id,
            client_secret=client_secret,
            client_id_issued_at=int(time.time()),
            client_secret_expires_at=0,
            client_name=request.client_name,
            redirect_uris=redirect_uris,
            grant_types=grant_types,
            response_types=response_types,
            scope=" ".join(scopes),
            token_endpoint_auth_method=auth_method,
            logo_uri=request.logo_uri,
            client_uri=request.client_uri,
            policy_uri=request.policy_uri,
            tos_uri=request.tos_uri,
        )
