"""
Client registry: lookups, credential checks and client management.
"""

from typing import List, Optional, Tuple

from loguru import logger

from authserver import audit
from authserver.audit import AuditEmitter
from authserver.constants import DEFAULT_CLIENT_GRANT_TYPES, DEFAULT_CLIENT_SCOPES
from authserver.idp.errors import InvalidClientError
from authserver.idp.schemas import (
    OAuthClient,
    OAuthClientCreateRequest,
    OAuthClientUpdateRequest,
)
from authserver.idp.store import OAuthStore


class ClientRegistry:
    def __init__(self, store: OAuthStore, audit_emitter: Optional[AuditEmitter] = None):
        self.store = store
        self.audit = audit_emitter

    def _emit(self, action: str, **kwargs):
        if self.audit:
            self.audit.emit(action, **kwargs)

    async def get_client_by_client_id(self, client_id: str) -> Optional[OAuthClient]:
        """Active client by its public client_id."""
        if not client_id:
            return None
        async with self.store.session() as session:
            return await self.store.get_client(session, client_id)

    async def validate_client_credentials(
        self, client_id: str, client_secret: Optional[str] = None
    ) -> Tuple[bool, Optional[OAuthClient]]:
        """
        Public clients only need to exist and be active. Confidential clients must
        also present the right secret.
        """
        client = await self.get_client_by_client_id(client_id)
        if not client:
            return False, None
        if not client.is_confidential:
            return True, client
        if not client.verify_secret(client_secret):
            return False, client
        return True, client

    async def validate_redirect_uri(self, client_id: str, redirect_uri: str) -> bool:
        client = await self.get_client_by_client_id(client_id)
        if not client:
            return False
        return client.is_valid_redirect_uri(redirect_uri)

    async def validate_scopes(self, client_id: str, requested: List[str]) -> List[str]:
        """Requested scopes the client may ask for, in request order."""
        client = await self.get_client_by_client_id(client_id)
        if not client:
            return []
        return filter_scopes(requested, client.allowed_scopes)

    async def create_client(
        self, request: OAuthClientCreateRequest, owner_id: Optional[str] = None
    ) -> Tuple[OAuthClient, Optional[str]]:
        """
        Create a client, returning it with the plaintext secret (shown once, None for
        public clients).
        """
        client_secret = None
        client = OAuthClient(
            client_id=OAuthClient.generate_client_id(),
            name=request.name,
            description=request.description,
            logo_url=request.logo_url,
            website_url=request.website_url,
            privacy_policy_url=request.privacy_policy_url,
            terms_of_service_url=request.terms_of_service_url,
            redirect_uris=list(request.redirect_uris),
            allowed_scopes=list(request.allowed_scopes or DEFAULT_CLIENT_SCOPES),
            allowed_grant_types=list(request.allowed_grant_types or DEFAULT_CLIENT_GRANT_TYPES),
            require_pkce=request.require_pkce,
            is_confidential=request.is_confidential,
            is_first_party=request.is_first_party,
            owner_id=owner_id,
        )
        if request.is_confidential:
            client_secret = client.regenerate_secret()
        async with self.store.session() as session:
            session.add(client)
            await session.commit()
            await session.refresh(client)
        logger.success(f"Created OAuth client {client.client_id} ({client.name}) for {owner_id}")
        self._emit(audit.CLIENT_CREATED, user_id=owner_id, client_id=client.client_id)
        return client, client_secret

    async def update_client(
        self, client_id: str, request: OAuthClientUpdateRequest
    ) -> Optional[OAuthClient]:
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client:
                return None
            changes = request.model_dump(exclude_unset=True)
            for key, value in changes.items():
                if value is not None:
                    setattr(client, key, value)
            await session.commit()
            await session.refresh(client)
        self._emit(audit.CLIENT_UPDATED, client_id=client_id, fields=sorted(changes))
        return client

    async def deactivate_client(self, client_id: str) -> bool:
        """
        Soft delete: the row stays so issued tokens keep resolving to a client.
        """
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client:
                return False
            client.is_active = False
            await session.commit()
        logger.info(f"Deactivated OAuth client {client_id}")
        self._emit(audit.CLIENT_DEACTIVATED, client_id=client_id)
        return True

    async def rotate_client_secret(self, client_id: str) -> str:
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client or not client.is_confidential:
                raise InvalidClientError("Client not found or not confidential")
            new_secret = client.regenerate_secret()
            await session.commit()
        logger.info(f"Rotated secret for OAuth client {client_id}")
        self._emit(audit.CLIENT_SECRET_ROTATED, client_id=client_id)
        return new_secret


def filter_scopes(requested: List[str], allowed: Optional[List[str]]) -> List[str]:
    allowed = set(allowed or [])
    result = []
    for scope in requested:
        if scope in allowed and scope not in result:
            result.append(scope)
    return result
