"""
Service layer for the OAuth2/OIDC authorization server: authorization codes,
token issuance, refresh rotation, revocation, introspection and consent.
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from loguru import logger

from authserver import audit
from authserver.audit import AuditEmitter
from authserver.config import settings
from authserver.constants import (
    ACCESS_TOKEN_EXPIRY_SECONDS,
    AUTH_CODE_EXPIRY_SECONDS,
    GRANT_AUTHORIZATION_CODE,
    GRANT_REFRESH_TOKEN,
    REFRESH_TOKEN_EXPIRY_SECONDS,
    TOKEN_TYPE_BEARER,
)
from authserver.database import generate_uuid, utcnow
from authserver.idp import pkce
from authserver.idp.clients import ClientRegistry, filter_scopes
from authserver.idp.errors import (
    InvalidClientError,
    InvalidGrantError,
    InvalidRequestError,
    InvalidScopeError,
    ServerError,
    UnauthorizedClientError,
)
from authserver.idp.id_token import build_id_token_claims, profile_claims, sign_id_token
from authserver.idp.response import AccessTokenInfo, IntrospectionResponse, TokenGrant
from authserver.idp.schemas import (
    OAuthAccessToken,
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthConsent,
    OAuthRefreshToken,
    generate_secure_token,
    hash_token,
)
from authserver.idp.store import OAuthStore
from authserver.profiles import ProfileLookupError, ProfileProvider, UserProfile

ACCESS_TOKEN_HINT = "access_token"
REFRESH_TOKEN_HINT = "refresh_token"


def _epoch(value: datetime) -> int:
    return int(value.replace(tzinfo=timezone.utc).timestamp())


class AuthorizationServer:
    def __init__(
        self,
        store: OAuthStore,
        registry: ClientRegistry,
        profiles: ProfileProvider,
        audit_emitter: Optional[AuditEmitter] = None,
    ):
        self.store = store
        self.registry = registry
        self.profiles = profiles
        self.audit = audit_emitter

    def _emit(self, action: str, **kwargs):
        if self.audit:
            self.audit.emit(action, **kwargs)

    async def create_authorization_code(
        self,
        client_id: str,
        user_id: str,
        redirect_uri: str,
        scopes: List[str],
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        nonce: Optional[str] = None,
        remember_consent: bool = True,
    ) -> str:
        """
        Issue a single-use authorization code for an already authenticated user.
        Returns the plain code (to be sent to the client's redirect_uri).
        """
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client:
                raise InvalidClientError("Unknown or inactive client")
            if not client.is_valid_redirect_uri(redirect_uri):
                raise InvalidRequestError("redirect_uri is not registered for this client")
            if not client.allows_grant(GRANT_AUTHORIZATION_CODE):
                raise UnauthorizedClientError()
            granted = filter_scopes(scopes, client.allowed_scopes)
            if not granted:
                raise InvalidScopeError()

            method = None
            if code_challenge:
                # RFC 7636 4.3: the method defaults to plain when omitted.
                method = code_challenge_method or pkce.PLAIN
                if method not in pkce.SUPPORTED_METHODS:
                    raise InvalidRequestError("Unsupported code_challenge_method")
                if method == pkce.PLAIN and not settings.pkce_allow_plain:
                    raise InvalidRequestError("code_challenge_method plain is not allowed")
            elif client.require_pkce:
                raise InvalidRequestError("code_challenge is required for this client")

            now = utcnow()
            code = generate_secure_token()
            session.add(
                OAuthAuthorizationCode(
                    code=code,
                    client_id=client.id,
                    user_id=user_id,
                    redirect_uri=redirect_uri,
                    scopes=granted,
                    code_challenge=code_challenge,
                    code_challenge_method=method,
                    nonce=nonce,
                    remember_consent=remember_consent,
                    expires_at=now + timedelta(seconds=AUTH_CODE_EXPIRY_SECONDS),
                    created_at=now,
                )
            )
            await session.commit()

        logger.info(f"Issued authorization code for client {client_id} user {user_id}: {granted}")
        return code

    async def exchange_authorization_code(
        self,
        code: str,
        client_id: str,
        redirect_uri: str,
        code_verifier: Optional[str] = None,
    ) -> TokenGrant:
        """
        Exchange an authorization code for tokens.

        Every check happens before the code is claimed, and the claim shares a
        transaction with the token inserts, so a failure never burns the code
        and a lost race never leaves tokens behind. All failures are invalid_grant.
        """
        now = utcnow()
        async with self.store.session() as session:
            auth_code = await self.store.get_authorization_code(session, code) if code else None
            if not auth_code or auth_code.used_at is not None or auth_code.expires_at <= now:
                raise InvalidGrantError("Invalid or expired authorization code")

            client = await self.store.get_client_by_pk(session, auth_code.client_id)
            if not client or not client.is_active or client.client_id != client_id:
                raise InvalidGrantError("Authorization code was not issued to this client")

            if auth_code.redirect_uri != redirect_uri:
                raise InvalidGrantError("redirect_uri does not match the authorization request")

            if auth_code.code_challenge:
                if not code_verifier:
                    raise InvalidGrantError("code_verifier is required")
                if not pkce.is_valid_verifier(code_verifier):
                    raise InvalidGrantError("Malformed code_verifier")
                if not pkce.verify_code_verifier(
                    code_verifier, auth_code.code_challenge, auth_code.code_challenge_method
                ):
                    raise InvalidGrantError("PKCE verification failed")

            scopes = list(auth_code.scopes)
            user_id = auth_code.user_id
            profile = await self.profile_for_id_token(user_id, scopes)

            if not await self.store.claim_authorization_code(session, auth_code.id, now):
                await session.rollback()
                logger.warning(
                    f"Authorization code for client {client_id} was already used or expired"
                )
                raise InvalidGrantError("Authorization code has already been used")

            grant = self.mint_tokens(
                session,
                client,
                user_id,
                scopes,
                now,
                nonce=auth_code.nonce,
                auth_time=_epoch(auth_code.created_at or now),
                profile=profile,
            )
            if auth_code.remember_consent:
                await self.store.upsert_consent(session, client.id, user_id, scopes, now)
            await session.commit()

        logger.success(f"Exchanged authorization code for client {client_id} user {user_id}")
        self._emit(
            audit.TOKEN_ISSUED,
            user_id=user_id,
            client_id=client_id,
            grant_type=GRANT_AUTHORIZATION_CODE,
            scopes=scopes,
        )
        return grant

    async def profile_for_id_token(
        self, user_id: str, scopes: List[str]
    ) -> Optional[UserProfile]:
        """
        Profile needed for ID token claims, if any; a missing profile is a server error.
        """
        if "openid" not in scopes or not ({"profile", "email"} & set(scopes)):
            return None
        try:
            profile = await self.profiles.get_profile(user_id)
        except ProfileLookupError as exc:
            raise ServerError("User profile is unavailable") from exc
        if not profile:
            logger.error(f"No profile found for user {user_id}")
            raise ServerError("User profile is unavailable")
        return profile

    def mint_tokens(
        self,
        session,
        client: OAuthClient,
        user_id: str,
        scopes: List[str],
        now: datetime,
        nonce: Optional[str] = None,
        auth_time: Optional[int] = None,
        profile: Optional[UserProfile] = None,
        refresh_id: Optional[str] = None,
        include_id_token: bool = True,
    ) -> TokenGrant:
        """
        Add the access token (and refresh token for offline_access) to the session
        without committing, and sign the ID token for openid.
        """
        access_token = generate_secure_token()
        access_row = OAuthAccessToken(
            id=generate_uuid(),
            token_hash=hash_token(access_token),
            client_id=client.id,
            user_id=user_id,
            scopes=list(scopes),
            expires_at=now + timedelta(seconds=ACCESS_TOKEN_EXPIRY_SECONDS),
            created_at=now,
        )
        session.add(access_row)

        refresh_token = None
        if "offline_access" in scopes:
            refresh_token = generate_secure_token()
            session.add(
                OAuthRefreshToken(
                    id=refresh_id or generate_uuid(),
                    token_hash=hash_token(refresh_token),
                    client_id=client.id,
                    user_id=user_id,
                    access_token_id=access_row.id,
                    scopes=list(scopes),
                    expires_at=now + timedelta(seconds=REFRESH_TOKEN_EXPIRY_SECONDS),
                    created_at=now,
                )
            )

        id_token = None
        if include_id_token and "openid" in scopes:
            claims = build_id_token_claims(
                user_id,
                client.client_id,
                scopes,
                profile=profile,
                nonce=nonce,
                auth_time=auth_time,
                now=_epoch(now),
            )
            id_token = sign_id_token(claims)

        return TokenGrant(
            access_token=access_token,
            refresh_token=refresh_token,
            id_token=id_token,
            expires_in=ACCESS_TOKEN_EXPIRY_SECONDS,
            token_type=TOKEN_TYPE_BEARER,
            scopes=list(scopes),
        )

    async def refresh_access_token(
        self,
        refresh_token: str,
        client_id: str,
        client_secret: Optional[str] = None,
    ) -> TokenGrant:
        """
        Rotate a refresh token: the presented token is retired and a new
        access/refresh pair with the same scopes is returned.
        """
        valid, client = await self.registry.validate_client_credentials(client_id, client_secret)
        if not valid:
            raise InvalidClientError()
        if not client.allows_grant(GRANT_REFRESH_TOKEN):
            raise UnauthorizedClientError()

        now = utcnow()
        async with self.store.session() as session:
            token = None
            if refresh_token:
                token = await self.store.get_refresh_token(session, hash_token(refresh_token))
            if not token or token.client_id != client.id:
                raise InvalidGrantError("Invalid refresh token")
            if token.revoked_at is not None:
                raise InvalidGrantError("Refresh token has been revoked")
            if token.rotated_at is not None:
                await self._handle_refresh_replay(session, token, client, now)
                raise InvalidGrantError("Refresh token has already been used")
            if token.expires_at <= now:
                raise InvalidGrantError("Refresh token has expired")

            scopes = list(token.scopes)
            user_id = token.user_id
            new_refresh_id = generate_uuid()
            if not await self.store.claim_refresh_token(session, token.id, new_refresh_id, now):
                await session.rollback()
                logger.warning(f"Lost refresh rotation race for client {client_id} user {user_id}")
                raise InvalidGrantError("Refresh token has already been used")

            grant = self.mint_tokens(
                session,
                client,
                user_id,
                scopes,
                now,
                refresh_id=new_refresh_id,
                include_id_token=False,
            )
            await session.commit()

        logger.info(f"Rotated refresh token for client {client_id} user {user_id}")
        self._emit(audit.TOKEN_REFRESHED, user_id=user_id, client_id=client_id, scopes=scopes)
        return grant

    async def _handle_refresh_replay(
        self, session, token: OAuthRefreshToken, client: OAuthClient, now: datetime
    ):
        """
        A rotated token came back. Optionally revoke everything issued from it onwards.
        """
        logger.warning(
            f"Refresh token replay detected for client {client.client_id} user {token.user_id}"
        )
        revoked = {"access_tokens": 0, "refresh_tokens": 0}
        if settings.revoke_chain_on_refresh_replay:
            chain = [token] + await self.store.get_refresh_descendants(session, token)
            access_ids = [t.access_token_id for t in chain if t.access_token_id]
            revoked["refresh_tokens"] = await self.store.revoke_refresh_tokens(
                session, now, OAuthRefreshToken.id.in_([t.id for t in chain])
            )
            if access_ids:
                revoked["access_tokens"] = await self.store.revoke_access_tokens(
                    session, now, OAuthAccessToken.id.in_(access_ids)
                )
            await session.commit()
            logger.warning(f"Revoked refresh chain after replay: {revoked}")
        self._emit(
            audit.TOKEN_REPLAY_DETECTED,
            user_id=token.user_id,
            client_id=client.client_id,
            refresh_token_id=token.id,
            **revoked,
        )

    async def revoke_token(self, token: str, token_type_hint: Optional[str] = None) -> None:
        """
        RFC 7009 revocation. Never reports whether the token existed, and unknown
        hints are ignored.
        """
        if not token:
            return
        token_hash = hash_token(token)
        now = utcnow()
        order = [ACCESS_TOKEN_HINT, REFRESH_TOKEN_HINT]
        if token_type_hint == REFRESH_TOKEN_HINT:
            order.reverse()
        revoked = 0
        async with self.store.session() as session:
            for kind in order:
                if kind == ACCESS_TOKEN_HINT:
                    revoked += await self.store.revoke_access_tokens(
                        session, now, OAuthAccessToken.token_hash == token_hash
                    )
                else:
                    revoked += await self.store.revoke_refresh_tokens(
                        session, now, OAuthRefreshToken.token_hash == token_hash
                    )
                if revoked:
                    break
            await session.commit()
        if revoked:
            logger.info("Revoked OAuth token")
            self._emit(audit.TOKEN_REVOKED)

    async def introspect_token(
        self, token: str, token_type_hint: Optional[str] = None
    ) -> IntrospectionResponse:
        """
        RFC 7662 introspection. The hint only decides which store is consulted first.
        """
        if not token:
            return IntrospectionResponse(active=False)
        token_hash = hash_token(token)
        now = utcnow()
        order = [ACCESS_TOKEN_HINT, REFRESH_TOKEN_HINT]
        if token_type_hint == REFRESH_TOKEN_HINT:
            order.reverse()
        async with self.store.session() as session:
            for kind in order:
                if kind == ACCESS_TOKEN_HINT:
                    row = await self.store.get_access_token(session, token_hash)
                    if row is None:
                        continue
                    active = row.revoked_at is None and row.expires_at > now
                    token_type = TOKEN_TYPE_BEARER
                else:
                    row = await self.store.get_refresh_token(session, token_hash)
                    if row is None:
                        continue
                    active = (
                        row.revoked_at is None
                        and row.rotated_at is None
                        and row.expires_at > now
                    )
                    token_type = REFRESH_TOKEN_HINT
                client = await self.store.get_client_by_pk(session, row.client_id)
                if not active or not client or not client.is_active:
                    return IntrospectionResponse(active=False)
                return IntrospectionResponse(
                    active=True,
                    scope=" ".join(row.scopes or []),
                    client_id=client.client_id,
                    username=await self._username(row.user_id),
                    token_type=token_type,
                    exp=_epoch(row.expires_at),
                    iat=_epoch(row.created_at or now),
                    sub=row.user_id,
                    aud=client.client_id,
                    iss=settings.issuer,
                )
        return IntrospectionResponse(active=False)

    async def _username(self, user_id: str) -> Optional[str]:
        try:
            profile = await self.profiles.get_profile(user_id)
        except ProfileLookupError:
            return None
        return profile.email if profile else None

    async def revoke_all_user_oauth_tokens(self, user_id: str) -> Dict[str, int]:
        """
        Revoke every live token of a user (logout everywhere, security events).
        """
        now = utcnow()
        async with self.store.session() as session:
            access_count = await self.store.revoke_access_tokens(
                session, now, OAuthAccessToken.user_id == user_id
            )
            refresh_count = await self.store.revoke_refresh_tokens(
                session, now, OAuthRefreshToken.user_id == user_id
            )
            await session.commit()
        result = {"access_tokens": access_count, "refresh_tokens": refresh_count}
        logger.info(f"Revoked all OAuth tokens for user {user_id}: {result}")
        self._emit(audit.TOKENS_REVOKED_ALL, user_id=user_id, **result)
        return result

    async def validate_access_token(self, token: str) -> Optional[AccessTokenInfo]:
        """
        Resolve a bearer token for resource servers; None if unknown, revoked,
        expired or issued to a deactivated client.
        """
        if not token:
            return None
        async with self.store.session() as session:
            row = await self.store.get_access_token(session, hash_token(token))
            if not row or row.revoked_at is not None or row.expires_at <= utcnow():
                return None
            client = await self.store.get_client_by_pk(session, row.client_id)
            if not client or not client.is_active:
                return None
            return AccessTokenInfo(
                token_id=row.id,
                user_id=row.user_id,
                client_id=client.client_id,
                scopes=list(row.scopes or []),
                expires_at=row.expires_at,
            )

    async def get_userinfo(self, token: str) -> Optional[dict]:
        """
        OIDC UserInfo claims for a bearer token, filtered by its scopes.
        """
        info = await self.validate_access_token(token)
        if not info:
            return None
        claims = {"sub": info.user_id}
        try:
            profile = await self.profiles.get_profile(info.user_id)
        except ProfileLookupError as exc:
            raise ServerError("User profile is unavailable") from exc
        if profile:
            claims.update(profile_claims(profile, info.scopes))
        return claims

    async def has_user_consent(self, user_id: str, client_id: str, scopes: List[str]) -> bool:
        """
        First-party clients never prompt; otherwise every scope must already be granted.
        """
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client:
                return False
            if client.is_first_party:
                return True
            consent = await self.store.get_consent(session, client.id, user_id)
            if not consent or consent.revoked_at is not None:
                return False
            granted = set(consent.scopes or [])
            return all(scope in granted for scope in scopes)

    async def revoke_user_consent(self, user_id: str, client_id: str) -> bool:
        """
        Withdraw consent and revoke every live token of the (client, user) pair.
        Returns whether a consent record existed.
        """
        now = utcnow()
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id, active_only=False)
            if not client:
                return False
            consent = await self.store.get_consent(session, client.id, user_id)
            if consent:
                consent.revoked_at = now
                consent.updated_at = now
            access_count = await self.store.revoke_access_tokens(
                session,
                now,
                OAuthAccessToken.client_id == client.id,
                OAuthAccessToken.user_id == user_id,
            )
            refresh_count = await self.store.revoke_refresh_tokens(
                session,
                now,
                OAuthRefreshToken.client_id == client.id,
                OAuthRefreshToken.user_id == user_id,
            )
            await session.commit()
        logger.info(
            f"Revoked consent of user {user_id} for client {client_id} "
            f"({access_count} access, {refresh_count} refresh tokens)"
        )
        self._emit(
            audit.CONSENT_REVOKED,
            user_id=user_id,
            client_id=client_id,
            access_tokens=access_count,
            refresh_tokens=refresh_count,
        )
        return consent is not None

    async def get_user_consents(self, user_id: str) -> List[OAuthConsent]:
        async with self.store.session() as session:
            return await self.store.list_consents(session, user_id)

    async def authenticate_client(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        grant_type: Optional[str] = None,
    ) -> OAuthClient:
        """
        Token endpoint client authentication; raises invalid_client or unauthorized_client.
        """
        if not client_id:
            raise InvalidClientError()
        valid, client = await self.registry.validate_client_credentials(client_id, client_secret)
        if not valid:
            raise InvalidClientError()
        if grant_type and not client.allows_grant(grant_type):
            raise UnauthorizedClientError()
        return client


def parse_scope(scope: Optional[str]) -> List[str]:
    """Space separated scope string to a de-duplicated list."""
    result = []
    for item in (scope or "").split():
        if item not in result:
            result.append(item)
    return result
