"""
Persistence for the authorization server.

Every service receives an OAuthStore rather than reaching for a global session.
The store hands out sessions and wraps the handful of queries that must be
race safe: the single-use claims are conditional UPDATEs whose RETURNING row
decides which concurrent request wins.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from authserver.idp.schemas import (
    OAuthAccessToken,
    OAuthAuthorizationCode,
    OAuthClient,
    OAuthConsent,
    OAuthDeviceAuthorization,
    OAuthRefreshToken,
)


class OAuthStore:
    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session:
            yield session

    # Clients.
    async def get_client(
        self, session: AsyncSession, client_id: str, active_only: bool = True
    ) -> Optional[OAuthClient]:
        query = select(OAuthClient).where(OAuthClient.client_id == client_id)
        if active_only:
            query = query.where(OAuthClient.is_active.is_(True))
        return (await session.execute(query)).scalar_one_or_none()

    async def get_client_by_pk(self, session: AsyncSession, pk: str) -> Optional[OAuthClient]:
        return await session.get(OAuthClient, pk)

    # Authorization codes.
    async def get_authorization_code(
        self, session: AsyncSession, code: str
    ) -> Optional[OAuthAuthorizationCode]:
        return (
            await session.execute(
                select(OAuthAuthorizationCode).where(OAuthAuthorizationCode.code == code)
            )
        ).scalar_one_or_none()

    async def claim_authorization_code(
        self, session: AsyncSession, code_id: str, now: datetime
    ) -> bool:
        """
        Mark a code used, only if nobody else has and it has not expired.
        """
        result = await session.execute(
            update(OAuthAuthorizationCode)
            .where(
                OAuthAuthorizationCode.id == code_id,
                OAuthAuthorizationCode.used_at.is_(None),
                OAuthAuthorizationCode.expires_at > now,
            )
            .values(used_at=now)
            .returning(OAuthAuthorizationCode.id)
        )
        return result.scalar_one_or_none() is not None

    # Tokens.
    async def get_access_token(
        self, session: AsyncSession, token_hash: str
    ) -> Optional[OAuthAccessToken]:
        return (
            await session.execute(
                select(OAuthAccessToken).where(OAuthAccessToken.token_hash == token_hash)
            )
        ).scalar_one_or_none()

    async def get_refresh_token(
        self, session: AsyncSession, token_hash: str
    ) -> Optional[OAuthRefreshToken]:
        return (
            await session.execute(
                select(OAuthRefreshToken).where(OAuthRefreshToken.token_hash == token_hash)
            )
        ).scalar_one_or_none()

    async def claim_refresh_token(
        self, session: AsyncSession, token_id: str, replacement_id: str, now: datetime
    ) -> bool:
        """
        Rotate a refresh token, only if it is neither rotated nor revoked yet.
        """
        result = await session.execute(
            update(OAuthRefreshToken)
            .where(
                OAuthRefreshToken.id == token_id,
                OAuthRefreshToken.rotated_at.is_(None),
                OAuthRefreshToken.revoked_at.is_(None),
            )
            .values(rotated_at=now, replaced_by_token_id=replacement_id)
            .returning(OAuthRefreshToken.id)
        )
        return result.scalar_one_or_none() is not None

    async def get_refresh_descendants(
        self, session: AsyncSession, token: OAuthRefreshToken
    ) -> List[OAuthRefreshToken]:
        """
        Follow replaced_by_token_id links from a rotated token to the newest one.
        """
        chain = []
        seen = {token.id}
        next_id = token.replaced_by_token_id
        while next_id and next_id not in seen:
            seen.add(next_id)
            child = await session.get(OAuthRefreshToken, next_id)
            if not child:
                break
            chain.append(child)
            next_id = child.replaced_by_token_id
        return chain

    async def revoke_access_tokens(self, session: AsyncSession, now: datetime, *criteria) -> int:
        """Revoke matching access tokens that are not already revoked, returning the count."""
        result = await session.execute(
            update(OAuthAccessToken)
            .where(OAuthAccessToken.revoked_at.is_(None), *criteria)
            .values(revoked_at=now)
            .returning(OAuthAccessToken.id)
        )
        return len(result.scalars().all())

    async def revoke_refresh_tokens(self, session: AsyncSession, now: datetime, *criteria) -> int:
        """Revoke matching refresh tokens that are not already revoked, returning the count."""
        result = await session.execute(
            update(OAuthRefreshToken)
            .where(OAuthRefreshToken.revoked_at.is_(None), *criteria)
            .values(revoked_at=now)
            .returning(OAuthRefreshToken.id)
        )
        return len(result.scalars().all())

    # Consent.
    async def get_consent(
        self, session: AsyncSession, client_pk: str, user_id: str
    ) -> Optional[OAuthConsent]:
        return (
            await session.execute(
                select(OAuthConsent).where(
                    OAuthConsent.client_id == client_pk,
                    OAuthConsent.user_id == user_id,
                )
            )
        ).scalar_one_or_none()

    async def upsert_consent(
        self,
        session: AsyncSession,
        client_pk: str,
        user_id: str,
        scopes: List[str],
        now: datetime,
    ) -> OAuthConsent:
        """
        Record the latest grant for (client, user), re-enabling a revoked consent.
        Does not commit.
        """
        consent = await self.get_consent(session, client_pk, user_id)
        if not consent:
            consent = OAuthConsent(
                client_id=client_pk,
                user_id=user_id,
                scopes=list(scopes),
                granted_at=now,
                created_at=now,
                updated_at=now,
            )
            session.add(consent)
        else:
            consent.scopes = list(scopes)
            consent.revoked_at = None
            consent.granted_at = now
            consent.updated_at = now
        return consent

    async def list_consents(self, session: AsyncSession, user_id: str) -> List[OAuthConsent]:
        return (
            (
                await session.execute(
                    select(OAuthConsent)
                    .where(
                        OAuthConsent.user_id == user_id,
                        OAuthConsent.revoked_at.is_(None),
                    )
                    .order_by(OAuthConsent.granted_at.desc())
                )
            )
            .scalars()
            .all()
        )

    # Device authorizations.
    async def get_device_by_device_code(
        self, session: AsyncSession, device_code_hash: str
    ) -> Optional[OAuthDeviceAuthorization]:
        return (
            await session.execute(
                select(OAuthDeviceAuthorization).where(
                    OAuthDeviceAuthorization.device_code_hash == device_code_hash
                )
            )
        ).scalar_one_or_none()

    async def get_device_by_user_code(
        self, session: AsyncSession, user_code_hash: str
    ) -> Optional[OAuthDeviceAuthorization]:
        return (
            await session.execute(
                select(OAuthDeviceAuthorization).where(
                    OAuthDeviceAuthorization.user_code_hash == user_code_hash
                )
            )
        ).scalar_one_or_none()

    async def transition_device(
        self,
        session: AsyncSession,
        device_id: str,
        from_status: str,
        now: datetime,
        **values,
    ) -> bool:
        """
        Move a device authorization out of from_status, if it is still there and unexpired.
        """
        result = await session.execute(
            update(OAuthDeviceAuthorization)
            .where(
                OAuthDeviceAuthorization.id == device_id,
                OAuthDeviceAuthorization.status == from_status,
                OAuthDeviceAuthorization.expires_at > now,
            )
            .values(**values)
            .returning(OAuthDeviceAuthorization.id)
        )
        return result.scalar_one_or_none() is not None
