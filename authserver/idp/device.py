"""
Device authorization grant (RFC 8628) for CLIs and other input-constrained clients.
"""

import secrets
from datetime import timedelta
from typing import List, Optional
from urllib.parse import quote

from loguru import logger
from pydantic import BaseModel

from authserver import audit
from authserver.config import settings
from authserver.constants import (
    DEFAULT_DEVICE_SCOPES,
    DEVICE_CODE_EXPIRY_SECONDS,
    DEVICE_MIN_POLL_INTERVAL,
    DEVICE_SLOW_DOWN_INCREMENT,
    GRANT_DEVICE_CODE,
    STANDARD_SCOPES,
    USER_CODE_CHARS,
)
from authserver.database import utcnow
from authserver.idp.clients import filter_scopes
from authserver.idp.errors import (
    DeviceFlowError,
    InvalidClientError,
    InvalidGrantError,
    InvalidScopeError,
    UnauthorizedClientError,
)
from authserver.idp.response import DeviceAuthorizationResponse, TokenGrant
from authserver.idp.schemas import OAuthDeviceAuthorization, generate_secure_token, hash_token
from authserver.idp.service import AuthorizationServer

STATUS_PENDING = "pending"
STATUS_APPROVED = "approved"
STATUS_DENIED = "denied"
STATUS_CONSUMED = "consumed"


class DeviceVerification(BaseModel):
    """What the verification page shows the user for a user code."""

    client_id: str
    client_name: str
    scopes: List[str]
    status: str


def generate_user_code() -> str:
    """XXXX-XXXX from an alphabet without look-alike characters."""
    chars = [secrets.choice(USER_CODE_CHARS) for _ in range(8)]
    return "".join(chars[:4]) + "-" + "".join(chars[4:])


def normalize_user_code(user_code: str) -> str:
    return (user_code or "").upper().replace("-", "").replace(" ", "")


def hash_user_code(user_code: str) -> str:
    return hash_token(normalize_user_code(user_code))


class DeviceAuthorizationGrant:
    def __init__(self, server: AuthorizationServer):
        self.server = server
        self.store = server.store

    def _emit(self, action: str, **kwargs):
        if self.server.audit:
            self.server.audit.emit(action, **kwargs)

    async def create_device_authorization(
        self, client_id: str, scopes: Optional[List[str]] = None
    ) -> DeviceAuthorizationResponse:
        requested = list(scopes or [])
        now = utcnow()
        async with self.store.session() as session:
            client = await self.store.get_client(session, client_id)
            if not client:
                raise InvalidClientError("Unknown or inactive client")
            if not client.allows_grant(GRANT_DEVICE_CODE):
                raise UnauthorizedClientError(
                    "Client not authorized for device authorization grant"
                )
            granted = [
                s for s in filter_scopes(requested, client.allowed_scopes) if s in STANDARD_SCOPES
            ]
            if requested and not granted:
                raise InvalidScopeError()
            if not granted:
                granted = filter_scopes(DEFAULT_DEVICE_SCOPES, client.allowed_scopes)

            device_code = generate_secure_token()
            user_code = generate_user_code()
            session.add(
                OAuthDeviceAuthorization(
                    device_code_hash=hash_token(device_code),
                    user_code_hash=hash_user_code(user_code),
                    user_code=user_code,
                    client_id=client.id,
                    scopes=granted,
                    status=STATUS_PENDING,
                    interval=DEVICE_MIN_POLL_INTERVAL,
                    expires_at=now + timedelta(seconds=DEVICE_CODE_EXPIRY_SECONDS),
                    created_at=now,
                )
            )
            await session.commit()

        logger.debug(f"Created device authorization for client {client_id}: {granted}")
        verification_uri = f"{settings.app_url.rstrip('/')}/device"
        return DeviceAuthorizationResponse(
            device_code=device_code,
            user_code=user_code,
            verification_uri=verification_uri,
            verification_uri_complete=f"{verification_uri}?code={quote(user_code)}",
            expires_in=DEVICE_CODE_EXPIRY_SECONDS,
            interval=DEVICE_MIN_POLL_INTERVAL,
        )

    async def get_device_authorization(self, user_code: str) -> Optional[DeviceVerification]:
        """Look up a live authorization by the code the user typed."""
        async with self.store.session() as session:
            device = await self.store.get_device_by_user_code(session, hash_user_code(user_code))
            if not device or device.expires_at <= utcnow():
                return None
            client = await self.store.get_client_by_pk(session, device.client_id)
            return DeviceVerification(
                client_id=client.client_id,
                client_name=client.name,
                scopes=list(device.scopes),
                status=device.status,
            )

    async def verify_user_code(
        self,
        user_code: str,
        user_id: str,
        approve: bool,
        approved_scopes: Optional[List[str]] = None,
    ) -> DeviceVerification:
        """
        Approve or deny a pending authorization on behalf of a signed-in user.
        Approved scopes can only narrow what the device asked for.
        """
        now = utcnow()
        async with self.store.session() as session:
            device = await self.store.get_device_by_user_code(session, hash_user_code(user_code))
            if not device or device.expires_at <= now:
                raise InvalidGrantError("Invalid or expired user code")
            if device.status != STATUS_PENDING:
                raise InvalidGrantError(f"Authorization already {device.status}")
            client = await self.store.get_client_by_pk(session, device.client_id)

            if approve:
                scopes = list(device.scopes)
                if approved_scopes:
                    scopes = [s for s in approved_scopes if s in device.scopes]
                if not scopes:
                    raise InvalidScopeError("None of the approved scopes were requested")
                values = dict(status=STATUS_APPROVED, user_id=user_id, approved_scopes=scopes)
            else:
                scopes = []
                values = dict(status=STATUS_DENIED, user_id=user_id)
            if not await self.store.transition_device(
                session, device.id, STATUS_PENDING, now, **values
            ):
                await session.rollback()
                raise InvalidGrantError("Authorization is no longer pending")
            await session.commit()

        status = values["status"]
        logger.info(f"Device authorization {status} by {user_id} for client {client.client_id}")
        self._emit(
            audit.DEVICE_APPROVED if approve else audit.DEVICE_DENIED,
            user_id=user_id,
            client_id=client.client_id,
            scopes=scopes,
        )
        return DeviceVerification(
            client_id=client.client_id,
            client_name=client.name,
            scopes=scopes,
            status=status,
        )

    async def exchange_device_code(self, device_code: str, client_id: str) -> TokenGrant:
        """
        Token endpoint polling. Raises authorization_pending, slow_down,
        access_denied or expired_token until the user has approved, then
        consumes the authorization exactly once.
        """
        now = utcnow()
        async with self.store.session() as session:
            device = None
            if device_code:
                device = await self.store.get_device_by_device_code(
                    session, hash_token(device_code)
                )
            if not device or device.status == STATUS_CONSUMED:
                raise InvalidGrantError("Invalid or expired device code")

            client = await self.store.get_client_by_pk(session, device.client_id)
            if not client or not client.is_active or client.client_id != client_id:
                raise InvalidClientError("Client mismatch")

            if device.expires_at <= now:
                raise DeviceFlowError("expired_token", "Device code has expired")

            if device.last_polled_at is not None:
                elapsed = (now - device.last_polled_at).total_seconds()
                if elapsed < device.interval:
                    device.interval = device.interval + DEVICE_SLOW_DOWN_INCREMENT
                    device.last_polled_at = now
                    await session.commit()
                    raise DeviceFlowError("slow_down", "Polling too frequently")
            device.last_polled_at = now

            if device.status == STATUS_PENDING:
                await session.commit()
                raise DeviceFlowError("authorization_pending", "Waiting for user authorization")
            if device.status == STATUS_DENIED:
                await session.commit()
                raise DeviceFlowError("access_denied", "User denied authorization")
            if not device.user_id or not device.approved_scopes:
                raise InvalidGrantError("Authorization incomplete")

            user_id = device.user_id
            scopes = list(device.approved_scopes)
            profile = await self.server.profile_for_id_token(user_id, scopes)
            if not await self.store.transition_device(
                session, device.id, STATUS_APPROVED, now, status=STATUS_CONSUMED
            ):
                await session.rollback()
                raise InvalidGrantError("Device code has already been used")
            grant = self.server.mint_tokens(session, client, user_id, scopes, now, profile=profile)
            await session.commit()

        logger.success(f"Exchanged device code for client {client_id} user {user_id}")
        self._emit(
            audit.TOKEN_ISSUED,
            user_id=user_id,
            client_id=client_id,
            grant_type=GRANT_DEVICE_CODE,
            scopes=scopes,
        )
        return grant
