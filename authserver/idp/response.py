"""
Response models for the authorization server.
"""

from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel

from authserver.constants import TOKEN_TYPE_BEARER


class TokenGrant(BaseModel):
    """Tokens minted by a successful grant (plaintext, returned to the client once)."""

    access_token: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    expires_in: int
    token_type: str = TOKEN_TYPE_BEARER
    scopes: List[str]

    def to_response(self) -> "TokenResponse":
        return TokenResponse(
            access_token=self.access_token,
            token_type=self.token_type,
            expires_in=self.expires_in,
            refresh_token=self.refresh_token,
            id_token=self.id_token,
            scope=" ".join(self.scopes),
        )


class TokenResponse(BaseModel):
    """OAuth2 token response following RFC 6749."""

    access_token: str
    token_type: str = TOKEN_TYPE_BEARER
    expires_in: int
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None


class AccessTokenInfo(BaseModel):
    """A validated access token, as seen by resource servers."""

    token_id: str
    user_id: str
    client_id: str
    scopes: List[str]
    expires_at: datetime


class IntrospectionResponse(BaseModel):
    """RFC 7662 response; only `active` is present for inactive tokens."""

    active: bool
    scope: Optional[str] = None
    client_id: Optional[str] = None
    username: Optional[str] = None
    token_type: Optional[str] = None
    exp: Optional[int] = None
    iat: Optional[int] = None
    sub: Optional[str] = None
    aud: Optional[str] = None
    iss: Optional[str] = None


class ClientRegistrationResponse(BaseModel):
    """RFC 7591 client information response."""

    client_id: str
    client_secret: Optional[str] = None
    client_id_issued_at: int
    client_secret_expires_at: int = 0
    client_name: str
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    scope: str
    token_endpoint_auth_method: str
    logo_uri: Optional[str] = None
    client_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    tos_uri: Optional[str] = None


class DeviceAuthorizationResponse(BaseModel):
    """RFC 8628 device authorization response."""

    device_code: str
    user_code: str
    verification_uri: str
    verification_uri_complete: str
    expires_in: int
    interval: int


class ScopeResponse(BaseModel):
    name: str
    description: str
