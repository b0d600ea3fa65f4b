"""
Database models and request schemas for the authorization server.

Client secrets are stored as argon2 hashes. Access/refresh tokens and device codes
are 256-bit random hex strings looked up by their SHA-256 digest.
Authorization codes are short-lived and single use, and are stored as issued.
"""

import hashlib
import secrets
from typing import List, Optional
from urllib.parse import urlparse

from passlib.hash import argon2
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import relationship

from authserver.constants import DEFAULT_CLIENT_GRANT_TYPES, DEFAULT_CLIENT_SCOPES
from authserver.database import Base, StringList, generate_uuid


def generate_secure_token(nbytes: int = 32) -> str:
    """Generate a random hex token (nbytes of entropy)."""
    return secrets.token_hex(nbytes)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used for every stored credential."""
    return hashlib.sha256(token.encode()).hexdigest()


def is_absolute_uri(uri: str) -> bool:
    """Well-formed absolute URI without a fragment (RFC 6749 section 3.1.2)."""
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    if not parsed.scheme or parsed.fragment:
        return False
    if parsed.scheme in ("http", "https"):
        return bool(parsed.netloc)
    return bool(parsed.netloc or parsed.path)


class OAuthClient(Base):
    """A registered OAuth2 client application."""

    __tablename__ = "oauth_clients"

    id = Column(String, primary_key=True, default=generate_uuid)
    client_id = Column(String(64), unique=True, nullable=False, index=True)
    client_secret_hash = Column(Text, nullable=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    logo_url = Column(Text, nullable=True)
    website_url = Column(Text, nullable=True)
    privacy_policy_url = Column(Text, nullable=True)
    terms_of_service_url = Column(Text, nullable=True)
    redirect_uris = Column(StringList, nullable=False)
    allowed_scopes = Column(StringList, nullable=False, default=lambda: list(DEFAULT_CLIENT_SCOPES))
    allowed_grant_types = Column(
        StringList, nullable=False, default=lambda: list(DEFAULT_CLIENT_GRANT_TYPES)
    )
    require_pkce = Column(Boolean, default=True, nullable=False)
    is_confidential = Column(Boolean, default=True, nullable=False)
    is_first_party = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    owner_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    @classmethod
    def generate_client_id(cls) -> str:
        return generate_secure_token(16)

    @classmethod
    def generate_client_secret(cls) -> str:
        return generate_secure_token(32)

    def verify_secret(self, secret: Optional[str]) -> bool:
        """Check a presented secret against the stored argon2 hash."""
        if not secret or not self.client_secret_hash:
            return False
        return argon2.verify(secret, self.client_secret_hash)

    def regenerate_secret(self) -> str:
        new_secret = self.generate_client_secret()
        self.client_secret_hash = argon2.hash(new_secret)
        return new_secret

    def is_valid_redirect_uri(self, uri: str) -> bool:
        """Exact match only, no prefix or wildcard matching."""
        return uri in (self.redirect_uris or [])

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in (self.allowed_grant_types or [])


class OAuthAuthorizationCode(Base):
    """One-time authorization code, valid for ten minutes."""

    __tablename__ = "oauth_authorization_codes"

    id = Column(String, primary_key=True, default=generate_uuid)
    code = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(String, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False)
    redirect_uri = Column(Text, nullable=False)
    scopes = Column(StringList, nullable=False)
    code_challenge = Column(String(128), nullable=True)
    code_challenge_method = Column(String(10), nullable=True)
    nonce = Column(String(128), nullable=True)
    remember_consent = Column(Boolean, default=True, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    used_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    client = relationship("OAuthClient")


class OAuthAccessToken(Base):
    """Opaque bearer access token (hash only)."""

    __tablename__ = "oauth_access_tokens"

    id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(String, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False, index=True)
    scopes = Column(StringList, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    client = relationship("OAuthClient")


class OAuthRefreshToken(Base):
    """Refresh token; rotation links each token to its replacement."""

    __tablename__ = "oauth_refresh_tokens"

    id = Column(String, primary_key=True, default=generate_uuid)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    client_id = Column(String, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False, index=True)
    access_token_id = Column(
        String, ForeignKey("oauth_access_tokens.id", ondelete="CASCADE"), nullable=True
    )
    scopes = Column(StringList, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    rotated_at = Column(DateTime, nullable=True)
    replaced_by_token_id = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    client = relationship("OAuthClient")


class OAuthConsent(Base):
    """Scopes a user has agreed to grant a client without being asked again."""

    __tablename__ = "oauth_consents"

    id = Column(String, primary_key=True, default=generate_uuid)
    client_id = Column(String, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String, nullable=False, index=True)
    scopes = Column(StringList, nullable=False)
    granted_at = Column(DateTime, server_default=func.now(), nullable=False)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    client = relationship("OAuthClient")

    __table_args__ = (
        UniqueConstraint("client_id", "user_id", name="constraint_oauth_consent_client_user"),
    )


class OAuthDeviceAuthorization(Base):
    """
    Pending device authorization (RFC 8628).
    Status moves pending -> approved|denied, and approved -> consumed exactly once.
    """

    __tablename__ = "oauth_device_authorizations"

    id = Column(String, primary_key=True, default=generate_uuid)
    device_code_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_code_hash = Column(String(64), unique=True, nullable=False, index=True)
    user_code = Column(String(16), nullable=False)
    client_id = Column(String, ForeignKey("oauth_clients.id", ondelete="CASCADE"), nullable=False)
    scopes = Column(StringList, nullable=False)
    approved_scopes = Column(StringList, nullable=True)
    user_id = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default="pending")
    interval = Column(Integer, nullable=False)
    last_polled_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    client = relationship("OAuthClient")

    __table_args__ = (Index("idx_oauth_device_status", "status"),)


class OAuthClientCreateRequest(BaseModel):
    """Manual client registration (developer settings or first-party provisioning)."""

    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    redirect_uris: List[str]
    website_url: Optional[str] = None
    logo_url: Optional[str] = None
    privacy_policy_url: Optional[str] = None
    terms_of_service_url: Optional[str] = None
    is_confidential: bool = True
    is_first_party: bool = False
    require_pkce: bool = True
    allowed_scopes: Optional[List[str]] = None
    allowed_grant_types: Optional[List[str]] = None

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if not v:
            raise ValueError("At least one redirect URI is required")
        if len(v) > 10:
            raise ValueError("Maximum 10 redirect URIs allowed")
        for uri in v:
            if not is_absolute_uri(uri):
                raise ValueError(f"Invalid redirect URI: {uri}")
        return v


class OAuthClientUpdateRequest(BaseModel):
    """Partial update of client metadata."""

    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    redirect_uris: Optional[List[str]] = None
    website_url: Optional[str] = None
    logo_url: Optional[str] = None
    privacy_policy_url: Optional[str] = None
    terms_of_service_url: Optional[str] = None
    allowed_scopes: Optional[List[str]] = None
    allowed_grant_types: Optional[List[str]] = None
    require_pkce: Optional[bool] = None

    @field_validator("redirect_uris")
    @classmethod
    def validate_redirect_uris(cls, v):
        if v is not None:
            if len(v) == 0:
                raise ValueError("At least one redirect URI is required")
            if len(v) > 10:
                raise ValueError("Maximum 10 redirect URIs allowed")
            for uri in v:
                if not is_absolute_uri(uri):
                    raise ValueError(f"Invalid redirect URI: {uri}")
        return v


class ClientRegistrationRequest(BaseModel):
    """RFC 7591 client metadata."""

    client_name: str = Field(..., min_length=1, max_length=100)
    redirect_uris: List[str] = []
    grant_types: Optional[List[str]] = None
    response_types: Optional[List[str]] = None
    scope: Optional[str] = None
    token_endpoint_auth_method: Optional[str] = None
    logo_uri: Optional[str] = None
    client_uri: Optional[str] = None
    policy_uri: Optional[str] = None
    tos_uri: Optional[str] = None
