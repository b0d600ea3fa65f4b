"""
OpenID Connect ID token assembly and signing.
"""

from datetime import datetime, timezone
from typing import List, Optional

import jwt

from authserver.config import settings
from authserver.constants import ID_TOKEN_EXPIRY_SECONDS
from authserver.profiles import UserProfile


def build_id_token_claims(
    user_id: str,
    client_id: str,
    scopes: List[str],
    profile: Optional[UserProfile] = None,
    nonce: Optional[str] = None,
    auth_time: Optional[int] = None,
    issuer: Optional[str] = None,
    now: Optional[int] = None,
) -> dict:
    """
    Claims for an ID token; profile claims are only included for the scopes that cover them.
    """
    iat = now if now is not None else int(datetime.now(timezone.utc).timestamp())
    claims = {
        "sub": user_id,
        "aud": client_id,
        "iss": issuer or settings.issuer,
        "iat": iat,
        "exp": iat + ID_TOKEN_EXPIRY_SECONDS,
        "auth_time": auth_time if auth_time is not None else iat,
    }
    if nonce:
        claims["nonce"] = nonce
    if profile:
        claims.update(profile_claims(profile, scopes))
    return claims


def profile_claims(profile: UserProfile, scopes: List[str]) -> dict:
    """Standard claims released for the profile and email scopes."""
    claims = {}
    if "profile" in scopes:
        claims["name"] = profile.display_name or profile.username
        claims["preferred_username"] = profile.username
        if profile.avatar_url:
            claims["picture"] = profile.avatar_url
        if profile.updated_at:
            updated_at = profile.updated_at
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=timezone.utc)
            claims["updated_at"] = int(updated_at.timestamp())
    if "email" in scopes and profile.email:
        claims["email"] = profile.email
        claims["email_verified"] = profile.email_verified
    return claims


def sign_id_token(
    claims: dict, secret: Optional[str] = None, algorithm: Optional[str] = None
) -> str:
    return jwt.encode(
        claims,
        secret or settings.id_token_secret,
        algorithm=algorithm or settings.id_token_algorithm,
        headers={"typ": "JWT"},
    )


def decode_id_token(token: str, audience: str, secret: Optional[str] = None) -> dict:
    """Verify signature, audience, issuer and expiry (used by tests and relying parties)."""
    return jwt.decode(
        token,
        secret or settings.id_token_secret,
        algorithms=[settings.id_token_algorithm],
        audience=audience,
        issuer=settings.issuer,
    )
