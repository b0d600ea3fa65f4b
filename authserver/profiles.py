"""
User profile lookups (display name, username, avatar, email) for ID tokens,
introspection and userinfo.
"""

from datetime import datetime
from typing import Dict, Optional

import aiohttp
import backoff
from loguru import logger
from pydantic import BaseModel

from authserver.config import settings


class ProfileLookupError(Exception):
    """The profile store could not be reached or answered with an error."""


class UserProfile(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    email: Optional[str] = None
    email_verified: bool = False
    updated_at: Optional[datetime] = None


class ProfileProvider:
    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        """
        Return the profile, None when the user does not exist, or raise ProfileLookupError.
        """
        raise NotImplementedError

    async def close(self) -> None:
        pass


class StaticProfileProvider(ProfileProvider):
    """In-process profiles, for local development and tests."""

    def __init__(self, profiles: Optional[Dict[str, UserProfile]] = None):
        self.profiles = dict(profiles or {})

    def add(self, profile: UserProfile) -> None:
        self.profiles[profile.user_id] = profile

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        return self.profiles.get(user_id)


class HTTPProfileProvider(ProfileProvider):
    """
    Reads profiles from the platform's user service: GET {base_url}/users/{user_id}.
    """

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 5.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._session = aiohttp.ClientSession(
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    @backoff.on_exception(
        backoff.expo,
        (aiohttp.ClientConnectionError, aiohttp.ServerTimeoutError),
        max_tries=3,
    )
    async def _fetch(self, user_id: str) -> Optional[dict]:
        session = self._get_session()
        async with session.get(f"{self.base_url}/users/{user_id}") as response:
            if response.status == 404:
                return None
            response.raise_for_status()
            return await response.json()

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        try:
            data = await self._fetch(user_id)
        except (aiohttp.ClientError, TimeoutError) as exc:
            logger.error(f"Profile lookup failed for user {user_id}: {exc}")
            raise ProfileLookupError(str(exc)) from exc
        if data is None:
            return None
        return UserProfile(
            user_id=data.get("id", user_id),
            username=data["username"],
            display_name=data.get("display_name"),
            avatar_url=data.get("avatar_url"),
            email=data.get("email"),
            email_verified=bool(data.get("email_verified")),
            updated_at=data.get("updated_at"),
        )

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()


def get_profile_provider() -> ProfileProvider:
    if settings.profile_service_url:
        return HTTPProfileProvider(
            settings.profile_service_url,
            token=settings.profile_service_token,
            timeout=settings.profile_service_timeout,
        )
    logger.warning("PROFILE_SERVICE_URL not set, using an empty in-process profile store")
    return StaticProfileProvider()
