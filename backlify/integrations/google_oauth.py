"""
Google OAuth userinfo client.
Psychology: A client-supplied token is only worth what Google says about it.
Intention: Resolve an access token to a verified email within a bounded time.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional

import aiohttp

from backlify.errors import Unauthenticated
from backlify.integrations.base import BaseIntegration

logger = logging.getLogger(__name__)

USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


@dataclass(frozen=True)
class GoogleProfile:
    email: str
    id: str
    name: Optional[str] = None
    picture: Optional[str] = None
    verified_email: bool = False


class GoogleOAuthClient(BaseIntegration):
    name = "google_oauth"

    def __init__(self, userinfo_url: str = USERINFO_URL, timeout: float = 10.0):
        super().__init__()
        self.userinfo_url = userinfo_url
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.userinfo_url)

    async def fetch_userinfo(self, token: str) -> GoogleProfile:
        start_time = time.time()
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(
                    self.userinfo_url,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=aiohttp.ClientTimeout(total=self.timeout),
                ) as response:
                    if response.status != 200:
                        self.health.record_failure()
                        raise Unauthenticated("Google token verification failed")
                    body = await response.json(content_type=None)
        except asyncio.TimeoutError as exc:
            self.health.record_failure()
            logger.error(f"Google userinfo timed out after {self.timeout}s")
            raise Unauthenticated("Google token verification timed out") from exc
        except (aiohttp.ClientError, ValueError) as exc:
            self.health.record_failure()
            logger.error(f"Google userinfo request failed: {exc}")
            raise Unauthenticated("Google token verification failed") from exc

        self.health.record_success(time.time() - start_time)

        if not isinstance(body, dict) or not body.get("email"):
            raise Unauthenticated("Google token verification failed")

        return GoogleProfile(
            email=str(body["email"]).lower(),
            id=str(body.get("id", "")),
            name=body.get("name"),
            picture=body.get("picture"),
            verified_email=bool(body.get("verified_email", False)),
        )

    async def verify(self, token: str, claimed_email: str, claimed_id: str) -> GoogleProfile:
        """Trust the profile only when Google reports the verified email and account id the caller claimed"""
        profile = await self.fetch_userinfo(token)
        if profile.email != claimed_email.strip().lower():
            logger.warning("Google login email mismatch")
            raise Unauthenticated("Google account email does not match")
        if not profile.id or profile.id != claimed_id.strip():
            logger.warning("Google login account id mismatch")
            raise Unauthenticated("Google account id does not match")
        if not profile.verified_email:
            logger.warning(f"Google login with unverified email {profile.email}")
            raise Unauthenticated("Google account email is not verified")
        return profile
