"""Admin identification through the external auth collaborator."""
import logging
from typing import Dict, Optional

import httpx

from .config import settings

logger = logging.getLogger(__name__)


class AuthError(Exception):
    """The caller could not be authenticated."""
    pass


class AuthClient:
    """Validates bearer tokens against the auth service's user endpoint."""

    def __init__(
        self,
        base_url: str = settings.AUTH_SERVICE_URL,
        api_key: str = settings.AUTH_SERVICE_API_KEY,
        timeout: float = settings.AUTH_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.transport = transport

    async def get_user_id(self, access_token: str) -> str:
        """
        Resolve an access token to the authenticated user id.

        Raises:
            AuthError: token rejected or auth service unreachable
        """
        headers = {"Authorization": f"Bearer {access_token}"}
        if self.api_key:
            headers["apikey"] = self.api_key

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                transport=self.transport
            ) as client:
                response = await client.get(f"{self.base_url}/user", headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Auth service unreachable: {e}")
            raise AuthError("Authentication service unavailable") from e

        if response.status_code != 200:
            raise AuthError("Invalid or expired session")

        try:
            user_id = response.json().get("id")
        except (ValueError, AttributeError) as e:
            raise AuthError("Malformed authentication response") from e

        if not user_id:
            raise AuthError("Malformed authentication response")
        return user_id


async def resolve_admin(auth_client: AuthClient, database, authorization: Optional[str]) -> Optional[Dict]:
    """
    Return the admin record for an Authorization header, or None.

    None means the caller is an anonymous voter: no bearer token, or a user
    without an admin row.

    Raises:
        AuthError: a token was presented but rejected
    """
    if not authorization or not authorization.lower().startswith("bearer "):
        return None

    user_id = await auth_client.get_user_id(authorization[7:].strip())
    return await database.get_admin(user_id)


auth_client = AuthClient()
