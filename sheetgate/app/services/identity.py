"""Identity provider client.

Bearer tokens are opaque to the gateway; verification is delegated to the
identity provider (Supabase Auth) over HTTP.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx

from sheetgate.app.core.logging import get_logger
from sheetgate.app.exceptions import ServiceNotConfiguredError, UpstreamError

logger = get_logger(__name__)

GOOGLE_SCOPES = (
    "email profile "
    "https://www.googleapis.com/auth/spreadsheets "
    "https://www.googleapis.com/auth/drive.file"
)


@dataclass
class Principal:
    """A verified caller as reported by the identity provider."""
    id: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


class IdentityProvider(ABC):
    """Opaque token verification."""

    @abstractmethod
    async def verify(self, token: str) -> Optional[Principal]:
        """Return the principal for a valid token, or None if it is rejected.

        Raises:
            UpstreamError: The provider could not be reached.
        """

    @abstractmethod
    async def delete_principal(self, principal_id: str) -> None:
        """Remove the principal from the identity provider."""

    @abstractmethod
    def authorize_url(self, redirect_to: str) -> str:
        """URL that starts the Google OAuth sign-in flow."""


class SupabaseIdentityProvider(IdentityProvider):
    """Supabase Auth over the shared httpx client."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        anon_key: str,
        service_role_key: str = "",
    ):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._anon_key = anon_key
        self._service_role_key = service_role_key

    def _require_configured(self) -> None:
        if not self._base_url or not self._anon_key:
            raise ServiceNotConfiguredError("Identity provider is not configured")

    async def verify(self, token: str) -> Optional[Principal]:
        self._require_configured()
        try:
            response = await self._client.get(
                f"{self._base_url}/auth/v1/user",
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self._anon_key,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Identity provider request failed: {e}")
            raise UpstreamError("identity", "Identity provider unavailable") from e

        if response.status_code in (401, 403):
            return None
        if response.status_code >= 400:
            logger.error(f"Identity provider returned {response.status_code}")
            raise UpstreamError("identity", "Identity provider error")

        data = response.json()
        if not data.get("id"):
            return None
        metadata = data.get("user_metadata") or {}
        return Principal(
            id=data["id"],
            email=data.get("email"),
            name=metadata.get("full_name") or data.get("email"),
            picture=metadata.get("avatar_url"),
        )

    async def delete_principal(self, principal_id: str) -> None:
        if not self._service_role_key:
            raise ServiceNotConfiguredError("Identity provider admin key is not configured")
        try:
            response = await self._client.delete(
                f"{self._base_url}/auth/v1/admin/users/{principal_id}",
                headers={
                    "Authorization": f"Bearer {self._service_role_key}",
                    "apikey": self._service_role_key,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to delete principal {principal_id}: {e}")
            raise UpstreamError("identity", "Failed to delete auth user") from e

    def authorize_url(self, redirect_to: str) -> str:
        self._require_configured()
        query = urlencode(
            {
                "provider": "google",
                "redirect_to": redirect_to,
                "scopes": GOOGLE_SCOPES,
                "access_type": "offline",
                "prompt": "consent",
            }
        )
        return f"{self._base_url}/auth/v1/authorize?{query}"
