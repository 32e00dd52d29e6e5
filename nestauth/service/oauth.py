from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

import httpx

from nestauth.logging import get_logger

logger = get_logger(__name__)

# Userinfo endpoints used to check a provider-issued access token
OAUTH_PROVIDERS = {
    "google": {
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
    },
    "facebook": {
        "userinfo_url": "https://graph.facebook.com/me?fields=id,email,first_name,last_name",
    },
    "github": {
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
    },
}


@dataclass(frozen=True)
class OAuthIdentity:
    provider: str
    provider_uid: str
    email: Optional[str]
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class OAuthVerifier(Protocol):
    async def verify(self, provider: str, external_token: str) -> Optional[OAuthIdentity]:
        """Return the identity behind ``external_token`` or None if it does not check out."""
        ...


class HttpxOAuthVerifier:
    """Asks the provider who owns an access token."""

    def __init__(
        self, *, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    async def verify(self, provider: str, external_token: str) -> Optional[OAuthIdentity]:
        provider_config = OAUTH_PROVIDERS.get(provider)
        if not provider_config or not external_token:
            return None
        headers = {"Authorization": f"Bearer {external_token}", "Accept": "application/json"}
        if provider == "github":
            headers["Accept"] = "application/vnd.github+json"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                response = await client.get(provider_config["userinfo_url"], headers=headers)
                response.raise_for_status()
                userinfo = response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                identity = self._parse_userinfo(provider, userinfo)
                if provider == "github" and identity and not identity.email:
                    identity = await self._github_primary_email(client, identity, headers)
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "oauth_verify_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_verify_error", provider=provider, error=str(exc))
            return None

        if not identity or not identity.provider_uid:
            logger.error("oauth_identity_missing_uid", provider=provider)
            return None
        return identity

    @staticmethod
    def _parse_userinfo(provider: str, userinfo: dict) -> Optional[OAuthIdentity]:
        uid = userinfo.get("id")
        if uid is None:
            return None
        if provider == "google":
            return OAuthIdentity(
                provider=provider,
                provider_uid=str(uid),
                email=userinfo.get("email"),
                first_name=userinfo.get("given_name"),
                last_name=userinfo.get("family_name"),
            )
        if provider == "facebook":
            return OAuthIdentity(
                provider=provider,
                provider_uid=str(uid),
                email=userinfo.get("email"),
                first_name=userinfo.get("first_name"),
                last_name=userinfo.get("last_name"),
            )
        name = (userinfo.get("name") or "").split(" ", 1)
        return OAuthIdentity(
            provider=provider,
            provider_uid=str(uid),
            email=userinfo.get("email"),
            first_name=name[0] or None,
            last_name=name[1] if len(name) > 1 else None,
        )

    @staticmethod
    async def _github_primary_email(
        client: httpx.AsyncClient, identity: OAuthIdentity, headers: dict
    ) -> OAuthIdentity:
        response = await client.get(OAUTH_PROVIDERS["github"]["emails_url"], headers=headers)
        if response.status_code != 200:
            return identity
        emails = response.json()
        primary = next(
            (e["email"] for e in emails if e.get("primary") and e.get("verified")),
            None,
        )
        if not primary:
            return identity
        return OAuthIdentity(
            provider=identity.provider,
            provider_uid=identity.provider_uid,
            email=primary,
            first_name=identity.first_name,
            last_name=identity.last_name,
        )
