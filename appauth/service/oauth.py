from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from appauth.logging import get_logger
from appauth.service.errors import ValidationError

logger = get_logger(__name__)

OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "facebook": {
        "auth_url": "https://www.facebook.com/v18.0/dialog/oauth",
        "token_url": "https://graph.facebook.com/v18.0/oauth/access_token",
        "userinfo_url": "https://graph.facebook.com/me?fields=id,name,email",
        "scope": "email public_profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "scope": "read:user user:email",
    },
}

STATE_TTL = timedelta(minutes=10)


@dataclass
class OAuthIdentity:
    """What a provider tells us about the person signing in."""

    provider: str
    provider_id: str
    email: Optional[str]
    display_name: Optional[str] = None
    email_verified: bool = False


class OAuthClient:
    """Provider handshake: authorization URLs, state round trip, code exchange.

    ``state`` is an opaque nonce; the originating app endpoint is kept
    server side (Redis when available, otherwise an in-process table) and is
    consumed exactly once.
    """

    def __init__(self, settings, cache=None) -> None:
        self.settings = settings
        self.cache = cache
        self._states: Dict[str, Tuple[str, str, datetime]] = {}
        self._state_lock = threading.Lock()
        self._code_registry: Dict[Tuple[str, str], dict] = {}

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _credentials(self, provider: str) -> Tuple[Optional[str], Optional[str]]:
        return (
            getattr(self.settings, f"oauth_{provider}_client_id", None),
            getattr(self.settings, f"oauth_{provider}_client_secret", None),
        )

    def _purge_expired(self, now: datetime) -> None:
        with self._state_lock:
            expired = [key for key, value in self._states.items() if value[2] < now]
            for key in expired:
                self._states.pop(key, None)

    async def start(self, provider: str, app_endpoint: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise ValidationError(
                f"Unsupported OAuth provider: {provider}", detail={"provider": provider}
            )
        client_id, _ = self._credentials(provider)
        if not client_id:
            logger.warning("oauth_not_configured", provider=provider)
            raise ValidationError(
                f"OAuth provider {provider} is not configured",
                detail={"provider": provider},
            )
        redirect_uri = self.settings.oauth_redirect_uri
        if not redirect_uri:
            logger.error("oauth_no_redirect_uri_configured", provider=provider)
            raise ValidationError("No OAuth redirect URI configured")

        now = self._now()
        self._purge_expired(now)
        state = uuid.uuid4().hex
        expires_at = now + STATE_TTL
        if self.cache:
            await self.cache.set_oauth_state(state, provider, app_endpoint, expires_at)
        else:
            if not self.settings.test_mode:
                logger.warning("oauth_state_in_process", provider=provider)
            with self._state_lock:
                self._states[state] = (provider, app_endpoint, expires_at)

        provider_config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri.replace("{provider}", provider),
            "response_type": "code",
            "scope": provider_config["scope"],
            "state": state,
        }
        if provider == "google":
            params["access_type"] = "offline"
            params["prompt"] = "consent"
        return {
            "authorization_url": f"{provider_config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def consume_state(self, provider: str, state: str) -> Optional[str]:
        """Return the app endpoint bound to ``state`` and forget it."""
        if not state:
            return None
        stored = None
        if self.cache:
            stored = await self.cache.pop_oauth_state(state)
        with self._state_lock:
            local = self._states.pop(state, None)
        stored = stored or local
        if not stored:
            return None
        stored_provider, app_endpoint, expires_at = stored
        if stored_provider != provider or expires_at < self._now():
            return None
        return app_endpoint

    def register_oauth_code(self, provider: str, code: str, payload: dict) -> None:
        """Record an already exchanged identity for tests or offline flows."""

        self._code_registry[(provider, code)] = payload

    async def exchange_code(self, provider: str, code: str) -> Optional[OAuthIdentity]:
        cached = self._code_registry.pop((provider, code), None)
        if cached:
            return self._identity_from(provider, cached)

        if provider not in OAUTH_PROVIDERS:
            logger.error("oauth_unknown_provider", provider=provider)
            return None
        client_id, client_secret = self._credentials(provider)
        if not client_id or not client_secret:
            logger.error("oauth_credentials_missing", provider=provider)
            return None
        redirect_uri = (self.settings.oauth_redirect_uri or "").replace("{provider}", provider)
        provider_config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(timeout=30.0, follow_redirects=False) as client:
                token_response = await client.post(
                    provider_config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    return None

                headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    provider_config["userinfo_url"], headers=headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    return None
                payload = self.parse_userinfo(provider, userinfo)

                # GitHub hides private addresses from /user
                if provider == "github" and not payload.get("email"):
                    emails_response = await client.get(
                        "https://api.github.com/user/emails", headers=headers
                    )
                    if emails_response.status_code == 200:
                        primary = next(
                            (
                                entry
                                for entry in emails_response.json()
                                if entry.get("primary") and entry.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            payload["email"] = primary["email"]
                            payload["email_verified"] = True
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            return None
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider=provider, error=str(exc))
            return None

        identity = self._identity_from(provider, payload)
        if identity:
            logger.info("oauth_exchange_success", provider=provider)
        return identity

    @staticmethod
    def parse_userinfo(provider: str, userinfo: dict) -> Dict[str, Any]:
        """Normalise a provider profile into provider_id/email/display_name."""
        if provider == "google":
            return {
                "provider_id": userinfo.get("id") or userinfo.get("sub"),
                "email": userinfo.get("email"),
                "display_name": userinfo.get("name"),
                "email_verified": bool(
                    userinfo.get("verified_email", userinfo.get("email_verified", False))
                ),
            }
        if provider == "github":
            return {
                "provider_id": str(userinfo.get("id")) if userinfo.get("id") else None,
                "email": userinfo.get("email"),
                "display_name": userinfo.get("name") or userinfo.get("login"),
                # /user only exposes the public address, which GitHub requires verified
                "email_verified": bool(userinfo.get("email")),
            }
        if provider == "facebook":
            return {
                "provider_id": userinfo.get("id"),
                "email": userinfo.get("email"),
                "display_name": userinfo.get("name"),
                # Graph only returns confirmed addresses
                "email_verified": bool(userinfo.get("email")),
            }
        return {"provider_id": userinfo.get("id") or userinfo.get("sub")}

    @staticmethod
    def _identity_from(provider: str, payload: dict) -> Optional[OAuthIdentity]:
        provider_id = payload.get("provider_id")
        if not provider_id:
            logger.error("oauth_identity_missing_id", provider=provider)
            return None
        return OAuthIdentity(
            provider=provider,
            provider_id=str(provider_id),
            email=payload.get("email"),
            display_name=payload.get("display_name"),
            email_verified=bool(payload.get("email_verified", False)),
        )
