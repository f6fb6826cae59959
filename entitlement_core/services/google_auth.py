"""
Google Service-Account Authentication
=====================================

Exchanges a signed service-account assertion for a short-lived OAuth2
bearer token (JWT-bearer grant).

The assertion is an RS256 JWT with exactly the claims the token endpoint
validates: ``iss``, ``scope``, ``aud``, ``iat`` and ``exp`` (one hour).
Issued tokens are kept in an injectable :class:`TokenCache` keyed by
scope and reused until 60 seconds before they expire.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from jose import jwt
from jose.exceptions import JOSEError

from entitlement_core.config import settings
from entitlement_core.core.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
FIREBASE_MESSAGING_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600
REFRESH_MARGIN_SECONDS = 60


@dataclass(frozen=True)
class AccessToken:
    """A bearer token and the epoch second it stops being valid."""

    value: str
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return self.expires_at - REFRESH_MARGIN_SECONDS > now


class TokenCache:
    """In-memory bearer token cache keyed by scope. Best-effort only."""

    def __init__(self) -> None:
        self._tokens: dict[str, AccessToken] = {}

    def get(self, scope: str, now: float) -> Optional[AccessToken]:
        token = self._tokens.get(scope)
        if token is not None and token.is_fresh(now):
            return token
        return None

    def put(self, scope: str, token: AccessToken) -> None:
        self._tokens[scope] = token

    def clear(self) -> None:
        self._tokens.clear()


# Shared by every authenticator built without an explicit cache
default_token_cache = TokenCache()


class ServiceAccountAuthenticator:
    """
    Obtains bearer tokens for one service account and one scope.

    Args:
        service_account: Parsed service-account JSON (``client_email``,
            ``private_key`` and optionally ``token_uri``).
        scope: OAuth2 scope to request.
        cache: Token cache; defaults to the process-wide cache.
        transport: Optional httpx transport (tests inject ``MockTransport``).
        clock: Returns the current epoch second.
    """

    def __init__(
        self,
        service_account: Optional[dict],
        scope: str,
        cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.service_account = service_account
        self.scope = scope
        self.cache = cache if cache is not None else default_token_cache
        self.transport = transport
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        scope: str,
        cache: Optional[TokenCache] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ServiceAccountAuthenticator":
        """Build an authenticator from ``GOOGLE_PLAY_SERVICE_ACCOUNT_JSON``."""
        try:
            service_account = settings.service_account
        except ValueError as exc:
            raise ConfigurationError(f"Service account JSON is malformed: {exc}") from exc
        return cls(service_account, scope, cache=cache, transport=transport)

    @property
    def client_email(self) -> str:
        if not self.service_account or not self.service_account.get("client_email"):
            raise ConfigurationError("Google service account is not configured")
        return self.service_account["client_email"]

    @property
    def token_url(self) -> str:
        return (self.service_account or {}).get("token_uri") or settings.GOOGLE_TOKEN_URL

    def build_assertion(self, now: Optional[float] = None) -> str:
        """Sign the JWT assertion presented to the token endpoint."""
        private_key = (self.service_account or {}).get("private_key")
        if not private_key:
            raise ConfigurationError("Service account private key is missing")

        issued_at = int(self.clock() if now is None else now)
        claims = {
            "iss": self.client_email,
            "scope": self.scope,
            "aud": self.token_url,
            "iat": issued_at,
            "exp": issued_at + ASSERTION_LIFETIME_SECONDS,
        }
        try:
            return jwt.encode(claims, private_key, algorithm="RS256")
        except (JOSEError, ValueError, TypeError) as exc:
            raise ConfigurationError(f"Service account private key is unusable: {exc}") from exc

    async def get_access_token(self) -> str:
        """
        Return a bearer token for ``scope``.

        Raises:
            ConfigurationError: Missing or malformed service account.
            ProviderError: The token endpoint failed or returned no token.
        """
        now = self.clock()
        cached = self.cache.get(self.scope, now)
        if cached is not None:
            return cached.value

        assertion = self.build_assertion(now)

        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
        ) as client:
            try:
                response = await client.post(
                    self.token_url,
                    data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                )
            except httpx.HTTPError as exc:
                raise ProviderError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "Token exchange failed: status=%d body=%s",
                response.status_code,
                response.text[:200],
            )
            raise ProviderError(
                f"Failed to get access token: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
            access_token = data.get("access_token")
            expires_in = int(data.get("expires_in", ASSERTION_LIFETIME_SECONDS))
        except (ValueError, TypeError, AttributeError) as exc:
            raise ProviderError(f"Unreadable token endpoint response: {exc}") from exc
        if not access_token:
            raise ProviderError("Token endpoint response has no access_token")

        self.cache.put(self.scope, AccessToken(access_token, now + expires_in))
        logger.info("Obtained access token: scope=%s expires_in=%ds", self.scope, expires_in)
        return access_token
