"""
Client for the external identity provider.

Speaks the GoTrue HTTP API: OAuth authorize URL construction with PKCE,
authorization code exchange, user lookup, refresh-token rotation and
sign-out. Token material is opaque here except for the `exp` claim, which is
read (without signature verification) to decide when to refresh proactively.
"""
import base64
import hashlib
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

import httpx
import jwt

from core.config import Settings

logger = logging.getLogger(__name__)

# Refresh this many seconds before the access token actually expires
EXPIRY_MARGIN_SECONDS = 10


class AuthError(Exception):
    """Base exception for identity provider errors."""

    pass


class AuthApiError(AuthError):
    """Raised when the provider rejects a request (bad code, revoked token, ...)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class AuthUnavailableError(AuthError):
    """Raised when the provider cannot be reached or answers with a server error."""

    pass


@dataclass(frozen=True)
class AuthUser:
    """Authenticated user as reported by the provider."""

    id: str
    email: str | None = None
    full_name: str | None = None
    avatar_url: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AuthUser":
        """Build from a provider user object."""
        user_id = payload.get("id")
        if not user_id:
            raise AuthApiError("Provider returned a user without an id")
        metadata = payload.get("user_metadata") or {}
        return cls(
            id=str(user_id),
            email=payload.get("email"),
            full_name=metadata.get("full_name") or metadata.get("name"),
            avatar_url=metadata.get("avatar_url"),
        )

    @property
    def initials(self) -> str:
        """Up to two initials for avatar fallbacks."""
        if self.full_name:
            parts = [p for p in self.full_name.split(" ") if p]
            return "".join(p[0] for p in parts).upper()[:2]
        if self.email:
            return self.email[0].upper()
        return "U"


@dataclass(frozen=True)
class AuthSession:
    """Token material for an authenticated session."""

    access_token: str
    refresh_token: str
    expires_in: int
    user: AuthUser

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "AuthSession":
        """Build from a provider token response."""
        try:
            return cls(
                access_token=payload["access_token"],
                refresh_token=payload["refresh_token"],
                expires_in=int(payload.get("expires_in") or 3600),
                user=AuthUser.from_payload(payload.get("user") or {}),
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise AuthApiError(f"Malformed session response: {e}") from e


@dataclass(frozen=True)
class SessionCredentials:
    """Session cookies presented by the caller."""

    access_token: str | None = None
    refresh_token: str | None = None

    @property
    def is_empty(self) -> bool:
        """True when the caller presented no token material at all."""
        return not self.access_token and not self.refresh_token


@dataclass(frozen=True)
class UserLookup:
    """
    Result of validating a caller's session.

    Attributes:
        user: The resolved user, or None if the session is missing/invalid.
        refreshed: New session when the tokens were rotated during validation.
        expired: True when the presented session is no longer usable and
            its cookies should be cleared.
    """

    user: AuthUser | None
    refreshed: AuthSession | None = None
    expired: bool = False


@dataclass(frozen=True)
class OAuthRedirect:
    """Where to send the browser to start the OAuth flow."""

    url: str
    code_verifier: str = field(repr=False)


def generate_pkce_pair() -> tuple[str, str]:
    """
    Generate a PKCE verifier and its S256 challenge.

    Returns:
        Tuple of (code_verifier, code_challenge).
    """
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def token_expires_soon(access_token: str, now: float | None = None) -> bool:
    """
    Check the unverified `exp` claim of a JWT.

    Signature verification is the provider's job; this only decides whether to
    refresh before asking. Tokens without a readable `exp` are not considered
    expiring - the provider will reject them if they are bad.
    """
    try:
        claims = jwt.decode(access_token, options={"verify_signature": False})
    except jwt.PyJWTError:
        return False
    exp = claims.get("exp")
    if not isinstance(exp, int | float):
        return False
    now = time.time() if now is None else now
    return exp - EXPIRY_MARGIN_SECONDS <= now


class AuthClient:
    """Async client for a GoTrue-compatible identity provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthClient":
        """Create a client from application settings."""
        return cls(
            base_url=settings.auth_url,
            api_key=settings.auth_anon_key,
            timeout=settings.auth_timeout_seconds,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _headers(self, access_token: str | None = None) -> dict[str, str]:
        """Get common headers for provider requests."""
        headers = {"apikey": self._api_key}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: dict[str, Any] | None = None,
        access_token: str | None = None,
    ) -> httpx.Response:
        """Send a request, translating transport and server failures."""
        try:
            response = await self._client.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers=self._headers(access_token),
            )
        except httpx.HTTPError as e:
            raise AuthUnavailableError(f"Identity provider unreachable: {e}") from e

        if response.status_code >= 500:
            raise AuthUnavailableError(
                f"Identity provider error: HTTP {response.status_code}",
            )
        if response.status_code >= 400:
            raise AuthApiError(_error_message(response), status_code=response.status_code)
        return response

    def sign_in_with_oauth(self, provider: str, redirect_to: str) -> OAuthRedirect:
        """
        Build the provider authorize URL for the OAuth + PKCE flow.

        No request is made; the browser follows the returned URL. The verifier
        must be kept (cookie) until the callback exchanges the code.
        """
        verifier, challenge = generate_pkce_pair()
        query = urlencode({
            "provider": provider,
            "redirect_to": redirect_to,
            "code_challenge": challenge,
            "code_challenge_method": "s256",
            "access_type": "offline",
            "prompt": "consent",
        })
        return OAuthRedirect(
            url=f"{self._base_url}/auth/v1/authorize?{query}",
            code_verifier=verifier,
        )

    async def exchange_code_for_session(
        self, code: str, code_verifier: str | None,
    ) -> AuthSession:
        """
        Exchange an authorization code for a session.

        Raises:
            AuthApiError: If the provider rejects the code or verifier.
            AuthUnavailableError: If the provider cannot be reached.
        """
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "pkce"},
            json={"auth_code": code, "code_verifier": code_verifier or ""},
        )
        return AuthSession.from_payload(_json_body(response))

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        """
        Rotate a refresh token into a new session.

        Raises:
            AuthApiError: If the refresh token is invalid or already used.
            AuthUnavailableError: If the provider cannot be reached.
        """
        response = await self._request(
            "POST",
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": refresh_token},
        )
        return AuthSession.from_payload(_json_body(response))

    async def fetch_user(self, access_token: str) -> AuthUser:
        """Look up the user an access token belongs to."""
        response = await self._request("GET", "/auth/v1/user", access_token=access_token)
        return AuthUser.from_payload(_json_body(response))

    async def get_user(self, credentials: SessionCredentials) -> UserLookup:
        """
        Validate the caller's session, refreshing it when necessary.

        Flow:
        1. No token material -> no user, nothing to clear.
        2. Access token present and not about to expire -> ask the provider.
        3. Access token expiring or rejected -> rotate with the refresh token.
        4. Refresh rejected -> no user, session marked expired.

        Raises:
            AuthUnavailableError: If the provider cannot be reached. Callers
                decide how to degrade (the session gate fails closed).
        """
        if credentials.is_empty:
            return UserLookup(user=None)

        access_token = credentials.access_token
        if access_token and not token_expires_soon(access_token):
            try:
                return UserLookup(user=await self.fetch_user(access_token))
            except AuthApiError as e:
                logger.info("auth_access_token_rejected status=%s", e.status_code)

        if not credentials.refresh_token:
            return UserLookup(user=None, expired=True)

        try:
            session = await self.refresh_session(credentials.refresh_token)
        except AuthApiError as e:
            logger.info("auth_refresh_rejected status=%s", e.status_code)
            return UserLookup(user=None, expired=True)

        logger.debug("auth_session_refreshed user_id=%s", session.user.id)
        return UserLookup(user=session.user, refreshed=session)

    async def sign_out(self, access_token: str) -> None:
        """
        Revoke the session on the provider side.

        Raises:
            AuthError: If the provider rejects the request or is unreachable.
        """
        await self._request(
            "POST",
            "/auth/v1/logout",
            params={"scope": "local"},
            access_token=access_token,
        )


def _error_message(response: httpx.Response) -> str:
    """Extract a readable error message from a provider error response."""
    try:
        body = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("error_description", "msg", "message", "error"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    """
    Decode a successful provider response.

    Raises:
        AuthUnavailableError: If the body is not a JSON object (e.g. an HTML
            error page from a proxy in front of the provider).
    """
    try:
        body = response.json()
    except ValueError as e:
        raise AuthUnavailableError(
            f"Identity provider returned a non-JSON response: HTTP {response.status_code}",
        ) from e
    if not isinstance(body, dict):
        raise AuthUnavailableError("Identity provider returned an unexpected response body")
    return body
