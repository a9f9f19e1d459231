"""
Session gate: validates and refreshes the caller's session on every request.

The gate is the only place session tokens are refreshed. Its outcome is a
`GateResult` - the resolved user, an optional redirect, and a credential
patch holding any rotated cookies. Every response built for the request,
redirect or pass-through, must have the patch applied; otherwise a rotated
refresh token is lost and the next request validates against a stale one.
"""
import logging
from dataclasses import dataclass, field

from fastapi import Request, Response
from fastapi.responses import RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from core.auth_client import AuthClient, AuthError, AuthSession, AuthUser, SessionCredentials
from core.config import Settings, get_settings

logger = logging.getLogger(__name__)

ACCESS_TOKEN_COOKIE = "sb-access-token"
REFRESH_TOKEN_COOKIE = "sb-refresh-token"
CODE_VERIFIER_COOKIE = "sb-code-verifier"

# Refresh tokens outlive access tokens; the provider decides when they die
REFRESH_TOKEN_MAX_AGE = 60 * 60 * 24 * 30
CODE_VERIFIER_MAX_AGE = 60 * 10

LOGIN_PATH = "/login"
DASHBOARD_PATH = "/dashboard"
PROTECTED_PREFIXES = (DASHBOARD_PATH,)
EXEMPT_PREFIXES = ("/health", "/favicon.ico", "/static/")


@dataclass(frozen=True)
class CookieWrite:
    """A single cookie to set (value) or delete (value=None)."""

    name: str
    value: str | None
    max_age: int | None = None


@dataclass
class CredentialPatch:
    """Cookie changes produced while handling a request."""

    writes: list[CookieWrite] = field(default_factory=list)

    @classmethod
    def from_session(cls, session: AuthSession) -> "CredentialPatch":
        """Patch that stores a (new or rotated) session."""
        return cls([
            CookieWrite(ACCESS_TOKEN_COOKIE, session.access_token, session.expires_in),
            CookieWrite(REFRESH_TOKEN_COOKIE, session.refresh_token, REFRESH_TOKEN_MAX_AGE),
        ])

    @classmethod
    def clear_session(cls) -> "CredentialPatch":
        """Patch that removes the session cookies."""
        return cls([
            CookieWrite(ACCESS_TOKEN_COOKIE, None),
            CookieWrite(REFRESH_TOKEN_COOKIE, None),
        ])

    @property
    def is_empty(self) -> bool:
        """True when there is nothing to apply."""
        return not self.writes

    def set_cookie(self, name: str, value: str, max_age: int | None = None) -> None:
        """Queue a cookie write."""
        self.writes.append(CookieWrite(name, value, max_age))

    def delete_cookie(self, name: str) -> None:
        """Queue a cookie deletion."""
        self.writes.append(CookieWrite(name, None))

    def merge(self, other: "CredentialPatch") -> "CredentialPatch":
        """Return a patch with this patch's writes followed by the other's."""
        return CredentialPatch([*self.writes, *other.writes])

    def excluding(self, names: set[str]) -> "CredentialPatch":
        """Return a patch without writes to the given cookie names."""
        return CredentialPatch([w for w in self.writes if w.name not in names])

    def apply(self, response: Response, settings: Settings) -> Response:
        """Write the queued cookie changes onto a response."""
        for write in self.writes:
            if write.value is None:
                response.delete_cookie(
                    write.name,
                    path="/",
                    secure=settings.secure_cookies,
                    httponly=True,
                    samesite="lax",
                )
            else:
                response.set_cookie(
                    write.name,
                    write.value,
                    max_age=write.max_age,
                    path="/",
                    secure=settings.secure_cookies,
                    httponly=True,
                    samesite="lax",
                )
        return response


def cookie_names_set(response: Response) -> set[str]:
    """Names of cookies a response already sets or deletes."""
    return {
        header.split("=", 1)[0].strip()
        for header in response.headers.getlist("set-cookie")
    }


@dataclass
class GateResult:
    """Outcome of running the gate for one request."""

    user: AuthUser | None
    redirect_to: str | None = None
    credential_patch: CredentialPatch = field(default_factory=CredentialPatch)


def credentials_from_request(request: Request) -> SessionCredentials:
    """Read session cookies from the request."""
    return SessionCredentials(
        access_token=request.cookies.get(ACCESS_TOKEN_COOKIE) or None,
        refresh_token=request.cookies.get(REFRESH_TOKEN_COOKIE) or None,
    )


def is_protected_path(path: str) -> bool:
    """Protected pages require a session; anything under /dashboard."""
    return any(path == p or path.startswith(f"{p}/") for p in PROTECTED_PREFIXES)


def is_exempt_path(path: str) -> bool:
    """Paths the gate never runs for (health checks and static assets)."""
    return any(path == p.rstrip("/") or path.startswith(p) for p in EXEMPT_PREFIXES)


def route_decision(path: str, user: AuthUser | None) -> str | None:
    """
    Apply the routing policy.

    Returns:
        The path to redirect to, or None to pass the request through.
    """
    if is_protected_path(path) and user is None:
        return LOGIN_PATH
    if path == LOGIN_PATH and user is not None:
        return DASHBOARD_PATH
    return None


class SessionGate:
    """Validates the request session against the identity provider."""

    def __init__(self, auth_client: AuthClient) -> None:
        self._auth_client = auth_client

    async def evaluate(self, request: Request) -> GateResult:
        """
        Resolve the user, rotate credentials and decide routing for a request.

        Provider failures never fail the request: the caller is treated as
        unauthenticated (fail closed) and no cookies are touched.
        """
        credentials = credentials_from_request(request)
        patch = CredentialPatch()
        user: AuthUser | None = None

        try:
            lookup = await self._auth_client.get_user(credentials)
        except AuthError as e:
            logger.warning("session_gate_validation_failed path=%s error=%s", request.url.path, e)
        else:
            user = lookup.user
            if lookup.refreshed is not None:
                patch = CredentialPatch.from_session(lookup.refreshed)
            elif lookup.expired:
                patch = CredentialPatch.clear_session()

        return GateResult(
            user=user,
            redirect_to=route_decision(request.url.path, user),
            credential_patch=patch,
        )


class SessionGateMiddleware(BaseHTTPMiddleware):
    """Run the session gate before any route logic."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        """Validate the session, redirect or pass through, then apply cookies."""
        if is_exempt_path(request.url.path):
            return await call_next(request)

        gate = SessionGate(request.app.state.auth_client)
        result = await gate.evaluate(request)
        request.state.user = result.user

        if result.redirect_to is not None:
            redirect_url = request.url.replace(path=result.redirect_to, query="")
            response: Response = RedirectResponse(str(redirect_url))
        else:
            response = await call_next(request)

        # Cookies written by the route itself (login, callback, logout) win
        patch = result.credential_patch.excluding(cookie_names_set(response))
        return patch.apply(response, get_settings())
