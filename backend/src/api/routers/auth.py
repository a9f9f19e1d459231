"""Login, OAuth callback and logout endpoints."""
import logging

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from api.dependencies import get_auth_client, get_settings
from api.pages import render_login
from core.auth_client import AuthClient, AuthError
from core.config import Settings
from core.session_gate import (
    ACCESS_TOKEN_COOKIE,
    CODE_VERIFIER_COOKIE,
    CODE_VERIFIER_MAX_AGE,
    DASHBOARD_PATH,
    LOGIN_PATH,
    CredentialPatch,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

CALLBACK_PATH = "/api/auth/callback"


def request_origin(request: Request) -> str:
    """Scheme and host the request was addressed to."""
    return f"{request.url.scheme}://{request.url.netloc}"


def safe_next_path(next_path: str | None) -> str:
    """
    Post-login destination.

    Only local absolute paths are accepted; anything else (missing, relative,
    protocol-relative `//host`, absolute URLs) falls back to the dashboard.
    """
    if not next_path or not next_path.startswith("/") or next_path.startswith("//"):
        return DASHBOARD_PATH
    if "\\" in next_path:
        return DASHBOARD_PATH
    return next_path


def post_login_url(request: Request, destination: str, settings: Settings) -> str:
    """
    Absolute URL to send the browser to after a successful exchange.

    Behind a proxy the public host arrives in X-Forwarded-Host and differs
    from the internal origin; locally the request origin is used as-is.
    """
    forwarded_host = request.headers.get("x-forwarded-host")
    if settings.is_local_env or not forwarded_host:
        return f"{request_origin(request)}{destination}"
    return f"https://{forwarded_host}{destination}"


@router.get(LOGIN_PATH, response_class=HTMLResponse)
async def login_page(
    error: str | None = Query(default=None),
) -> HTMLResponse:
    """Render the login page (authenticated users are redirected by the gate)."""
    return HTMLResponse(render_login(error))


@router.post(LOGIN_PATH)
async def start_login(
    request: Request,
    auth_client: AuthClient = Depends(get_auth_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Start the OAuth flow with the configured provider."""
    site_url = settings.site_url.rstrip("/") or request_origin(request)
    oauth = auth_client.sign_in_with_oauth(
        settings.oauth_provider, f"{site_url}{CALLBACK_PATH}",
    )
    patch = CredentialPatch()
    patch.set_cookie(CODE_VERIFIER_COOKIE, oauth.code_verifier, CODE_VERIFIER_MAX_AGE)
    response = RedirectResponse(oauth.url, status_code=303)
    return patch.apply(response, settings)


@router.get(CALLBACK_PATH)
async def auth_callback(
    request: Request,
    code: str | None = Query(default=None),
    next_path: str | None = Query(default=None, alias="next"),
    auth_client: AuthClient = Depends(get_auth_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """
    Complete the OAuth flow.

    Exchanges the authorization code exactly once. Success stores the session
    cookies on the redirect to `next`; any failure sends the browser back to
    the login page with `error=auth_failed`.
    """
    destination = safe_next_path(next_path)
    patch = CredentialPatch()
    patch.delete_cookie(CODE_VERIFIER_COOKIE)

    if code:
        try:
            session = await auth_client.exchange_code_for_session(
                code, request.cookies.get(CODE_VERIFIER_COOKIE),
            )
        except AuthError as e:
            logger.warning("auth_callback_exchange_failed error=%s", e)
        else:
            logger.info("auth_callback_succeeded user_id=%s", session.user.id)
            response = RedirectResponse(post_login_url(request, destination, settings))
            return patch.merge(CredentialPatch.from_session(session)).apply(response, settings)
    else:
        logger.warning("auth_callback_missing_code")

    response = RedirectResponse(f"{request_origin(request)}{LOGIN_PATH}?error=auth_failed")
    return patch.apply(response, settings)


@router.post("/logout")
async def logout(
    request: Request,
    auth_client: AuthClient = Depends(get_auth_client),
    settings: Settings = Depends(get_settings),
) -> RedirectResponse:
    """Revoke the session with the provider and clear the session cookies."""
    access_token = request.cookies.get(ACCESS_TOKEN_COOKIE)
    if access_token:
        try:
            await auth_client.sign_out(access_token)
        except AuthError as e:
            # Cookies are cleared regardless; the provider session expires on its own
            logger.warning("auth_sign_out_failed error=%s", e)
    response = RedirectResponse(LOGIN_PATH, status_code=303)
    return CredentialPatch.clear_session().apply(response, settings)
