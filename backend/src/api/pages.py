"""Server-rendered HTML pages."""
from pathlib import Path
from urllib.parse import urlsplit

from jinja2 import Environment, FileSystemLoader, StrictUndefined, select_autoescape

from core.auth_client import AuthUser
from schemas.bookmark import BookmarkResponse

TEMPLATES_DIR = Path(__file__).parent / "templates"

AUTH_FAILED_MESSAGE = "Authentication failed. Please try again."


def display_hostname(url: str) -> str:
    """Hostname shown under a bookmark title, without a leading `www.`."""
    try:
        hostname = urlsplit(url).hostname
    except ValueError:
        return url
    if not hostname:
        return url
    return hostname.removeprefix("www.")


_jinja_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
    undefined=StrictUndefined,
)
_jinja_env.filters["hostname"] = display_hostname


def render_login(error: str | None = None) -> str:
    """Login page; `error=auth_failed` shows the failure banner."""
    message = AUTH_FAILED_MESSAGE if error == "auth_failed" else None
    return _jinja_env.get_template("login.html").render(error_message=message)


def render_dashboard(user: AuthUser, items: list[BookmarkResponse]) -> str:
    """Dashboard with the server-read list; the page script keeps it live."""
    return _jinja_env.get_template("dashboard.html").render(
        user=user,
        items=items,
        total=len(items),
    )
