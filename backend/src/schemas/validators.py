"""
Shared validation functions for Pydantic schemas.

URL handling mirrors what the bookmark form promises users: a missing scheme
means https, and whatever results must parse as an absolute http(s) URL.
"""
import re

from pydantic import HttpUrl, TypeAdapter, ValidationError

from core.config import get_settings

SCHEME_PATTERN = re.compile(r"^https?://", re.IGNORECASE)

_http_url_adapter = TypeAdapter(HttpUrl)


def normalize_url(url: str) -> str:
    """
    Ensure a URL carries a scheme.

    Surrounding whitespace is trimmed; URLs without an http/https scheme get
    `https://` prepended. Nothing else is rewritten (no trailing slash, no
    case folding), so what the user typed is what gets stored.
    """
    trimmed = url.strip()
    if not SCHEME_PATTERN.match(trimmed):
        return f"https://{trimmed}"
    return trimmed


def is_valid_url(url: str) -> bool:
    """Check that a normalized URL parses as an absolute http(s) URL."""
    try:
        _http_url_adapter.validate_python(url)
    except ValidationError:
        return False
    return True


def validate_and_normalize_url(url: str) -> str:
    """
    Normalize and validate a bookmark URL.

    Returns:
        The normalized URL (e.g. 'example.com' -> 'https://example.com').

    Raises:
        ValueError: If the URL is empty or does not parse after normalization.
    """
    if not url or not url.strip():
        raise ValueError("Please enter a URL.")
    normalized = normalize_url(url)
    if not is_valid_url(normalized):
        raise ValueError("Please enter a valid URL (e.g. https://example.com).")
    return normalized


def validate_title(title: str) -> str:
    """
    Trim and validate a bookmark title.

    Raises:
        ValueError: If the title is empty or exceeds the maximum length.
    """
    trimmed = title.strip()
    if not trimmed:
        raise ValueError("Please enter a title for your bookmark.")
    settings = get_settings()
    if len(trimmed) > settings.max_title_length:
        raise ValueError(
            f"Title exceeds maximum length of {settings.max_title_length:,} characters "
            f"(got {len(trimmed):,} characters).",
        )
    return trimmed


def first_error_message(exc: ValidationError) -> str:
    """
    Human-readable message for the first error in a ValidationError.

    Messages raised by the validators above are returned as written, without
    pydantic's "Value error, " prefix.
    """
    errors = exc.errors()
    if not errors:
        return str(exc)
    cause = errors[0].get("ctx", {}).get("error")
    if cause is not None:
        return str(cause)
    return errors[0]["msg"]
