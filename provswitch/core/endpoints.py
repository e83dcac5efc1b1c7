"""Canonical form and validation for endpoint URLs."""

from __future__ import annotations

from urllib.parse import urlsplit

from provswitch.core.errors import InvalidUrlError

ALLOWED_SCHEMES = ("http", "https")


def normalize(raw: str | None) -> str:
    """Trim whitespace and strip every trailing slash."""
    return (raw or "").strip().rstrip("/")


def validate(raw: str | None) -> str:
    """Parse an absolute http(s) URL and return its canonical form.

    Raises InvalidUrlError for empty input, unparsable text, or other schemes.
    """
    candidate = (raw or "").strip()
    if not candidate:
        raise InvalidUrlError(candidate, "empty", "Please enter a valid URL.")

    try:
        parts = urlsplit(candidate)
        # Accessing port validates the netloc.
        _ = parts.port
    except ValueError as exc:
        raise InvalidUrlError(candidate, "malformed", f"Invalid URL format: {exc}") from exc

    if not parts.scheme:
        raise InvalidUrlError(candidate, "malformed", "Invalid URL format: missing scheme.")
    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidUrlError(
            candidate,
            "unsupported_scheme",
            f"Only http and https URLs are supported (got '{parts.scheme}').",
        )
    if not parts.hostname:
        raise InvalidUrlError(candidate, "malformed", "Invalid URL format: missing host.")

    return normalize(candidate)
