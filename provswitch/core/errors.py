"""Endpoint error types with stable codes for inline reporting."""

from __future__ import annotations

from typing import Literal

InvalidUrlReason = Literal["empty", "malformed", "unsupported_scheme"]


class EndpointError(Exception):
    """Base error carrying a stable error code."""

    def __init__(self, error_code: str, message: str) -> None:
        super().__init__(message)
        self.error_code = error_code


class InvalidUrlError(EndpointError):
    """User-supplied candidate failed parse or scheme validation."""

    def __init__(self, url: str, reason: InvalidUrlReason, message: str) -> None:
        super().__init__("invalid_url", message)
        self.url = url
        self.reason = reason


class DuplicateUrlError(EndpointError):
    """Normalized URL is already a candidate."""

    def __init__(self, url: str) -> None:
        super().__init__("duplicate_url", f"Endpoint already exists: {url}")
        self.url = url


class PersistenceError(EndpointError):
    """Commit-time add/remove against the endpoint store failed."""

    def __init__(self, message: str) -> None:
        super().__init__("persistence_failed", message)


class ProviderNotFoundError(EndpointError):
    """Provider id is not present in the store."""

    def __init__(self, provider_id: str) -> None:
        super().__init__("provider_not_found", f"Provider '{provider_id}' does not exist.")
        self.provider_id = provider_id
