"""Commit-time diffing and storage of user-managed custom endpoints.

While an edit session is open all endpoint changes live in a draft. Only
``apply_diff`` touches the store, and it writes the final record set in one
operation so a failed commit leaves the persisted state as it was.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field

from provswitch.core.config import ConfigManager, CustomEndpoint, now_millis
from provswitch.core.endpoints import normalize
from provswitch.core.errors import PersistenceError, ProviderNotFoundError
from provswitch.utils.log import get_logger

logger = get_logger()


class EndpointDiff(BaseModel):
    model_config = ConfigDict(frozen=True)

    to_add: list[str] = Field(default_factory=list)
    to_remove: list[str] = Field(default_factory=list)
    explicit_clear: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


def _canonical_set(urls: Iterable[str]) -> set[str]:
    return {url for url in (normalize(raw) for raw in urls) if url}


def diff(initial: Iterable[str], current: Iterable[str]) -> EndpointDiff:
    """Compare the saved set against the edited draft.

    ``explicit_clear`` marks a non-empty saved set that the user emptied; an
    untouched empty set stays a plain no-op.
    """
    before = _canonical_set(initial)
    after = _canonical_set(current)
    return EndpointDiff(
        to_add=sorted(after - before),
        to_remove=sorted(before - after),
        explicit_clear=bool(before) and not after,
    )


class EndpointStore(ABC):
    """Per-provider storage of persisted custom endpoints."""

    @abstractmethod
    def list(self, provider_id: str) -> list[CustomEndpoint]:
        """Return records newest first."""

    @abstractmethod
    def add(self, provider_id: str, url: str) -> CustomEndpoint: ...

    @abstractmethod
    def remove(self, provider_id: str, url: str) -> bool: ...

    @abstractmethod
    def touch(self, provider_id: str, url: str) -> None:
        """Stamp ``last_used`` on an existing record."""

    @abstractmethod
    def replace(self, provider_id: str, records: list[CustomEndpoint]) -> None:
        """Swap the whole record set in a single write."""


class ConfigEndpointStore(EndpointStore):
    """Stores endpoints inside each provider profile of the global config."""

    def __init__(self, manager: ConfigManager) -> None:
        self.manager = manager

    def _write(self, provider_id: str, endpoints: dict[str, CustomEndpoint]) -> None:
        config = self.manager.get_global_config().model_copy(deep=True)
        profile = config.providers.get(provider_id)
        if profile is None:
            raise ProviderNotFoundError(provider_id)
        config.providers[provider_id] = profile.model_copy(update={"custom_endpoints": endpoints})
        self.manager.save_global_config(config)

    def _current(self, provider_id: str) -> dict[str, CustomEndpoint]:
        return dict(self.manager.get_provider(provider_id).custom_endpoints)

    def list(self, provider_id: str) -> list[CustomEndpoint]:
        config = self.manager.get_global_config()
        profile = config.providers.get(provider_id)
        if profile is None:
            return []
        return sorted(profile.custom_endpoints.values(), key=lambda ep: ep.added_at, reverse=True)

    def add(self, provider_id: str, url: str) -> CustomEndpoint:
        normalized = normalize(url)
        if not normalized:
            raise ValueError("URL cannot be empty")
        endpoints = self._current(provider_id)
        record = CustomEndpoint(url=normalized)
        endpoints[normalized] = record
        self._write(provider_id, endpoints)
        logger.debug("[endpoints] Added custom endpoint", extra={"provider": provider_id, "url": normalized})
        return record

    def remove(self, provider_id: str, url: str) -> bool:
        normalized = normalize(url)
        endpoints = self._current(provider_id)
        if endpoints.pop(normalized, None) is None:
            return False
        self._write(provider_id, endpoints)
        logger.debug("[endpoints] Removed custom endpoint", extra={"provider": provider_id, "url": normalized})
        return True

    def touch(self, provider_id: str, url: str) -> None:
        normalized = normalize(url)
        endpoints = self._current(provider_id)
        record = endpoints.get(normalized)
        if record is None:
            return
        endpoints[normalized] = record.model_copy(update={"last_used": now_millis()})
        self._write(provider_id, endpoints)

    def replace(self, provider_id: str, records: list[CustomEndpoint]) -> None:
        endpoints: dict[str, CustomEndpoint] = {}
        for record in records:
            url = normalize(record.url)
            if url:
                endpoints[url] = record if record.url == url else record.model_copy(update={"url": url})
        self._write(provider_id, endpoints)


def plan_records(
    diff_result: EndpointDiff,
    initial_records: Iterable[CustomEndpoint],
    *,
    used_url: Optional[str] = None,
) -> list[CustomEndpoint]:
    """Final record set after applying ``diff_result`` to ``initial_records``.

    URLs already known keep their ``added_at``/``last_used``; new ones get a
    fresh ``added_at``. ``used_url`` gets ``last_used`` stamped when present.
    """
    removed = set(diff_result.to_remove)
    by_url: dict[str, CustomEndpoint] = {}
    for record in initial_records:
        url = normalize(record.url)
        if url and url not in removed:
            by_url[url] = record if record.url == url else record.model_copy(update={"url": url})

    stamp = now_millis()
    for url in diff_result.to_add:
        if url not in by_url:
            by_url[url] = CustomEndpoint(url=url, added_at=stamp)

    used = normalize(used_url)
    if used and used in by_url:
        by_url[used] = by_url[used].model_copy(update={"last_used": stamp})

    return list(by_url.values())


def apply_diff(
    store: EndpointStore,
    provider_id: str,
    diff_result: EndpointDiff,
    initial_records: Iterable[CustomEndpoint],
    *,
    used_url: Optional[str] = None,
) -> list[CustomEndpoint]:
    """Persist a diff all-or-nothing and return the records now stored."""
    initial = list(initial_records)
    records = plan_records(diff_result, initial, used_url=used_url)
    if diff_result.is_empty and records == initial:
        return initial

    try:
        store.replace(provider_id, records)
    except Exception as exc:
        logger.warning(
            "[endpoints] Commit failed: %s: %s",
            type(exc).__name__,
            exc,
            extra={
                "provider": provider_id,
                "to_add": diff_result.to_add,
                "to_remove": diff_result.to_remove,
            },
        )
        raise PersistenceError(f"Failed to save endpoints for '{provider_id}': {exc}") from exc

    logger.info(
        "[endpoints] Committed endpoint changes",
        extra={
            "provider": provider_id,
            "added": len(diff_result.to_add),
            "removed": len(diff_result.to_remove),
            "explicit_clear": diff_result.explicit_clear,
        },
    )
    return records
