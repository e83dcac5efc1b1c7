"""Collect endpoint candidates from every source into one deduplicated set."""

from __future__ import annotations

import uuid
from enum import Enum
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict, Field

from provswitch.core.config import CustomEndpoint
from provswitch.core.endpoints import normalize
from provswitch.core.speedtest import NO_RESULT_ERROR, ProbeResult


class EndpointOrigin(str, Enum):
    PRESET = "preset"
    PERSISTED = "persisted"
    SELECTED = "selected"
    USER = "user"


_CUSTOM_ORIGINS = {EndpointOrigin.PERSISTED, EndpointOrigin.USER}


def _new_id() -> str:
    return f"ep_{uuid.uuid4().hex[:8]}"


class EndpointCandidate(BaseModel):
    """A URL eligible for speed testing. Identity is the canonical URL."""

    model_config = ConfigDict(frozen=True)

    url: str
    origin: EndpointOrigin
    id: str = Field(default_factory=_new_id)
    result: Optional[ProbeResult] = None

    @property
    def is_custom(self) -> bool:
        """User-managed endpoints are the ones persisted per provider."""
        return self.origin in _CUSTOM_ORIGINS


def collect(
    preset_candidates: Iterable[str],
    persisted: Iterable[CustomEndpoint],
    selected: Optional[str],
    user_added: Iterable[str],
    *,
    previous: Sequence[EndpointCandidate] = (),
) -> list[EndpointCandidate]:
    """Merge all sources keyed by canonical URL.

    Insertion priority is persisted, preset, user-added; the selected URL is
    appended last when not already present. Candidates in ``previous`` keep
    their id and recorded probe result when their URL survives.
    """
    known = {candidate.url: candidate for candidate in previous}
    merged: dict[str, EndpointCandidate] = {}

    def add(raw: Optional[str], origin: EndpointOrigin) -> None:
        url = normalize(raw)
        if not url or url in merged:
            return
        existing = known.get(url)
        if existing is not None:
            merged[url] = existing.model_copy(update={"origin": origin})
        else:
            merged[url] = EndpointCandidate(url=url, origin=origin)

    for record in persisted:
        add(record.url, EndpointOrigin.PERSISTED)
    for url in preset_candidates:
        add(url, EndpointOrigin.PRESET)
    for url in user_added:
        add(url, EndpointOrigin.USER)
    add(selected, EndpointOrigin.SELECTED)

    return list(merged.values())


def clear_results(candidates: Iterable[EndpointCandidate]) -> list[EndpointCandidate]:
    """Reset every candidate to the pending (untested) state."""
    return [candidate.model_copy(update={"result": None}) for candidate in candidates]


def apply_results(
    candidates: Iterable[EndpointCandidate],
    results: Iterable[ProbeResult],
    probed: Optional[Iterable[str]] = None,
) -> list[EndpointCandidate]:
    """Attach a finished round's results by canonical URL.

    When ``probed`` is given, candidates outside it were not part of the round
    and keep their current result.
    """
    by_url = {normalize(result.url): result for result in results}
    round_urls = None if probed is None else {normalize(url) for url in probed}
    updated: list[EndpointCandidate] = []
    for candidate in candidates:
        if round_urls is not None and candidate.url not in round_urls:
            updated.append(candidate)
            continue
        match = by_url.get(candidate.url)
        if match is None:
            match = ProbeResult(url=candidate.url, error=NO_RESULT_ERROR)
        updated.append(candidate.model_copy(update={"result": match}))
    return updated
