"""Deterministic ranking of probe results and auto-selection of the fastest."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from provswitch.core.endpoints import normalize
from provswitch.core.speedtest import ProbeResult


def _rank_key(result: ProbeResult) -> tuple[bool, int, str]:
    latency = result.latency_ms
    return (latency is None, latency if latency is not None else 0, result.url)


def rank(results: Iterable[ProbeResult]) -> list[ProbeResult]:
    """Successes by ascending latency, then failures; URL breaks ties."""
    return sorted(results, key=_rank_key)


def auto_select(
    ranked: Sequence[ProbeResult],
    currently_selected: Optional[str],
    *,
    enabled: bool = True,
) -> Optional[str]:
    """Return the fastest successful URL when it differs from the current one."""
    if not enabled:
        return None
    best = next((result for result in ranked if result.ok), None)
    if best is None:
        return None
    best_url = normalize(best.url)
    if best_url == normalize(currently_selected):
        return None
    return best_url
