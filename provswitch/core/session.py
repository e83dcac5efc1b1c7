"""Provider edit session: draft endpoints, field sync and speed-test rounds.

The session owns a draft copy of the endpoint candidates and the current config
blob. Semantic fields are always re-derived from the blob, except immediately
after the session's own write, which a ``SelfWriteGuard`` suppresses.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Callable, Iterator, Mapping, Optional, Sequence

from provswitch.core.candidates import (
    EndpointCandidate,
    EndpointOrigin,
    apply_results,
    clear_results,
    collect,
)
from provswitch.core.config import (
    AppType,
    CustomEndpoint,
    ProviderConfig,
    format_for_app,
    probe_timeout_for,
)
from provswitch.core.config_bridge import (
    ModelSlot,
    SemanticFields,
    bridge_for,
    candidate_urls_from_config,
)
from provswitch.core.endpoints import normalize, validate
from provswitch.core.errors import DuplicateUrlError
from provswitch.core.persistence import EndpointDiff, EndpointStore, apply_diff, diff
from provswitch.core.selection import auto_select, rank
from provswitch.core.speedtest import ProbeResult, ProbeTransport, probe
from provswitch.utils.log import get_logger

logger = get_logger()

ConfigListener = Callable[[ProviderConfig], None]


class SelfWriteGuard:
    """Short-lived marker set while the session writes its own config change.

    Inside an event loop the marker outlives the ``writing()`` block until the
    loop's next iteration, so change notifications queued by the write are
    ignored too. Without a running loop it clears when the block exits.
    """

    def __init__(self) -> None:
        self._depth = 0
        self._pending_release = False

    @property
    def active(self) -> bool:
        return self._depth > 0 or self._pending_release

    @contextmanager
    def writing(self) -> Iterator[None]:
        self._depth += 1
        try:
            yield
        finally:
            self._depth -= 1
            if self._depth == 0:
                self._schedule_release()

    def _schedule_release(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._pending_release = False
            return
        self._pending_release = True
        loop.call_soon(self._release)

    def _release(self) -> None:
        self._pending_release = False


class EditSession:
    """One provider's edit session.

    ``provider_id`` is None for a provider that has not been saved yet; its
    initial custom-endpoint set is then empty and ``commit`` only reports adds.
    """

    def __init__(
        self,
        app_type: AppType,
        config: ProviderConfig,
        *,
        provider_id: Optional[str] = None,
        store: Optional[EndpointStore] = None,
        preset_candidates: Sequence[str] = (),
        preset_config: Optional[ProviderConfig] = None,
        auto_select: bool = True,
        warmup: bool = False,
        probe_timeouts_ms: Optional[Mapping[str, int]] = None,
        on_config_change: Optional[ConfigListener] = None,
    ) -> None:
        self.app_type = AppType(app_type)
        if config.format != format_for_app(self.app_type):
            raise ValueError(
                f"{self.app_type.value} providers use '{format_for_app(self.app_type).value}', "
                f"got '{config.format.value}'."
            )
        self.bridge = bridge_for(config.format)
        self.provider_id = provider_id
        self.store = store
        self.auto_select = auto_select
        self.warmup = warmup
        self.timeout_ms = probe_timeout_for(self.app_type, probe_timeouts_ms)
        self.guard = SelfWriteGuard()
        self.is_testing = False
        self.closed = False
        self.last_error: Optional[str] = None
        self._listener = on_config_change

        self._config = config
        self._fields = self.bridge.read_fields(config)

        persisted: list[CustomEndpoint] = []
        if store is not None and provider_id:
            persisted = store.list(provider_id)
        self._initial_records = persisted
        self._preset_candidates = list(preset_candidates) + candidate_urls_from_config(preset_config)
        self.candidates: list[EndpointCandidate] = collect(
            self._preset_candidates,
            persisted,
            self.selected,
            (),
        )
        logger.debug(
            "[session] Opened edit session",
            extra={
                "app": self.app_type.value,
                "provider": provider_id,
                "candidates": len(self.candidates),
                "persisted": len(persisted),
            },
        )

    # ------------------------------------------------------------------
    # Config blob and semantic fields

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def fields(self) -> SemanticFields:
        return self._fields

    @property
    def selected(self) -> str:
        return normalize(self._fields.base_url)

    def _publish(self, config: ProviderConfig) -> None:
        self._config = config
        if self._listener is not None:
            self._listener(config)
        self.on_config_changed(config)

    def on_config_changed(self, config: ProviderConfig) -> None:
        """Re-derive fields from the blob unless the change is our own write."""
        if self.guard.active:
            return
        if config is not self._config:
            self._config = config
        derived = self.bridge.read_fields(config)
        if derived != self._fields:
            self._fields = derived
            if derived.base_url and not any(c.url == derived.base_url for c in self.candidates):
                self.candidates.append(
                    EndpointCandidate(url=derived.base_url, origin=EndpointOrigin.SELECTED)
                )

    def set_config(self, config: ProviderConfig) -> None:
        """Replace the blob with user-edited text."""
        if config.format != self._config.format:
            raise ValueError("The config format of a provider cannot change.")
        self._publish(config)

    def _write(self, config: ProviderConfig, fields: SemanticFields) -> None:
        with self.guard.writing():
            self._fields = fields
            self._publish(config)

    def set_base_url(self, url: str) -> None:
        normalized = normalize(url)
        if normalized == self.selected:
            return
        updated = self.bridge.write_base_url(self._config, normalized)
        self._write(updated, self._fields.model_copy(update={"base_url": normalized or None}))

    def set_api_key(self, api_key: str) -> None:
        updated = self.bridge.write_api_key(self._config, api_key)
        self._write(updated, self._fields.model_copy(update={"api_key": api_key.strip() or None}))

    def set_model(self, slot: ModelSlot, model: str) -> None:
        updated = self.bridge.write_model(self._config, slot, model)
        # Legacy aliases can shift other slots, so read every slot back.
        self._write(updated, self.bridge.read_fields(updated))

    # ------------------------------------------------------------------
    # Draft endpoint set

    def select(self, url: str) -> None:
        normalized = normalize(url)
        if not normalized or normalized == self.selected:
            return
        self.set_base_url(normalized)

    def add_endpoint(self, raw_url: str) -> EndpointCandidate:
        """Validate and append a user endpoint to the draft."""
        url = validate(raw_url)
        if any(candidate.url == url for candidate in self.candidates):
            raise DuplicateUrlError(url)
        candidate = EndpointCandidate(url=url, origin=EndpointOrigin.USER)
        self.candidates.append(candidate)
        self.last_error = None
        if not self.selected:
            self.select(url)
        return candidate

    def remove_endpoint(self, url: str) -> bool:
        """Drop a candidate; removing the selected one falls back to the first left."""
        normalized = normalize(url)
        remaining = [c for c in self.candidates if c.url != normalized]
        if len(remaining) == len(self.candidates):
            return False
        self.candidates = remaining
        self.last_error = None
        if normalized == self.selected:
            self.set_base_url(remaining[0].url if remaining else "")
        return True

    def set_preset(self, preset_candidates: Sequence[str], preset_config: Optional[ProviderConfig] = None) -> None:
        """Swap the preset source, keeping results for URLs that remain."""
        self._preset_candidates = list(preset_candidates) + candidate_urls_from_config(preset_config)
        kept = {c.url for c in self.candidates if c.origin == EndpointOrigin.PERSISTED}
        self.candidates = collect(
            self._preset_candidates,
            [record for record in self._initial_records if normalize(record.url) in kept],
            self.selected,
            [c.url for c in self.candidates if c.origin == EndpointOrigin.USER],
            previous=self.candidates,
        )

    def draft_custom_urls(self) -> list[str]:
        return [candidate.url for candidate in self.candidates if candidate.is_custom]

    def ranked_candidates(self) -> list[EndpointCandidate]:
        """Candidates in rank order; untested ones sort with failures."""
        def key(candidate: EndpointCandidate) -> tuple[bool, int, str]:
            latency = candidate.result.latency_ms if candidate.result else None
            return (latency is None, latency if latency is not None else 0, candidate.url)

        return sorted(self.candidates, key=key)

    # ------------------------------------------------------------------
    # Speed test

    async def run_speed_test(self, transport: Optional[ProbeTransport] = None) -> list[ProbeResult]:
        """Probe all candidates once; auto-select only after the round completes."""
        if self.is_testing:
            logger.debug("[session] Speed test already running; ignoring request")
            return []
        urls = [candidate.url for candidate in self.candidates]
        if not urls:
            self.last_error = "Please add an endpoint first."
            return []

        self.is_testing = True
        self.last_error = None
        self.candidates = clear_results(self.candidates)
        try:
            results = await probe(urls, self.timeout_ms, transport, warmup=self.warmup)
        finally:
            self.is_testing = False

        if self.closed:
            logger.debug("[session] Discarding results for closed session")
            return results

        self.candidates = apply_results(self.candidates, results, probed=urls)
        ranked = rank(results)
        best = auto_select(ranked, self.selected, enabled=self.auto_select)
        if best:
            logger.info(
                "[session] Auto-selected fastest endpoint",
                extra={"provider": self.provider_id, "url": best},
            )
            self.select(best)
        return ranked

    # ------------------------------------------------------------------
    # Commit

    def pending_diff(self) -> EndpointDiff:
        return diff((record.url for record in self._initial_records), self.draft_custom_urls())

    def commit(self) -> EndpointDiff:
        """Persist the draft's custom endpoints.

        Raises PersistenceError and leaves the draft untouched when the store
        rejects the write, so the caller can retry.
        """
        result = self.pending_diff()
        if self.store is None or not self.provider_id:
            return result
        self._initial_records = apply_diff(
            self.store,
            self.provider_id,
            result,
            self._initial_records,
            used_url=self.selected or None,
        )
        return result

    def close(self) -> None:
        """Abandon the session; in-flight results are discarded on arrival."""
        self.closed = True
