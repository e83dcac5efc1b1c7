"""Tests for the provider edit session."""

from __future__ import annotations

import asyncio
import json

import pytest

from provswitch.core.candidates import EndpointOrigin
from provswitch.core.config import AppType, ConfigFormat, CustomEndpoint, ProviderConfig
from provswitch.core.config_bridge import ModelSlot
from provswitch.core.errors import DuplicateUrlError, InvalidUrlError, PersistenceError
from provswitch.core.persistence import ConfigEndpointStore
from provswitch.core.session import EditSession, SelfWriteGuard


def _claude(env: dict | None = None) -> ProviderConfig:
    return ProviderConfig(format=ConfigFormat.JSON_ENV, settings=json.dumps({"env": env or {}}))


def _base_url_of(config: ProviderConfig) -> str | None:
    return json.loads(config.settings)["env"].get("ANTHROPIC_BASE_URL")


def test_guard_clears_on_exit_without_event_loop():
    guard = SelfWriteGuard()
    with guard.writing():
        assert guard.active
        with guard.writing():
            assert guard.active
        assert guard.active
    assert not guard.active


@pytest.mark.asyncio
async def test_guard_outlives_block_until_next_loop_iteration():
    guard = SelfWriteGuard()
    with guard.writing():
        pass
    assert guard.active
    await asyncio.sleep(0)
    assert not guard.active


def test_session_rejects_mismatched_format():
    with pytest.raises(ValueError):
        EditSession(AppType.CLAUDE, ProviderConfig(format=ConfigFormat.TOML_FRAGMENT))


def test_fields_are_derived_from_config():
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_AUTH_TOKEN": "sk", "ANTHROPIC_BASE_URL": "https://a.example/"}),
    )
    assert session.fields.api_key == "sk"
    assert session.selected == "https://a.example"
    assert [c.origin for c in session.candidates] == [EndpointOrigin.SELECTED]


def test_set_base_url_writes_blob_and_notifies():
    seen: list[ProviderConfig] = []
    session = EditSession(AppType.CLAUDE, _claude(), on_config_change=seen.append)

    session.set_base_url("https://b.example/")

    assert session.selected == "https://b.example"
    assert _base_url_of(session.config) == "https://b.example"
    assert seen == [session.config]
    assert not session.guard.active


def test_redundant_base_url_write_is_skipped():
    seen: list[ProviderConfig] = []
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_BASE_URL": "https://a.example"}),
        on_config_change=seen.append,
    )
    session.set_base_url("https://a.example/")
    assert seen == []


def test_user_edit_of_blob_rederives_fields():
    session = EditSession(AppType.CLAUDE, _claude({"ANTHROPIC_BASE_URL": "https://a.example"}))

    session.set_config(_claude({"ANTHROPIC_BASE_URL": "https://edited.example", "ANTHROPIC_MODEL": "m"}))

    assert session.selected == "https://edited.example"
    assert session.fields.models[ModelSlot.MAIN] == "m"
    assert "https://edited.example" in [c.url for c in session.candidates]


def test_set_config_rejects_format_change():
    session = EditSession(AppType.CLAUDE, _claude())
    with pytest.raises(ValueError):
        session.set_config(ProviderConfig(format=ConfigFormat.DOTENV_LIKE))


@pytest.mark.asyncio
async def test_change_notification_right_after_own_write_is_ignored():
    session = EditSession(AppType.CLAUDE, _claude())

    session.set_base_url("https://mine.example")
    session.on_config_changed(_claude({"ANTHROPIC_BASE_URL": "https://echo.example"}))
    assert session.selected == "https://mine.example"

    await asyncio.sleep(0)
    session.on_config_changed(_claude({"ANTHROPIC_BASE_URL": "https://later.example"}))
    assert session.selected == "https://later.example"


def test_set_api_key_and_model():
    session = EditSession(AppType.CLAUDE, _claude({"ANTHROPIC_SMALL_FAST_MODEL": "fast"}))
    assert session.fields.models[ModelSlot.SONNET] == "fast"

    session.set_api_key(" sk-new ")
    session.set_model(ModelSlot.HAIKU, "haiku-m")

    assert session.fields.api_key == "sk-new"
    assert session.fields.models == {ModelSlot.HAIKU: "haiku-m"}
    env = json.loads(session.config.settings)["env"]
    assert "ANTHROPIC_SMALL_FAST_MODEL" not in env


def test_add_endpoint_validates_and_rejects_duplicates():
    session = EditSession(AppType.CLAUDE, _claude(), preset_candidates=["https://preset.example"])

    with pytest.raises(InvalidUrlError):
        session.add_endpoint("ftp://nope.example")
    with pytest.raises(DuplicateUrlError):
        session.add_endpoint("https://preset.example/")

    candidate = session.add_endpoint(" https://mine.example/ ")
    assert candidate.url == "https://mine.example"
    assert candidate.origin == EndpointOrigin.USER


def test_add_endpoint_selects_when_nothing_selected():
    session = EditSession(AppType.CLAUDE, _claude())
    session.add_endpoint("https://first.example")
    session.add_endpoint("https://second.example")
    assert session.selected == "https://first.example"


def test_remove_selected_falls_back_to_first_remaining():
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_BASE_URL": "https://b.example"}),
        preset_candidates=["https://a.example", "https://b.example"],
    )

    assert session.remove_endpoint("https://b.example/")
    assert session.selected == "https://a.example"

    assert session.remove_endpoint("https://a.example")
    assert session.selected == ""
    assert _base_url_of(session.config) is None

    assert not session.remove_endpoint("https://missing.example")


def test_set_preset_keeps_results_and_custom_endpoints():
    session = EditSession(AppType.CLAUDE, _claude(), preset_candidates=["https://p1.example"])
    session.add_endpoint("https://mine.example")

    session.set_preset(["https://p2.example"])

    urls = [c.url for c in session.candidates]
    assert "https://p1.example" not in urls
    assert "https://p2.example" in urls
    assert "https://mine.example" in urls


def test_probe_timeout_follows_app_family():
    codex = ProviderConfig(format=ConfigFormat.TOML_FRAGMENT)
    assert EditSession(AppType.CODEX, codex).timeout_ms == 12000
    assert EditSession(AppType.CLAUDE, _claude()).timeout_ms == 8000
    assert EditSession(AppType.CODEX, codex, probe_timeouts_ms={"codex": 500}).timeout_ms == 500


@pytest.mark.asyncio
async def test_speed_test_auto_selects_fastest(fake_transport):
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_BASE_URL": "https://slow.example"}),
        preset_candidates=["https://fast.example", "https://dead.example"],
    )
    transport = fake_transport(
        {"https://fast.example": 80, "https://slow.example": 300, "https://dead.example": "hang"}
    )
    session.timeout_ms = 50

    ranked = await session.run_speed_test(transport)

    assert [r.url for r in ranked] == [
        "https://fast.example",
        "https://slow.example",
        "https://dead.example",
    ]
    assert ranked[2].error == "Request timed out after 50 ms"
    assert session.selected == "https://fast.example"
    assert _base_url_of(session.config) == "https://fast.example"
    assert all(c.result is not None for c in session.candidates)
    assert not session.is_testing


@pytest.mark.asyncio
async def test_speed_test_respects_disabled_auto_select(fake_transport):
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_BASE_URL": "https://slow.example"}),
        preset_candidates=["https://fast.example"],
        auto_select=False,
    )
    transport = fake_transport({"https://fast.example": 10, "https://slow.example": 900})

    ranked = await session.run_speed_test(transport)

    assert ranked[0].url == "https://fast.example"
    assert session.selected == "https://slow.example"
    assert [c.url for c in session.ranked_candidates()] == ["https://fast.example", "https://slow.example"]


@pytest.mark.asyncio
async def test_speed_test_is_single_flight(fake_transport):
    session = EditSession(AppType.CLAUDE, _claude(), preset_candidates=["https://a.example"])
    transport = fake_transport({"https://a.example": 5})

    first, second = await asyncio.gather(
        session.run_speed_test(transport),
        session.run_speed_test(transport),
    )

    assert [r.url for r in first] == ["https://a.example"]
    assert second == []
    assert transport.calls == ["https://a.example"]


@pytest.mark.asyncio
async def test_endpoint_added_during_round_stays_pending(fake_transport):
    session = EditSession(
        AppType.CLAUDE,
        _claude({"ANTHROPIC_BASE_URL": "https://a.example"}),
        auto_select=False,
    )
    transport = fake_transport({"https://a.example": 5})

    task = asyncio.create_task(session.run_speed_test(transport))
    await asyncio.sleep(0)
    assert session.is_testing
    session.add_endpoint("https://late.example")
    await task

    results = {c.url: c.result for c in session.candidates}
    assert results["https://a.example"].latency_ms == 5
    assert results["https://late.example"] is None
    assert transport.calls == ["https://a.example"]


@pytest.mark.asyncio
async def test_speed_test_without_candidates_reports_error():
    session = EditSession(AppType.CLAUDE, _claude())
    assert await session.run_speed_test() == []
    assert session.last_error


@pytest.mark.asyncio
async def test_closed_session_discards_results(fake_transport):
    session = EditSession(AppType.CLAUDE, _claude(), preset_candidates=["https://a.example"])
    transport = fake_transport({"https://a.example": 5})

    task = asyncio.create_task(session.run_speed_test(transport))
    await asyncio.sleep(0)
    session.close()
    await task

    assert all(c.result is None for c in session.candidates)
    assert session.selected == ""


def _persisted_session(manager, profile_factory) -> tuple[EditSession, ConfigEndpointStore]:
    settings = json.dumps({"env": {"ANTHROPIC_BASE_URL": "https://two.example"}})
    manager.add_provider(profile_factory("relay", settings=settings))
    store = ConfigEndpointStore(manager)
    store.replace(
        "relay",
        [
            CustomEndpoint(url="https://one.example", added_at=1),
            CustomEndpoint(url="https://two.example", added_at=2),
        ],
    )
    profile = manager.get_provider("relay")
    session = EditSession(profile.app_type, profile.config, provider_id="relay", store=store)
    return session, store


def test_commit_persists_draft_changes(manager, profile_factory):
    session, store = _persisted_session(manager, profile_factory)
    assert [c.url for c in session.candidates] == ["https://two.example", "https://one.example"]

    session.remove_endpoint("https://one.example")
    session.add_endpoint("https://three.example")
    assert [r.url for r in store.list("relay")] == ["https://two.example", "https://one.example"]

    result = session.commit()

    assert result.to_add == ["https://three.example"]
    assert result.to_remove == ["https://one.example"]
    records = {r.url: r for r in store.list("relay")}
    assert set(records) == {"https://two.example", "https://three.example"}
    assert records["https://two.example"].added_at == 2
    assert records["https://two.example"].last_used is not None


def test_commit_failure_keeps_draft_for_retry(manager, profile_factory, monkeypatch):
    session, store = _persisted_session(manager, profile_factory)
    session.add_endpoint("https://three.example")
    original_save = manager.save_global_config

    def failing_save(config):
        raise OSError("read-only file system")

    monkeypatch.setattr(manager, "save_global_config", failing_save)
    with pytest.raises(PersistenceError):
        session.commit()

    assert "https://three.example" in session.draft_custom_urls()
    assert session.pending_diff().to_add == ["https://three.example"]

    monkeypatch.setattr(manager, "save_global_config", original_save)
    session.commit()
    assert "https://three.example" in {r.url for r in store.list("relay")}
    assert session.pending_diff().is_empty


def test_clearing_all_custom_endpoints_is_explicit(manager, profile_factory):
    session, store = _persisted_session(manager, profile_factory)
    session.remove_endpoint("https://one.example")
    session.remove_endpoint("https://two.example")

    result = session.commit()

    assert result.explicit_clear
    assert store.list("relay") == []


def test_new_provider_flow_reports_adds_only():
    session = EditSession(AppType.CLAUDE, _claude())
    session.add_endpoint("https://x.example")
    session.add_endpoint("https://y.example")

    assert session.draft_custom_urls() == ["https://x.example", "https://y.example"]
    result = session.commit()
    assert result.to_add == ["https://x.example", "https://y.example"]
    assert result.to_remove == []
