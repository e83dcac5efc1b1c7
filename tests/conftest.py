"""Pytest configuration and fixtures for all tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Mapping

import pytest

from provswitch.core.config import (
    AppType,
    ConfigManager,
    ProviderConfig,
    ProviderProfile,
    format_for_app,
)
from provswitch.core.speedtest import ProbeResponse


class FakeTransport:
    """Scripted probe transport.

    Each URL maps to an elapsed time in ms, a ``(status, elapsed_ms)`` pair,
    an exception instance to raise, or ``"hang"`` to never answer in time.
    """

    def __init__(self, behaviours: Mapping[str, Any]) -> None:
        self.behaviours = dict(behaviours)
        self.calls: list[str] = []

    async def __call__(self, url: str, timeout_s: float) -> ProbeResponse:
        self.calls.append(url)
        behaviour = self.behaviours.get(url, 100)
        await asyncio.sleep(0)
        if behaviour == "hang":
            await asyncio.sleep(timeout_s * 20)
            return ProbeResponse(status=200, elapsed_ms=timeout_s * 20000)
        if isinstance(behaviour, BaseException):
            raise behaviour
        if isinstance(behaviour, tuple):
            status, elapsed = behaviour
            return ProbeResponse(status=status, elapsed_ms=elapsed)
        return ProbeResponse(status=200, elapsed_ms=behaviour)


@pytest.fixture
def fake_transport():
    return FakeTransport


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "provswitch.json"


@pytest.fixture
def manager(config_path: Path) -> ConfigManager:
    return ConfigManager(config_path)


def make_profile(
    provider_id: str,
    app_type: AppType = AppType.CLAUDE,
    settings: str = "",
    *,
    auth: str | None = None,
    endpoint_candidates: list[str] | None = None,
) -> ProviderProfile:
    return ProviderProfile(
        id=provider_id,
        name=provider_id.title(),
        app_type=app_type,
        config=ProviderConfig(format=format_for_app(app_type), settings=settings, auth=auth),
        endpoint_candidates=endpoint_candidates or [],
    )


@pytest.fixture
def profile_factory():
    return make_profile
