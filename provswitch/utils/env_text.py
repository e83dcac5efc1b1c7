"""Parsing and serialization for ``KEY=value`` environment files."""

from __future__ import annotations

import re
from typing import Any, Mapping

_VALID_KEY = re.compile(r"^[A-Za-z0-9_]+$")


def parse_env_text(content: str | None) -> dict[str, str]:
    """Leniently parse ``.env`` text, skipping blanks, comments and invalid lines."""
    result: dict[str, str] = {}
    for raw_line in (content or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _VALID_KEY.match(key):
            continue
        result[key] = value.strip()
    return result


def serialize_env(values: Mapping[str, str]) -> str:
    """Render ``KEY=value`` lines in mapping order."""
    return "\n".join(f"{key}={value}" for key, value in values.items())


def env_to_json(values: Mapping[str, str]) -> dict[str, Any]:
    """Wrap environment values the way provider settings store them."""
    return {"env": {key: str(value) for key, value in values.items()}}


def json_to_env(settings: Any) -> dict[str, str]:
    """Extract string entries from a ``{"env": {...}}`` wrapper."""
    if not isinstance(settings, dict):
        return {}
    env = settings.get("env")
    if not isinstance(env, dict):
        return {}
    return {str(key): value for key, value in env.items() if isinstance(value, str)}
