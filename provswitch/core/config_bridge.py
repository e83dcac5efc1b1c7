"""Per-format accessors between a provider config blob and its semantic fields.

Each bridge exposes the same read/write surface for the API key, the base URL
and the model slots. Writes are pure: they take the current ``ProviderConfig``
and return a new one. Reads never raise on malformed text; the user may be in
the middle of editing it, so an unparsable blob simply yields no value.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from provswitch.core.config import ConfigFormat, ProviderConfig
from provswitch.core.endpoints import normalize
from provswitch.utils.env_text import env_to_json, json_to_env, parse_env_text, serialize_env
from provswitch.utils.json_utils import dump_json, parse_json_object
from provswitch.utils.log import get_logger
from provswitch.utils.toml_text import extract_string_value, remove_key, set_string_value

logger = get_logger()


class ModelSlot(str, Enum):
    MAIN = "main"
    HAIKU = "haiku"
    SONNET = "sonnet"
    OPUS = "opus"


class SemanticFields(BaseModel):
    """Form-facing projection of a config blob. Never persisted on its own."""

    model_config = ConfigDict(frozen=True)

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    models: Dict[ModelSlot, str] = Field(default_factory=dict)


def _clean(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _object_span(text: str, name: str) -> Optional[tuple[int, int]]:
    """Body of the ``"name": {...}`` object in possibly broken JSON text.

    An object that is never closed runs to the end of the text.
    """
    opener = re.search(r'"' + re.escape(name) + r'"\s*:\s*\{', text)
    if opener is None:
        return None
    depth = 1
    in_string = False
    escaped = False
    for index in range(opener.end(), len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return opener.end(), index
    return opener.end(), len(text)


def _patch_json_string(
    text: str,
    key: str,
    value: str,
    *,
    within: Optional[str] = None,
) -> Optional[str]:
    """Replace ``"key": "..."`` inside unparsable JSON text, if the pair is visible.

    With ``within`` only the pair inside that named object is considered.
    """
    start, end = 0, len(text)
    if within is not None:
        span = _object_span(text, within)
        if span is None:
            return None
        start, end = span
    pattern = re.compile(r'("' + re.escape(key) + r'"\s*:\s*)"(?:[^"\\]|\\.)*"')
    match = pattern.search(text, start, end)
    if match is None:
        return None
    encoded = json.dumps(value, ensure_ascii=False)
    return text[: match.start()] + match.group(1) + encoded + text[match.end() :]


class ConfigFieldBridge(ABC):
    """Uniform accessor interface over one serialized config format."""

    format: ClassVar[ConfigFormat]
    supported_slots: ClassVar[tuple[ModelSlot, ...]] = (ModelSlot.MAIN,)

    def _check(self, config: ProviderConfig) -> None:
        if config.format != self.format:
            raise ValueError(
                f"{type(self).__name__} handles '{self.format.value}', got '{config.format.value}'."
            )

    def _check_slot(self, slot: ModelSlot) -> ModelSlot:
        slot = ModelSlot(slot)
        if slot not in self.supported_slots:
            raise ValueError(f"Model slot '{slot.value}' is not supported by {self.format.value}.")
        return slot

    @abstractmethod
    def read_api_key(self, config: ProviderConfig) -> Optional[str]: ...

    @abstractmethod
    def write_api_key(self, config: ProviderConfig, value: str) -> ProviderConfig: ...

    @abstractmethod
    def read_base_url(self, config: ProviderConfig) -> Optional[str]: ...

    @abstractmethod
    def write_base_url(self, config: ProviderConfig, value: str) -> ProviderConfig: ...

    @abstractmethod
    def read_model(self, config: ProviderConfig, slot: ModelSlot) -> Optional[str]: ...

    @abstractmethod
    def write_model(self, config: ProviderConfig, slot: ModelSlot, value: str) -> ProviderConfig: ...

    @abstractmethod
    def export_settings(self, config: ProviderConfig) -> Dict[str, Any]:
        """Return the JSON settings object the external tool stores."""

    @abstractmethod
    def import_settings(self, settings: Dict[str, Any]) -> ProviderConfig:
        """Build a config blob from the tool's JSON settings object."""

    def read_fields(self, config: ProviderConfig) -> SemanticFields:
        models: Dict[ModelSlot, str] = {}
        for slot in self.supported_slots:
            value = self.read_model(config, slot)
            if value:
                models[slot] = value
        return SemanticFields(
            api_key=self.read_api_key(config),
            base_url=self.read_base_url(config),
            models=models,
        )


class JsonEnvBridge(ConfigFieldBridge):
    """Claude-style settings: a JSON object with an ``env`` map."""

    format = ConfigFormat.JSON_ENV
    supported_slots = (ModelSlot.MAIN, ModelSlot.HAIKU, ModelSlot.SONNET, ModelSlot.OPUS)

    API_KEY_FIELDS = ("ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_API_KEY")
    BASE_URL_FIELD = "ANTHROPIC_BASE_URL"
    MODEL_FIELDS: ClassVar[Dict[ModelSlot, str]] = {
        ModelSlot.MAIN: "ANTHROPIC_MODEL",
        ModelSlot.HAIKU: "ANTHROPIC_DEFAULT_HAIKU_MODEL",
        ModelSlot.SONNET: "ANTHROPIC_DEFAULT_SONNET_MODEL",
        ModelSlot.OPUS: "ANTHROPIC_DEFAULT_OPUS_MODEL",
    }
    DEPRECATED_MODEL_FIELD = "ANTHROPIC_SMALL_FAST_MODEL"
    # Migration shim: slot keys fall back to older aliases when unset. Only the
    # new key is ever written and the deprecated alias is dropped on write.
    _LEGACY_MODEL_FALLBACKS: ClassVar[Dict[ModelSlot, tuple[str, ...]]] = {
        ModelSlot.HAIKU: ("ANTHROPIC_SMALL_FAST_MODEL", "ANTHROPIC_MODEL"),
        ModelSlot.SONNET: ("ANTHROPIC_MODEL", "ANTHROPIC_SMALL_FAST_MODEL"),
        ModelSlot.OPUS: ("ANTHROPIC_MODEL", "ANTHROPIC_SMALL_FAST_MODEL"),
    }

    def _env(self, config: ProviderConfig) -> Optional[Dict[str, Any]]:
        self._check(config)
        data = parse_json_object(config.settings)
        if data is None:
            logger.debug(
                "[config_bridge] Malformed json-env blob; treating fields as absent",
                extra={"length": len(config.settings)},
            )
            return None
        env = data.get("env")
        return env if isinstance(env, dict) else {}

    def _update_env(self, config: ProviderConfig, key: str, value: Optional[str]) -> ProviderConfig:
        self._check(config)
        data = parse_json_object(config.settings)
        if data is None:
            if value is None:
                return config
            patched = _patch_json_string(config.settings, key, value, within="env")
            if patched is None:
                logger.debug(
                    "[config_bridge] Cannot patch malformed json-env blob",
                    extra={"key": key},
                )
                return config
            return config.model_copy(update={"settings": patched})

        env = data.get("env")
        if not isinstance(env, dict):
            env = {}
            data["env"] = env
        if value is None:
            env.pop(key, None)
        else:
            env[key] = value
        return config.model_copy(update={"settings": dump_json(data)})

    def read_api_key(self, config: ProviderConfig) -> Optional[str]:
        env = self._env(config)
        if not env:
            return None
        for field in self.API_KEY_FIELDS:
            value = _clean(env.get(field))
            if value:
                return value
        return None

    def write_api_key(self, config: ProviderConfig, value: str) -> ProviderConfig:
        env = self._env(config) or {}
        field = next((f for f in self.API_KEY_FIELDS if f in env), self.API_KEY_FIELDS[0])
        return self._update_env(config, field, value.strip())

    def read_base_url(self, config: ProviderConfig) -> Optional[str]:
        env = self._env(config)
        if not env:
            return None
        return normalize(_clean(env.get(self.BASE_URL_FIELD))) or None

    def write_base_url(self, config: ProviderConfig, value: str) -> ProviderConfig:
        url = normalize(value)
        return self._update_env(config, self.BASE_URL_FIELD, url or None)

    def read_model(self, config: ProviderConfig, slot: ModelSlot) -> Optional[str]:
        slot = self._check_slot(slot)
        env = self._env(config)
        if not env:
            return None
        primary = env.get(self.MODEL_FIELDS[slot])
        if isinstance(primary, str):
            return primary.strip() or None
        for alias in self._LEGACY_MODEL_FALLBACKS.get(slot, ()):
            value = _clean(env.get(alias))
            if value:
                return value
        return None

    def write_model(self, config: ProviderConfig, slot: ModelSlot, value: str) -> ProviderConfig:
        slot = self._check_slot(slot)
        trimmed = value.strip()
        updated = self._update_env(config, self.MODEL_FIELDS[slot], trimmed or None)
        if parse_json_object(updated.settings) is None:
            return updated
        return self._update_env(updated, self.DEPRECATED_MODEL_FIELD, None)

    def export_settings(self, config: ProviderConfig) -> Dict[str, Any]:
        self._check(config)
        return parse_json_object(config.settings) or {}

    def import_settings(self, settings: Dict[str, Any]) -> ProviderConfig:
        return ProviderConfig(format=self.format, settings=dump_json(settings or {"env": {}}))


class TomlFragmentBridge(ConfigFieldBridge):
    """Codex-style settings: a TOML fragment plus a companion ``auth`` JSON object."""

    format = ConfigFormat.TOML_FRAGMENT
    supported_slots = (ModelSlot.MAIN,)

    API_KEY_FIELD = "OPENAI_API_KEY"
    BASE_URL_KEY = "base_url"
    MODEL_KEY = "model"
    PROVIDER_TABLE_PREFIX = "model_providers"

    def read_api_key(self, config: ProviderConfig) -> Optional[str]:
        self._check(config)
        auth = parse_json_object(config.auth)
        if auth is None:
            logger.debug("[config_bridge] Malformed auth JSON; treating API key as absent")
            return None
        return _clean(auth.get(self.API_KEY_FIELD))

    def write_api_key(self, config: ProviderConfig, value: str) -> ProviderConfig:
        self._check(config)
        trimmed = value.strip()
        auth = parse_json_object(config.auth)
        if auth is None:
            patched = _patch_json_string(config.auth or "", self.API_KEY_FIELD, trimmed)
            if patched is None:
                logger.debug("[config_bridge] Cannot patch malformed auth JSON")
                return config
            return config.model_copy(update={"auth": patched})
        auth[self.API_KEY_FIELD] = trimmed
        return config.model_copy(update={"auth": dump_json(auth)})

    def read_base_url(self, config: ProviderConfig) -> Optional[str]:
        self._check(config)
        value = extract_string_value(
            config.settings, self.BASE_URL_KEY, section_prefix=self.PROVIDER_TABLE_PREFIX
        )
        return normalize(value) or None

    def write_base_url(self, config: ProviderConfig, value: str) -> ProviderConfig:
        self._check(config)
        url = normalize(value)
        if not url:
            removed = remove_key(
                config.settings, self.BASE_URL_KEY, section_prefix=self.PROVIDER_TABLE_PREFIX
            )
            return config.model_copy(update={"settings": removed})
        updated = set_string_value(
            config.settings,
            self.BASE_URL_KEY,
            url,
            section_prefix=self.PROVIDER_TABLE_PREFIX,
        )
        return config.model_copy(update={"settings": updated})

    def read_model(self, config: ProviderConfig, slot: ModelSlot) -> Optional[str]:
        self._check_slot(slot)
        self._check(config)
        return _clean(extract_string_value(config.settings, self.MODEL_KEY))

    def write_model(self, config: ProviderConfig, slot: ModelSlot, value: str) -> ProviderConfig:
        self._check_slot(slot)
        self._check(config)
        trimmed = value.strip()
        if not trimmed:
            return config.model_copy(update={"settings": remove_key(config.settings, self.MODEL_KEY)})
        return config.model_copy(
            update={"settings": set_string_value(config.settings, self.MODEL_KEY, trimmed)}
        )

    def export_settings(self, config: ProviderConfig) -> Dict[str, Any]:
        self._check(config)
        return {"auth": parse_json_object(config.auth) or {}, "config": config.settings}

    def import_settings(self, settings: Dict[str, Any]) -> ProviderConfig:
        auth = settings.get("auth") if isinstance(settings.get("auth"), dict) else {}
        text = settings.get("config") if isinstance(settings.get("config"), str) else ""
        return ProviderConfig(format=self.format, settings=text, auth=dump_json(auth))


class DotenvBridge(ConfigFieldBridge):
    """Gemini-style settings: ``KEY=value`` lines wrapped as ``{"env": {...}}``."""

    format = ConfigFormat.DOTENV_LIKE
    supported_slots = (ModelSlot.MAIN,)

    API_KEY_FIELD = "GEMINI_API_KEY"
    BASE_URL_FIELD = "GOOGLE_GEMINI_BASE_URL"
    MODEL_FIELD = "GEMINI_MODEL"

    def _get(self, config: ProviderConfig, key: str) -> Optional[str]:
        self._check(config)
        return _clean(parse_env_text(config.settings).get(key))

    def _set(self, config: ProviderConfig, key: str, value: Optional[str]) -> ProviderConfig:
        self._check(config)
        values = parse_env_text(config.settings)
        if value:
            values[key] = value
        else:
            values.pop(key, None)
        return config.model_copy(update={"settings": serialize_env(values)})

    def read_api_key(self, config: ProviderConfig) -> Optional[str]:
        return self._get(config, self.API_KEY_FIELD)

    def write_api_key(self, config: ProviderConfig, value: str) -> ProviderConfig:
        return self._set(config, self.API_KEY_FIELD, value.strip())

    def read_base_url(self, config: ProviderConfig) -> Optional[str]:
        return normalize(self._get(config, self.BASE_URL_FIELD)) or None

    def write_base_url(self, config: ProviderConfig, value: str) -> ProviderConfig:
        return self._set(config, self.BASE_URL_FIELD, normalize(value))

    def read_model(self, config: ProviderConfig, slot: ModelSlot) -> Optional[str]:
        self._check_slot(slot)
        return self._get(config, self.MODEL_FIELD)

    def write_model(self, config: ProviderConfig, slot: ModelSlot, value: str) -> ProviderConfig:
        self._check_slot(slot)
        return self._set(config, self.MODEL_FIELD, value.strip())

    def export_settings(self, config: ProviderConfig) -> Dict[str, Any]:
        self._check(config)
        return env_to_json(parse_env_text(config.settings))

    def import_settings(self, settings: Dict[str, Any]) -> ProviderConfig:
        return ProviderConfig(format=self.format, settings=serialize_env(json_to_env(settings)))


_BRIDGES: Dict[ConfigFormat, ConfigFieldBridge] = {
    ConfigFormat.JSON_ENV: JsonEnvBridge(),
    ConfigFormat.TOML_FRAGMENT: TomlFragmentBridge(),
    ConfigFormat.DOTENV_LIKE: DotenvBridge(),
}


def bridge_for(config_format: ConfigFormat) -> ConfigFieldBridge:
    """Select the adapter for a format tag."""
    return _BRIDGES[ConfigFormat(config_format)]


def candidate_urls_from_config(config: Optional[ProviderConfig]) -> list[str]:
    """Base URL embedded in a config blob, as a candidate list."""
    if config is None:
        return []
    url = bridge_for(config.format).read_base_url(config)
    return [url] if url else []
