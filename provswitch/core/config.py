"""Configuration management for provswitch.

This module holds the provider profiles for each supported command-line tool,
their persisted custom endpoints, and the speed-test preferences.
"""

import json
import os
import time
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from provswitch.core.errors import ProviderNotFoundError
from provswitch.utils.log import get_logger


logger = get_logger()


class AppType(str, Enum):
    """Command-line tools whose provider settings we switch."""

    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"

    @classmethod
    def _legacy_aliases(cls) -> Dict[str, "AppType"]:
        return {
            "anthropic": cls.CLAUDE,
            "claude-code": cls.CLAUDE,
            "openai": cls.CODEX,
            "google": cls.GEMINI,
            "gemini-cli": cls.GEMINI,
        }

    @classmethod
    def _missing_(cls, value: object) -> Optional["AppType"]:
        """Accept case-insensitive labels and legacy aliases."""
        if isinstance(value, str):
            normalized = value.strip().lower()
            for member in cls:
                if member.value == normalized:
                    return member
            return cls._legacy_aliases().get(normalized)
        return None


class ConfigFormat(str, Enum):
    """Serialized configuration layouts owned by the external tools."""

    JSON_ENV = "json-env"
    TOML_FRAGMENT = "toml-fragment"
    DOTENV_LIKE = "dotenv-like"


_APP_FORMATS: Dict[AppType, ConfigFormat] = {
    AppType.CLAUDE: ConfigFormat.JSON_ENV,
    AppType.CODEX: ConfigFormat.TOML_FRAGMENT,
    AppType.GEMINI: ConfigFormat.DOTENV_LIKE,
}

DEFAULT_PROBE_TIMEOUTS_MS: Dict[str, int] = {
    AppType.CLAUDE.value: 8000,
    AppType.CODEX.value: 12000,
    AppType.GEMINI.value: 8000,
}


def format_for_app(app_type: AppType) -> ConfigFormat:
    """Return the fixed config format for an application family."""
    return _APP_FORMATS[AppType(app_type)]


def probe_timeout_for(
    app_type: AppType,
    overrides: Optional[Mapping[str, int]] = None,
) -> int:
    """Resolve the per-family probe timeout in milliseconds."""
    key = AppType(app_type).value
    if overrides and overrides.get(key):
        return int(overrides[key])
    return DEFAULT_PROBE_TIMEOUTS_MS[key]


def now_millis() -> int:
    return int(time.time() * 1000)


class ProviderConfig(BaseModel):
    """Opaque serialized configuration blob plus its format tag."""

    model_config = ConfigDict(frozen=True)

    format: ConfigFormat
    settings: str = ""
    # Companion JSON object text (toml-fragment only: holds the API key).
    auth: Optional[str] = None


class CustomEndpoint(BaseModel):
    """A user-managed endpoint persisted for one provider."""

    model_config = ConfigDict(frozen=True)

    url: str
    added_at: int = Field(default_factory=now_millis)
    last_used: Optional[int] = None


class ProviderProfile(BaseModel):
    """A saved configuration profile for one external tool."""

    id: str
    name: str = ""
    app_type: AppType
    config: ProviderConfig
    # Preset-provided endpoint candidates (read-only catalog input).
    endpoint_candidates: list[str] = Field(default_factory=list)
    custom_endpoints: Dict[str, CustomEndpoint] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_format(self) -> "ProviderProfile":
        expected = format_for_app(self.app_type)
        if self.config.format != expected:
            raise ValueError(
                f"Provider '{self.id}' ({self.app_type.value}) must use format "
                f"'{expected.value}', got '{self.config.format.value}'."
            )
        return self


class GlobalConfig(BaseModel):
    """Global configuration stored in ~/.provswitch.json"""

    providers: Dict[str, ProviderProfile] = Field(default_factory=dict)
    current: Dict[str, str] = Field(default_factory=dict)

    auto_select: bool = True
    warmup_probe: bool = True
    probe_timeouts_ms: Dict[str, int] = Field(default_factory=dict)


def default_config_path() -> Path:
    override = os.getenv("PROVSWITCH_CONFIG")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".provswitch.json"


class ConfigManager:
    """Loads, caches and persists the global configuration."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.global_config_path = path or default_config_path()
        self._global_config: Optional[GlobalConfig] = None

    def get_global_config(self) -> GlobalConfig:
        """Load and return global configuration."""
        if self._global_config is None:
            if self.global_config_path.exists():
                try:
                    data = json.loads(self.global_config_path.read_text(encoding="utf-8"))
                    self._global_config = GlobalConfig(**data)
                    logger.debug(
                        "[config] Loaded global configuration",
                        extra={
                            "path": str(self.global_config_path),
                            "provider_count": len(self._global_config.providers),
                        },
                    )
                except (
                    json.JSONDecodeError,
                    OSError,
                    UnicodeDecodeError,
                    ValueError,
                    TypeError,
                ) as e:
                    logger.warning(
                        "Error loading global config: %s: %s",
                        type(e).__name__,
                        e,
                        extra={"error": str(e)},
                    )
                    self._global_config = GlobalConfig()
            else:
                self._global_config = GlobalConfig()
                logger.debug(
                    "[config] Global config not found; using defaults",
                    extra={"path": str(self.global_config_path)},
                )
        return self._global_config

    def save_global_config(self, config: GlobalConfig) -> None:
        """Write the whole document in one go; the cache only updates on success."""
        self.global_config_path.parent.mkdir(parents=True, exist_ok=True)
        self.global_config_path.write_text(config.model_dump_json(indent=2), encoding="utf-8")
        self._global_config = config
        logger.debug(
            "[config] Saved global configuration",
            extra={
                "path": str(self.global_config_path),
                "provider_count": len(config.providers),
            },
        )

    def reload(self) -> GlobalConfig:
        self._global_config = None
        return self.get_global_config()

    def get_provider(self, provider_id: str) -> ProviderProfile:
        config = self.get_global_config()
        profile = config.providers.get(provider_id)
        if profile is None:
            raise ProviderNotFoundError(provider_id)
        return profile

    def add_provider(self, profile: ProviderProfile, overwrite: bool = False) -> GlobalConfig:
        """Add or replace a provider; the first one per app becomes current."""
        config = self.get_global_config().model_copy(deep=True)
        if not overwrite and profile.id in config.providers:
            raise ValueError(f"Provider '{profile.id}' already exists.")

        config.providers[profile.id] = profile
        app_key = profile.app_type.value
        if config.current.get(app_key) not in config.providers:
            config.current[app_key] = profile.id
        self.save_global_config(config)
        return config

    def delete_provider(self, provider_id: str) -> GlobalConfig:
        """Delete a provider and repair the current pointer that referenced it."""
        config = self.get_global_config().model_copy(deep=True)
        profile = config.providers.pop(provider_id, None)
        if profile is None:
            raise ProviderNotFoundError(provider_id)

        app_key = profile.app_type.value
        if config.current.get(app_key) == provider_id:
            fallback = next(
                (pid for pid, p in config.providers.items() if p.app_type == profile.app_type),
                None,
            )
            if fallback:
                config.current[app_key] = fallback
            else:
                config.current.pop(app_key, None)

        self.save_global_config(config)
        return config

    def update_provider_config(self, provider_id: str, provider_config: ProviderConfig) -> ProviderProfile:
        """Replace a provider's serialized configuration (format must not change)."""
        config = self.get_global_config().model_copy(deep=True)
        profile = config.providers.get(provider_id)
        if profile is None:
            raise ProviderNotFoundError(provider_id)
        if provider_config.format != profile.config.format:
            raise ValueError(
                f"Provider '{provider_id}' format is fixed to '{profile.config.format.value}'."
            )
        updated = profile.model_copy(update={"config": provider_config})
        config.providers[provider_id] = updated
        self.save_global_config(config)
        return updated

    def set_current(self, app_type: AppType, provider_id: str) -> GlobalConfig:
        config = self.get_global_config().model_copy(deep=True)
        profile = config.providers.get(provider_id)
        if profile is None:
            raise ProviderNotFoundError(provider_id)
        if profile.app_type != AppType(app_type):
            raise ValueError(
                f"Provider '{provider_id}' belongs to {profile.app_type.value}, not {AppType(app_type).value}."
            )
        config.current[profile.app_type.value] = provider_id
        self.save_global_config(config)
        return config
