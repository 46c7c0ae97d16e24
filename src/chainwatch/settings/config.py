"""Configuration loader for chainwatch services using Pydantic settings."""

from __future__ import annotations

import os
import tomllib
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterator, Literal

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

ENV_VAR_NAME = "CHAINWATCH_ENV"
DEFAULT_ENV = "local"
PROJECT_ROOT = Path(__file__).resolve().parents[3]
CONFIG_DIR = PROJECT_ROOT / "config"
DEFAULT_CONFIG_FILE = CONFIG_DIR / "settings.default.toml"
LOCAL_CONFIG_FILE = CONFIG_DIR / "settings.local.toml"
SETTINGS_FILE_ENV_VAR = "CHAINWATCH_SETTINGS_FILE"


def _resolve_env(explicit_env: str | None = None) -> str:
    """Return the active environment name.

    Args:
        explicit_env: Environment value supplied directly by the caller.

    Returns:
        A stripped environment name, falling back to ``DEFAULT_ENV``.
    """

    env = explicit_env or os.getenv(ENV_VAR_NAME) or DEFAULT_ENV
    return env.strip()


def _env_file_candidates(env: str) -> list[Path]:
    """List candidate ``.env`` files used during settings resolution."""

    return [
        PROJECT_ROOT / ".env",
        PROJECT_ROOT / f".env.{env}",
        PROJECT_ROOT / ".env.local",
    ]


def _resolve_config_path(raw_path: str | None) -> Path | None:
    if not raw_path:
        return None
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = (PROJECT_ROOT / candidate).resolve()
    return candidate


def _config_file_priority() -> tuple[Path, ...]:
    """Return existing config files in descending precedence order."""

    ordered: list[Path] = []
    env_override = _resolve_config_path(os.getenv(SETTINGS_FILE_ENV_VAR))
    if env_override:
        ordered.append(env_override)
    ordered.append(LOCAL_CONFIG_FILE)
    ordered.append(DEFAULT_CONFIG_FILE)
    return tuple(path for path in ordered if path.exists())


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """Pydantic settings source that loads values from a TOML file."""

    def __init__(self, settings_cls: type[BaseSettings], path: Path) -> None:
        super().__init__(settings_cls)
        self.path = path
        self._data: dict[str, Any] | None = None

    def _load(self) -> dict[str, Any]:
        if self._data is not None:
            return self._data
        if not self.path.exists():
            self._data = {}
            return self._data
        try:
            with self.path.open("rb") as handle:
                self._data = tomllib.load(handle)
        except tomllib.TOMLDecodeError as exc:  # pragma: no cover - invalid files surface immediately
            raise ValueError(f"Invalid TOML syntax in {self.path}") from exc
        return self._data

    def __call__(self) -> dict[str, Any]:  # pragma: no cover - trivial wrapper
        return self._load()

    def get_field_value(self, field_name: str, field):  # pragma: no cover - passthrough helper
        data = self._load()
        return data.get(field_name), field_name in data


def _nested_sections(settings_cls: type[BaseSettings]) -> Iterator[tuple[str, type[BaseSettings]]]:
    for section_name, section_field in settings_cls.model_fields.items():
        section_cls = section_field.annotation
        if isinstance(section_cls, type) and issubclass(section_cls, BaseSettings):
            yield section_name, section_cls


def _alias_names(field) -> list[str]:
    alias = field.validation_alias
    if isinstance(alias, AliasChoices):
        return [choice for choice in alias.choices if isinstance(choice, str)]
    if isinstance(alias, str):
        return [alias]
    return []


class FieldNameSettingsSource(PydanticBaseSettingsSource):
    """Re-key another source's nested sections by field name.

    Env sources may key nested values by validation alias while TOML and
    legacy sources use field names. Both forms would survive the merge and
    the field name wins validation, so every source is normalised first.
    """

    def __init__(self, settings_cls: type[BaseSettings], source: PydanticBaseSettingsSource) -> None:
        super().__init__(settings_cls)
        self.source = source

    @staticmethod
    def _by_field_name(section_cls: type[BaseSettings], values: dict[str, Any]) -> dict[str, Any]:
        lookup: dict[str, str] = {}
        for name, field in section_cls.model_fields.items():
            lookup[name.lower()] = name
            for alias in _alias_names(field):
                lookup.setdefault(alias.lower(), name)
        return {lookup.get(key.lower(), key): value for key, value in values.items()}

    def __call__(self) -> dict[str, Any]:
        values = dict(self.source())
        for section_name, section_cls in _nested_sections(self.settings_cls):
            section = values.get(section_name)
            if isinstance(section, dict):
                values[section_name] = self._by_field_name(section_cls, section)
        return values

    def get_field_value(self, field, field_name):  # pragma: no cover - values come from __call__
        return None, field_name, False


class LegacyEnvSettingsSource(PydanticBaseSettingsSource):
    """Map unprefixed env names such as ``ETH_RPC_URL`` onto nested sections.

    Nested sections validated from a dict (for example when a TOML file
    provides the section) skip their own env lookup, so the legacy aliases
    are resolved here once for the whole model.
    """

    def __call__(self) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for section_name, section_cls in _nested_sections(self.settings_cls):
            for name, field in section_cls.model_fields.items():
                for env_name in _alias_names(field):
                    if "__" not in env_name and env_name in os.environ:
                        values.setdefault(section_name, {})[name] = os.environ[env_name]
                        break
        return values

    def get_field_value(self, field, field_name):  # pragma: no cover - values come from __call__
        return None, field_name, False


class RuntimeSettings(BaseSettings):
    """Process-level runtime controls."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "RUNTIME__LOG_LEVEL"),
    )


class APISettings(BaseSettings):
    """HTTP API exposure and the shared operator token."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    host: str = Field(
        default="127.0.0.1",
        validation_alias=AliasChoices("API_HOST", "API__HOST"),
    )
    port: int = Field(
        default=3000,
        validation_alias=AliasChoices("PORT", "API__PORT"),
    )
    key: str = Field(
        default="dev-operator-token",
        validation_alias=AliasChoices("API_KEY", "API__KEY"),
    )


class StorageSettings(BaseSettings):
    """Structured storage configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    structured_backend: Literal["sqlite", "postgres"] = Field(
        default="sqlite",
        validation_alias=AliasChoices("STRUCTURED_BACKEND", "STORAGE__STRUCTURED_BACKEND"),
    )
    sqlite_path: Path = Field(default=PROJECT_ROOT / "data" / "chainwatch.db")
    database_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "STORAGE__DATABASE_URL"),
    )


class RPCSettings(BaseSettings):
    """Upstream JSON-RPC endpoints, one per supported chain."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    eth_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("ETH_RPC_URL", "RPC__ETH_URL"),
    )
    base_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("BASE_RPC_URL", "RPC__BASE_URL"),
    )
    avax_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("AVAX_RPC_URL", "RPC__AVAX_URL"),
    )
    sol_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("SOL_RPC_URL", "RPC__SOL_URL"),
    )
    timeout_seconds: float = Field(
        default=10.0,
        validation_alias=AliasChoices("RPC_TIMEOUT_SECONDS", "RPC__TIMEOUT_SECONDS"),
    )

    def url_for(self, chain: str) -> str | None:
        """Return the configured endpoint for ``chain`` (``eth``, ``base``, ...)."""

        return getattr(self, f"{chain}_url", None)


class PollerSettings(BaseSettings):
    """Polling cadence, scan windows and backoff policy."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    evm_poll_interval_seconds: float = Field(
        default=45.0,
        validation_alias=AliasChoices("EVM_POLL_INTERVAL_SECONDS", "POLLER__EVM_POLL_INTERVAL_SECONDS"),
    )
    solana_poll_interval_seconds: float = Field(
        default=180.0,
        validation_alias=AliasChoices("SOLANA_POLL_INTERVAL_SECONDS", "POLLER__SOLANA_POLL_INTERVAL_SECONDS"),
    )
    tick_seconds: float = Field(
        default=5.0,
        validation_alias=AliasChoices("POLLER_TICK_SECONDS", "POLLER__TICK_SECONDS"),
    )
    max_blocks_per_scan: int = Field(
        default=50,
        validation_alias=AliasChoices("EVM_MAX_BLOCKS_PER_SCAN", "POLLER__MAX_BLOCKS_PER_SCAN"),
    )
    check_lookback_blocks: int = Field(
        default=200,
        validation_alias=AliasChoices("CHECK_LOOKBACK_BLOCKS", "POLLER__CHECK_LOOKBACK_BLOCKS"),
    )
    signature_page_size: int = Field(
        default=50,
        validation_alias=AliasChoices("SOLANA_SIGNATURE_PAGE_SIZE", "POLLER__SIGNATURE_PAGE_SIZE"),
    )
    max_backfill_pages: int = Field(
        default=2,
        validation_alias=AliasChoices("SOLANA_MAX_BACKFILL_PAGES", "POLLER__MAX_BACKFILL_PAGES"),
    )
    max_fanout: int = Field(
        default=4,
        validation_alias=AliasChoices("POLLER_MAX_FANOUT", "POLLER__MAX_FANOUT"),
    )
    redelivery_batch_limit: int = Field(
        default=25,
        validation_alias=AliasChoices("REDELIVERY_BATCH_LIMIT", "POLLER__REDELIVERY_BATCH_LIMIT"),
    )
    backoff_multiplier: float = Field(
        default=2.0,
        validation_alias=AliasChoices("POLLER_BACKOFF_MULTIPLIER", "POLLER__BACKOFF_MULTIPLIER"),
    )
    max_backoff_seconds: float = Field(
        default=900.0,
        validation_alias=AliasChoices("POLLER_MAX_BACKOFF_SECONDS", "POLLER__MAX_BACKOFF_SECONDS"),
    )
    jitter_ratio: float = Field(
        default=0.1,
        validation_alias=AliasChoices("POLLER_JITTER_RATIO", "POLLER__JITTER_RATIO"),
    )


class LimitsSettings(BaseSettings):
    """Registration caps for monitored entities."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    max_tracked_per_user: int = Field(
        default=20,
        validation_alias=AliasChoices("MAX_TRACKED_PER_USER", "LIMITS__MAX_TRACKED_PER_USER"),
    )
    max_tracked_total: int = Field(
        default=200,
        validation_alias=AliasChoices("MAX_TRACKED_TOTAL", "LIMITS__MAX_TRACKED_TOTAL"),
    )


class NotificationSettings(BaseSettings):
    """Alert delivery channel wiring."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    backend: Literal["telegram", "log"] = Field(
        default="telegram",
        validation_alias=AliasChoices("NOTIFICATION_BACKEND", "NOTIFICATIONS__BACKEND"),
    )
    telegram_bot_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices("TELEGRAM_BOT_TOKEN", "NOTIFICATIONS__TELEGRAM_BOT_TOKEN"),
    )
    telegram_api_base: str = Field(
        default="https://api.telegram.org",
        validation_alias=AliasChoices("TELEGRAM_API_BASE", "NOTIFICATIONS__TELEGRAM_API_BASE"),
    )
    timeout_seconds: float = Field(
        default=10.0,
        validation_alias=AliasChoices("NOTIFICATION_TIMEOUT_SECONDS", "NOTIFICATIONS__TIMEOUT_SECONDS"),
    )


class ObservabilitySettings(BaseSettings):
    """Logging and metrics configuration."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    structured_logging: bool = Field(
        default=True,
        validation_alias=AliasChoices("OBS_STRUCTURED_LOGGING", "OBSERVABILITY__STRUCTURED_LOGGING"),
    )
    statsd_host: str | None = Field(
        default=None,
        validation_alias=AliasChoices("OBS_STATSD_HOST", "OBSERVABILITY__STATSD_HOST"),
    )
    statsd_port: int = Field(
        default=8125,
        validation_alias=AliasChoices("OBS_STATSD_PORT", "OBSERVABILITY__STATSD_PORT"),
    )
    statsd_prefix: str = Field(
        default="chainwatch",
        validation_alias=AliasChoices("OBS_STATSD_PREFIX", "OBSERVABILITY__STATSD_PREFIX"),
    )


class Settings(BaseSettings):
    """Top-level configuration model with nested sections for each subsystem."""

    env: str = Field(
        default_factory=lambda: _resolve_env(),
        validation_alias=AliasChoices("ENV", "ENVIRONMENT", "RUNTIME__ENV"),
    )
    project_root: Path = Field(default=PROJECT_ROOT)
    runtime: RuntimeSettings = Field(default_factory=RuntimeSettings)
    api: APISettings = Field(default_factory=APISettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    rpc: RPCSettings = Field(default_factory=RPCSettings)
    poller: PollerSettings = Field(default_factory=PollerSettings)
    limits: LimitsSettings = Field(default_factory=LimitsSettings)
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    observability: ObservabilitySettings = Field(default_factory=ObservabilitySettings)
    env_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)
    config_files: tuple[Path, ...] = Field(default_factory=tuple, exclude=True)

    model_config = SettingsConfigDict(
        env_prefix="CHAINWATCH_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        """Extend settings sources with TOML-based config files."""

        config_sources = [TomlConfigSettingsSource(settings_cls, path) for path in _config_file_priority()]
        return (
            init_settings,
            FieldNameSettingsSource(settings_cls, env_settings),
            LegacyEnvSettingsSource(settings_cls),
            FieldNameSettingsSource(settings_cls, dotenv_settings),
            *config_sources,
            file_secret_settings,
        )

    @model_validator(mode="after")
    def _resolve_paths(self) -> "Settings":
        """Normalize the SQLite path relative to the project root."""

        if not self.storage.sqlite_path.is_absolute():
            resolved = (self.project_root / self.storage.sqlite_path).resolve()
            object.__setattr__(self, "storage", self.storage.model_copy(update={"sqlite_path": resolved}))
        return self

    @model_validator(mode="after")
    def _apply_environment_overrides(self) -> "Settings":
        """Force environment-specific defaults after basic resolution."""

        if self.env.lower() == "local":
            if not self.notifications.telegram_bot_token:
                object.__setattr__(
                    self, "notifications", self.notifications.model_copy(update={"backend": "log"})
                )
            object.__setattr__(
                self, "observability", self.observability.model_copy(update={"structured_logging": False})
            )
        return self

    @property
    def log_level(self) -> str:
        """str: Effective logging level for the running process."""

        return self.runtime.log_level

    @property
    def is_local(self) -> bool:
        """bool: True when the active environment is ``local``."""

        return self.env.lower() == "local"


def _load_settings(env: str | None = None) -> Settings:
    """Load settings with optional environment override."""

    resolved_env = _resolve_env(env)
    candidate_files = [path for path in _env_file_candidates(resolved_env) if path.exists()]
    return Settings(
        _env_file=[str(path) for path in candidate_files],
        _env_file_encoding="utf-8",
        env=resolved_env,
        env_files=tuple(candidate_files),
        config_files=_config_file_priority(),
    )


@lru_cache(maxsize=1)
def get_settings(env: str | None = None) -> Settings:
    """Return cached settings for the requested environment."""

    return _load_settings(env)


def reload_settings(env: str | None = None) -> Settings:
    """Clear the cached settings and reload from disk."""

    get_settings.cache_clear()
    return get_settings(env)


__all__ = [
    "Settings",
    "get_settings",
    "reload_settings",
    "PROJECT_ROOT",
    "ENV_VAR_NAME",
]
