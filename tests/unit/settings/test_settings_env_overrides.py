"""Unit tests covering environment variable and config file overrides for settings."""

from __future__ import annotations

import textwrap

import pytest
from pydantic_settings import PydanticBaseSettingsSource

from chainwatch.settings.config import PROJECT_ROOT, FieldNameSettingsSource, Settings, get_settings, reload_settings


def _clear_env(monkeypatch: object, *names: str) -> None:
    """Remove env vars for every alias and prefixed variant."""

    for name in names:
        monkeypatch.delenv(name, raising=False)
        if name.startswith("CHAINWATCH_"):
            monkeypatch.delenv(name.removeprefix("CHAINWATCH_"), raising=False)
        else:
            monkeypatch.delenv(f"CHAINWATCH_{name}", raising=False)


class _StaticSource(PydanticBaseSettingsSource):
    def __init__(self, settings_cls, data: dict):
        super().__init__(settings_cls)
        self.data = data

    def __call__(self) -> dict:
        return self.data

    def get_field_value(self, field, field_name):
        return None, field_name, False


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    _clear_env(monkeypatch, "CHAINWATCH_ENV", "CHAINWATCH_SETTINGS_FILE", "DATABASE_URL")
    yield
    get_settings.cache_clear()


def test_api_key_env_override(monkeypatch: object) -> None:
    _clear_env(monkeypatch, "CHAINWATCH_API__KEY", "API_KEY")

    assert reload_settings(env="prod").api.key == "dev-operator-token"

    monkeypatch.setenv("CHAINWATCH_API__KEY", "rotated-token")
    assert reload_settings(env="prod").api.key == "rotated-token"


def test_rpc_endpoints_accept_legacy_names(monkeypatch: object) -> None:
    _clear_env(
        monkeypatch,
        "ETH_RPC_URL",
        "RPC__ETH_URL",
        "SOL_RPC_URL",
        "RPC__SOL_URL",
        "AVAX_RPC_URL",
        "RPC__AVAX_URL",
    )

    assert reload_settings(env="prod").rpc.url_for("eth") is None

    monkeypatch.setenv("ETH_RPC_URL", "https://eth.rpc.test")
    monkeypatch.setenv("CHAINWATCH_RPC__SOL_URL", "https://sol.rpc.test")
    settings = reload_settings(env="prod")
    assert settings.rpc.url_for("eth") == "https://eth.rpc.test"
    assert settings.rpc.url_for("sol") == "https://sol.rpc.test"
    assert settings.rpc.url_for("avax") is None
    assert settings.rpc.timeout_seconds == 10.0


def test_poller_env_override_beats_default_file(monkeypatch: object) -> None:
    _clear_env(monkeypatch, "CHAINWATCH_POLLER__EVM_POLL_INTERVAL_SECONDS", "EVM_POLL_INTERVAL_SECONDS")

    assert reload_settings(env="prod").poller.evm_poll_interval_seconds == 45.0

    monkeypatch.setenv("CHAINWATCH_POLLER__EVM_POLL_INTERVAL_SECONDS", "30")
    assert reload_settings(env="prod").poller.evm_poll_interval_seconds == 30.0


def test_legacy_poller_name_applies_over_default_file(monkeypatch: object) -> None:
    _clear_env(monkeypatch, "CHAINWATCH_POLLER__EVM_POLL_INTERVAL_SECONDS", "EVM_POLL_INTERVAL_SECONDS")
    _clear_env(monkeypatch, "SOLANA_POLL_INTERVAL_SECONDS", "POLLER__SOLANA_POLL_INTERVAL_SECONDS")

    monkeypatch.setenv("EVM_POLL_INTERVAL_SECONDS", "20")
    settings = reload_settings(env="prod")
    assert settings.poller.evm_poll_interval_seconds == 20.0
    assert settings.poller.solana_poll_interval_seconds == 180.0

    monkeypatch.setenv("CHAINWATCH_POLLER__EVM_POLL_INTERVAL_SECONDS", "15")
    assert reload_settings(env="prod").poller.evm_poll_interval_seconds == 15.0


def test_local_env_falls_back_to_log_notifications(monkeypatch: object) -> None:
    _clear_env(monkeypatch, "TELEGRAM_BOT_TOKEN", "NOTIFICATIONS__TELEGRAM_BOT_TOKEN", "NOTIFICATION_BACKEND")

    local = reload_settings(env="local")
    assert local.is_local
    assert local.notifications.backend == "log"
    assert local.observability.structured_logging is False

    prod = reload_settings(env="prod")
    assert prod.notifications.backend == "telegram"

    monkeypatch.setenv("TELEGRAM_BOT_TOKEN", "123:abc")
    local_with_token = reload_settings(env="local")
    assert local_with_token.notifications.backend == "telegram"
    assert local_with_token.notifications.telegram_bot_token == "123:abc"


def test_settings_file_override(tmp_path, monkeypatch: object) -> None:
    """TOML config files populate settings; env vars still win."""

    _clear_env(monkeypatch, "CHAINWATCH_LIMITS__MAX_TRACKED_PER_USER", "MAX_TRACKED_PER_USER")

    settings_file = tmp_path / "settings.prod.toml"
    settings_file.write_text(
        textwrap.dedent(
            """
            [limits]
            max_tracked_per_user = 5

            [storage]
            sqlite_path = "var/chainwatch-test.db"
            """
        ).strip(),
        encoding="utf-8",
    )
    monkeypatch.setenv("CHAINWATCH_SETTINGS_FILE", str(settings_file))

    from_file = reload_settings(env="prod")
    assert from_file.limits.max_tracked_per_user == 5
    assert from_file.limits.max_tracked_total == 200
    assert from_file.storage.sqlite_path == (PROJECT_ROOT / "var" / "chainwatch-test.db").resolve()
    assert settings_file in from_file.config_files

    monkeypatch.setenv("CHAINWATCH_LIMITS__MAX_TRACKED_PER_USER", "7")
    assert reload_settings(env="prod").limits.max_tracked_per_user == 7


def test_alias_keyed_sections_are_rekeyed_by_field_name() -> None:
    source = FieldNameSettingsSource(
        Settings,
        _StaticSource(
            Settings,
            {
                "poller": {"EVM_POLL_INTERVAL_SECONDS": "30", "tick_seconds": "2"},
                "rpc": {"rpc__eth_url": "https://eth.rpc.test"},
                "env": "prod",
            },
        ),
    )

    assert source() == {
        "poller": {"evm_poll_interval_seconds": "30", "tick_seconds": "2"},
        "rpc": {"eth_url": "https://eth.rpc.test"},
        "env": "prod",
    }
