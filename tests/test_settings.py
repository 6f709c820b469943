"""Tests for settings persistence and secret handling."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from parley.services.settings import SecretVault, Settings, SettingsStore, redact_secret


@pytest.fixture
def store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json")


def test_missing_file_yields_defaults(store: SettingsStore) -> None:
    settings = store.load()
    assert settings == Settings()


def test_round_trip_encrypts_api_key(store: SettingsStore) -> None:
    original = Settings(api_key="sk-secret-value", model="gpt-test", max_subagents_per_session=3)

    path = store.save(original)

    payload = json.loads(path.read_text(encoding="utf-8"))
    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")
    assert "sk-secret-value" not in path.read_text(encoding="utf-8")
    assert payload["version"] == 1
    assert store.load() == original


def test_key_file_is_reused(tmp_path: Path) -> None:
    first = SettingsStore(tmp_path / "settings.json")
    first.save(Settings(api_key="sk-abc"))

    second = SettingsStore(tmp_path / "settings.json")

    assert second.load().api_key == "sk-abc"
    assert (tmp_path / "settings.key").exists()


def test_legacy_plaintext_key_is_migrated(store: SettingsStore) -> None:
    store.path.write_text(json.dumps({"api_key": "sk-legacy", "model": "old-model"}), encoding="utf-8")

    settings = store.load()

    assert settings.api_key == "sk-legacy"
    assert settings.model == "old-model"
    payload = json.loads(store.path.read_text(encoding="utf-8"))
    assert "api_key" not in payload
    assert payload["api_key_ciphertext"].startswith("fernet:")


def test_unknown_fields_are_ignored(store: SettingsStore) -> None:
    store.path.write_text(json.dumps({"model": "m", "theme": "dark"}), encoding="utf-8")
    assert store.load().model == "m"


def test_invalid_json_falls_back_to_defaults(store: SettingsStore) -> None:
    store.path.write_text("{not json", encoding="utf-8")
    assert store.load() == Settings()


def test_undecryptable_key_is_dropped(store: SettingsStore, tmp_path: Path) -> None:
    foreign = SecretVault(key_path=tmp_path / "other.key")
    store.path.write_text(
        json.dumps({"api_key_ciphertext": foreign.encrypt("sk-foreign")}),
        encoding="utf-8",
    )
    assert store.load().api_key == ""


def test_cli_overrides_apply_before_environment(store: SettingsStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARLEY_MODEL", "env-model")

    settings = store.load(overrides={"model": "cli-model", "max_iterations": 7, "unknown": 1, "base_url": None})

    assert settings.model == "env-model"
    assert settings.max_iterations == 7
    assert settings.base_url == Settings().base_url


def test_environment_overrides(store: SettingsStore, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PARLEY_API_KEY", "sk-env")
    monkeypatch.setenv("PARLEY_DEBUG_LOGGING", "yes")
    monkeypatch.setenv("PARLEY_MAX_SUBAGENTS", "2")
    monkeypatch.setenv("PARLEY_SUBAGENT_TIMEOUT", "30.5")
    monkeypatch.setenv("PARLEY_MAX_TOOL_CALLS", "not-a-number")

    settings = store.load()

    assert settings.api_key == "sk-env"
    assert settings.debug_logging is True
    assert settings.max_subagents_per_session == 2
    assert settings.subagent_timeout_seconds == 30.5
    assert settings.max_tool_calls_per_session == 50


def test_client_settings_projection() -> None:
    settings = Settings(
        api_key="k",
        model="m",
        max_input_tokens=1000,
        default_headers={"X-Test": "1"},
        fatal_error_patterns=[{"code": "quota"}],
    )

    client_settings = settings.client_settings()

    assert client_settings.model == "m"
    assert client_settings.max_input_tokens == 1000
    assert client_settings.default_headers == {"X-Test": "1"}
    assert client_settings.fatal_error_patterns == ({"code": "quota"},)
    assert Settings().client_settings().default_headers is None


def test_vault_round_trip(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "vault.key")
    token = vault.encrypt("hunter2")

    assert token.startswith("fernet:")
    assert vault.decrypt(token) == "hunter2"
    assert vault.encrypt("") == ""
    assert vault.decrypt(None) == ""


def test_vault_rejects_tampered_tokens(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "vault.key")
    with pytest.raises(ValueError):
        vault.decrypt("fernet:not-a-real-token")


def test_vault_passes_through_unknown_prefix(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "vault.key")
    assert vault.decrypt("plain-value") == "plain-value"


@pytest.mark.parametrize(
    ("value", "expected"),
    [("", ""), ("abc", "***"), ("sk-123456", "sk*****56"), ("  sk-123456  ", "sk*****56")],
)
def test_redact_secret(value: str, expected: str) -> None:
    assert redact_secret(value) == expected
