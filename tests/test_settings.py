"""Tests for the settings persistence layer."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from docchat.services.settings import ChatSettings, SecretVault, SettingsStore, redact_secret


def _store(tmp_path: Path) -> SettingsStore:
    return SettingsStore(tmp_path / "settings.json", vault=SecretVault(key_path=tmp_path / "settings.key"))


def test_load_returns_defaults_when_file_missing(tmp_path: Path) -> None:
    settings = _store(tmp_path).load()

    assert settings == ChatSettings()
    assert settings.base_url == "https://api.openai.com"
    assert settings.model == "gpt-5-mini"
    assert settings.max_tool_depth == 3


def test_save_and_load_roundtrip(tmp_path: Path) -> None:
    store = _store(tmp_path)
    original = ChatSettings(
        api_key="sk-super-secret",
        base_url="https://proxy.example",
        model="gpt-4.1-mini",
        stream=False,
        response_mode="json",
        temperature=0.4,
        max_tool_depth=5,
        budget_total_tokens=10_000,
    )

    store.save(original)
    reloaded = _store(tmp_path).load()

    assert reloaded == original


def test_api_key_is_encrypted_at_rest(tmp_path: Path) -> None:
    store = _store(tmp_path)

    store.save(ChatSettings(api_key="sk-super-secret"))
    raw = json.loads(store.path.read_text(encoding="utf-8"))

    assert "api_key" not in raw
    assert raw["api_key_ciphertext"].startswith("fernet:")
    assert "sk-super-secret" not in store.path.read_text(encoding="utf-8")
    assert raw["secret_backend"] == "fernet"


def test_unknown_keys_are_ignored(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(json.dumps({"model": "custom", "theme": "dark", "version": 1}), encoding="utf-8")

    settings = store.load()

    assert settings.model == "custom"


def test_invalid_json_falls_back_to_defaults(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text("{not json", encoding="utf-8")

    assert store.load() == ChatSettings()


def test_undecryptable_key_is_dropped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.path.write_text(json.dumps({"api_key_ciphertext": "fernet:garbage"}), encoding="utf-8")

    assert store.load().api_key == ""


def test_runtime_and_environment_overrides(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    store = _store(tmp_path)
    store.save(ChatSettings(model="saved-model"))
    monkeypatch.setenv("DOCCHAT_API_KEY", "sk-from-env")
    monkeypatch.setenv("DOCCHAT_STREAM", "false")
    monkeypatch.setenv("DOCCHAT_MAX_TOOL_DEPTH", "7")
    monkeypatch.setenv("DOCCHAT_REQUEST_TIMEOUT", "12.5")
    monkeypatch.setenv("DOCCHAT_DEBUG_LOGGING", "1")

    settings = store.load(overrides={"model": "runtime-model", "temperature": None})

    assert settings.model == "runtime-model"
    assert settings.api_key == "sk-from-env"
    assert settings.stream is False
    assert settings.max_tool_depth == 7
    assert settings.request_timeout == 12.5
    assert settings.debug_logging is True


def test_invalid_numeric_env_override_is_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DOCCHAT_MAX_TOOL_DEPTH", "lots")

    assert _store(tmp_path).load().max_tool_depth == 3


def test_client_settings_and_response_format() -> None:
    settings = ChatSettings(api_key="k", base_url="", model="", response_mode="json", request_timeout=30.0)

    client_settings = settings.to_client_settings()

    assert client_settings.base_url == "https://api.openai.com"
    assert client_settings.model == "gpt-5-mini"
    assert client_settings.request_timeout == 30.0
    assert settings.response_format() == {"type": "json_object"}
    assert ChatSettings().response_format() is None


def test_vault_roundtrip_and_unknown_prefix(tmp_path: Path) -> None:
    vault = SecretVault(key_path=tmp_path / "k")

    token = vault.encrypt("secret")

    assert vault.decrypt(token) == "secret"
    assert vault.encrypt("") == ""
    assert vault.decrypt("other:payload") == "other:payload"


@pytest.mark.parametrize(
    ("secret", "expected"),
    [(None, "<empty>"), ("", "<empty>"), ("short", "*****"), ("sk-1234567890abcd", "sk-1...abcd")],
)
def test_redact_secret(secret: str | None, expected: str) -> None:
    assert redact_secret(secret) == expected
